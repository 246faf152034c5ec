from __future__ import annotations

import os


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Length of the routing a card gets when it is created without a route template.
DEFAULT_CARD_STEPS = int(os.getenv("DEFAULT_CARD_STEPS", "3"))

# Department told when a card finishes its last step.
PLANNING_DEPARTMENT_CODE = os.getenv("PLANNING_DEPARTMENT_CODE", "PLANNING")

CANCELLED_STATUS_CODE = os.getenv("CANCELLED_STATUS_CODE", "CANCELLED")

# Attempts at allocating a unique generated code before giving up with a conflict.
CODE_SEQUENCE_RETRIES = int(os.getenv("CODE_SEQUENCE_RETRIES", "5"))

CARD_NUMBER_PREFIX = os.getenv("CARD_NUMBER_PREFIX", "KART-")
CARD_NUMBER_START = int(os.getenv("CARD_NUMBER_START", "1000"))

RUN_EVENT_DISPATCHER = _flag("RUN_EVENT_DISPATCHER", "true")
SEED_CATALOG_ON_STARTUP = _flag("SEED_CATALOG_ON_STARTUP", "true")
