from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy.orm import Session

from app.db.models.security_audit import AuditLog
from app.core.tenant import get_tenant_id

logger = logging.getLogger(__name__)


def audit(
    db: Session,
    *,
    actor: str,
    action: str,
    entity_type: str,
    entity_id: str | None = None,
    payload: dict | None = None,
    success: bool = True,
    tenant_id: str | None = None,
    commit: bool = True,
) -> AuditLog:
    """Write an append-only audit record.

    Pass commit=False to join the caller's transaction, so the audit row lands
    together with the decision it records.
    """
    tenant_id = tenant_id or get_tenant_id()
    safe_payload: dict[str, Any] = payload or {}
    try:
        safe_payload = json.loads(json.dumps(safe_payload, default=str))
    except (TypeError, ValueError):
        logger.warning("audit payload for %s %s is not JSON-serializable", action, entity_id)
        safe_payload = {"_payload_error": "non_json", "_payload_repr": repr(payload)}

    row = AuditLog(
        tenant_id=tenant_id,
        actor=actor,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        success=success,
        payload=safe_payload,
    )
    db.add(row)
    if commit:
        db.commit()
    else:
        db.flush()
    return row
