from __future__ import annotations

from typing import Any


class RoutingError(Exception):
    """Base for domain failures surfaced to callers as `{"error": kind, "message": ...}`."""

    kind = "error"
    status_code = 400

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        return {"error": self.kind, "message": self.message, **self.context}


class NotFound(RoutingError):
    kind = "not_found"
    status_code = 404


class InvalidInput(RoutingError):
    kind = "invalid_input"
    status_code = 400


class Conflict(RoutingError):
    kind = "conflict"
    status_code = 409


class Unauthorized(RoutingError):
    kind = "unauthorized"
    status_code = 401


class Forbidden(RoutingError):
    kind = "forbidden"
    status_code = 403
