# src/mission_control/errors.py

"""
Error taxonomy shared by the store, the lifecycle core and the HTTP layer.

Each error knows its HTTP status and a stable machine-readable code; extra
fields (offending field, conflicting agent, denial reason) go into `extra`
so the transport can render them without knowing every subclass.
"""

from __future__ import annotations

from typing import Any


class MissionControlError(Exception):
    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, detail: str = "", **extra: Any) -> None:
        super().__init__(detail or self.code)
        self.detail = detail or self.code
        self.extra: dict[str, Any] = {k: v for k, v in extra.items() if v is not None}

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "detail": self.detail, **self.extra}


class Unauthorized(MissionControlError):
    status_code = 401
    code = "unauthorized"


class Forbidden(MissionControlError):
    status_code = 403
    code = "forbidden"

    def __init__(self, reason: str) -> None:
        super().__init__(reason, reason=reason)
        self.reason = reason


class NotFound(MissionControlError):
    status_code = 404
    code = "not_found"

    def __init__(self, resource: str = "resource") -> None:
        # Never say *why* it was not found: out-of-scope rows look absent.
        super().__init__(f"{resource.capitalize()} not found")


class ValidationFailed(MissionControlError):
    status_code = 400
    code = "validation_failed"


class InvalidTransition(MissionControlError):
    status_code = 422
    code = "invalid_transition"

    def __init__(self, field: str, detail: str = "") -> None:
        super().__init__(detail or f"Field {field!r} cannot be changed this way", field=field)
        self.field = field


class AlreadyClaimed(MissionControlError):
    status_code = 409
    code = "already_claimed"

    def __init__(self, claimed_by: int) -> None:
        super().__init__(f"Task is already claimed by agent {claimed_by}", claimed_by=claimed_by)
        self.claimed_by = claimed_by


class InvalidAgent(MissionControlError):
    status_code = 422
    code = "invalid_agent"

    def __init__(self, agent_id: int | None, detail: str = "") -> None:
        super().__init__(detail or "Agent is not eligible for this board", agent_id=agent_id)
        self.agent_id = agent_id


class StoreUnavailable(MissionControlError):
    status_code = 503
    code = "store_unavailable"


__all__ = [
    "AlreadyClaimed",
    "Forbidden",
    "InvalidAgent",
    "InvalidTransition",
    "MissionControlError",
    "NotFound",
    "StoreUnavailable",
    "Unauthorized",
    "ValidationFailed",
]
