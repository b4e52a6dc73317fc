from __future__ import annotations

from typing import Any, Dict, Optional


class AppError(Exception):
    """Base error rendered as JSON by the app-level handler."""

    status = 400
    code: Optional[str] = None

    def __init__(self, message: str, code: str | None = None, status: int | None = None, **extra: Any):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status is not None:
            self.status = status
        self.extra: Dict[str, Any] = extra

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.code or self.message, "message": self.message}
        payload.update(self.extra)
        return payload


class ValidationFailed(AppError):
    status = 400
    code = "invalid_payload"

    def __init__(self, message: str, errors: Dict[str, str] | None = None, **extra: Any):
        super().__init__(message, **extra)
        self.errors = dict(errors or {})
        if self.errors:
            self.extra["errors"] = self.errors


class NotAuthenticated(AppError):
    status = 401
    code = "not_authenticated"


class Forbidden(AppError):
    status = 403
    code = "forbidden"


class NotFound(AppError):
    status = 404
    code = "not_found"


class Conflict(AppError):
    status = 409
    code = "conflict"


class Locked(AppError):
    status = 423
    code = "account_locked"


class MissingFeePlans(Conflict):
    code = "MISSING_FEE_PLANS"

    def __init__(self, missing: list[dict]):
        names = ", ".join(f"{m['class']} ({m['year']})" for m in missing)
        super().__init__(f"No active fee plan for: {names}", missing=missing)
        self.missing = missing
