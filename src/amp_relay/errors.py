"""Error kinds returned to AMP callers."""

from __future__ import annotations

from typing import Any, Optional

MISSING_HEADER = "missing_header"
INVALID_REQUEST = "invalid_request"
MISSING_FIELD = "missing_field"
INVALID_FIELD = "invalid_field"
UNAUTHORIZED = "unauthorized"
FORBIDDEN = "forbidden"
NOT_FOUND = "not_found"
DUPLICATE_MESSAGE = "duplicate_message"
RATE_LIMITED = "rate_limited"
INTERNAL_ERROR = "internal_error"

_DEFAULT_STATUS: dict[str, int] = {
    MISSING_HEADER: 400,
    INVALID_REQUEST: 400,
    MISSING_FIELD: 400,
    INVALID_FIELD: 400,
    UNAUTHORIZED: 401,
    FORBIDDEN: 403,
    NOT_FOUND: 404,
    DUPLICATE_MESSAGE: 409,
    RATE_LIMITED: 429,
    INTERNAL_ERROR: 500,
}


class AmpError(Exception):
    """A caller-facing failure; validation errors name the offending field."""

    def __init__(
        self,
        error_type: str,
        message: str,
        *,
        status_code: Optional[int] = None,
        field: Optional[str] = None,
        retry_after: Optional[int] = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.status_code = status_code or _DEFAULT_STATUS.get(error_type, 400)
        self.field = field
        self.retry_after = retry_after

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.error_type, "message": str(self)}
        if self.field:
            payload["field"] = self.field
        if self.retry_after is not None:
            payload["retry_after"] = self.retry_after
        return payload


def missing_field(field: str, message: Optional[str] = None) -> AmpError:
    return AmpError(MISSING_FIELD, message or f"{field} is required", field=field)


def invalid_field(field: str, message: str) -> AmpError:
    return AmpError(INVALID_FIELD, message, field=field)
