"""
Error taxonomy for the tracking service.
Each error carries the HTTP status and code the API responds with.
"""
from typing import Any, Dict, Optional


class TrackingError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, extra: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.extra = extra or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "code": self.code, **self.extra}


class AuthenticationRequired(TrackingError):
    status_code = 401
    code = "UNAUTHORIZED"


class Forbidden(TrackingError):
    status_code = 403
    code = "FORBIDDEN"


class NotFound(TrackingError):
    status_code = 404
    code = "NOT_FOUND"


class ValidationFailed(TrackingError):
    status_code = 400
    code = "VALIDATION_ERROR"


class Conflict(TrackingError):
    status_code = 409
    code = "CONFLICT"


class PayloadTooLarge(TrackingError):
    status_code = 413
    code = "PAYLOAD_TOO_LARGE"


class UpstreamError(TrackingError):
    """Routing provider failure. Absorbed by the distance engine fallback."""
    status_code = 502
    code = "UPSTREAM_ERROR"


class InternalError(TrackingError):
    status_code = 500
    code = "INTERNAL_ERROR"
