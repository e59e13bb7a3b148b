"""
Domain errors for the cancellation flow.

Each error carries the error code and HTTP status used by the API envelope
(see backend.utils.responses.error_response).
"""
from typing import Optional, Sequence


class CancellationError(Exception):
    """Base class for every error the cancellation core raises."""

    code = "cancellation_error"
    status = 400

    def __init__(self, message: str = "", data: Optional[dict] = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.data = data or {}


class PermissionDenied(CancellationError):
    """Caller identity does not own the record."""

    code = "permission_denied"
    status = 403


class InvalidTransition(CancellationError):
    """Subscription status change (or record lifecycle step) that is not allowed."""

    code = "invalid_transition"
    status = 409

    def __init__(self, from_status: Optional[str] = None, to_status: Optional[str] = None, message: str = ""):
        if not message:
            message = f"invalid status transition: {from_status} -> {to_status}"
        super().__init__(message, {"from": from_status, "to": to_status})
        self.from_status = from_status
        self.to_status = to_status


class ValidationFailed(CancellationError):
    """Required-field gate unmet, or a value outside its enumeration."""

    code = "validation_failed"
    status = 422

    def __init__(self, message: str = "", fields: Sequence[str] = ()):
        super().__init__(message or f"missing or invalid: {', '.join(fields)}", {"fields": list(fields)})
        self.fields = list(fields)


class InvalidStep(ValidationFailed):
    """Event not accepted in the wizard's current step."""

    code = "invalid_step"


class ImmutableFieldViolation(CancellationError):
    code = "immutable_field"
    status = 409

    def __init__(self, field: str, message: str = ""):
        super().__init__(message or f"{field} is immutable once set", {"field": field})
        self.field = field


class RecordNotFound(CancellationError):
    code = "not_found"
    status = 404


class TransientStoreError(CancellationError):
    """I/O failure against the persistent store. Safe to retry."""

    code = "store_unavailable"
    status = 503
