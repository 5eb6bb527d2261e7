"""
shared/exceptions.py
Domain error taxonomy. Services raise these; main.py translates every one of
them into the {"success": false, "message": ...} envelope.
"""

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Base error carrying a machine code, a human message and an HTTP status."""

    status_code: int = 400
    error: str = "SERVICE_ERROR"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        error: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if error is not None:
            self.error = error
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body = {"success": False, "message": self.message, "error": self.error}
        if self.retryable:
            body["retryable"] = True
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(ServiceError):
    status_code = 400
    error = "VALIDATION_ERROR"


class Unauthorized(ServiceError):
    """Caller does not own the resource."""
    status_code = 403
    error = "UNAUTHORIZED"


class NotFound(ServiceError):
    status_code = 404
    error = "NOT_FOUND"


class Conflict(ServiceError):
    status_code = 409
    error = "CONFLICT"


class AlreadyResponded(Conflict):
    error = "ALREADY_RESPONDED"


class InvalidStateError(ServiceError):
    """Booking is not in a state that allows the requested operation."""
    status_code = 409
    error = "INVALID_STATE"


class InvalidTransitionError(ServiceError):
    """Escrow status transition not in the transition table."""
    status_code = 409
    error = "INVALID_TRANSITION"

    def __init__(self, current_status: str, attempted_status: str, message: Optional[str] = None):
        super().__init__(
            message or f"Cannot transition escrow from {current_status} to {attempted_status}",
            details={"current_status": current_status, "attempted_status": attempted_status},
        )
        self.current_status = current_status
        self.attempted_status = attempted_status


class WindowExpired(ServiceError):
    status_code = 410
    error = "WINDOW_EXPIRED"


class PaymentError(ServiceError):
    """Charge or refund failed at the payment gateway."""
    status_code = 402
    error = "PAYMENT_ERROR"


class TransferError(ServiceError):
    """Payout transfer failed. Escrow stays untouched so the call can be retried."""
    status_code = 502
    error = "TRANSFER_ERROR"
    retryable = True
