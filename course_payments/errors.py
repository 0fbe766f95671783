from typing import Optional


class PaymentsError(Exception):
    """Base exception for the payments service."""

    status_code = 500
    retryable = False

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(PaymentsError):
    """Raised on bad, user-correctable input."""

    status_code = 400


class NotFoundError(PaymentsError):
    """Raised when a payment, course or reference is unknown."""

    status_code = 404


class SignatureError(PaymentsError):
    """Raised when a webhook signature is missing or does not verify."""

    status_code = 400


class ProviderError(PaymentsError):
    """Raised when a call to the payment provider fails or times out."""

    status_code = 502

    def __init__(self, message: str, retryable: bool = True, payload=None):
        self.retryable = retryable
        self.payload = payload
        super().__init__(message)


class ReconciliationConflict(PaymentsError):
    """An event whose precondition no longer holds. Logged, never surfaced."""

    status_code = 409

    def __init__(self, payment_id: str, current: str, event_type: str, reason: Optional[str] = None):
        self.payment_id = payment_id
        self.current = current
        self.event_type = event_type
        super().__init__(
            reason or f"Event '{event_type}' does not apply to payment {payment_id} in status {current}"
        )
