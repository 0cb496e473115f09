"""
errors.py
---------
Error taxonomy shared by every layer.

Each error carries a machine-readable ``code`` and a human-readable
message, so handlers and logs can report failures without parsing text.
"""

from typing import Any, Optional


class BillingError(Exception):
    """Base class for all domain errors."""

    code = "BILLING_ERROR"
    retryable = False

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details: dict[str, Any] = details or {}

    def to_dict(self) -> dict:
        """Serializable form used in logs and webhook responses."""
        return {
            "error": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }

    def __str__(self) -> str:
        return self.message


class ValidationError(BillingError):
    """Bad input, rejected before any mutation."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, errors: Optional[list[str]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.errors = errors or [message]
        self.details.setdefault("errors", self.errors)


class NotFoundError(BillingError):
    code = "NOT_FOUND"


class InvalidTransitionError(BillingError):
    """Illegal subscription state-machine move."""

    code = "INVALID_TRANSITION"

    def __init__(self, current: str, target: str, entity_id: Any = None):
        super().__init__(
            f"Cannot move subscription {entity_id} from '{current}' to '{target}'",
            details={"from": current, "to": target, "id": entity_id},
        )
        self.current = current
        self.target = target


class DuplicateDeliveryError(BillingError):
    """A webhook or verification replay; handled as a no-op success."""

    code = "DUPLICATE_DELIVERY"


class DuplicateRecordError(BillingError):
    """A unique key (ledger cycle, gateway reference) already exists."""

    code = "DUPLICATE_RECORD"


class GatewayError(BillingError):
    """Upstream payment processor failure."""

    code = "GATEWAY_ERROR"
    retryable = True


class PersistenceError(BillingError):
    """Storage failure. Retryable at the cycle level."""

    code = "PERSISTENCE_ERROR"
    retryable = True


class StaleStateError(BillingError):
    """A conditional update lost a race with a concurrent writer."""

    code = "STALE_STATE"
    retryable = True


class PaymentNotAppliedError(BillingError):
    """A settled charge whose subscription can no longer take it; the money needs a refund."""

    code = "PAYMENT_NOT_APPLIED"


class InvalidSignatureError(BillingError):
    code = "INVALID_SIGNATURE"


class MalformedPayloadError(BillingError):
    code = "MALFORMED_PAYLOAD"


class RateLimitExceededError(BillingError):
    code = "RATE_LIMITED"

    def __init__(self, key: str, retry_after: int):
        super().__init__(
            f"Too many requests for '{key}'. Retry in {retry_after}s.",
            details={"key": key, "retry_after": retry_after},
        )
        self.retry_after = retry_after
