"""
Error taxonomy for the reconciliation engine.

Every error carries a stable ``reason_code`` and the HTTP status the API
boundary maps it to. Callers branch on the class, clients on the code.
"""
from typing import Any, Dict, Optional


class EngineError(Exception):
    """Base class for all errors surfaced to callers."""

    reason_code = "engine_error"
    http_status = 500

    def __init__(
        self,
        message: str,
        reason_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if reason_code is not None:
            self.reason_code = reason_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for API responses."""
        body: Dict[str, Any] = {"error": self.reason_code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


# Authentication / integrity


class WebhookAuthenticationError(EngineError):
    """Webhook signature or timestamp failed verification. Never persisted."""

    reason_code = "invalid_signature"
    http_status = 400


# Validation (rejected permanently)


class ValidationError(EngineError):
    reason_code = "validation_error"
    http_status = 422


class EmptyCartError(ValidationError):
    reason_code = "empty_cart"


class InvalidCartError(ValidationError):
    reason_code = "invalid_cart"


class OverRefundError(ValidationError):
    reason_code = "over_refund"


class RefundNotAllowedError(ValidationError):
    reason_code = "order_not_refundable"


class PayoutNotEnabledError(ValidationError):
    reason_code = "payout_not_enabled"


class OrderNotCancellableError(ValidationError):
    reason_code = "order_not_cancellable"


class InvalidTransitionError(ValidationError):
    reason_code = "invalid_transition"


class IdempotencyKeyReuseError(ValidationError):
    """Same client key submitted with a different request body."""

    reason_code = "idempotency_key_reuse"
    http_status = 409


# Not found


class NotFoundError(EngineError):
    reason_code = "not_found"
    http_status = 404


class OrderNotFoundError(NotFoundError):
    reason_code = "order_not_found"


class SellerAccountNotFoundError(NotFoundError):
    reason_code = "seller_account_not_found"


# Conflict (recoverable by re-read and retry)


class ConflictError(EngineError):
    reason_code = "version_conflict"
    http_status = 409


class RequestInProgressError(ConflictError):
    """Another delivery of the same idempotency key is still being processed."""

    reason_code = "request_in_progress"


# Processor


class GatewayUnavailableError(EngineError):
    """Transient processor failure after retries; outcome pending reconciliation."""

    reason_code = "gateway_unavailable"
    http_status = 503


class PaymentGatewayError(EngineError):
    """The processor rejected the request."""

    reason_code = "gateway_rejected"
    http_status = 402
