"""Error taxonomy shared by the checkout, verification and worker services.

Each error carries a stable `error_code`, the HTTP status it surfaces as, a
client-safe message, and whether a queued job hitting it should be retried.
Raw exception text from drivers or gateways never reaches a client; handlers
render `to_dict()` only.
"""

from typing import Any


class PipelineError(Exception):
    """Base class for every error the services surface deliberately."""

    error_code = "INTERNAL_ERROR"
    http_status = 500
    retryable = False
    default_message = "Internal server error"

    def __init__(self, message: str | None = None, details: Any = None) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"success": False, "error": self.message, "error_code": self.error_code}
        if self.details is not None:
            body["details"] = self.details
        return body


class AuthRequired(PipelineError):
    error_code = "AUTH_REQUIRED"
    http_status = 401
    default_message = "Authentication required"


class ValidationFailed(PipelineError):
    error_code = "VALIDATION_FAILED"
    http_status = 400
    default_message = "Invalid request"


class EmptyCart(ValidationFailed):
    error_code = "EMPTY_CART"
    default_message = "Cart is empty"


class ComboUnavailable(ValidationFailed):
    error_code = "COMBO_UNAVAILABLE"
    default_message = "One or more combos are no longer available"


class UnsupportedPaymentMethod(ValidationFailed):
    error_code = "UNSUPPORTED_PAYMENT_METHOD"
    default_message = "Unsupported payment method"


class InvalidSignature(ValidationFailed):
    error_code = "INVALID_SIGNATURE"
    default_message = "Invalid signature"


class NotFound(PipelineError):
    error_code = "NOT_FOUND"
    http_status = 404
    default_message = "Not found"


class RateLimited(PipelineError):
    error_code = "RATE_LIMITED"
    http_status = 429
    default_message = "Too many requests"


class GatewayError(PipelineError):
    """Gateway answered with something unusable (non-2xx, non-JSON, error code)."""

    error_code = "GATEWAY_ERROR"
    http_status = 502
    retryable = True
    default_message = "Payment gateway error"


class GatewayTimeout(GatewayError):
    error_code = "GATEWAY_TIMEOUT"
    http_status = 504
    default_message = "Payment gateway timed out"


class PaymentInitFailed(PipelineError):
    error_code = "PAYMENT_INIT_FAILED"
    http_status = 500
    default_message = "Failed to initialize payment"


class PaymentFailed(PipelineError):
    error_code = "PAYMENT_FAILED"
    http_status = 400
    default_message = "Payment was not completed"


class AmountMismatch(PipelineError):
    """Gateway confirmed a different amount than the intent expects.

    Treated as a security event: the audit row is kept and the intent fails.
    """

    error_code = "AMOUNT_MISMATCH"
    http_status = 400
    default_message = "Payment amount mismatch"


class InsufficientInventory(PipelineError):
    error_code = "INSUFFICIENT_INVENTORY"
    http_status = 400
    default_message = "Insufficient inventory"

    def __init__(self, variant_id: str, requested: int, available: int) -> None:
        self.variant_id = variant_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient inventory for {variant_id}: requested {requested}, available {available}",
            details={"variant_id": variant_id, "requested": requested, "available": available},
        )


class InventoryConflict(PipelineError):
    """Version guard kept rejecting writes after the bounded retries."""

    error_code = "INVENTORY_CONFLICT"
    http_status = 409
    retryable = True
    default_message = "Inventory changed concurrently, please retry"
