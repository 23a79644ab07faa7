"""Custom exceptions for the order service."""
from typing import Optional


class OrderServiceError(Exception):
    """Base exception for all order service errors."""

    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        """Extra fields merged into the error envelope."""
        return {}


class ValidationError(OrderServiceError):
    """Raised when request data is rejected before any side effect."""

    status_code = 400


class NotFoundError(OrderServiceError):
    """Raised when a referenced record doesn't exist."""

    status_code = 404

    def __init__(self, resource: str, resource_id: Optional[str] = None):
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} not found")


class ForbiddenError(OrderServiceError):
    status_code = 403

    def __init__(self, message: str = "Access denied"):
        super().__init__(message)


class InvalidTransition(OrderServiceError):
    """Raised when a status is not reachable from the current one."""

    status_code = 400

    def __init__(self, current: str, new: str, subject: str = "order"):
        self.current = current
        self.new = new
        super().__init__(f"Invalid {subject} status transition: {current} -> {new}")

    def to_dict(self) -> dict:
        return {"currentStatus": self.current, "requestedStatus": self.new}


class IllegalCancellation(InvalidTransition):
    """Raised when cancelling an order that is no longer pending or processing."""

    def __init__(self, current: str):
        super().__init__(current, "cancelled")
        self.message = f"Order cannot be cancelled once it is {current}"
        self.args = (self.message,)


class InsufficientStock(OrderServiceError):
    status_code = 400

    def __init__(self, product_id: str, available: int, requested: int):
        self.product_id = product_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient stock for product {product_id}. Current: {available}, Requested: {requested}"
        )

    def to_dict(self) -> dict:
        return {"productId": self.product_id, "available": self.available, "requested": self.requested}


class PaymentIntentNotFound(OrderServiceError):
    status_code = 400

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__("This order does not have a payment intent. Cannot process refund.")


class NoSuccessfulCharge(OrderServiceError):
    """Raised when a payment intent has no succeeded charge to refund or capture against."""

    status_code = 400

    def __init__(self, payment_intent_id: str):
        self.payment_intent_id = payment_intent_id
        super().__init__(
            "This PaymentIntent does not have a successful charge to refund. "
            "The payment may not have been completed."
        )


# Statuses where no money was ever collected, so the order should be cancelled instead
CANCEL_INSTEAD_STATUSES = ("requires_payment_method", "canceled")

_PAYMENT_STATUS_HINTS = {
    "requires_payment_method": (
        "Payment has not been completed. The payment method is required but not provided.",
        "This order cannot be refunded because no payment was received. "
        "You should cancel this order instead of processing a refund.",
    ),
    "requires_confirmation": (
        "Payment is pending confirmation.",
        "This order cannot be refunded until the payment is confirmed. "
        "Please wait for the payment to complete or cancel the order if payment fails.",
    ),
    "requires_action": (
        "Payment requires additional action (e.g., 3D Secure authentication).",
        "This order cannot be refunded until the payment is completed. "
        "The customer needs to complete the authentication process.",
    ),
    "processing": (
        "Payment is currently being processed.",
        "Please wait for the payment to complete before processing a refund.",
    ),
    "requires_capture": (
        "Payment has been authorized but not yet captured.",
        "You may need to capture the payment first or cancel the authorization.",
    ),
    "canceled": (
        "Payment has been canceled.",
        "This order cannot be refunded because no payment was received. "
        "The order should be canceled instead.",
    ),
}


class PaymentNotSucceeded(OrderServiceError):
    """Raised when a refund is attempted against a payment intent that never succeeded."""

    status_code = 400

    def __init__(self, payment_intent_id: str, payment_status: str):
        self.payment_intent_id = payment_intent_id
        self.payment_status = payment_status
        self.can_cancel = payment_status in CANCEL_INSTEAD_STATUSES
        reason, self.suggested_action = _PAYMENT_STATUS_HINTS.get(
            payment_status,
            (
                f'Payment status is "{payment_status}".',
                "This order cannot be refunded because the payment has not been successfully completed.",
            ),
        )
        super().__init__(f"{reason} {self.suggested_action}")

    def to_dict(self) -> dict:
        return {
            "paymentStatus": self.payment_status,
            "canCancel": self.can_cancel,
            "action": "cancel" if self.can_cancel else "wait",
        }


class AlreadyFullyRefunded(OrderServiceError):
    status_code = 400

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__("Order has already been fully refunded")


class GatewayError(OrderServiceError):
    """Raised when a payment gateway call fails."""

    status_code = 502

    def __init__(self, operation: str, detail: str, code: Optional[str] = None):
        self.operation = operation
        self.detail = detail
        self.code = code
        super().__init__(f"Payment gateway {operation} failed: {detail}")

    def to_dict(self) -> dict:
        return {"gatewayCode": self.code} if self.code else {}
