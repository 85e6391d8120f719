"""Error taxonomy shared by the services and the HTTP layer."""
from typing import Optional


class OrderBackendError(Exception):
    """Base exception for order processing errors."""

    pass


class ValidationError(OrderBackendError):
    """Raised when client input is missing or malformed."""

    pass


class ConflictError(OrderBackendError):
    """Raised when a generated identifier collides with an existing row."""

    pass


class AlreadyRecordedError(ConflictError):
    """Raised when an order already exists for the payment intent."""

    def __init__(self, payment_intent_id: str, order_id: str):
        super().__init__(
            f"Payment intent {payment_intent_id} is already recorded as order {order_id}"
        )
        self.payment_intent_id = payment_intent_id
        self.order_id = order_id


class NotFoundError(OrderBackendError):
    """Raised when a lookup that must succeed finds nothing."""

    pass


class PersistenceError(OrderBackendError):
    """Raised when the store is unavailable or a query fails."""

    pass


class UpstreamError(OrderBackendError):
    """Raised when the payment gateway is unreachable or rejects a request."""

    pass


class PaymentNotCompletedError(OrderBackendError):
    """Raised when a payment intent being confirmed has not succeeded."""

    def __init__(self, payment_intent_id: str, status: Optional[str]):
        super().__init__(f"Payment {payment_intent_id} was not successful (status: {status})")
        self.payment_intent_id = payment_intent_id
        self.status = status
