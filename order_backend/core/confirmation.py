"""
Payment confirmation: record the order for a payment the gateway has charged.

Flow:
1. Retrieve the PaymentIntent and require status ``succeeded``
2. Build the order from the submitted cart, with the gateway-confirmed total
3. Retry with a fresh order ID if the generated one collided
4. If the order cannot be stored, answer with a fallback order ID

Once the gateway reports success the customer has been charged, so every
outcome from step 2 onward is a success for the customer, including a cart
that fails validation. Failures to record are reported to operators through
logs and metrics, and the result says the order needs manual reconciliation.
"""
import time
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, Union

import structlog

from order_backend.core.exceptions import (
    AlreadyRecordedError,
    ConflictError,
    OrderBackendError,
    PaymentNotCompletedError,
)
from order_backend.core.orders import (
    Customer,
    NewOrder,
    OrderService,
    parse_customer,
    parse_items,
)
from order_backend.core.pricing import from_minor_units
from order_backend.integrations.stripe_client import PaymentIntentSummary, StripeGateway
from order_backend.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

RECONCILIATION_WARNING = "Order saved to backup system"


def _as_decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value))
    except ArithmeticError:
        return Decimal("0")


def _customer_field(customer: Any, field_name: str) -> Optional[str]:
    """Read a customer field from a domain object or a raw mapping."""
    if isinstance(customer, Customer):
        value = getattr(customer, field_name)
    elif isinstance(customer, Mapping):
        value = customer.get(field_name)
    else:
        value = None
    if not isinstance(value, str):
        return None
    return value.strip() or None


def _thank_you(customer: Any) -> str:
    name = _customer_field(customer, "name")
    return f"Thank you {name}!" if name else "Thank you!"


def generate_fallback_order_id(prefix: str = "KK") -> str:
    """
    Order ID handed out when the order could not be stored.

    ``{prefix}-{last 6 digits of epoch millis}``; the all-digit suffix and
    the prefix keep it apart from stored IDs.
    """
    return f"{prefix}-{str(int(time.time() * 1000))[-6:]}"


@dataclass(frozen=True)
class PaymentConfirmationRequest:
    """
    What the storefront sends once the customer's payment went through.

    ``customer`` and ``items`` may be domain objects or the raw request
    values; they are only checked after the payment is verified.
    """

    payment_intent_id: str
    customer: Any
    items: Any
    total: Any = None


@dataclass(frozen=True)
class DurablyRecorded:
    """The order is stored; ``already_recorded`` marks a repeated confirmation."""

    order_id: str
    payment_intent_id: str
    total_amount: Decimal
    created_at: Optional[datetime]
    message: str
    customer_email: Optional[str] = None
    already_recorded: bool = False


@dataclass(frozen=True)
class RecordedWithWarning:
    """The payment succeeded but the order exists only in logs until reconciled."""

    order_id: str
    payment_intent_id: str
    total_amount: Decimal
    message: str
    customer_email: Optional[str] = None
    warning: str = RECONCILIATION_WARNING


ConfirmationResult = Union[DurablyRecorded, RecordedWithWarning]


class PaymentConfirmation:
    """
    Confirms payments and records their orders.

    Args:
        gateway: Payment gateway used to verify the PaymentIntent
        order_service: Service storing the order
        fallback_prefix: Prefix of fallback order IDs
        max_attempts: Order ID generation attempts on collision
    """

    def __init__(
        self,
        gateway: StripeGateway,
        order_service: OrderService,
        fallback_prefix: str = "KK",
        max_attempts: int = 3,
    ):
        self.gateway = gateway
        self.order_service = order_service
        self.fallback_prefix = fallback_prefix
        self.max_attempts = max(1, max_attempts)

    @staticmethod
    def _confirmed_total(
        payment_intent: PaymentIntentSummary, requested_total: Any
    ) -> Any:
        """The amount the gateway charged, in major units."""
        charged = payment_intent.charged_amount
        if charged is None:
            return requested_total

        total = from_minor_units(charged, payment_intent.currency)
        if requested_total is None:
            return total
        try:
            mismatch = Decimal(str(requested_total)) != total
        except ArithmeticError:
            mismatch = True
        if mismatch:
            logger.warning(
                "payment_total_mismatch",
                payment_intent_id=payment_intent.id,
                requested_total=str(requested_total),
                charged_total=str(total),
            )
        return total

    async def _create_order(self, new_order: NewOrder) -> dict:
        attempt = 1
        while True:
            try:
                return await self.order_service.create_order(new_order)
            except AlreadyRecordedError:
                raise
            except ConflictError:
                if attempt >= self.max_attempts:
                    raise
                logger.warning(
                    "order_id_collision_retrying",
                    payment_intent_id=new_order.stripe_payment_intent_id,
                    attempt=attempt,
                )
                attempt += 1

    async def confirm(self, request: PaymentConfirmationRequest) -> ConfirmationResult:
        """
        Verify the payment and record its order.

        Returns:
            ConfirmationResult: ``DurablyRecorded`` or ``RecordedWithWarning``

        Raises:
            PaymentNotCompletedError: If the PaymentIntent has not succeeded
            UpstreamError: If the gateway cannot be queried
        """
        payment_intent = await self.gateway.retrieve_payment_intent(request.payment_intent_id)

        if not payment_intent.succeeded:
            metrics.record_confirmation("not_succeeded")
            logger.warning(
                "payment_not_succeeded",
                payment_intent_id=payment_intent.id,
                status=payment_intent.status,
            )
            raise PaymentNotCompletedError(payment_intent.id, payment_intent.status)

        total = self._confirmed_total(payment_intent, request.total)
        customer_email = _customer_field(request.customer, "email")
        logger.info(
            "payment_verified",
            payment_intent_id=payment_intent.id,
            customer_email=customer_email,
            total=str(total),
        )

        try:
            new_order = NewOrder(
                stripe_payment_intent_id=payment_intent.id,
                customer=parse_customer(request.customer),
                items=parse_items(request.items),
                total=total,
            )
            order = await self._create_order(new_order)

        except AlreadyRecordedError as e:
            metrics.record_confirmation("already_recorded")
            logger.info(
                "payment_already_recorded",
                payment_intent_id=payment_intent.id,
                order_id=e.order_id,
            )
            existing = await self._lookup_quietly(e.order_id)
            return DurablyRecorded(
                order_id=e.order_id,
                payment_intent_id=payment_intent.id,
                total_amount=existing["total_amount"] if existing else _as_decimal(total),
                created_at=existing["created_at"] if existing else None,
                message=f"{_thank_you(request.customer)} Your order {e.order_id} was already received.",
                customer_email=customer_email,
                already_recorded=True,
            )

        except OrderBackendError as e:
            fallback_order_id = generate_fallback_order_id(self.fallback_prefix)
            metrics.record_confirmation("fallback")
            logger.error(
                "order_persistence_failed_fallback_issued",
                payment_intent_id=payment_intent.id,
                fallback_order_id=fallback_order_id,
                customer_email=customer_email,
                total=str(total),
                error=str(e),
                error_type=type(e).__name__,
            )
            return RecordedWithWarning(
                order_id=fallback_order_id,
                payment_intent_id=payment_intent.id,
                total_amount=_as_decimal(total),
                message=(
                    f"{_thank_you(request.customer)} Your payment was successful. "
                    "Order details will be sent via email."
                ),
                customer_email=customer_email,
            )

        metrics.record_confirmation("recorded")
        return DurablyRecorded(
            order_id=order["order_id"],
            payment_intent_id=payment_intent.id,
            total_amount=order["total_amount"],
            created_at=order["created_at"],
            message=order["message"],
            customer_email=customer_email,
        )

    async def _lookup_quietly(self, order_id: str) -> Optional[dict]:
        """Fetch an existing order for the response; a failure only drops details."""
        try:
            return await self.order_service.get_order_by_id(order_id)
        except OrderBackendError as e:
            logger.warning("existing_order_lookup_failed", order_id=order_id, error=str(e))
            return None
