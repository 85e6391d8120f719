"""
Order service: turns a confirmed payment into a persisted order.

Responsibilities:
- Validate and normalize the order input (customer, items, prices)
- Derive subtotal and tax, keep the gateway-confirmed total as-is
- Generate human-readable order IDs
- Write the order and its items in a single transaction
- Status transitions and lookups

The service holds no state besides its session factory; every call
round-trips to the database.
"""
import secrets
import string
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_backend.core.exceptions import (
    AlreadyRecordedError,
    ConflictError,
    PersistenceError,
    ValidationError,
)
from order_backend.core.pricing import (
    CENTS,
    PriceInput,
    TaxPolicy,
    compute_subtotal,
    no_tax,
    normalize_price,
)
from order_backend.database.models import ORDER_STATUSES, Order, OrderItem, utcnow
from order_backend.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

DEFAULT_RECENT_LIMIT = 10

# asyncpg surfaces refused connections as plain OSError
STORE_ERRORS = (SQLAlchemyError, OSError)

_BASE36 = string.digits + string.ascii_uppercase

Line = Tuple[str, int, Decimal]


@dataclass(frozen=True)
class Customer:
    """Customer details captured with an order."""

    name: str
    email: str
    address: str
    city: str = ""
    postal_code: str = ""
    country: str = ""


@dataclass(frozen=True)
class LineItem:
    """An ordered item; ``price`` may still be in its textual form."""

    name: str
    quantity: int
    price: PriceInput


@dataclass(frozen=True)
class NewOrder:
    """Input of :meth:`OrderService.create_order`."""

    stripe_payment_intent_id: str
    customer: Optional[Customer]
    items: Sequence[LineItem]
    total: Any


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def parse_customer(raw: Any) -> Optional[Customer]:
    """
    Build a :class:`Customer` from a request mapping.

    Accepts camelCase or snake_case keys. Presence of the required fields
    is checked later by :meth:`OrderService.create_order`.

    Raises:
        ValidationError: If ``raw`` is not a mapping
    """
    if raw is None or isinstance(raw, Customer):
        return raw
    if not isinstance(raw, Mapping):
        raise ValidationError("Customer must be an object")
    return Customer(
        name=_text(raw.get("name")),
        email=_text(raw.get("email")),
        address=_text(raw.get("address")),
        city=_text(raw.get("city")),
        postal_code=_text(raw.get("postalCode", raw.get("postal_code"))),
        country=_text(raw.get("country")),
    )


def parse_items(raw: Any) -> List[LineItem]:
    """
    Build line items from a request list; prices stay unparsed.

    Raises:
        ValidationError: If ``raw`` is not a list of objects
    """
    if raw is None:
        return []
    if isinstance(raw, (str, bytes, Mapping)) or not isinstance(raw, Iterable):
        raise ValidationError("Items must be a list")

    items = []
    for item in raw:
        if isinstance(item, LineItem):
            items.append(item)
        elif isinstance(item, Mapping):
            items.append(
                LineItem(
                    name=_text(item.get("name")),
                    quantity=item.get("quantity", 1),
                    price=item.get("price"),
                )
            )
        else:
            raise ValidationError("Each item must be an object")
    return items


def _base36(number: int) -> str:
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits)) or "0"


def generate_order_id(prefix: str = "ORD") -> str:
    """
    Generate a short, human-readable order ID.

    Format: ``{prefix}-{base36 epoch millis}-{6 random hex}``, e.g.
    ``ORD-M1X2Y3Z4-9F3C1A``. The random part makes two IDs created in the
    same millisecond distinct with overwhelming probability; the unique index
    on ``orders.order_id`` settles the rest.
    """
    millis = int(time.time() * 1000)
    return f"{prefix}-{_base36(millis)}-{secrets.token_hex(3).upper()}"


class OrderService:
    """
    Order persistence backed by the relational store.

    Args:
        session_factory: Factory producing database sessions
        tax_policy: Function of the subtotal returning the tax amount
        order_id_prefix: Prefix of generated order IDs
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        tax_policy: Optional[TaxPolicy] = None,
        order_id_prefix: str = "ORD",
    ):
        self._session_factory = session_factory
        self.tax_policy = tax_policy or no_tax
        self.order_id_prefix = order_id_prefix

    @staticmethod
    def _validate_new_order(new_order: NewOrder) -> List[Line]:
        """
        Validate an order and normalize its items.

        Returns:
            List of ``(name, quantity, price)`` tuples with decimal prices

        Raises:
            ValidationError: If a required field is missing or malformed
        """
        if not new_order.stripe_payment_intent_id:
            raise ValidationError("Payment intent ID is required")

        customer = new_order.customer
        if customer is None:
            raise ValidationError("Customer is required")
        missing = [
            field_name
            for field_name in ("name", "email", "address")
            if not (getattr(customer, field_name) or "").strip()
        ]
        if missing:
            raise ValidationError(f"Customer is missing required fields: {', '.join(missing)}")

        if not new_order.items:
            raise ValidationError("Order must contain at least one item")

        lines: List[Line] = []
        for item in new_order.items:
            name = (item.name or "").strip()
            if not name:
                raise ValidationError("Item name is required")
            quantity = item.quantity
            if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
                raise ValidationError(f"Item {name} quantity must be a positive integer")
            lines.append((name, quantity, normalize_price(item.price)))
        return lines

    @staticmethod
    def _normalize_total(total: Any) -> Decimal:
        if isinstance(total, bool) or total is None:
            raise ValidationError("Order total is required")
        try:
            value = Decimal(str(total))
            if not value.is_finite():
                raise InvalidOperation(str(total))
            value = value.quantize(CENTS)
        except (InvalidOperation, ValueError):
            raise ValidationError(f"Order total {total!r} is not a number")
        if value < 0:
            raise ValidationError("Order total must not be negative")
        return value

    @staticmethod
    def _coerce_limit(limit: Any) -> int:
        try:
            value = int(limit)
        except (TypeError, ValueError):
            return DEFAULT_RECENT_LIMIT
        return value if value > 0 else DEFAULT_RECENT_LIMIT

    @staticmethod
    def _serialize(order: Order) -> Dict[str, Any]:
        return {
            "order_id": order.order_id,
            "stripe_payment_intent_id": order.stripe_payment_intent_id,
            "customer": {
                "name": order.customer_name,
                "email": order.customer_email,
                "address": order.customer_address,
                "city": order.customer_city,
                "postal_code": order.customer_postal_code,
                "country": order.customer_country,
            },
            "items": [
                {"name": item.name, "quantity": item.quantity, "price": item.price}
                for item in order.items
            ],
            "subtotal": order.subtotal,
            "tax_amount": order.tax_amount,
            "total_amount": order.total_amount,
            "status": order.order_status,
            "created_at": order.created_at,
            "updated_at": order.updated_at,
        }

    async def _add_line_items(
        self, session: AsyncSession, order_id: str, lines: List[Line]
    ) -> None:
        """Stage the order's items; they are inserted in submission order."""
        for name, quantity, price in lines:
            session.add(OrderItem(order_id=order_id, name=name, quantity=quantity, price=price))
        await session.flush()

    async def _find_order_id(self, column: str, value: str) -> Optional[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Order.order_id).where(getattr(Order, column) == value)
            )
            return result.scalar_one_or_none()

    async def _raise_for_integrity_error(
        self, new_order: NewOrder, order_id: str, error: IntegrityError
    ) -> None:
        """Translate a rejected insert into the matching domain error."""
        intent_id = new_order.stripe_payment_intent_id
        try:
            existing = await self._find_order_id("stripe_payment_intent_id", intent_id)
            if existing is not None:
                raise AlreadyRecordedError(intent_id, existing) from error
            if await self._find_order_id("order_id", order_id) is not None:
                raise ConflictError(f"Order ID {order_id} already exists") from error
        except STORE_ERRORS as e:
            raise PersistenceError(f"Failed to save order: {e}") from e

        raise PersistenceError(f"Order rejected by the database: {error.orig}") from error

    async def create_order(self, new_order: NewOrder) -> Dict[str, Any]:
        """
        Persist an order for an already-verified payment.

        The order row and its item rows are written in one transaction, so a
        failure leaves neither behind. ``total_amount`` is the caller-supplied
        total (the amount the gateway charged), not ``subtotal + tax``.

        Args:
            new_order: Payment reference, customer, items and total

        Returns:
            Dict[str, Any]: ``order_id``, ``total_amount``, ``created_at``, ``message``

        Raises:
            ValidationError: If the input is incomplete or a price is invalid
            AlreadyRecordedError: If the payment intent already has an order
            ConflictError: If the generated order ID is taken
            PersistenceError: If the database is unavailable
        """
        lines = self._validate_new_order(new_order)
        total = self._normalize_total(new_order.total)
        subtotal = compute_subtotal((price, quantity) for _, quantity, price in lines)
        tax_amount = self.tax_policy(subtotal)
        customer = new_order.customer
        order_id = generate_order_id(self.order_id_prefix)
        now = utcnow()

        logger.info(
            "order_creation_started",
            order_id=order_id,
            payment_intent_id=new_order.stripe_payment_intent_id,
            item_count=len(lines),
        )

        try:
            async with self._session_factory.begin() as session:
                session.add(
                    Order(
                        order_id=order_id,
                        stripe_payment_intent_id=new_order.stripe_payment_intent_id,
                        customer_name=customer.name.strip(),
                        customer_email=customer.email.strip(),
                        customer_address=customer.address.strip(),
                        customer_city=customer.city or "",
                        customer_postal_code=customer.postal_code or "",
                        customer_country=customer.country or "",
                        subtotal=subtotal,
                        tax_amount=tax_amount,
                        total_amount=total,
                        order_status="processing",
                        created_at=now,
                        updated_at=now,
                    )
                )
                await session.flush()
                await self._add_line_items(session, order_id, lines)

        except IntegrityError as e:
            logger.warning(
                "order_insert_rejected",
                order_id=order_id,
                payment_intent_id=new_order.stripe_payment_intent_id,
                error=str(e.orig),
            )
            await self._raise_for_integrity_error(new_order, order_id, e)

        except STORE_ERRORS as e:
            logger.error(
                "order_persistence_failed",
                order_id=order_id,
                payment_intent_id=new_order.stripe_payment_intent_id,
                error=str(e),
            )
            metrics.record_persistence_failure("create_order")
            raise PersistenceError(f"Failed to save order: {e}") from e

        metrics.record_order_created(total)
        logger.info(
            "order_created",
            order_id=order_id,
            subtotal=str(subtotal),
            tax_amount=str(tax_amount),
            total_amount=str(total),
        )

        return {
            "order_id": order_id,
            "total_amount": total,
            "created_at": now,
            "message": f"Thank you {customer.name.strip()}! Your order {order_id} has been placed.",
        }

    async def get_order_by_id(self, order_id: str) -> Optional[Dict[str, Any]]:
        """
        Get an order with its items.

        Returns:
            Optional[Dict[str, Any]]: Order data or None if not found
        """
        if not order_id:
            return None

        try:
            async with self._session_factory() as session:
                result = await session.execute(select(Order).where(Order.order_id == order_id))
                order = result.scalar_one_or_none()
                return None if order is None else self._serialize(order)
        except STORE_ERRORS as e:
            logger.error("order_lookup_failed", order_id=order_id, error=str(e))
            metrics.record_persistence_failure("get_order")
            raise PersistenceError(f"Failed to fetch order: {e}") from e

    async def get_recent_orders(self, limit: Any = DEFAULT_RECENT_LIMIT) -> List[Dict[str, Any]]:
        """
        Get the most recently created orders, newest first.

        ``limit`` falls back to 10 when missing, non-numeric or not positive.
        """
        limit = self._coerce_limit(limit)
        stmt = (
            select(Order)
            .order_by(Order.created_at.desc(), Order.id.desc())
            .limit(limit)
        )
        try:
            async with self._session_factory() as session:
                orders = (await session.scalars(stmt)).all()
                return [self._serialize(order) for order in orders]
        except STORE_ERRORS as e:
            logger.error("recent_orders_lookup_failed", limit=limit, error=str(e))
            metrics.record_persistence_failure("get_recent_orders")
            raise PersistenceError(f"Failed to fetch orders: {e}") from e

    async def update_order_status(
        self, order_id: str, new_status: str
    ) -> Optional[Dict[str, Any]]:
        """
        Move an order to ``new_status``.

        Any status may follow any other; there is no transition graph.

        Returns:
            Optional[Dict[str, Any]]: Updated order or None if not found

        Raises:
            ValidationError: If ``new_status`` is not a known status
            PersistenceError: If the database is unavailable
        """
        if new_status not in ORDER_STATUSES:
            raise ValidationError(
                f"Invalid status {new_status!r}. Must be one of: {', '.join(ORDER_STATUSES)}"
            )

        try:
            async with self._session_factory.begin() as session:
                result = await session.execute(
                    select(Order).where(Order.order_id == order_id).with_for_update()
                )
                order = result.scalar_one_or_none()
                if order is None:
                    return None

                previous_status = order.order_status
                order.order_status = new_status
                order.updated_at = utcnow()
                await session.flush()
                updated = self._serialize(order)
        except STORE_ERRORS as e:
            logger.error("order_status_update_failed", order_id=order_id, error=str(e))
            metrics.record_persistence_failure("update_order_status")
            raise PersistenceError(f"Failed to update order status: {e}") from e

        metrics.record_status_update(new_status)
        logger.info(
            "order_status_updated",
            order_id=order_id,
            previous_status=previous_status,
            status=new_status,
        )
        return updated
