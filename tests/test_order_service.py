"""
Tests for the order service against an in-memory database.
"""
import re
from dataclasses import replace
from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from order_backend.core.exceptions import (
    AlreadyRecordedError,
    ConflictError,
    PersistenceError,
    ValidationError,
)
from order_backend.core.orders import (
    DEFAULT_RECENT_LIMIT,
    Customer,
    LineItem,
    NewOrder,
    OrderService,
    generate_order_id,
    parse_customer,
    parse_items,
)
from order_backend.core.pricing import flat_rate_tax
from order_backend.database.models import Order, OrderItem


async def count_rows(session_factory, model) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(model))


class TestGenerateOrderId:

    @pytest.mark.unit
    def test_format(self) -> None:
        assert re.fullmatch(r"ORD-[0-9A-Z]+-[0-9A-F]{6}", generate_order_id())
        assert generate_order_id("SHOP").startswith("SHOP-")

    @pytest.mark.unit
    def test_ids_are_distinct(self) -> None:
        ids = {generate_order_id() for _ in range(500)}
        assert len(ids) == 500


class TestParseCart:

    @pytest.mark.unit
    def test_parse_customer_accepts_camel_case(self) -> None:
        customer = parse_customer(
            {"name": "Ada", "email": "ada@example.com", "address": "1 Main", "postalCode": "SW1"}
        )

        assert customer == Customer(
            name="Ada", email="ada@example.com", address="1 Main", postal_code="SW1"
        )

    @pytest.mark.unit
    def test_parse_customer_keeps_blanks_for_validation(self) -> None:
        customer = parse_customer({"name": None})

        assert customer == Customer(name="", email="", address="")
        assert parse_customer(None) is None

    @pytest.mark.unit
    @pytest.mark.parametrize("raw", ["Ada", ["Ada"], 42])
    def test_parse_customer_rejects_non_objects(self, raw) -> None:
        with pytest.raises(ValidationError):
            parse_customer(raw)

    @pytest.mark.unit
    def test_parse_items_defaults_quantity(self) -> None:
        items = parse_items([{"name": "Cap", "price": "$10"}, LineItem("Hoodie", 2, 25)])

        assert items == [LineItem("Cap", 1, "$10"), LineItem("Hoodie", 2, 25)]
        assert parse_items(None) == []

    @pytest.mark.unit
    @pytest.mark.parametrize("raw", ["Hoodie", {"name": "Hoodie"}, 3, ["Hoodie"]])
    def test_parse_items_rejects_non_lists(self, raw) -> None:
        with pytest.raises(ValidationError):
            parse_items(raw)


class TestCreateOrder:
    """Test suite for OrderService.create_order."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_order_persists_order_and_items(
        self, order_service: OrderService, new_order: NewOrder
    ) -> None:
        result = await order_service.create_order(new_order)

        assert result["order_id"].startswith("ORD-")
        assert result["total_amount"] == Decimal("60.00")
        assert "Ada Lovelace" in result["message"]

        order = await order_service.get_order_by_id(result["order_id"])
        assert order is not None
        assert order["stripe_payment_intent_id"] == "pi_test_123"
        assert order["status"] == "processing"
        assert order["subtotal"] == Decimal("60.00")
        assert order["tax_amount"] == Decimal("0.00")
        assert order["total_amount"] == Decimal("60.00")
        assert order["customer"]["postal_code"] == "SW1Y 4JH"
        assert [(i["name"], i["quantity"], i["price"]) for i in order["items"]] == [
            ("Hoodie", 2, Decimal("25.00")),
            ("Cap", 1, Decimal("10.00")),
        ]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_total_is_stored_as_given(
        self, session_factory, new_order: NewOrder
    ) -> None:
        """The charged total is kept even when it differs from subtotal plus tax."""
        service = OrderService(session_factory, tax_policy=flat_rate_tax(Decimal("0.10")))
        result = await service.create_order(replace(new_order, total=Decimal("61.50")))

        order = await service.get_order_by_id(result["order_id"])
        assert order["subtotal"] == Decimal("60.00")
        assert order["tax_amount"] == Decimal("6.00")
        assert order["total_amount"] == Decimal("61.50")

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "changes, message",
        [
            ({"stripe_payment_intent_id": ""}, "Payment intent ID is required"),
            ({"customer": None}, "Customer is required"),
            ({"items": []}, "at least one item"),
            ({"items": [LineItem(name="Hoodie", quantity=1, price="free")]}, "not a number"),
            ({"items": [LineItem(name="Hoodie", quantity=0, price=10)]}, "quantity"),
            ({"items": [LineItem(name=" ", quantity=1, price=10)]}, "name is required"),
            ({"total": None}, "total is required"),
            ({"total": "-1"}, "must not be negative"),
        ],
    )
    async def test_invalid_input_is_rejected(
        self, order_service: OrderService, session_factory, new_order: NewOrder, changes, message
    ) -> None:
        with pytest.raises(ValidationError, match=message):
            await order_service.create_order(replace(new_order, **changes))

        assert await count_rows(session_factory, Order) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_customer_missing_required_fields(
        self, order_service: OrderService, new_order: NewOrder
    ) -> None:
        customer = replace(new_order.customer, email="", address="  ")
        with pytest.raises(ValidationError, match="email, address"):
            await order_service.create_order(replace(new_order, customer=customer))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_item_failure_rolls_back_order(
        self, order_service: OrderService, session_factory, new_order: NewOrder
    ) -> None:
        """An order never exists without its items."""
        failure = OperationalError("INSERT INTO order_items", {}, Exception("disk I/O error"))

        with patch.object(OrderService, "_add_line_items", side_effect=failure):
            with pytest.raises(PersistenceError, match="Failed to save order"):
                await order_service.create_order(new_order)

        assert await count_rows(session_factory, Order) == 0
        assert await count_rows(session_factory, OrderItem) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_duplicate_payment_intent_is_already_recorded(
        self, order_service: OrderService, session_factory, new_order: NewOrder
    ) -> None:
        first = await order_service.create_order(new_order)

        with pytest.raises(AlreadyRecordedError) as exc_info:
            await order_service.create_order(new_order)

        assert exc_info.value.order_id == first["order_id"]
        assert exc_info.value.payment_intent_id == "pi_test_123"
        assert await count_rows(session_factory, Order) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_order_id_collision_is_a_conflict(
        self, order_service: OrderService, new_order: NewOrder
    ) -> None:
        with patch("order_backend.core.orders.generate_order_id", return_value="ORD-FIXED-000000"):
            await order_service.create_order(new_order)

            with pytest.raises(ConflictError) as exc_info:
                await order_service.create_order(
                    replace(new_order, stripe_payment_intent_id="pi_test_456")
                )

        assert not isinstance(exc_info.value, AlreadyRecordedError)


class TestQueries:
    """Test suite for lookups and status updates."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_get_missing_order_returns_none(self, order_service: OrderService) -> None:
        assert await order_service.get_order_by_id("ORD-NOPE-000000") is None
        assert await order_service.get_order_by_id("") is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_recent_orders_newest_first(
        self, order_service: OrderService, new_order: NewOrder
    ) -> None:
        created = []
        for n in range(3):
            result = await order_service.create_order(
                replace(new_order, stripe_payment_intent_id=f"pi_test_{n}")
            )
            created.append(result["order_id"])

        orders = await order_service.get_recent_orders(2)

        assert [o["order_id"] for o in orders] == [created[2], created[1]]
        assert len(orders[0]["items"]) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit", [None, "abc", 0, -3])
    async def test_bad_limit_falls_back_to_default(
        self, order_service: OrderService, new_order: NewOrder, limit
    ) -> None:
        for n in range(DEFAULT_RECENT_LIMIT + 2):
            await order_service.create_order(
                replace(new_order, stripe_payment_intent_id=f"pi_test_{n}")
            )

        orders = await order_service.get_recent_orders(limit)
        assert len(orders) == DEFAULT_RECENT_LIMIT

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_update_status(self, order_service: OrderService, new_order: NewOrder) -> None:
        result = await order_service.create_order(new_order)
        before = await order_service.get_order_by_id(result["order_id"])

        updated = await order_service.update_order_status(result["order_id"], "shipped")
        after = await order_service.get_order_by_id(result["order_id"])

        assert updated["status"] == "shipped"
        assert after["status"] == "shipped"
        assert after["updated_at"] > before["updated_at"]
        assert after["created_at"] == before["created_at"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_any_status_may_follow_any_other(
        self, order_service: OrderService, new_order: NewOrder
    ) -> None:
        result = await order_service.create_order(new_order)
        for status in ("delivered", "cancelled", "processing"):
            updated = await order_service.update_order_status(result["order_id"], status)
            assert updated["status"] == status

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_update_status_rejects_unknown_status(
        self, order_service: OrderService, new_order: NewOrder
    ) -> None:
        result = await order_service.create_order(new_order)

        with pytest.raises(ValidationError, match="Invalid status"):
            await order_service.update_order_status(result["order_id"], "lost")

        order = await order_service.get_order_by_id(result["order_id"])
        assert order["status"] == "processing"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_update_missing_order_returns_none(self, order_service: OrderService) -> None:
        assert await order_service.update_order_status("ORD-NOPE-000000", "shipped") is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_store_failure_is_persistence_error(self, order_service: OrderService) -> None:
        failure = OperationalError("SELECT", {}, Exception("connection refused"))
        with patch.object(order_service, "_session_factory", side_effect=failure):
            with pytest.raises(PersistenceError, match="Failed to fetch order"):
                await order_service.get_order_by_id("ORD-ANY-000000")
