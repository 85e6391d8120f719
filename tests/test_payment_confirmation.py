"""
Tests for payment confirmation and its fallback path.
"""
import re
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from conftest import succeeded_intent
from order_backend.core.confirmation import (
    DurablyRecorded,
    PaymentConfirmation,
    PaymentConfirmationRequest,
    RecordedWithWarning,
    generate_fallback_order_id,
)
from order_backend.core.exceptions import (
    ConflictError,
    PaymentNotCompletedError,
    PersistenceError,
)
from order_backend.core.orders import Customer, LineItem, OrderService
from order_backend.integrations.stripe_client import StripeError, StripeErrorType


@pytest.fixture
def confirmation_request(customer: Customer) -> PaymentConfirmationRequest:
    return PaymentConfirmationRequest(
        payment_intent_id="pi_test_123",
        customer=customer,
        items=[
            LineItem(name="Hoodie", quantity=2, price="$25"),
            LineItem(name="Cap", quantity=1, price=10),
        ],
        total=60,
    )


@pytest.fixture
def confirmation(gateway: AsyncMock, order_service: OrderService) -> PaymentConfirmation:
    return PaymentConfirmation(gateway, order_service)


class TestPaymentConfirmation:
    """Test suite for PaymentConfirmation."""

    @pytest.mark.unit
    def test_fallback_order_id_format(self) -> None:
        order_id = generate_fallback_order_id()
        assert re.fullmatch(r"KK-\d{6}", order_id)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_confirmed_payment_is_recorded(
        self,
        confirmation: PaymentConfirmation,
        confirmation_request: PaymentConfirmationRequest,
        order_service: OrderService,
    ) -> None:
        result = await confirmation.confirm(confirmation_request)

        assert isinstance(result, DurablyRecorded)
        assert result.order_id.startswith("ORD-")
        assert result.total_amount == Decimal("60.00")
        assert result.already_recorded is False
        assert await order_service.get_order_by_id(result.order_id) is not None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_charged_amount_wins_over_requested_total(
        self,
        gateway: AsyncMock,
        confirmation: PaymentConfirmation,
        confirmation_request: PaymentConfirmationRequest,
        order_service: OrderService,
    ) -> None:
        gateway.retrieve_payment_intent.side_effect = None
        gateway.retrieve_payment_intent.return_value = succeeded_intent(amount=5400)

        result = await confirmation.confirm(confirmation_request)

        order = await order_service.get_order_by_id(result.order_id)
        assert order["total_amount"] == Decimal("54.00")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unsuccessful_payment_is_not_recorded(
        self,
        gateway: AsyncMock,
        confirmation: PaymentConfirmation,
        confirmation_request: PaymentConfirmationRequest,
        order_service: OrderService,
    ) -> None:
        gateway.retrieve_payment_intent.side_effect = None
        gateway.retrieve_payment_intent.return_value = succeeded_intent(
            status="requires_payment_method"
        )

        with pytest.raises(PaymentNotCompletedError) as exc_info:
            await confirmation.confirm(confirmation_request)

        assert exc_info.value.status == "requires_payment_method"
        assert await order_service.get_recent_orders() == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_gateway_failure_propagates(
        self,
        gateway: AsyncMock,
        confirmation: PaymentConfirmation,
        confirmation_request: PaymentConfirmationRequest,
    ) -> None:
        gateway.retrieve_payment_intent.side_effect = StripeError(
            "Stripe is unreachable", StripeErrorType.TRANSIENT
        )

        with pytest.raises(StripeError):
            await confirmation.confirm(confirmation_request)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_store_failure_yields_fallback_order(
        self,
        confirmation: PaymentConfirmation,
        confirmation_request: PaymentConfirmationRequest,
        order_service: OrderService,
    ) -> None:
        """A charged customer is never told the order failed."""
        failure = OperationalError("INSERT INTO order_items", {}, Exception("disk full"))

        with patch.object(OrderService, "_add_line_items", side_effect=failure):
            result = await confirmation.confirm(confirmation_request)

        assert isinstance(result, RecordedWithWarning)
        assert re.fullmatch(r"KK-\d{6}", result.order_id)
        assert result.warning == "Order saved to backup system"
        assert result.total_amount == Decimal("60.00")
        assert await order_service.get_order_by_id(result.order_id) is None
        assert await order_service.get_recent_orders() == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_raw_cart_is_recorded(
        self, confirmation: PaymentConfirmation, order_service: OrderService
    ) -> None:
        result = await confirmation.confirm(
            PaymentConfirmationRequest(
                payment_intent_id="pi_test_123",
                customer={"name": "Ada", "email": "ada@example.com", "address": "1 Main"},
                items=[{"name": "Hoodie", "quantity": 2, "price": "$30"}],
            )
        )

        assert isinstance(result, DurablyRecorded)
        assert result.customer_email == "ada@example.com"
        order = await order_service.get_order_by_id(result.order_id)
        assert order["customer"]["address"] == "1 Main"
        assert order["total_amount"] == Decimal("60.00")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalid_cart_after_charge_yields_fallback_order(
        self, confirmation: PaymentConfirmation, order_service: OrderService
    ) -> None:
        result = await confirmation.confirm(
            PaymentConfirmationRequest(
                payment_intent_id="pi_test_123",
                customer={"name": "Ada", "email": "ada@example.com", "address": ""},
                items=[{"name": "Hoodie", "quantity": 0, "price": "$0"}],
            )
        )

        assert isinstance(result, RecordedWithWarning)
        assert re.fullmatch(r"KK-\d{6}", result.order_id)
        assert result.customer_email == "ada@example.com"
        assert result.total_amount == Decimal("60.00")
        assert result.message.startswith("Thank you Ada!")
        assert await order_service.get_recent_orders() == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_repeated_confirmation_is_already_recorded(
        self,
        confirmation: PaymentConfirmation,
        confirmation_request: PaymentConfirmationRequest,
        order_service: OrderService,
    ) -> None:
        first = await confirmation.confirm(confirmation_request)
        second = await confirmation.confirm(confirmation_request)

        assert isinstance(second, DurablyRecorded)
        assert second.already_recorded is True
        assert second.order_id == first.order_id
        assert second.created_at is not None
        assert len(await order_service.get_recent_orders()) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_order_id_collision_is_retried(
        self, gateway: AsyncMock, confirmation_request: PaymentConfirmationRequest
    ) -> None:
        order_service = AsyncMock(spec=OrderService)
        order_service.create_order.side_effect = [
            ConflictError("Order ID taken"),
            {
                "order_id": "ORD-RETRY-ABCDEF",
                "total_amount": Decimal("60.00"),
                "created_at": None,
                "message": "Thank you",
            },
        ]
        confirmation = PaymentConfirmation(gateway, order_service, max_attempts=3)

        result = await confirmation.confirm(confirmation_request)

        assert isinstance(result, DurablyRecorded)
        assert result.order_id == "ORD-RETRY-ABCDEF"
        assert order_service.create_order.await_count == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_exhausted_collisions_fall_back(
        self, gateway: AsyncMock, confirmation_request: PaymentConfirmationRequest
    ) -> None:
        order_service = AsyncMock(spec=OrderService)
        order_service.create_order.side_effect = ConflictError("Order ID taken")
        confirmation = PaymentConfirmation(
            gateway, order_service, fallback_prefix="BK", max_attempts=2
        )

        result = await confirmation.confirm(confirmation_request)

        assert isinstance(result, RecordedWithWarning)
        assert result.order_id.startswith("BK-")
        assert order_service.create_order.await_count == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unavailable_store_falls_back_without_retry(
        self, gateway: AsyncMock, confirmation_request: PaymentConfirmationRequest
    ) -> None:
        order_service = AsyncMock(spec=OrderService)
        order_service.create_order.side_effect = PersistenceError("connection refused")
        confirmation = PaymentConfirmation(gateway, order_service)

        result = await confirmation.confirm(confirmation_request)

        assert isinstance(result, RecordedWithWarning)
        assert order_service.create_order.await_count == 1
