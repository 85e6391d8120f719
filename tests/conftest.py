"""
Pytest configuration and fixtures.

Tests run against an in-memory SQLite database shared through a single
connection; the Stripe gateway is mocked.
"""
from typing import Any, AsyncGenerator, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from order_backend.api import Services, build_services, create_app
from order_backend.config import Settings
from order_backend.core.newsletter import NewsletterService
from order_backend.core.orders import Customer, LineItem, NewOrder, OrderService
from order_backend.database.connection import create_session_factory, init_db
from order_backend.integrations.stripe_client import PaymentIntentSummary, StripeGateway


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        stripe_secret_key="sk_test_fake_key_for_testing",
        database_url="sqlite+aiosqlite://",
        app_name="order-backend-test",
        app_env="test",
        log_level="DEBUG",
        debug=True,
        payment_retry_base_delay=0,
    )


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, Any]:
    """In-memory database with all tables created."""
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
def order_service(session_factory: async_sessionmaker[AsyncSession]) -> OrderService:
    return OrderService(session_factory)


@pytest.fixture
def newsletter_service(session_factory: async_sessionmaker[AsyncSession]) -> NewsletterService:
    return NewsletterService(session_factory)


@pytest.fixture
def gateway() -> AsyncMock:
    """Stripe gateway whose intents have succeeded for $60.00 unless told otherwise."""
    mock_gateway = AsyncMock(spec=StripeGateway)
    mock_gateway.retrieve_payment_intent.side_effect = lambda intent_id: succeeded_intent(intent_id)
    mock_gateway.ping.return_value = None
    return mock_gateway


@pytest.fixture
def services(test_settings: Settings, engine: AsyncEngine, gateway: AsyncMock) -> Services:
    return build_services(test_settings, engine=engine, gateway=gateway)


@pytest.fixture
def app(test_settings: Settings, services: Services) -> FastAPI:
    return create_app(test_settings, services)


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def customer() -> Customer:
    return Customer(
        name="Ada Lovelace",
        email="ada@example.com",
        address="12 St James's Square",
        city="London",
        postal_code="SW1Y 4JH",
        country="GB",
    )


@pytest.fixture
def new_order(customer: Customer) -> NewOrder:
    """Two hoodies and a cap, $60 total."""
    return NewOrder(
        stripe_payment_intent_id="pi_test_123",
        customer=customer,
        items=[
            LineItem(name="Hoodie", quantity=2, price="$25"),
            LineItem(name="Cap", quantity=1, price=10),
        ],
        total="60.00",
    )


@pytest.fixture
def checkout_payload() -> dict[str, Any]:
    """Body posted by the storefront after a successful payment."""
    return {
        "paymentIntentId": "pi_test_123",
        "items": [
            {"name": "Hoodie", "quantity": 2, "price": "$25"},
            {"name": "Cap", "quantity": 1, "price": 10},
        ],
        "customer": {
            "name": "Ada Lovelace",
            "email": "ada@example.com",
            "address": "12 St James's Square",
            "city": "London",
            "postalCode": "SW1Y 4JH",
            "country": "GB",
        },
        "total": 60,
    }


def succeeded_intent(
    intent_id: str = "pi_test_123", amount: Optional[int] = 6000, status: str = "succeeded"
) -> PaymentIntentSummary:
    return PaymentIntentSummary(
        id=intent_id,
        status=status,
        amount=amount,
        amount_received=amount if status == "succeeded" else 0,
        currency="usd",
        client_secret=f"{intent_id}_secret_abc",
    )
