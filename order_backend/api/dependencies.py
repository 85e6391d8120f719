"""
Service construction and FastAPI dependency providers.

Services are built once per application in :func:`build_services` and kept
on ``app.state.services``; routes receive them through ``Depends`` so tests
can substitute fakes.
"""
from dataclasses import dataclass

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine

from order_backend.config import Settings
from order_backend.core.confirmation import PaymentConfirmation
from order_backend.core.newsletter import NewsletterService
from order_backend.core.orders import OrderService
from order_backend.core.pricing import flat_rate_tax
from order_backend.database.connection import close_db, create_engine, create_session_factory
from order_backend.integrations.stripe_client import StripeGateway
from order_backend.monitoring.health import HealthCheck


@dataclass
class Services:
    """Everything the routes need, wired together."""

    settings: Settings
    engine: AsyncEngine
    gateway: StripeGateway
    order_service: OrderService
    newsletter_service: NewsletterService
    payment_confirmation: PaymentConfirmation
    health_check: HealthCheck

    async def close(self) -> None:
        await close_db(self.engine)


def build_services(
    settings: Settings,
    engine: AsyncEngine | None = None,
    gateway: StripeGateway | None = None,
) -> Services:
    """
    Wire the services for ``settings``.

    Args:
        settings: Application settings
        engine: Existing engine to use instead of creating one
        gateway: Existing gateway to use instead of creating one
    """
    engine = engine or create_engine(settings)
    session_factory = create_session_factory(engine)
    gateway = gateway or StripeGateway(
        api_key=settings.stripe_secret_key,
        api_version=settings.stripe_api_version,
        max_attempts=settings.payment_retry_max_attempts,
        retry_base_delay=settings.payment_retry_base_delay,
    )
    order_service = OrderService(
        session_factory,
        tax_policy=flat_rate_tax(settings.tax_rate),
        order_id_prefix=settings.order_id_prefix,
    )
    return Services(
        settings=settings,
        engine=engine,
        gateway=gateway,
        order_service=order_service,
        newsletter_service=NewsletterService(session_factory),
        payment_confirmation=PaymentConfirmation(
            gateway,
            order_service,
            fallback_prefix=settings.fallback_order_id_prefix,
            max_attempts=settings.order_id_max_attempts,
        ),
        health_check=HealthCheck(gateway, engine),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_settings_dep(request: Request) -> Settings:
    return get_services(request).settings


def get_gateway(request: Request) -> StripeGateway:
    return get_services(request).gateway


def get_order_service(request: Request) -> OrderService:
    return get_services(request).order_service


def get_newsletter_service(request: Request) -> NewsletterService:
    return get_services(request).newsletter_service


def get_payment_confirmation(request: Request) -> PaymentConfirmation:
    return get_services(request).payment_confirmation


def get_health_check(request: Request) -> HealthCheck:
    return get_services(request).health_check
