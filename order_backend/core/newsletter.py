"""Newsletter subscriptions with upsert semantics."""
from typing import Any, Callable, Dict

import structlog
from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_backend.core.exceptions import NotFoundError, PersistenceError, ValidationError
from order_backend.core.orders import STORE_ERRORS
from order_backend.database.models import NewsletterSubscription, utcnow
from order_backend.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# Both dialects support INSERT ... ON CONFLICT DO UPDATE ... RETURNING
_UPSERT_INSERTS: Dict[str, Callable[..., Any]] = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class NewsletterService:
    """Subscribe and unsubscribe emails; rows are reactivated, never duplicated."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @staticmethod
    def _normalize_email(email: str) -> str:
        normalized = (email or "").strip().lower()
        local, _, domain = normalized.partition("@")
        if not local or not domain or " " in normalized:
            raise ValidationError("A valid email address is required")
        return normalized

    @staticmethod
    def _serialize(subscription: NewsletterSubscription) -> Dict[str, Any]:
        return {
            "email": subscription.email,
            "is_active": subscription.is_active,
            "subscribed_at": subscription.subscribed_at,
        }

    async def subscribe(self, email: str) -> Dict[str, Any]:
        """
        Subscribe an email, reactivating it if it was unsubscribed.

        A repeated subscribe refreshes ``subscribed_at`` on the existing row.

        Returns:
            Dict[str, Any]: Current subscription record
        """
        email = self._normalize_email(email)
        now = utcnow()

        try:
            async with self._session_factory.begin() as session:
                dialect = session.get_bind().dialect.name
                insert = _UPSERT_INSERTS.get(dialect)
                if insert is None:
                    raise PersistenceError(f"Upsert is not supported on {dialect}")

                stmt = (
                    insert(NewsletterSubscription)
                    .values(email=email, subscribed_at=now, is_active=True)
                    .on_conflict_do_update(
                        index_elements=["email"],
                        set_={"is_active": True, "subscribed_at": now},
                    )
                    .returning(NewsletterSubscription)
                )
                result = await session.scalars(
                    stmt, execution_options={"populate_existing": True}
                )
                subscription = self._serialize(result.one())
        except STORE_ERRORS as e:
            logger.error("newsletter_subscribe_failed", email=email, error=str(e))
            metrics.record_persistence_failure("newsletter_subscribe")
            raise PersistenceError(f"Failed to subscribe: {e}") from e

        metrics.record_newsletter_change("subscribe")
        logger.info("newsletter_subscribed", email=email)
        return subscription

    async def unsubscribe(self, email: str) -> Dict[str, Any]:
        """
        Deactivate a subscription.

        Raises:
            NotFoundError: If the email never subscribed
        """
        email = self._normalize_email(email)

        try:
            async with self._session_factory.begin() as session:
                result = await session.execute(
                    select(NewsletterSubscription).where(NewsletterSubscription.email == email)
                )
                subscription = result.scalar_one_or_none()
                if subscription is None:
                    raise NotFoundError("Email not found in subscription list")
                subscription.is_active = False
                await session.flush()
                data = self._serialize(subscription)
        except STORE_ERRORS as e:
            logger.error("newsletter_unsubscribe_failed", email=email, error=str(e))
            metrics.record_persistence_failure("newsletter_unsubscribe")
            raise PersistenceError(f"Failed to unsubscribe: {e}") from e

        metrics.record_newsletter_change("unsubscribe")
        logger.info("newsletter_unsubscribed", email=email)
        return data
