"""
Health checks for the process and its two dependencies.

Checks:
- Database connectivity (``SELECT 1``)
- Stripe API reachability

Overall status is ``OK`` when both respond, ``WARNING`` when only Stripe is
down (orders can still be looked up), and ``ERROR`` when the database is down.
"""
from datetime import datetime, timezone
from typing import Any, Dict

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine

from order_backend.database.connection import ping
from order_backend.integrations.stripe_client import StripeGateway

logger = structlog.get_logger(__name__)

STATUS_OK = "OK"
STATUS_WARNING = "WARNING"
STATUS_ERROR = "ERROR"


class HealthCheck:
    """Health check service for monitoring system dependencies."""

    def __init__(self, gateway: StripeGateway, engine: AsyncEngine) -> None:
        self.gateway = gateway
        self.engine = engine

    async def check_stripe(self) -> bool:
        try:
            await self.gateway.ping()
            return True
        except Exception as e:
            logger.error("stripe_health_check_failed", error=str(e))
            return False

    async def check_database(self) -> bool:
        try:
            await ping(self.engine)
            return True
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            return False

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: ``status``, ``timestamp`` and per-service state
        """
        health: Dict[str, Any] = {
            "status": STATUS_OK,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "services": {
                "server": "running",
                "stripe": "unknown",
                "database": "unknown",
            },
        }

        if await self.check_stripe():
            health["services"]["stripe"] = "connected"
        else:
            health["services"]["stripe"] = "error"
            health["status"] = STATUS_WARNING

        if await self.check_database():
            health["services"]["database"] = "connected"
        else:
            health["services"]["database"] = "error"
            health["status"] = STATUS_ERROR

        return health

    async def liveness(self) -> Dict[str, Any]:
        """Liveness probe; does not check external dependencies."""
        return {
            "status": "alive",
            "message": "Application is running",
        }
