"""Database package for the order backend."""
from .connection import close_db, create_engine, create_session_factory, init_db, ping
from .models import (
    ORDER_STATUSES,
    Base,
    NewsletterSubscription,
    Order,
    OrderItem,
)

__all__ = [
    "Base",
    "ORDER_STATUSES",
    "NewsletterSubscription",
    "Order",
    "OrderItem",
    "close_db",
    "create_engine",
    "create_session_factory",
    "init_db",
    "ping",
]
