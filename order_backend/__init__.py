"""Order backend: Stripe payments with orders persisted in PostgreSQL."""

__version__ = "1.0.0"
