"""Payment gateway integrations."""
from .stripe_client import PaymentIntentSummary, StripeError, StripeErrorType, StripeGateway

__all__ = ["PaymentIntentSummary", "StripeError", "StripeErrorType", "StripeGateway"]
