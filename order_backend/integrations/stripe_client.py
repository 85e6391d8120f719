"""
Stripe API client with retry logic and error classification.

Implements:
- PaymentIntent creation and retrieval
- Exponential backoff for transient errors on reads
- Error classification (transient / permanent / rate limit)
- Connectivity check for health reporting

The Stripe SDK is synchronous; calls run in the default executor so a slow
gateway never blocks the event loop.
"""
import asyncio
import functools
import json
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

import stripe
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from order_backend.core.exceptions import UpstreamError
from order_backend.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

METADATA_VALUE_LIMIT = 500  # Stripe rejects longer metadata values


class StripeErrorType(Enum):
    """Classification of Stripe errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class StripeError(UpstreamError):
    """Raised when a Stripe call fails; carries the provider's message."""

    def __init__(
        self,
        message: str,
        error_type: StripeErrorType,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize Stripe error.

        Args:
            message: Error message
            error_type: Classification of error
            original_error: Original Stripe exception
        """
        super().__init__(message)
        self.error_type = error_type
        self.original_error = original_error

    @property
    def retryable(self) -> bool:
        return self.error_type is not StripeErrorType.PERMANENT


@dataclass(frozen=True)
class PaymentIntentSummary:
    """The fields of a PaymentIntent the order backend relies on."""

    id: str
    status: str
    amount: Optional[int]
    amount_received: Optional[int]
    currency: str
    client_secret: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"

    @property
    def charged_amount(self) -> Optional[int]:
        """Amount received in minor units, or the requested amount if unreported."""
        return self.amount_received or self.amount

    @classmethod
    def from_stripe(cls, intent: Any) -> "PaymentIntentSummary":
        return cls(
            id=intent.id,
            status=intent.status,
            amount=getattr(intent, "amount", None),
            amount_received=getattr(intent, "amount_received", None),
            currency=getattr(intent, "currency", None) or "usd",
            client_secret=getattr(intent, "client_secret", None),
        )


def build_intent_metadata(
    customer: Mapping[str, Any], items: Iterable[Mapping[str, Any]]
) -> Dict[str, str]:
    """
    Flatten customer and item details into Stripe metadata.

    The serialized item list is left out when it would exceed Stripe's
    per-value limit; ``itemCount`` is always present.
    """
    items = list(items)
    metadata = {
        "customerName": customer.get("name") or "",
        "customerEmail": customer.get("email") or "",
        "customerAddress": customer.get("address") or "",
        "customerCity": customer.get("city") or "",
        "customerPostalCode": customer.get("postal_code") or "",
        "customerCountry": customer.get("country") or "",
        "itemCount": str(len(items)),
    }
    order_items = json.dumps(
        [
            {"name": item["name"], "quantity": item["quantity"], "price": str(item["price"])}
            for item in items
        ],
        separators=(",", ":"),
    )
    if len(order_items) <= METADATA_VALUE_LIMIT:
        metadata["orderItems"] = order_items
    return {key: value[:METADATA_VALUE_LIMIT] for key, value in metadata.items()}


class StripeGateway:
    """
    Wrapper for the Stripe PaymentIntent API.

    Credentials are passed per request rather than through the SDK's global
    ``stripe.api_key``, so several gateways can coexist in one process.
    """

    def __init__(
        self,
        api_key: str,
        api_version: Optional[str] = None,
        max_attempts: int = 3,
        retry_base_delay: float = 0.5,
    ) -> None:
        """
        Initialize the gateway.

        Args:
            api_key: Stripe secret key
            api_version: Stripe API version to pin requests to
            max_attempts: Attempts for retryable read calls
            retry_base_delay: Base delay in seconds of the exponential backoff
        """
        self._request_options: Dict[str, Any] = {"api_key": api_key}
        if api_version:
            self._request_options["stripe_version"] = api_version
        self.max_attempts = max(1, max_attempts)
        self.retry_base_delay = retry_base_delay

        logger.info(
            "stripe_gateway_initialized",
            api_version=api_version,
            test_mode=api_key.startswith("sk_test_"),
        )

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> StripeErrorType:
        """
        Classify Stripe error for retry logic.

        Args:
            error: Stripe error

        Returns:
            StripeErrorType: Error classification
        """
        if isinstance(error, stripe.RateLimitError):
            return StripeErrorType.RATE_LIMIT
        elif isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            return StripeErrorType.TRANSIENT
        elif isinstance(
            error,
            (
                stripe.CardError,
                stripe.InvalidRequestError,
                stripe.AuthenticationError,
                stripe.PermissionError,
            ),
        ):
            return StripeErrorType.PERMANENT
        else:
            # Unknown errors are treated as transient
            return StripeErrorType.TRANSIENT

    def _translate_error(self, error: stripe.StripeError) -> StripeError:
        error_type = self._classify_error(error)
        metrics.record_stripe_api_error(error_type.value)

        logger.error(
            "stripe_api_error",
            error_type=error_type.value,
            error_code=getattr(error, "code", None),
            error_message=str(error),
        )

        return StripeError(
            message=getattr(error, "user_message", None) or str(error),
            error_type=error_type,
            original_error=error,
        )

    async def _call(self, operation: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a blocking SDK call in the executor and translate its errors."""
        loop = asyncio.get_running_loop()
        call = functools.partial(func, *args, **self._request_options, **kwargs)
        start_time = time.time()

        try:
            result = await loop.run_in_executor(None, call)
        except stripe.StripeError as e:
            metrics.record_stripe_api_call(operation, "error", time.time() - start_time)
            raise self._translate_error(e) from e

        metrics.record_stripe_api_call(operation, "success", time.time() - start_time)
        return result

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            retry=retry_if_exception(lambda e: isinstance(e, StripeError) and e.retryable),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.retry_base_delay, max=8),
            reraise=True,
        )

    async def create_payment_intent(
        self,
        amount_cents: int,
        currency: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> PaymentIntentSummary:
        """
        Create a Stripe PaymentIntent.

        Not retried: a second attempt after an ambiguous failure could leave
        two intents for one checkout.

        Args:
            amount_cents: Amount in the currency's minor unit
            currency: Currency code (e.g., 'usd')
            metadata: Optional metadata

        Returns:
            PaymentIntentSummary: Created payment intent

        Raises:
            StripeError: If payment intent creation fails
        """
        logger.info(
            "creating_payment_intent",
            amount_cents=amount_cents,
            currency=currency,
        )

        payment_intent = await self._call(
            "create_payment_intent",
            stripe.PaymentIntent.create,
            amount=amount_cents,
            currency=currency.lower(),
            metadata=metadata or {},
            automatic_payment_methods={"enabled": True},
        )

        logger.info(
            "payment_intent_created",
            payment_intent_id=payment_intent.id,
            status=payment_intent.status,
        )
        return PaymentIntentSummary.from_stripe(payment_intent)

    async def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntentSummary:
        """
        Retrieve a PaymentIntent by ID, retrying transient failures.

        Args:
            payment_intent_id: Stripe PaymentIntent ID

        Returns:
            PaymentIntentSummary: Retrieved payment intent

        Raises:
            StripeError: If retrieval fails
        """
        logger.info("retrieving_payment_intent", payment_intent_id=payment_intent_id)

        async for attempt in self._retrying():
            with attempt:
                payment_intent = await self._call(
                    "retrieve_payment_intent",
                    stripe.PaymentIntent.retrieve,
                    payment_intent_id,
                )
        return PaymentIntentSummary.from_stripe(payment_intent)

    async def ping(self) -> None:
        """Make the cheapest authenticated call; raises StripeError if unreachable."""
        await self._call("ping", stripe.PaymentIntent.list, limit=1)
