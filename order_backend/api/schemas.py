"""
Pydantic schemas for API request/response models.

Bodies use camelCase keys on the wire (``paymentIntentId``, ``postalCode``);
fields are snake_case in Python.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from order_backend.core.exceptions import ValidationError
from order_backend.core.pricing import normalize_price


class CamelModel(BaseModel):
    """Base model accepting and emitting camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CustomerIn(CamelModel):
    """Customer details submitted at checkout."""

    name: str = Field(..., min_length=1, description="Customer full name")
    email: str = Field(..., min_length=3, description="Customer email")
    address: str = Field(..., min_length=1, description="Shipping address")
    city: str = Field(default="", description="City")
    postal_code: str = Field(default="", description="Postal code")
    country: str = Field(default="", description="Country")

    @field_validator("city", "postal_code", "country", mode="before")
    @classmethod
    def default_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("name", "email", "address")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v.strip()


class OrderItemIn(CamelModel):
    """Ordered item; ``price`` may be a number or a string like ``"$60"``."""

    name: str = Field(..., min_length=1, description="Item name")
    quantity: int = Field(default=1, gt=0, description="Quantity ordered")
    price: Decimal = Field(..., description="Unit price")

    @field_validator("price", mode="before")
    @classmethod
    def normalize(cls, v: Any) -> Decimal:
        """Normalize the price once, at ingestion."""
        try:
            return normalize_price(v)
        except ValidationError as e:
            raise ValueError(str(e))


class CreatePaymentIntentRequest(CamelModel):
    """Request schema for creating a payment intent."""

    amount: Decimal = Field(..., ge=1, description="Amount in the currency's minor unit")
    currency: Optional[str] = Field(
        default=None, min_length=3, max_length=3, description="Currency code (e.g., usd)"
    )
    items: List[OrderItemIn] = Field(..., min_length=1)
    customer: CustomerIn

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {
                    "amount": 6000,
                    "currency": "usd",
                    "items": [{"name": "Hoodie", "quantity": 1, "price": "$60"}],
                    "customer": {
                        "name": "Ada Lovelace",
                        "email": "ada@example.com",
                        "address": "12 St James's Square",
                        "city": "London",
                        "postalCode": "SW1Y 4JH",
                        "country": "GB",
                    },
                }
            ]
        },
    )


class PaymentIntentResponse(BaseModel):
    """Response schema for payment intent creation."""

    client_secret: Optional[str] = Field(..., description="Secret used by Stripe.js")
    payment_intent_id: str = Field(..., description="Stripe PaymentIntent ID")


class PaymentSuccessRequest(CamelModel):
    """
    Request schema sent by the storefront after Stripe.js confirmed a payment.

    Only the PaymentIntent ID is checked here. The cart is validated after
    the payment is verified, so a charged customer never gets a 400 for it.
    """

    payment_intent_id: str = Field(..., min_length=1, description="Stripe PaymentIntent ID")
    items: Optional[Any] = Field(default=None, description="Ordered items")
    customer: Optional[Any] = Field(default=None, description="Customer details")
    total: Optional[Any] = Field(
        default=None, description="Order total in major units, used if Stripe reports none"
    )


class PaymentSuccessResponse(CamelModel):
    """
    Response schema for a confirmed payment.

    ``warning`` and ``requires_reconciliation`` are only present when the
    order could not be stored.
    """

    success: bool = True
    order_id: str
    payment_intent_id: str
    message: str
    customer_email: Optional[str] = None
    order_total: float
    estimated_delivery: str
    order_date: Optional[datetime] = None
    already_recorded: Optional[bool] = None
    warning: Optional[str] = None
    requires_reconciliation: Optional[bool] = None


class OrderItemOut(CamelModel):
    name: str
    quantity: int
    price: float


class OrderDetail(CamelModel):
    """Customer-facing projection of an order."""

    order_id: str
    status: str
    customer_name: str
    customer_email: str
    items: List[OrderItemOut]
    subtotal: float
    tax_amount: float
    total_amount: float
    created_at: datetime
    estimated_delivery: str


class OrderDetailResponse(CamelModel):
    success: bool = True
    order: OrderDetail


class OrderSummary(CamelModel):
    """Admin listing projection of an order."""

    order_id: str
    customer_name: str
    customer_email: str
    total_amount: float
    status: str
    created_at: datetime
    item_count: int
    items: List[OrderItemOut]


class RecentOrdersResponse(CamelModel):
    success: bool = True
    orders: List[OrderSummary]


class UpdateStatusRequest(CamelModel):
    """Checked against the known statuses by the route, not by the schema."""

    status: Optional[str] = Field(default=None, description="New order status")


class OrderStatusOut(CamelModel):
    order_id: str
    status: str
    updated_at: datetime


class UpdateStatusResponse(CamelModel):
    success: bool = True
    message: str
    order: OrderStatusOut


class NewsletterRequest(CamelModel):
    email: str = Field(..., min_length=3, description="Subscriber email")


class SubscriptionOut(CamelModel):
    email: str
    is_active: bool
    subscribed_at: datetime


class NewsletterResponse(CamelModel):
    success: bool = True
    message: str
    subscription: Optional[SubscriptionOut] = None


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="OK, WARNING or ERROR")
    timestamp: str = Field(..., description="Check time (ISO 8601)")
    services: Dict[str, str] = Field(..., description="State of each dependency")


class ErrorResponse(BaseModel):
    """Body of every non-2xx response."""

    error: str
    details: Optional[Any] = None
