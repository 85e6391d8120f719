"""
API routes for payments, orders, newsletter and monitoring.
"""
import time
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Query, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from order_backend.config import Settings
from order_backend.core.confirmation import (
    PaymentConfirmation,
    PaymentConfirmationRequest,
    RecordedWithWarning,
)
from order_backend.core.exceptions import (
    NotFoundError,
    PaymentNotCompletedError,
    PersistenceError,
    UpstreamError,
    ValidationError,
)
from order_backend.core.newsletter import NewsletterService
from order_backend.core.orders import OrderService
from order_backend.database.models import ORDER_STATUSES
from order_backend.integrations.stripe_client import StripeGateway, build_intent_metadata
from order_backend.monitoring.health import STATUS_ERROR, HealthCheck
from order_backend.monitoring.metrics import metrics

from .dependencies import (
    get_gateway,
    get_health_check,
    get_newsletter_service,
    get_order_service,
    get_payment_confirmation,
    get_settings_dep,
)
from .schemas import (
    CreatePaymentIntentRequest,
    ErrorResponse,
    HealthCheckResponse,
    NewsletterRequest,
    NewsletterResponse,
    OrderDetailResponse,
    PaymentIntentResponse,
    PaymentSuccessRequest,
    PaymentSuccessResponse,
    RecentOrdersResponse,
    UpdateStatusRequest,
    UpdateStatusResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
payment_router = APIRouter(prefix="/api", tags=["payments"])
order_router = APIRouter(prefix="/api/orders", tags=["orders"])
admin_router = APIRouter(prefix="/api/admin", tags=["admin"])
newsletter_router = APIRouter(prefix="/api/newsletter", tags=["newsletter"])
monitoring_router = APIRouter(tags=["monitoring"])


def error_response(status_code: int, error: str, **extra: Any) -> JSONResponse:
    """JSON error body in the ``{"error": ..., ...}`` shape used by every route."""
    return JSONResponse(status_code=status_code, content={"error": error, **extra})


def _order_items(order: Dict[str, Any]) -> list[Dict[str, Any]]:
    return [
        {"name": item["name"], "quantity": item["quantity"], "price": item["price"]}
        for item in order["items"]
    ]


@payment_router.post(
    "/create-payment-intent",
    response_model=PaymentIntentResponse,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    summary="Create a payment intent",
)
async def create_payment_intent(
    request: CreatePaymentIntentRequest,
    gateway: StripeGateway = Depends(get_gateway),
    settings: Settings = Depends(get_settings_dep),
) -> Any:
    """Create a Stripe PaymentIntent for the checkout; the browser confirms it."""
    currency = (request.currency or settings.default_currency).lower()
    amount_cents = int(request.amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    customer = request.customer.model_dump()
    items = [item.model_dump() for item in request.items]

    try:
        payment_intent = await gateway.create_payment_intent(
            amount_cents=amount_cents,
            currency=currency,
            metadata=build_intent_metadata(customer, items),
        )
    except UpstreamError as e:
        metrics.record_payment_intent("failed", currency)
        logger.error("api_create_payment_intent_error", error=str(e))
        return error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "Failed to create payment intent",
            details=str(e),
        )

    metrics.record_payment_intent("created", currency)
    logger.info(
        "api_payment_intent_created",
        payment_intent_id=payment_intent.id,
        amount_cents=amount_cents,
        currency=currency,
        customer_email=request.customer.email,
    )
    return {
        "client_secret": payment_intent.client_secret,
        "payment_intent_id": payment_intent.id,
    }


@payment_router.post(
    "/payment-success",
    response_model=PaymentSuccessResponse,
    response_model_exclude_none=True,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    summary="Confirm a payment and record the order",
)
async def payment_success(
    request: PaymentSuccessRequest,
    confirmation: PaymentConfirmation = Depends(get_payment_confirmation),
    settings: Settings = Depends(get_settings_dep),
) -> Any:
    """
    Verify the payment with Stripe and record the order.

    A verified payment is always answered with 200: if the order could not
    be stored, the response carries a fallback order ID and a warning.
    """
    start_time = time.time()

    try:
        result = await confirmation.confirm(
            PaymentConfirmationRequest(
                payment_intent_id=request.payment_intent_id,
                customer=request.customer,
                items=request.items,
                total=request.total,
            )
        )
    except PaymentNotCompletedError as e:
        return error_response(
            status.HTTP_400_BAD_REQUEST,
            "Payment was not successful",
            status=e.status,
        )
    except Exception as e:
        logger.error(
            "api_payment_success_error",
            payment_intent_id=request.payment_intent_id,
            error=str(e),
            error_type=type(e).__name__,
        )
        return error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "Failed to process payment confirmation",
            details=str(e),
        )

    body: Dict[str, Any] = {
        "success": True,
        "order_id": result.order_id,
        "payment_intent_id": result.payment_intent_id,
        "message": result.message,
        "customer_email": result.customer_email,
        "order_total": result.total_amount,
        "estimated_delivery": settings.estimated_delivery,
    }
    if isinstance(result, RecordedWithWarning):
        body.update(warning=result.warning, requires_reconciliation=True)
    else:
        body.update(order_date=result.created_at)
        if result.already_recorded:
            body.update(already_recorded=True)

    logger.info(
        "api_payment_success_completed",
        payment_intent_id=result.payment_intent_id,
        order_id=result.order_id,
        durable=not isinstance(result, RecordedWithWarning),
        duration_seconds=time.time() - start_time,
    )
    return body


@order_router.get(
    "/{order_id}",
    response_model=OrderDetailResponse,
    responses={404: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    summary="Look up an order",
)
async def get_order(
    order_id: str,
    order_service: OrderService = Depends(get_order_service),
    settings: Settings = Depends(get_settings_dep),
) -> Any:
    """Customer order lookup."""
    try:
        order = await order_service.get_order_by_id(order_id)
    except PersistenceError as e:
        logger.error("api_get_order_error", order_id=order_id, error=str(e))
        return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to fetch order")

    if order is None:
        return error_response(status.HTTP_404_NOT_FOUND, "Order not found")

    return {
        "success": True,
        "order": {
            "order_id": order["order_id"],
            "status": order["status"],
            "customer_name": order["customer"]["name"],
            "customer_email": order["customer"]["email"],
            "items": _order_items(order),
            "subtotal": order["subtotal"],
            "tax_amount": order["tax_amount"],
            "total_amount": order["total_amount"],
            "created_at": order["created_at"],
            "estimated_delivery": settings.estimated_delivery,
        },
    }


@admin_router.get(
    "/orders",
    response_model=RecentOrdersResponse,
    responses={500: {"model": ErrorResponse}},
    summary="List recent orders",
)
async def list_recent_orders(
    limit: Optional[str] = Query(default=None, description="Number of orders (default 10)"),
    order_service: OrderService = Depends(get_order_service),
) -> Any:
    """Most recent orders, newest first."""
    try:
        orders = await order_service.get_recent_orders(limit)
    except PersistenceError as e:
        logger.error("api_list_orders_error", error=str(e))
        return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to fetch orders")

    return {
        "success": True,
        "orders": [
            {
                "order_id": order["order_id"],
                "customer_name": order["customer"]["name"],
                "customer_email": order["customer"]["email"],
                "total_amount": order["total_amount"],
                "status": order["status"],
                "created_at": order["created_at"],
                "item_count": len(order["items"]),
                "items": _order_items(order),
            }
            for order in orders
        ],
    }


@admin_router.put(
    "/orders/{order_id}/status",
    response_model=UpdateStatusResponse,
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
    },
    summary="Update order status",
)
async def update_order_status(
    order_id: str,
    request: UpdateStatusRequest,
    order_service: OrderService = Depends(get_order_service),
) -> Any:
    """Set an order's status; any status may follow any other."""
    new_status = request.status
    if new_status not in ORDER_STATUSES:
        return error_response(
            status.HTTP_400_BAD_REQUEST,
            "Invalid status",
            validStatuses=list(ORDER_STATUSES),
        )

    try:
        order = await order_service.update_order_status(order_id, new_status)
    except ValidationError as e:
        return error_response(status.HTTP_400_BAD_REQUEST, "Invalid status", details=str(e))
    except PersistenceError as e:
        logger.error("api_update_status_error", order_id=order_id, error=str(e))
        return error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to update order status"
        )

    if order is None:
        return error_response(status.HTTP_404_NOT_FOUND, "Order not found")

    return {
        "success": True,
        "message": f"Order {order_id} status updated to {new_status}",
        "order": {
            "order_id": order["order_id"],
            "status": order["status"],
            "updated_at": order["updated_at"],
        },
    }


@newsletter_router.post(
    "/subscribe",
    response_model=NewsletterResponse,
    response_model_exclude_none=True,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    summary="Subscribe to the newsletter",
)
async def subscribe(
    request: NewsletterRequest,
    newsletter_service: NewsletterService = Depends(get_newsletter_service),
) -> Any:
    try:
        subscription = await newsletter_service.subscribe(request.email)
    except ValidationError as e:
        return error_response(status.HTTP_400_BAD_REQUEST, str(e))
    except PersistenceError as e:
        logger.error("api_subscribe_error", error=str(e))
        return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to subscribe")

    return {
        "success": True,
        "message": "Successfully subscribed to newsletter",
        "subscription": subscription,
    }


@newsletter_router.post(
    "/unsubscribe",
    response_model=NewsletterResponse,
    response_model_exclude_none=True,
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
    },
    summary="Unsubscribe from the newsletter",
)
async def unsubscribe(
    request: NewsletterRequest,
    newsletter_service: NewsletterService = Depends(get_newsletter_service),
) -> Any:
    try:
        await newsletter_service.unsubscribe(request.email)
    except ValidationError as e:
        return error_response(status.HTTP_400_BAD_REQUEST, str(e))
    except NotFoundError as e:
        return error_response(status.HTTP_404_NOT_FOUND, str(e))
    except PersistenceError as e:
        logger.error("api_unsubscribe_error", error=str(e))
        return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to unsubscribe")

    return {"success": True, "message": "Successfully unsubscribed from newsletter"}


@monitoring_router.get(
    "/api/health",
    response_model=HealthCheckResponse,
    responses={500: {"model": HealthCheckResponse}},
    summary="Health check",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> JSONResponse:
    """Server, Stripe and database status; 500 only when the database is down."""
    result = await health_check.check_all()
    status_code = (
        status.HTTP_500_INTERNAL_SERVER_ERROR
        if result["status"] == STATUS_ERROR
        else status.HTTP_200_OK
    )
    return JSONResponse(status_code=status_code, content=result)


@monitoring_router.get("/api/health/live", summary="Liveness probe")
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    return await health_check.liveness()


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
