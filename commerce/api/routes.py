"""
API routes for the commerce backend.

Routes only orchestrate: resolve the caller, check ownership, then call the
ledger or processor. Errors raised by the core are mapped to HTTP responses
by the exception handler in ``main``.
"""
import uuid
from typing import Any, Dict, List

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from commerce.core.errors import ReconciliationConflict, Unauthenticated
from commerce.core.ledger import LineItem
from commerce.core.sessions import UserIdentity
from commerce.database.models import Order

from .dependencies import (
    CommerceServices,
    current_identity,
    get_services,
    owned_order,
    require_admin,
    session_token,
)
from .schemas import (
    CreateOrderRequest,
    CreatePaymentIntentRequest,
    HealthCheckResponse,
    OrderResponse,
    PaymentIntentResponse,
    ReconciliationIssueResponse,
    SessionResponse,
    SigninRequest,
    SignupRequest,
    UserResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
order_router = APIRouter(prefix="/orders", tags=["orders"])
payment_router = APIRouter(prefix="/payments", tags=["payments"])
user_router = APIRouter(prefix="/user", tags=["user"])
admin_router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])
monitoring_router = APIRouter(tags=["monitoring"])


@order_router.post(
    "",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an order",
    description="Create an order; repeating the idempotency key returns the same order",
)
async def create_order(
    request: CreateOrderRequest,
    identity: UserIdentity = Depends(current_identity),
    services: CommerceServices = Depends(get_services),
) -> Order:
    logger.info(
        "api_create_order_request",
        user_id=str(identity.user_id),
        line_items=len(request.line_items),
    )
    return await services.ledger.create(
        user_id=identity.user_id,
        line_items=[
            LineItem(sku=item.sku, quantity=item.quantity, unit_price_cents=item.unit_price_cents)
            for item in request.line_items
        ],
        idempotency_key=request.idempotency_key,
    )


@order_router.get("", response_model=List[OrderResponse], summary="List the caller's orders")
async def list_orders(
    identity: UserIdentity = Depends(current_identity),
    services: CommerceServices = Depends(get_services),
) -> List[Order]:
    return await services.ledger.list_for_user(identity.user_id)


@order_router.get("/{order_id}", response_model=OrderResponse, summary="Get an order")
async def get_order(order: Order = Depends(owned_order)) -> Order:
    return order


@order_router.post("/{order_id}/cancel", response_model=OrderResponse, summary="Cancel an order")
async def cancel_order(
    order: Order = Depends(owned_order),
    services: CommerceServices = Depends(get_services),
) -> Order:
    logger.info("api_cancel_order_request", order_id=str(order.id))
    return await services.ledger.cancel(order.id)


@order_router.post(
    "/{order_id}/payment-intent",
    response_model=PaymentIntentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a payment intent",
    description="Start collecting funds for an order; idempotent per key",
)
async def create_payment_intent(
    request: CreatePaymentIntentRequest,
    order: Order = Depends(owned_order),
    services: CommerceServices = Depends(get_services),
) -> Any:
    logger.info("api_create_payment_intent_request", order_id=str(order.id))
    return await services.processor.create_intent(order.id, request.idempotency_key)


@order_router.get(
    "/{order_id}/payment-intents",
    response_model=List[PaymentIntentResponse],
    summary="List payment intents for an order",
)
async def list_payment_intents(
    order: Order = Depends(owned_order),
    services: CommerceServices = Depends(get_services),
) -> Any:
    return await services.processor.list_for_order(order.id)


@payment_router.post(
    "/webhook",
    response_model=WebhookResponse,
    summary="Stripe webhook endpoint",
    description="Verify a Stripe notification and reconcile the payment intent it names",
)
async def payment_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
    services: CommerceServices = Depends(get_services),
) -> Dict[str, Any]:
    """
    Handle Stripe webhook events.

    Contradictory outcomes are acknowledged with ``conflict``: they are
    recorded for review and a redelivery would not change anything.
    """
    body = await request.body()
    try:
        return await services.reconciler.handle(body, stripe_signature)
    except ReconciliationConflict as e:
        return {"status": "conflict", "message": str(e)}


@user_router.post(
    "/signup",
    response_model=UserResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a user",
)
async def signup(
    request: SignupRequest,
    services: CommerceServices = Depends(get_services),
) -> Any:
    return await services.users.register(request.email, request.password, request.display_name)


@user_router.post("/signin", response_model=SessionResponse, summary="Sign in")
async def signin(
    request: SigninRequest,
    response: Response,
    services: CommerceServices = Depends(get_services),
) -> Dict[str, Any]:
    settings = services.settings
    user = await services.users.authenticate(request.email, request.password)
    token = await services.session_store.create(user.id)

    response.set_cookie(
        key=settings.session_cookie_name,
        value=token,
        max_age=settings.session_ttl_seconds,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
    )
    logger.info("api_signin_success", user_id=str(user.id))
    return {"user_id": user.id, "token": token}


@user_router.post("/signout", status_code=status.HTTP_204_NO_CONTENT, summary="Sign out")
async def signout(
    request: Request,
    services: CommerceServices = Depends(get_services),
) -> Response:
    token = session_token(request, services)
    if token:
        await services.session_store.destroy(token)

    response = Response(status_code=status.HTTP_204_NO_CONTENT)
    response.delete_cookie(services.settings.session_cookie_name)
    return response


@user_router.get("/me", response_model=UserResponse, summary="Current user")
async def me(
    identity: UserIdentity = Depends(current_identity),
    services: CommerceServices = Depends(get_services),
) -> Any:
    user = await services.users.get(identity.user_id)
    if user is None:
        raise Unauthenticated("Session refers to an unknown user")
    return user


@admin_router.post(
    "/orders/{order_id}/fulfill",
    response_model=OrderResponse,
    summary="Mark a paid order fulfilled",
)
async def fulfill_order(
    order_id: uuid.UUID,
    services: CommerceServices = Depends(get_services),
) -> Order:
    logger.info("api_fulfill_order_request", order_id=str(order_id))
    return await services.ledger.mark_fulfilled(order_id)


@admin_router.get(
    "/reconciliation-issues",
    response_model=List[ReconciliationIssueResponse],
    summary="Reconciliation conflicts awaiting operator review",
)
async def reconciliation_issues(
    limit: int = 100,
    services: CommerceServices = Depends(get_services),
) -> Any:
    return await services.processor.list_issues(limit=min(max(limit, 1), 500))


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(services: CommerceServices = Depends(get_services)) -> Dict[str, Any]:
    return await services.health.check_all()


@monitoring_router.get("/health/live", response_model=HealthCheckResponse, summary="Liveness probe")
async def liveness(services: CommerceServices = Depends(get_services)) -> Dict[str, Any]:
    return await services.health.liveness()


@monitoring_router.get(
    "/health/ready", response_model=HealthCheckResponse, summary="Readiness probe"
)
async def readiness(services: CommerceServices = Depends(get_services)) -> Dict[str, Any]:
    result = await services.health.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
