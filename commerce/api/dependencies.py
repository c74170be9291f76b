"""
Service wiring and request dependencies.

Every collaborator is built once per application from ``Settings`` and
handed to the components that need it; routes reach them through
``request.app.state.services``.
"""
import secrets
import uuid
from dataclasses import dataclass
from typing import Any, Optional

import redis.asyncio as aioredis
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncEngine

from commerce.config import Settings
from commerce.core.errors import Unauthorized
from commerce.core.identity import UserDirectory
from commerce.core.ledger import OrderLedger
from commerce.core.payment_intents import PaymentIntentProcessor
from commerce.core.sessions import SessionContextResolver, UserIdentity
from commerce.database.connection import (
    create_engine_from_settings,
    create_session_factory,
    dispose_engine,
    init_db,
)
from commerce.database.models import Order
from commerce.integrations.session_store import RedisSessionStore
from commerce.integrations.stripe_client import StripeClient
from commerce.integrations.webhook_handler import WebhookReconciler
from commerce.monitoring.health import HealthCheck


@dataclass
class CommerceServices:
    """Everything the API surface orchestrates."""

    settings: Settings
    session_store: Any
    resolver: SessionContextResolver
    users: UserDirectory
    ledger: OrderLedger
    processor: PaymentIntentProcessor
    reconciler: WebhookReconciler
    health: HealthCheck
    engine: Optional[AsyncEngine] = None
    redis_client: Optional[aioredis.Redis] = None

    async def close(self) -> None:
        if self.redis_client is not None:
            await self.redis_client.aclose()
        if self.engine is not None:
            await dispose_engine(self.engine)


async def build_services(settings: Settings) -> CommerceServices:
    """
    Build the production service graph from settings.

    Creates database tables if they don't exist.
    """
    engine = create_engine_from_settings(settings)
    await init_db(engine)
    session_factory = create_session_factory(engine)

    redis_client = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
    )
    session_store = RedisSessionStore(redis_client, settings.session_ttl_seconds)

    ledger = OrderLedger(session_factory, currency=settings.currency)
    processor = PaymentIntentProcessor(
        session_factory,
        ledger,
        StripeClient(settings.stripe_secret_key, settings.stripe_api_version),
    )

    return CommerceServices(
        settings=settings,
        session_store=session_store,
        resolver=SessionContextResolver(session_store),
        users=UserDirectory(session_factory),
        ledger=ledger,
        processor=processor,
        reconciler=WebhookReconciler(
            processor,
            settings.stripe_webhook_secret,
            settings.webhook_tolerance_seconds,
        ),
        health=HealthCheck(session_factory, redis_client),
        engine=engine,
        redis_client=redis_client,
    )


def get_services(request: Request) -> CommerceServices:
    return request.app.state.services


def session_token(request: Request, services: CommerceServices) -> Optional[str]:
    """Read the session token from the cookie, falling back to the header."""
    settings = services.settings
    return request.cookies.get(settings.session_cookie_name) or request.headers.get(
        settings.session_header_name
    )


async def current_identity(
    request: Request,
    services: CommerceServices = Depends(get_services),
) -> UserIdentity:
    return await services.resolver.resolve(session_token(request, services))


def ensure_owner(identity: UserIdentity, order: Order) -> None:
    """
    Reject callers acting on an order they do not own.

    Raises:
        Unauthorized: If the order belongs to another user
    """
    if order.user_id != identity.user_id:
        raise Unauthorized(f"Order {order.id} does not belong to the caller")


async def owned_order(
    order_id: uuid.UUID,
    identity: UserIdentity = Depends(current_identity),
    services: CommerceServices = Depends(get_services),
) -> Order:
    order = await services.ledger.get(order_id)
    ensure_owner(identity, order)
    return order


async def require_admin(
    request: Request,
    services: CommerceServices = Depends(get_services),
) -> None:
    settings = services.settings
    provided = request.headers.get(settings.api_key_header) or ""
    if not settings.admin_api_key or not secrets.compare_digest(
        provided, settings.admin_api_key
    ):
        raise Unauthorized("Invalid or missing API key")
