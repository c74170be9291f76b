"""
Pytest configuration and fixtures.

Every test gets its own SQLite database file, an in-memory session store
and a mocked Stripe client, wired together exactly as ``build_services``
wires the production graph.
"""
import hashlib
import hmac
import json
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator, Dict, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from commerce.api.dependencies import CommerceServices
from commerce.api.main import create_app
from commerce.config import Settings
from commerce.core.identity import UserDirectory
from commerce.core.ledger import LineItem, OrderLedger
from commerce.core.payment_intents import PaymentIntentProcessor
from commerce.core.sessions import SessionContextResolver, SessionRecord
from commerce.database.connection import (
    create_engine_from_settings,
    create_session_factory,
    init_db,
)
from commerce.database.models import Order
from commerce.integrations.stripe_client import StripeClient
from commerce.integrations.webhook_handler import WebhookReconciler
from commerce.monitoring.health import HealthCheck

WEBHOOK_SECRET = "whsec_test_fake_secret"
ADMIN_API_KEY = "admin_test_key"


class InMemorySessionStore:
    """Session store double with the same interface as ``RedisSessionStore``."""

    def __init__(self, ttl_seconds: int = 3600) -> None:
        self.ttl_seconds = ttl_seconds
        self.records: Dict[str, SessionRecord] = {}

    async def create(self, user_id: Any) -> str:
        token = uuid.uuid4().hex
        self.records[token] = SessionRecord(
            user_id=str(user_id),
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=self.ttl_seconds),
        )
        return token

    async def get(self, token: str) -> Optional[SessionRecord]:
        return self.records.get(token)

    async def destroy(self, token: str) -> None:
        self.records.pop(token, None)


def provider_reference_for(idempotency_key: str) -> str:
    """Stripe returns the same intent for a repeated idempotency key."""
    return "pi_test_" + hashlib.sha256(idempotency_key.encode()).hexdigest()[:16]


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header value for a payload."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload}".encode()
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def stripe_event(event_type: str, provider_reference: str) -> str:
    """Serialize a minimal Stripe event for a payment intent."""
    return json.dumps(
        {
            "id": f"evt_{uuid.uuid4().hex[:16]}",
            "object": "event",
            "type": event_type,
            "data": {"object": {"id": provider_reference, "object": "payment_intent"}},
        }
    )


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        stripe_secret_key="sk_test_fake_key_for_testing",
        stripe_webhook_secret=WEBHOOK_SECRET,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'commerce_test.db'}",
        redis_url="redis://localhost:6379/1",
        app_name="commerce-backend-test",
        app_env="test",
        log_level="DEBUG",
        admin_api_key=ADMIN_API_KEY,
    )


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """Create a fresh database for one test."""
    engine = create_engine_from_settings(test_settings)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
def mock_stripe_client() -> AsyncMock:
    """Stripe client whose intent ids are stable per idempotency key."""
    client = AsyncMock(spec=StripeClient)

    def create_payment_intent(**kwargs: Any) -> MagicMock:
        payment_intent = MagicMock()
        payment_intent.id = provider_reference_for(kwargs["idempotency_key"])
        payment_intent.status = "requires_payment_method"
        return payment_intent

    client.create_payment_intent.side_effect = create_payment_intent
    return client


@pytest.fixture
def ledger(session_factory: async_sessionmaker[AsyncSession]) -> OrderLedger:
    return OrderLedger(session_factory)


@pytest.fixture
def processor(
    session_factory: async_sessionmaker[AsyncSession],
    ledger: OrderLedger,
    mock_stripe_client: AsyncMock,
) -> PaymentIntentProcessor:
    return PaymentIntentProcessor(session_factory, ledger, mock_stripe_client)


@pytest.fixture
def reconciler(processor: PaymentIntentProcessor) -> WebhookReconciler:
    return WebhookReconciler(processor, WEBHOOK_SECRET)


@pytest.fixture
def session_store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def users(session_factory: async_sessionmaker[AsyncSession]) -> UserDirectory:
    return UserDirectory(session_factory)


@pytest.fixture
def mock_redis() -> AsyncMock:
    redis_client = AsyncMock()
    redis_client.ping.return_value = True
    return redis_client


@pytest.fixture
def services(
    test_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    session_store: InMemorySessionStore,
    users: UserDirectory,
    ledger: OrderLedger,
    processor: PaymentIntentProcessor,
    reconciler: WebhookReconciler,
    mock_redis: AsyncMock,
) -> CommerceServices:
    return CommerceServices(
        settings=test_settings,
        session_store=session_store,
        resolver=SessionContextResolver(session_store),
        users=users,
        ledger=ledger,
        processor=processor,
        reconciler=reconciler,
        health=HealthCheck(session_factory, mock_redis),
    )


@pytest_asyncio.fixture
async def client(services: CommerceServices) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client."""
    app = create_app(services=services)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def auth_headers(
    users: UserDirectory, session_store: InMemorySessionStore, test_settings: Settings
) -> Dict[str, str]:
    """Headers for a signed-in user."""
    user = await users.register("buyer@example.com", "correct-horse-battery")
    token = await session_store.create(user.id)
    return {test_settings.session_header_name: token}


@pytest_asyncio.fixture
async def other_auth_headers(
    users: UserDirectory, session_store: InMemorySessionStore, test_settings: Settings
) -> Dict[str, str]:
    """Headers for a second, unrelated user."""
    user = await users.register("someone-else@example.com", "another-password")
    token = await session_store.create(user.id)
    return {test_settings.session_header_name: token}


@pytest.fixture
def user_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest_asyncio.fixture
async def created_order(ledger: OrderLedger, user_id: uuid.UUID) -> Order:
    """Order with items [{A, 2, 500}] created under key k1."""
    return await ledger.create(user_id, [LineItem("A", 2, 500)], "k1")
