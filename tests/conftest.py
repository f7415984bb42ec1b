"""
Shared fixtures for entitlement engine tests.

This module provides:
- In-memory and SQLite-backed entitlement stores
- A billing gateway with test credentials
- Signed Stripe webhook payloads
- An HTTP client for the FastAPI app with bearer token helpers
"""

import hashlib
import hmac
import json
import os
import time
import warnings
from collections.abc import AsyncGenerator, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

# Test configuration must be in place before the package reads settings
os.environ["ENVIRONMENT"] = "test"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["RECONCILIATION_ENABLED"] = "false"
os.environ["STORE_BACKEND"] = "memory"
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-entitlement-engine-tests"
os.environ.pop("SENTRY_DSN", None)

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import jwt as jose_jwt

from entitlement_engine.config import settings
from entitlement_engine.database.connection import create_engine, create_session_factory
from entitlement_engine.database.models import Base
from entitlement_engine.dependencies import EntitlementServices
from entitlement_engine.main import create_app
from entitlement_engine.services.billing_gateway import BillingCredentials, BillingGateway
from entitlement_engine.store.memory import InMemoryEntitlementStore
from entitlement_engine.store.sql import SqlEntitlementStore

warnings.filterwarnings("ignore", message="JWT_SECRET_KEY not set", category=UserWarning)

WEBHOOK_SECRET = "whsec_test_entitlement_secret"


def static_credentials(
    secret_key: str | None = None,
    webhook_secret: str | None = WEBHOOK_SECRET,
) -> Callable[[], Any]:
    async def _load() -> BillingCredentials:
        return BillingCredentials(secret_key=secret_key, webhook_secret=webhook_secret)

    return _load


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a Stripe-Signature header the way Stripe does."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode()
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def stripe_event(
    event_type: str,
    obj: dict[str, Any],
    *,
    created: int,
    event_id: str | None = None,
) -> dict[str, Any]:
    return {
        "id": event_id or f"evt_{event_type.replace('.', '_')}_{created}",
        "object": "event",
        "type": event_type,
        "created": created,
        "data": {"object": obj},
    }


def subscription_object(
    customer_id: str,
    status: str = "active",
    subscription_id: str = "sub_123",
    cancel_at: datetime | None = None,
    cancel_at_period_end: bool = False,
    current_period_end: datetime | None = None,
) -> dict[str, Any]:
    return {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer_id,
        "status": status,
        "cancel_at": int(cancel_at.timestamp()) if cancel_at else None,
        "cancel_at_period_end": cancel_at_period_end,
        "current_period_end": int(current_period_end.timestamp()) if current_period_end else None,
        "created": 1_700_000_000,
    }


def signed(event: dict[str, Any]) -> tuple[bytes, str]:
    """Serialize an event and sign it."""
    payload = json.dumps(event)
    return payload.encode("utf-8"), sign_payload(payload)


def future(days: int = 30) -> datetime:
    return datetime.now(UTC).replace(microsecond=0) + timedelta(days=days)


@pytest.fixture
def store() -> InMemoryEntitlementStore:
    return InMemoryEntitlementStore()


@pytest_asyncio.fixture
async def sql_store(tmp_path: Any) -> AsyncGenerator[SqlEntitlementStore, None]:
    """SQL store on a SQLite file, so concurrent connections share state."""
    test_settings = settings.model_copy(
        update={"DATABASE_URL": f"sqlite+aiosqlite:///{tmp_path / 'entitlements.db'}"}
    )
    engine = create_engine(test_settings)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield SqlEntitlementStore(create_session_factory(engine))

    await engine.dispose()


@pytest.fixture
def gateway() -> BillingGateway:
    """Gateway that can verify webhooks but has no Stripe API key."""
    return BillingGateway(static_credentials())


@pytest.fixture
def services(store: InMemoryEntitlementStore, gateway: BillingGateway) -> EntitlementServices:
    return EntitlementServices.build(store, gateway, settings)


@pytest.fixture
def make_token() -> Callable[..., str]:
    def _make(subscriber_id: str, email: str | None = None, expires_in: int = 3600) -> str:
        claims: dict[str, Any] = {"sub": subscriber_id, "exp": int(time.time()) + expires_in}
        if email:
            claims["email"] = email
        return jose_jwt.encode(claims, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)

    return _make


@pytest.fixture
def auth_headers(make_token: Callable[..., str]) -> Callable[..., dict[str, str]]:
    def _headers(subscriber_id: str, email: str | None = None) -> dict[str, str]:
        return {"Authorization": f"Bearer {make_token(subscriber_id, email)}"}

    return _headers


@pytest_asyncio.fixture
async def client(services: EntitlementServices) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client for the app wired to the in-memory store."""
    app = create_app(services=services)
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
