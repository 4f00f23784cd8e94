import datetime as dt
import hashlib
import hmac
import json
import os
import time
import uuid
from decimal import Decimal

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret")
os.environ.setdefault("ENVIRONMENT", "development")

import pytest
from fakeredis import aioredis as fakeredis
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.config import Settings, get_settings
from app.core.deps import get_db_session, get_payment_gateway, get_redis
from app.core.errors import ExternalServiceError
from app.core.security import create_access_token
from app.main import app as application
from app.models.analysis import PRODUCT_BIOLOGICAL, PRODUCT_CHEMICAL, Product
from app.models.base import Base
from app.models.subscription import Plan
from app.models.user import USER_KIND_ADMIN, USER_KIND_CLIENT, User
from app.services.system_config import publish_config


class FakeGateway:
    """In-memory stand-in for StripeGateway."""

    configured = True

    def __init__(self):
        self.subscriptions: dict[str, dict] = {}
        self.payment_intents: dict[str, dict] = {}
        self.customers: dict[str, str] = {}
        self.cancel_error: Exception | None = None
        self.cancel_note: dict | None = None
        self.cancelled: list[tuple[str, bool]] = []

    async def retrieve_subscription(self, subscription_id):
        return self.subscriptions.get(subscription_id)

    async def retrieve_payment_intent(self, payment_intent_id):
        return self.payment_intents.get(payment_intent_id)

    async def retrieve_customer_email(self, customer_id):
        return self.customers.get(customer_id)

    async def cancel_subscription(self, subscription_id, immediate=True):
        if self.cancel_error is not None:
            raise self.cancel_error
        self.cancelled.append((subscription_id, immediate))
        if self.cancel_note is not None:
            return self.cancel_note
        return {"id": subscription_id, "status": "canceled" if immediate else "active"}

    def fail_cancellation(self):
        self.cancel_error = ExternalServiceError(detail={"stripe_code": "api_error"})


def sign_payload(payload: str, secret: str, timestamp: int | None = None) -> str:
    timestamp = timestamp or int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture()
def settings() -> Settings:
    return get_settings()


@pytest.fixture()
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture()
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture()
async def redis():
    client = fakeredis.FakeRedis(decode_responses=True)
    try:
        yield client
    finally:
        await client.flushall()
        await client.aclose()


@pytest.fixture()
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture()
async def client(session_factory, redis, gateway):
    async def _session():
        async with session_factory() as session:
            yield session

    async def _redis():
        yield redis

    application.dependency_overrides[get_db_session] = _session
    application.dependency_overrides[get_redis] = _redis
    application.dependency_overrides[get_payment_gateway] = lambda: gateway
    try:
        async with AsyncClient(transport=ASGITransport(app=application), base_url="http://test") as ac:
            yield ac
    finally:
        application.dependency_overrides.clear()


@pytest.fixture()
def make_user(session):
    async def _make(nome: str = "Cliente", email: str | None = None, admin: bool = False) -> User:
        user = User(
            nome=nome,
            email=email or f"{uuid.uuid4().hex[:10]}@example.com",
            tipo_usuario=USER_KIND_ADMIN if admin else USER_KIND_CLIENT,
        )
        session.add(user)
        await session.commit()
        return user

    return _make


@pytest.fixture()
def make_plan(session):
    async def _make(
        name: str = "Pro",
        monthly_credits: int = 100,
        max_members: int = 0,
        monthly_price: str = "199.90",
        time_priority: int = 1,
    ) -> Plan:
        plan = Plan(
            name=name,
            monthly_credits=monthly_credits,
            max_members=max_members,
            monthly_price=Decimal(monthly_price),
            time_priority=time_priority,
        )
        session.add(plan)
        await session.commit()
        return plan

    return _make


@pytest.fixture()
def make_config(session):
    async def _make(credit_price: str = "2.00", request_price_credits: int = 1, validity_days: int = 365):
        config = await publish_config(session, Decimal(credit_price), request_price_credits, validity_days)
        await session.commit()
        return config

    return _make


@pytest.fixture()
def make_products(session):
    async def _make() -> tuple[Product, Product]:
        chemical = Product(name="Glifosato", kind=PRODUCT_CHEMICAL)
        biological = Product(name="Bacillus subtilis", kind=PRODUCT_BIOLOGICAL)
        session.add_all([chemical, biological])
        await session.commit()
        return chemical, biological

    return _make


@pytest.fixture()
def auth_headers(settings):
    def _headers(user: User) -> dict[str, str]:
        token = create_access_token(user.id, settings, tipo_usuario=user.tipo_usuario, email=user.email)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture()
def post_event(client, settings):
    async def _post(event: dict, secret: str | None = None, signature: str | None = None):
        payload = json.dumps(event)
        header = signature or sign_payload(payload, secret or settings.stripe_webhook_secret)
        return await client.post(
            "/webhook",
            content=payload,
            headers={"Stripe-Signature": header, "Content-Type": "application/json"},
        )

    return _post


def stripe_event(event_type: str, obj: dict, event_id: str | None = None) -> dict:
    return {
        "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
        "object": "event",
        "type": event_type,
        "created": int(dt.datetime.now(dt.timezone.utc).timestamp()),
        "data": {"object": obj},
    }


@pytest.fixture()
def make_event():
    return stripe_event
