"""Pytest configuration: in-memory database, seeded catalog, mock gateway."""

import hashlib
import hmac
import json
import os
from typing import AsyncGenerator, Dict

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Set test environment before anything reads settings
KEY_ID = "rzp_test_key"
KEY_SECRET = "test_key_secret_value"
WEBHOOK_SECRET = "test_webhook_secret_value"
JWT_SECRET = "test-jwt-secret-key-that-is-long-enough-32"

os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["PAYMENT_GATEWAY_KEY_ID"] = KEY_ID
os.environ["PAYMENT_GATEWAY_KEY_SECRET"] = KEY_SECRET
os.environ["PAYMENT_GATEWAY_WEBHOOK_SECRET"] = WEBHOOK_SECRET
os.environ["JWT_SECRET_KEY"] = JWT_SECRET

from creativewriter.core.enums import PlanTier  # noqa: E402
from creativewriter.db.models import Base, SubscriptionPlan  # noqa: E402
from creativewriter.services.payment_gateway import PaymentGatewayClient  # noqa: E402
from creativewriter.services.plan_catalog import PlanCatalog  # noqa: E402


# ────────────────────────────────────────────────
# Database
# ────────────────────────────────────────────────
@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,  # one shared in-memory connection
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
async def plans(session_factory) -> Dict[PlanTier, SubscriptionPlan]:
    """Default catalog, committed, keyed by tier."""
    async with session_factory() as session:
        await PlanCatalog(session).seed_defaults()
        await session.commit()
        catalog = PlanCatalog(session)
        return {tier: await catalog.get_by_tier(tier) for tier in PlanTier}


# ────────────────────────────────────────────────
# Payment gateway (httpx MockTransport)
# ────────────────────────────────────────────────
class FakeGateway:
    """Records requests and answers like the gateway's orders/payments API."""

    def __init__(self):
        self.requests = []
        self.orders = {}
        self.payments = {}
        self.fail_fetch = False
        self.fail_create = False

    def add_payment(self, payment_id: str, amount: int, currency: str = "INR", order_id: str = None):
        self.payments[payment_id] = {
            "id": payment_id,
            "amount": amount,
            "currency": currency,
            "order_id": order_id,
            "status": "captured",
        }

    def add_order(
        self,
        order_id: str,
        user_id: str,
        plan_id: str,
        billing_cycle: str = "monthly",
        promo_code: str = None,
        amount: int = 29900,
    ):
        """An order as create_order would have left it on the gateway."""
        notes = {"userId": user_id, "planId": plan_id, "billingCycle": billing_cycle}
        if promo_code:
            notes["promoCode"] = promo_code.strip().upper()
        self.orders[order_id] = {
            "id": order_id,
            "entity": "order",
            "status": "created",
            "amount": amount,
            "currency": "INR",
            "notes": notes,
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "POST" and request.url.path.endswith("/orders"):
            if self.fail_create:
                return httpx.Response(500, json={"error": {"description": "Gateway exploded"}})
            body = json.loads(request.content)
            order_id = f"order_{len(self.orders) + 1}"
            order = {"id": order_id, "entity": "order", "status": "created", **body}
            self.orders[order_id] = order
            return httpx.Response(200, json=order)
        if request.method == "GET" and "/orders/" in request.url.path:
            order_id = request.url.path.rsplit("/", 1)[-1]
            if order_id not in self.orders:
                return httpx.Response(404, json={"error": {"description": "Order not found"}})
            return httpx.Response(200, json=self.orders[order_id])
        if request.method == "GET" and "/payments/" in request.url.path:
            if self.fail_fetch:
                return httpx.Response(503, json={"error": {"description": "Unavailable"}})
            payment_id = request.url.path.rsplit("/", 1)[-1]
            if payment_id not in self.payments:
                return httpx.Response(404, json={"error": {"description": "Payment not found"}})
            return httpx.Response(200, json=self.payments[payment_id])
        return httpx.Response(404, json={"error": {"description": "Unknown route"}})


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
async def gateway(fake_gateway) -> AsyncGenerator[PaymentGatewayClient, None]:
    client = PaymentGatewayClient(
        key_id=KEY_ID,
        key_secret=KEY_SECRET,
        webhook_secret=WEBHOOK_SECRET,
        base_url="https://gateway.test/v1",
        transport=httpx.MockTransport(fake_gateway.handler),
    )
    yield client
    await client.aclose()


# ────────────────────────────────────────────────
# Signature helpers
# ────────────────────────────────────────────────
def sign_payment(order_id: str, payment_id: str, secret: str = KEY_SECRET) -> str:
    return hmac.new(secret.encode(), f"{order_id}|{payment_id}".encode(), hashlib.sha256).hexdigest()


def sign_webhook(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def webhook_body(event: str, payment_id: str, order_id: str, amount: int = 29900) -> bytes:
    return json.dumps(
        {
            "event": event,
            "payload": {
                "payment": {
                    "entity": {
                        "id": payment_id,
                        "order_id": order_id,
                        "amount": amount,
                        "currency": "INR",
                    }
                }
            },
        }
    ).encode()
