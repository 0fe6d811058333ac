"""
Shared fixtures: a file-backed SQLite database per test, fake payment
gateways, recording side-channel senders and seeding helpers.
"""
import os

# Settings are read at import time
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret")
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["TRACING_ENABLED"] = "false"
os.environ["OUTBOX_RELAY_ENABLED"] = "false"
os.environ["INTERNAL_API_KEY"] = "test-internal-key"
os.environ["PAYMENT_ENCRYPTION_KEY"] = "test-encryption-key"
os.environ["STRIPE_SECRET_KEY"] = ""
os.environ["PAYSTACK_SECRET_KEY"] = ""

import asyncio
import hashlib
import hmac
import json
import time
from decimal import Decimal

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from shared.config.database import Base, get_db
from shared.errors import ProviderError, SignatureInvalid
from shared.security.jwt_handler import create_access_token

from services.cart_service.service import CartOwner, CartService
from services.catalog_service.models import Course, Product, SubscriptionTier
from services.catalog_service.service import CatalogLookup
from services.fulfillment_service import models as fulfillment_models  # noqa: F401
from services.fulfillment_service.dispatcher import FulfillmentDispatcher
from services.order_service import models as order_models  # noqa: F401
from services.payment_service import models as payment_models  # noqa: F401
from services.payment_service.gateways.base import (
    PaymentGateway,
    PaymentIntent,
    PaymentOutcome,
    RefundResult,
    VerificationResult,
    WebhookEvent,
)
from services.payment_service.providers import GatewayRegistry
from services.payment_service.reconciliation import ReconciliationEngine
from services.payment_service.service import PaymentService

VALID_SIGNATURE = "good-signature"


class FakeGateway(PaymentGateway):
    """
    In-memory provider. Verification answers come from `results`
    (reference -> VerificationResult) or fall back to `default_outcome`.
    """

    def __init__(self, name: str, default_outcome: PaymentOutcome = PaymentOutcome.PENDING):
        self.name = name
        self.default_outcome = default_outcome
        self.results: dict[str, VerificationResult] = {}
        self.created: list[dict] = []
        self.verify_calls: list[str] = []
        self.refunds: list[str] = []
        self.create_error: Exception | None = None

    @property
    def public_key(self):
        return f"pk_{self.name}"

    def settle(self, reference: str, outcome: PaymentOutcome, amount=None, currency=None, charge=None):
        self.results[reference] = VerificationResult(
            reference=reference,
            outcome=outcome,
            raw_status=outcome.value,
            amount=amount,
            currency=currency,
            charge_reference=charge,
            message="declined" if outcome is PaymentOutcome.FAILED else None,
        )

    async def create_payment_intent(self, amount, currency, metadata, *, transaction_id,
                                    customer_email=None, description=None):
        if self.create_error is not None:
            raise self.create_error
        self.created.append({"amount": amount, "currency": currency, "transaction_id": transaction_id})
        return PaymentIntent(
            provider=self.name,
            reference=f"{self.name}_ref_{transaction_id}",
            client_secret=f"secret_{transaction_id}",
            authorization_url=f"https://pay.test/{transaction_id}",
        )

    async def verify(self, reference):
        self.verify_calls.append(reference)
        # Yield so concurrent triggers interleave
        await asyncio.sleep(0)
        if reference in self.results:
            return self.results[reference]
        return VerificationResult(reference=reference, outcome=self.default_outcome, raw_status="fake")

    async def refund(self, reference, amount=None, reason=None):
        self.refunds.append(reference)
        return RefundResult(reference=reference, refund_id=f"re_{reference}", status="succeeded")

    def parse_webhook(self, raw_body, signature):
        if signature != VALID_SIGNATURE:
            raise SignatureInvalid(provider=self.name)
        body = json.loads(raw_body)
        return WebhookEvent(
            provider=self.name,
            event_id=body["id"],
            event_type=body["type"],
            kind=body.get("kind", "payment"),
            reference=body.get("reference"),
            transaction_id=body.get("transaction_id"),
            payload=body,
        )


def webhook_body(event_id: str, reference: str, kind: str = "payment", event_type: str = "payment.updated") -> bytes:
    return json.dumps({"id": event_id, "type": event_type, "kind": kind, "reference": reference}).encode()


STRIPE_WEBHOOK_SECRET = "whsec_test"


def stripe_signature(payload: bytes, secret: str = STRIPE_WEBHOOK_SECRET) -> str:
    """Stripe-Signature header value for a payload, as Stripe computes it."""
    timestamp = int(time.time())
    signed = f"{timestamp}.{payload.decode()}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


class RecordingNotificationSender:

    def __init__(self, fail_times: int = 0):
        self.sent: list[tuple] = []
        self.fail_times = fail_times

    async def send(self, user_id, kind, payload):
        if self.fail_times:
            self.fail_times -= 1
            raise ProviderError("notification service down")
        self.sent.append((user_id, kind, payload))


class RecordingEmailSender:

    def __init__(self):
        self.sent: list[tuple] = []

    async def send_email(self, to, user_id, kind, payload):
        self.sent.append((to, user_id, kind))


class Seeder:

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def _add(self, row):
        async with self.session_factory() as db:
            db.add(row)
            await db.commit()
            return row

    async def product(self, price="10.00", stock=10, currency="USD", track_inventory=True, name="Notebook", sku=None):
        return await self._add(Product(
            name=name,
            sku=sku,
            price=Decimal(price),
            currency=currency,
            stock_quantity=stock,
            track_inventory=track_inventory,
            sales_count=0,
            is_published=True,
        ))

    async def course(self, price="49.00", currency="USD", tier_id=None, title="Intro to Python"):
        return await self._add(Course(
            title=title,
            price=Decimal(price),
            currency=currency,
            is_published=True,
            subscription_tier_id=tier_id,
        ))

    async def tier(self, price="15.00", currency="USD", months=1, name="Pro"):
        return await self._add(SubscriptionTier(
            name=name,
            price=Decimal(price),
            currency=currency,
            billing_cycle_months=months,
            is_active=True,
        ))

    async def cart(self, user_id: int, *lines) -> int:
        """Cart for the user holding (product, quantity) lines; returns the cart id."""
        service = CartService(CatalogLookup())
        async with self.session_factory() as db:
            cart = await service.get_or_create(db, CartOwner.for_user(user_id))
            for product, quantity in lines:
                await service.add_item(db, cart.id, product.id, quantity)
            return cart.id


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'academy.db'}",
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def seed(session_factory):
    return Seeder(session_factory)


@pytest.fixture
def catalog():
    return CatalogLookup()


@pytest.fixture
def stripe_gateway():
    return FakeGateway("stripe")


@pytest.fixture
def paystack_gateway():
    return FakeGateway("paystack")


@pytest.fixture
def registry(stripe_gateway, paystack_gateway):
    return GatewayRegistry(gateways={"stripe": stripe_gateway, "paystack": paystack_gateway}, paystack_currency="NGN")


@pytest.fixture
def dispatcher(catalog):
    return FulfillmentDispatcher(catalog)


@pytest.fixture
def reconciler(registry, dispatcher):
    return ReconciliationEngine(registry, dispatcher)


@pytest.fixture
def payments(catalog, reconciler):
    return PaymentService(catalog, reconciler)


@pytest.fixture
def auth_headers():
    def _headers(user_id: int, role: str | None = None, email: str = "learner@example.com"):
        claims = {"sub": str(user_id), "email": email}
        if role:
            claims["role"] = role
        return {"Authorization": f"Bearer {create_access_token(claims)}"}
    return _headers


@pytest_asyncio.fixture
async def client(session_factory, registry, dispatcher):
    from main import app
    from services.cart_service.main import cart_app
    from services.catalog_service.main import catalog_app
    from services.order_service.main import order_app
    from services.payment_service.main import payment_app
    from services.payment_service.router import get_dispatcher, get_registry

    async def override_get_db():
        async with session_factory() as session:
            yield session

    sub_apps = (catalog_app, cart_app, order_app, payment_app)
    for sub_app in sub_apps:
        sub_app.dependency_overrides[get_db] = override_get_db
    payment_app.dependency_overrides[get_registry] = lambda: registry
    payment_app.dependency_overrides[get_dispatcher] = lambda: dispatcher

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    for sub_app in sub_apps:
        sub_app.dependency_overrides.clear()


