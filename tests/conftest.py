"""
Pytest configuration and fixtures.

Tests run against a file-backed SQLite database per test and a mocked
Stripe gateway. Webhook payloads are signed with the same scheme Stripe
uses, so the real signature verification runs.
"""
import hashlib
import hmac
import json
import os
import time
import uuid
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, List, Optional
from unittest.mock import AsyncMock

os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_fake_key_for_testing")
os.environ.setdefault("STRIPE_PUBLISHABLE_KEY", "pk_test_fake_key_for_testing")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_fake_secret")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from marketplace_payments.api.main import create_app
from marketplace_payments.config import Settings, get_settings
from marketplace_payments.core.catalog import StaticPriceCatalog
from marketplace_payments.core.engine import PaymentsEngine
from marketplace_payments.core.order_manager import CartLine, CartSnapshot, CheckoutResult
from marketplace_payments.database.connection import build_engine, build_session_factory, init_db
from marketplace_payments.integrations.stripe_client import StripeClient
from marketplace_payments.integrations.webhook_handler import IngestResult

WEBHOOK_SECRET = "whsec_test_fake_secret"

PRICES = {
    "prod_lamp": 4999,
    "prod_mug": 1500,
    "prod_poster": 2500,
}


@pytest.fixture(autouse=True)
def clear_settings_cache() -> None:
    get_settings.cache_clear()


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        stripe_secret_key="sk_test_fake_key_for_testing",
        stripe_publishable_key="pk_test_fake_key_for_testing",
        stripe_webhook_secret=WEBHOOK_SECRET,
        database_url="sqlite+aiosqlite:///:memory:",
        app_name="marketplace-payments-test",
        app_env="test",
        log_level="WARNING",
        gateway_retry_max_attempts=3,
        gateway_retry_base_delay=0,
        gateway_retry_max_delay=0,
        gateway_retry_jitter=0,
        circuit_breaker_failure_threshold=3,
        webhook_conflict_retries=5,
    )


@pytest_asyncio.fixture
async def db_engine(tmp_path: Any) -> AsyncGenerator[AsyncEngine, Any]:
    """Create a fresh database with all tables."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(db_engine)


@pytest.fixture
def gateway() -> AsyncMock:
    """
    Mocked Stripe gateway.

    Intents start in ``requires_payment_method``; refunds come back
    ``pending`` so tests drive settlement through webhooks; connected
    accounts are payouts-ready.
    """
    mock = AsyncMock(spec=StripeClient)

    def create_payment_intent(amount: int, currency: str, order_id: str, metadata: Any = None) -> Dict[str, Any]:
        intent_id = f"pi_{order_id.replace('-', '')[:24]}"
        return {
            "id": intent_id,
            "object": "payment_intent",
            "client_secret": f"{intent_id}_secret_test",
            "status": "requires_payment_method",
            "amount": amount,
            "currency": currency.lower(),
            "metadata": {"order_id": order_id},
        }

    def create_refund(refund_id: str, amount: int, **kwargs: Any) -> Dict[str, Any]:
        return {
            "id": f"re_{refund_id.replace('-', '')[:24]}",
            "object": "refund",
            "amount": amount,
            "status": "pending",
            "metadata": {"refund_id": refund_id, "order_id": kwargs.get("order_id")},
        }

    def create_transfer(amount: int, currency: str, destination: str, order_id: str, seller_id: str, **kwargs: Any) -> Dict[str, Any]:
        return {
            "id": f"tr_{order_id.replace('-', '')[:12]}_{seller_id}",
            "object": "transfer",
            "amount": amount,
            "currency": currency.lower(),
            "destination": destination,
            "metadata": {"order_id": order_id, "seller_id": seller_id},
        }

    def create_connected_account(seller_id: str, email: Any = None, country: Any = None) -> Dict[str, Any]:
        return {
            "id": f"acct_{seller_id}",
            "charges_enabled": False,
            "payouts_enabled": False,
            "details_submitted": False,
        }

    mock.create_payment_intent.side_effect = create_payment_intent
    mock.create_refund.side_effect = create_refund
    mock.create_transfer.side_effect = create_transfer
    mock.create_connected_account.side_effect = create_connected_account
    mock.create_account_link.return_value = {
        "url": "https://connect.stripe.com/setup/e/acct_test/onboarding",
        "expires_at": 1893456000,
    }
    mock.retrieve_account.side_effect = lambda account_id: {
        "id": account_id,
        "charges_enabled": True,
        "payouts_enabled": True,
        "details_submitted": True,
    }
    mock.cancel_payment_intent.side_effect = lambda payment_intent_id, order_id=None: {
        "id": payment_intent_id,
        "status": "canceled",
    }
    mock.find_payment_intent_for_order.return_value = None
    mock.list_transfers.return_value = []
    mock.list_refunds.return_value = []
    mock.list_payment_intents.return_value = {"data": [], "has_more": False}
    mock.retrieve_balance.return_value = {"available": [{"amount": 0, "currency": "eur"}]}
    return mock


@pytest.fixture
def catalog() -> StaticPriceCatalog:
    return StaticPriceCatalog(PRICES)


@pytest.fixture
def engine(
    test_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    gateway: AsyncMock,
    catalog: StaticPriceCatalog,
) -> PaymentsEngine:
    """Payments engine wired to the test database and mocked gateway."""
    return PaymentsEngine(
        settings=test_settings,
        session_factory=session_factory,
        gateway=gateway,
        catalog=catalog,
    )


@pytest_asyncio.fixture
async def client(engine: PaymentsEngine) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client."""
    app = create_app(engine)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a ``Stripe-Signature`` header the way Stripe does."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def build_event(event_type: str, obj: Dict[str, Any], event_id: Optional[str] = None) -> bytes:
    """Serialize a Stripe event envelope."""
    return json.dumps(
        {
            "id": event_id or f"evt_{uuid.uuid4().hex[:24]}",
            "object": "event",
            "type": event_type,
            "created": int(time.time()),
            "data": {"object": obj},
        }
    ).encode("utf-8")


def intent_object(order_id: str, payment_intent_id: str, amount: int = 4999, currency: str = "eur", status: str = "succeeded") -> Dict[str, Any]:
    return {
        "id": payment_intent_id,
        "object": "payment_intent",
        "amount": amount,
        "amount_received": amount if status == "succeeded" else 0,
        "currency": currency,
        "status": status,
        "latest_charge": f"ch_{order_id.replace('-', '')[:24]}",
        "metadata": {"order_id": order_id},
    }


@pytest.fixture
def signed() -> Callable[..., str]:
    return sign_payload


@pytest.fixture
def make_event() -> Callable[..., bytes]:
    return build_event


@pytest.fixture
def make_intent() -> Callable[..., Dict[str, Any]]:
    return intent_object


@pytest.fixture
def deliver(engine: PaymentsEngine) -> Callable[..., Awaitable[IngestResult]]:
    """Sign and ingest one event; returns the ingest result."""

    async def _deliver(event_type: str, obj: Dict[str, Any], event_id: Optional[str] = None) -> IngestResult:
        payload = build_event(event_type, obj, event_id)
        return await engine.webhooks.ingest(payload, sign_payload(payload))

    return _deliver


@pytest.fixture
def cart() -> Callable[..., CartSnapshot]:
    """Cart snapshot builder. Defaults to one lamp from seller_7 (49.99 EUR)."""

    def _cart(lines: Optional[List[CartLine]] = None, buyer_id: str = "buyer_42", currency: str = "EUR") -> CartSnapshot:
        lines = lines or [CartLine("prod_lamp", "seller_7", 1, 4999)]
        return CartSnapshot(
            buyer_id=buyer_id,
            lines=tuple(lines),
            total=sum(line.quantity * line.unit_price for line in lines),
            currency=currency,
        )

    return _cart


@pytest.fixture
def paid_order(
    engine: PaymentsEngine,
    cart: Callable[..., CartSnapshot],
    deliver: Callable[..., Awaitable[IngestResult]],
) -> Callable[..., Awaitable[CheckoutResult]]:
    """Check out a cart and deliver its ``payment_intent.succeeded`` event."""

    async def _paid_order(snapshot: Optional[CartSnapshot] = None) -> CheckoutResult:
        snapshot = snapshot or cart()
        result = await engine.orders.checkout(snapshot)
        order = await engine.orders.get_order(result.order_id)
        await deliver(
            "payment_intent.succeeded",
            intent_object(
                order.id,
                order.payment_intent_id,
                amount=order.total_amount,
                currency=order.currency.lower(),
            ),
        )
        return result

    return _paid_order


@pytest.fixture
def payout_ready_seller(engine: PaymentsEngine) -> Callable[[str], Awaitable[None]]:
    """Onboard a seller and refresh capabilities to payouts-ready."""

    async def _onboard(seller_id: str) -> None:
        await engine.sellers.start_onboarding(seller_id)
        await engine.sellers.refresh_capabilities(seller_id)

    return _onboard
