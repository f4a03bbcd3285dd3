"""
Shared test fixtures for the billing core.

Environment variables are set before anything from ``invow`` is imported,
since settings and logging are configured at import time.
"""

import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("TESTING", "true")
os.environ.setdefault("DATABASE__URL", "sqlite:///:memory:")
os.environ.setdefault("OBSERVABILITY__LOG_FORMAT", "text")
os.environ.setdefault("OBSERVABILITY__LOG_LEVEL", "WARNING")

from datetime import UTC, datetime, timedelta  # noqa: E402
from unittest.mock import AsyncMock  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from invow.billing.config import BillingConfig, GatewayConfig, set_billing_config  # noqa: E402
from invow.billing.ledger import SubscriptionLedger  # noqa: E402
from invow.billing.payments.cache import TransactionLookupCache  # noqa: E402
from invow.billing.payments.gateway import PaymentGatewayClient  # noqa: E402
from invow.billing.payments.reconciler import PaymentReconciler  # noqa: E402
from invow.billing.repositories import (  # noqa: E402
    SQLAlchemyPaymentRepository,
    SQLAlchemySubscriptionRepository,
)
from invow.db import create_all_tables_async  # noqa: E402

WEBHOOK_SECRET = "whsec-test"


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    """Clock frozen at 2024-01-20 12:00 UTC."""
    return FrozenClock(datetime(2024, 1, 20, 12, 0, tzinfo=UTC))


@pytest.fixture
def billing_config():
    """Default tiers with a configured, fast-retrying gateway."""
    return BillingConfig(
        gateway=GatewayConfig(
            api_url="https://gateway.test",
            api_key="test-api-key",
            webhook_secret=WEBHOOK_SECRET,
            redirect_url="https://app.test/dashboard?payment=success",
            max_retries=3,
            retry_base_delay=0,
            retry_max_delay=0,
        )
    )


@pytest.fixture(autouse=True)
def _global_billing_config(billing_config):
    """Keep the process-wide config in line with the fixture and reset it afterwards."""
    set_billing_config(billing_config)
    yield
    set_billing_config(None)


@pytest.fixture
async def async_engine():
    """In-memory SQLite engine shared across one test via StaticPool."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await create_all_tables_async(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
async def async_session(async_engine):
    session_maker = async_sessionmaker(async_engine, expire_on_commit=False)
    async with session_maker() as session:
        yield session


@pytest.fixture
def subscription_repo(async_session):
    return SQLAlchemySubscriptionRepository(async_session)


@pytest.fixture
def payment_repo(async_session):
    return SQLAlchemyPaymentRepository(async_session)


@pytest.fixture
def ledger(subscription_repo, billing_config, clock):
    return SubscriptionLedger(subscription_repo, config=billing_config, clock=clock)


@pytest.fixture
def mock_gateway():
    """Gateway client double; async methods are AsyncMocks."""
    return AsyncMock(spec=PaymentGatewayClient)


@pytest.fixture
def lookup_cache():
    return TransactionLookupCache(ttl_seconds=30, max_entries=100)


@pytest.fixture
def reconciler(ledger, payment_repo, mock_gateway, lookup_cache, billing_config, clock):
    return PaymentReconciler(
        ledger,
        payment_repo,
        gateway=mock_gateway,
        cache=lookup_cache,
        config=billing_config,
        clock=clock,
    )


@pytest.fixture
def make_pending_payment(reconciler):
    """Create a pending premium payment, optionally with a gateway id attached."""

    async def _make(user_id: str = "user-1", gateway_invoice_id: str | None = "txn-1"):
        payment = await reconciler.create_pending(user_id, "premium")
        if gateway_invoice_id:
            payment = await reconciler.attach_gateway_id(payment.id, gateway_invoice_id)
        return payment

    return _make
