"""
Global pytest fixtures for the dunning test suite.

Provides:
- A temporary-file aiosqlite database per test, created from Base.metadata
- A FrozenClock shared by every collaborator
- A scriptable fake payment gateway and a recording notification port
- An engine wired the same way the runtime wires it
- A factory for seeding a subscription with one invoice
"""
import asyncio
import os
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, AsyncGenerator, Optional
from uuid import UUID, uuid4

import pytest
import pytest_asyncio

# Set test environment BEFORE any app imports
os.environ["TESTING"] = "true"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["INTERNAL_API_TOKEN"] = "test-operator-token"
os.environ["PAYMENT_GATEWAY"] = "paystack"
os.environ["PAYSTACK_SECRET_KEY"] = "sk_test_dunning"
os.environ["SCHEDULER_ENABLED"] = "false"

from app.shared.core.config import Settings, reload_settings_from_environment  # noqa: E402

reload_settings_from_environment()

from app.models.subscription import (  # noqa: E402
    InvoiceStatus,
    Subscription,
    SubscriptionInvoice,
    SubscriptionStatus,
)
from app.modules.billing.domain.billing.dunning_config import DunningConfig  # noqa: E402
from app.modules.billing.domain.billing.dunning_engine import DunningEngine  # noqa: E402
from app.modules.billing.domain.billing.gateway import (  # noqa: E402
    ChargeRequest,
    PaymentResult,
)
from app.modules.billing.domain.billing.notifications import DunningNotifier  # noqa: E402
from app.modules.jobs.domain.processor import RetryScheduler  # noqa: E402
from app.shared.core.clock import FrozenClock  # noqa: E402
from app.shared.db.base import Base  # noqa: E402
from app.shared.db.session import build_engine, build_session_maker  # noqa: E402

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
OPERATOR_TOKEN = "test-operator-token"


class FakeGateway:
    """
    Scripted gateway. Each charge pops the next outcome: a PaymentResult is
    returned, an exception is raised. With nothing scripted it declines.
    """

    provider = "fake"

    def __init__(self) -> None:
        self.outcomes: list[Any] = []
        self.calls: list[ChargeRequest] = []
        self.release: Optional[asyncio.Event] = None
        self.entered = asyncio.Event()

    def succeed(self, txn: str = "txn_ok") -> None:
        self.outcomes.append(PaymentResult(success=True, gateway_transaction_id=txn))

    def decline(self, txn: Optional[str] = None, status: str = "declined") -> None:
        self.outcomes.append(
            PaymentResult(success=False, gateway_transaction_id=txn, raw_status=status)
        )

    def fail_with(self, exc: BaseException) -> None:
        self.outcomes.append(exc)

    async def charge(self, request: ChargeRequest) -> PaymentResult:
        self.calls.append(request)
        self.entered.set()
        if self.release is not None:
            await self.release.wait()
        outcome = self.outcomes.pop(0) if self.outcomes else PaymentResult(success=False)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class RecordingPort:
    """Notification port double that remembers what it was asked to send."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.error: Optional[Exception] = None

    async def enqueue(
        self,
        notification_type: Any,
        subscription_id: UUID,
        invoice_id: UUID,
        template_vars: dict[str, Any],
    ) -> None:
        if self.error is not None:
            raise self.error
        self.sent.append(
            {
                "type": notification_type.value,
                "subscription_id": subscription_id,
                "invoice_id": invoice_id,
                "template_vars": template_vars,
            }
        )

    def types(self) -> list[str]:
        return [item["type"] for item in self.sent]


# ============================================================================
# Async Database Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def async_engine(tmp_path) -> AsyncGenerator:
    """Create async SQLite engine for testing using a temporary file."""
    db_url = f"sqlite+aiosqlite:///{tmp_path / f'dunning_{uuid4().hex}.sqlite'}"
    engine = build_engine(db_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(async_engine):
    return build_session_maker(async_engine)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(T0)


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        TESTING=True,
        SCHEDULER_CONCURRENCY=1,
        SCHEDULER_BATCH_SIZE=10,
        SCHEDULER_LEASE_SECONDS=600,
        JOB_MAX_ATTEMPTS=3,
        JOB_BACKOFF_BASE_SECONDS=60,
        JOB_TIMEOUT_SECONDS=5,
        INTERNAL_API_TOKEN=OPERATOR_TOKEN,
    )


@pytest.fixture
def dunning_config() -> DunningConfig:
    return DunningConfig(max_retries=3, retry_intervals_days=(1, 3, 7))


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def port() -> RecordingPort:
    return RecordingPort()


@pytest.fixture
def scheduler(session_maker, clock, test_settings) -> RetryScheduler:
    return RetryScheduler(
        session_maker, clock=clock, settings=test_settings, worker_id="test-worker"
    )


@pytest.fixture
def notifier(session_maker, port, clock) -> DunningNotifier:
    return DunningNotifier(session_maker, port, clock)


@pytest.fixture
def engine(session_maker, gateway, notifier, scheduler, dunning_config, clock):
    return DunningEngine(
        session_maker, gateway, notifier, scheduler, dunning_config, clock=clock
    )


# ============================================================================
# Test Data Factories
# ============================================================================


@pytest.fixture
def seed_invoice(session_maker):
    """Insert a subscription with one invoice and return (subscription_id, invoice_id)."""

    async def _seed(
        *,
        subscription_status: str = SubscriptionStatus.ACTIVE.value,
        invoice_status: str = InvoiceStatus.PENDING.value,
        payment_method_ref: Optional[str] = "AUTH_test123",
        customer_email: Optional[str] = "customer@example.com",
        amount: Decimal = Decimal("49.00"),
        currency: str = "USD",
    ) -> tuple[UUID, UUID]:
        async with session_maker() as db:
            subscription = Subscription(
                customer_id=uuid4(),
                status=subscription_status,
                payment_method_ref=payment_method_ref,
                customer_email=customer_email,
                currency=currency,
                amount=amount,
            )
            db.add(subscription)
            await db.flush()
            invoice = SubscriptionInvoice(
                subscription_id=subscription.id,
                amount=amount,
                currency=currency,
                status=invoice_status,
            )
            db.add(invoice)
            await db.commit()
            return subscription.id, invoice.id

    return _seed


@pytest.fixture
def load(session_maker):
    """Fresh read of one row by primary key."""

    async def _load(model: Any, pk: Any) -> Any:
        async with session_maker() as db:
            return await db.get(model, pk)

    return _load
