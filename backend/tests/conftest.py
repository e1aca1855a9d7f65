"""Pytest configuration and fixtures for Planora tests."""

import os

# Settings are read at import time; configure the test environment first
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("RATE_LIMIT_STORAGE_URI", "memory://")
os.environ.setdefault("BILLING_RETRY_BACKOFF_SECONDS", "0")
os.environ.setdefault("PAYPAL_CLIENT_ID", "test-client-id")
os.environ.setdefault("PAYPAL_CLIENT_SECRET", "test-client-secret")

import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.api.deps import get_billing_gateway, get_notifier
from app.core.database import Base, get_db
from app.core.exceptions import BillingError, RemoteNotFoundError
from app.core.security import create_access_token
from app.main import app
from app.models.billing_history import BillingHistory, BillingStatus
from app.models.subscription import PlanType, Subscription, SubscriptionStatus
from app.models.user import User
from app.services.billing_gateway import RemoteRefund, RemoteSubscription, RemoteTransaction
from app.services.notification_service import NotificationEmitter
from app.services.subscription_state import utcnow

# Use SQLite in-memory database for tests (faster and no setup needed)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


class FakeGateway:
    """In-memory stand-in for the billing provider client.

    Remote subscriptions live in ``remotes``; every call is recorded in
    ``calls``. Put an exception in ``errors[method_name]`` to make that
    method raise.
    """

    def __init__(self) -> None:
        self.client_id = "test-client-id"
        self.client_secret = "test-client-secret"
        self.remotes: dict[str, RemoteSubscription] = {}
        self.transactions: dict[str, list[RemoteTransaction]] = {}
        self.calls: list[tuple[str, Any]] = []
        self.errors: dict[str, BillingError] = {}
        self.verify_result = True

    @property
    def is_configured(self) -> bool:
        return True

    def add_remote(
        self,
        remote_id: str,
        status: str = "ACTIVE",
        trial_end_date: datetime | None = None,
        plan_id: str = "P-TEST",
        raw: dict[str, Any] | None = None,
    ) -> RemoteSubscription:
        remote = RemoteSubscription(
            id=remote_id,
            status=status,
            plan_id=plan_id,
            start_time=utcnow(),
            trial_end_date=trial_end_date,
            next_billing_time=None,
            raw=raw or {"id": remote_id, "status": status},
        )
        self.remotes[remote_id] = remote
        return remote

    def _maybe_fail(self, method: str) -> None:
        error = self.errors.get(method)
        if error is not None:
            raise error

    def _set_status(self, remote_id: str, status: str) -> None:
        remote = self.remotes.get(remote_id)
        if remote is not None:
            self.remotes[remote_id] = RemoteSubscription(
                id=remote.id,
                status=status,
                plan_id=remote.plan_id,
                start_time=remote.start_time,
                trial_end_date=remote.trial_end_date,
                next_billing_time=remote.next_billing_time,
                raw=remote.raw,
            )

    def method_calls(self, method: str) -> list[Any]:
        return [args for name, args in self.calls if name == method]

    async def get_remote_subscription(self, remote_id: str) -> RemoteSubscription:
        self.calls.append(("get_remote_subscription", remote_id))
        self._maybe_fail("get_remote_subscription")
        if remote_id not in self.remotes:
            raise RemoteNotFoundError(f"{remote_id} not found at billing provider")
        return self.remotes[remote_id]

    async def cancel_remote(self, remote_id: str, reason: str | None = None) -> None:
        self.calls.append(("cancel_remote", remote_id))
        self._maybe_fail("cancel_remote")
        self._set_status(remote_id, "CANCELLED")

    async def suspend_remote(self, remote_id: str, reason: str | None = None) -> None:
        self.calls.append(("suspend_remote", remote_id))
        self._maybe_fail("suspend_remote")
        self._set_status(remote_id, "SUSPENDED")

    async def reactivate_remote(self, remote_id: str, reason: str | None = None) -> None:
        self.calls.append(("reactivate_remote", remote_id))
        self._maybe_fail("reactivate_remote")
        self._set_status(remote_id, "ACTIVE")

    async def refund(
        self,
        capture_id: str,
        amount: Decimal | None = None,
        currency: str = "USD",
        reason: str | None = None,
    ) -> RemoteRefund:
        self.calls.append(("refund", (capture_id, amount)))
        self._maybe_fail("refund")
        return RemoteRefund(
            id=f"REFUND-{len(self.calls)}", status="COMPLETED", amount=amount, currency=currency
        )

    async def search_transactions(
        self, remote_id: str, start: datetime, end: datetime | None = None
    ) -> list[RemoteTransaction]:
        self.calls.append(("search_transactions", remote_id))
        self._maybe_fail("search_transactions")
        return self.transactions.get(remote_id, [])

    async def verify_webhook_signature(self, headers: Any, raw_body: bytes) -> bool:
        self.calls.append(("verify_webhook_signature", None))
        self._maybe_fail("verify_webhook_signature")
        return self.verify_result

    def plan_id_for(self, plan_type: str) -> str:
        return f"P-{plan_type.upper()}"

    def transaction_url(self, transaction_id: str) -> str:
        return f"https://provider.test/activity/payment/{transaction_id}"

    def subscription_url(self, remote_id: str) -> str:
        return f"https://provider.test/myaccount/autopay/connect/{remote_id}"

    async def close(self) -> None:
        return None


class FakeNotifier(NotificationEmitter):
    """Records published events instead of sending them to Redis."""

    def __init__(self) -> None:
        super().__init__(redis_client=None)
        self.events: list[tuple[str, str, dict[str, Any]]] = []

    async def emit(self, user_id: uuid.UUID | str, event: str, data: dict[str, Any]) -> None:
        self.events.append((str(user_id), event, data))

    def names(self) -> list[str]:
        return [event for _, event, _ in self.events]


@pytest.fixture
async def engine():
    """Create async engine for tests with SQLite in-memory database."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,  # StaticPool for in-memory SQLite
        connect_args={"check_same_thread": False},  # Required for SQLite
    )

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Drop all tables after tests
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
async def db_session(engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for each test."""
    async_session_maker = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        # Rollback to clean up any changes (but allows commits during test)
        await session.rollback()


@pytest.fixture
def gateway() -> FakeGateway:
    """Fake billing provider."""
    return FakeGateway()


@pytest.fixture
def notifier() -> FakeNotifier:
    """Recording notification emitter."""
    return FakeNotifier()


@pytest.fixture
async def async_client(
    db_session: AsyncSession, gateway: FakeGateway, notifier: FakeNotifier
) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client with database and billing overrides."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_billing_gateway] = lambda: gateway
    app.dependency_overrides[get_notifier] = lambda: notifier

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
async def test_user(db_session: AsyncSession) -> User:
    """Create a test user."""
    user = User(
        email="test@example.com",
        full_name="Test User",
        is_active=True,
        is_superuser=False,
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest.fixture
async def other_user(db_session: AsyncSession) -> User:
    """Create a second regular user."""
    user = User(
        email="other@example.com",
        full_name="Other User",
        is_active=True,
        is_superuser=False,
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest.fixture
async def test_superuser(db_session: AsyncSession) -> User:
    """Create a test superuser for admin tests."""
    user = User(
        email="admin@example.com",
        full_name="Admin User",
        is_active=True,
        is_superuser=True,
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


def _auth_headers(user: User) -> dict[str, str]:
    """Bearer header for a user."""
    token = create_access_token(
        data={"sub": str(user.id)},
        expires_delta=timedelta(minutes=30),
    )
    return {"Authorization": f"Bearer {token}"}


async def _make_subscription(
    db: AsyncSession,
    user: User,
    status: str = SubscriptionStatus.ACTIVE.value,
    plan_type: str = PlanType.MONTHLY.value,
    remote_subscription_id: str | None = "I-MONTHLY-1",
    start_date: datetime | None = None,
    **fields: Any,
) -> Subscription:
    """Insert a subscription row directly."""
    now = utcnow()
    subscription = Subscription(
        user_id=user.id,
        status=status,
        plan_type=plan_type,
        remote_subscription_id=remote_subscription_id,
        start_date=start_date or now,
        status_changed_at=fields.pop("status_changed_at", now - timedelta(days=1)),
        price=fields.pop("price", Decimal("12.90")),
        currency=fields.pop("currency", "USD"),
        **fields,
    )
    db.add(subscription)
    await db.commit()
    await db.refresh(subscription)
    return subscription


async def _make_payment(
    db: AsyncSession,
    subscription: Subscription,
    transaction_id: str = "SALE-1",
    amount: Decimal = Decimal("12.90"),
    status: str = BillingStatus.PAID.value,
    payment_date: datetime | None = None,
) -> BillingHistory:
    """Insert a ledger row directly."""
    entry = BillingHistory(
        subscription_id=subscription.id,
        invoice_number=f"INV-TEST-{transaction_id}",
        remote_transaction_id=transaction_id,
        remote_sale_id=transaction_id,
        amount=amount,
        currency="USD",
        status=status,
        payment_date=payment_date or utcnow(),
    )
    db.add(entry)
    await db.commit()
    await db.refresh(entry)
    return entry


@pytest.fixture
def auth_headers():
    """Factory for bearer headers."""
    return _auth_headers


@pytest.fixture
def make_subscription(db_session: AsyncSession):
    """Factory inserting subscriptions into the test database."""

    async def factory(user: User, **kwargs: Any) -> Subscription:
        return await _make_subscription(db_session, user, **kwargs)

    return factory


@pytest.fixture
def make_payment(db_session: AsyncSession):
    """Factory inserting ledger rows into the test database."""

    async def factory(subscription: Subscription, **kwargs: Any) -> BillingHistory:
        return await _make_payment(db_session, subscription, **kwargs)

    return factory
