"""
Pytest configuration and fixtures for payment routing tests.

Each test gets its own SQLite database file (aiosqlite) so tests never
share rows. Row locks compile away on SQLite; the lock statements are
asserted against the PostgreSQL dialect in the ledger tests instead.
"""
import asyncio
import os

# Settings are cached on first use, so the environment is set before
# anything from payment_routing is imported.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("PAYSTACK_SECRET_KEY", "sk_test_paystack_secret")
os.environ.setdefault("FLUTTERWAVE_WEBHOOK_HASH", "flw-test-hash")
os.environ.setdefault("RELOADLY_WEBHOOK_SECRET", "reloadly-test-secret")
os.environ.pop("REDIS_URL", None)
os.environ.pop("ADMIN_API_KEY", None)

from collections.abc import AsyncGenerator  # noqa: E402
from typing import Any, List, Optional  # noqa: E402
from unittest.mock import AsyncMock  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool  # noqa: E402

from payment_routing.config import Settings, get_settings  # noqa: E402
from payment_routing.core.idempotency import IdempotencyManager  # noqa: E402
from payment_routing.core.ledger import LedgerService  # noqa: E402
from payment_routing.core.payment_intents import PaymentIntentService  # noqa: E402
from payment_routing.database.connection import get_db  # noqa: E402
from payment_routing.database.models import Account, Base  # noqa: E402
from payment_routing.integrations.webhook_handler import WebhookHandler  # noqa: E402
from payment_routing.providers.base import (  # noqa: E402
    PaymentIntentRequest,
    PaymentProvider,
    PaymentStatus,
    ProviderCapabilities,
    ProviderError,
    ProviderPaymentIntent,
    ProviderRefund,
)
from payment_routing.providers.flutterwave import FLUTTERWAVE_CAPABILITIES  # noqa: E402
from payment_routing.providers.paystack import PAYSTACK_CAPABILITIES  # noqa: E402
from payment_routing.providers.registry import ProviderRegistry  # noqa: E402
from payment_routing.providers.stripe import STRIPE_CAPABILITIES  # noqa: E402
from payment_routing.providers.stubs import FedNowProvider, SEPAProvider  # noqa: E402


class FakeProvider(PaymentProvider):
    """
    In-memory provider with real capability tables.

    ``status`` is what new and polled intents report; set ``error`` or
    ``refund_error`` to make the next calls fail. ``refund_delay`` makes
    refunds answer slowly.
    """

    def __init__(
        self,
        capabilities: ProviderCapabilities,
        status: PaymentStatus = PaymentStatus.REQUIRES_ACTION,
    ):
        self.capabilities = capabilities
        self.status = status
        self.error: Optional[ProviderError] = None
        self.refund_error: Optional[ProviderError] = None
        self.refund_delay = 0.0
        self.requests: List[PaymentIntentRequest] = []
        self.refunds: List[tuple] = []
        self.closed = False

    async def create_payment_intent(
        self, request: PaymentIntentRequest
    ) -> ProviderPaymentIntent:
        if self.error is not None:
            raise self.error
        self.requests.append(request)
        return ProviderPaymentIntent(
            provider=self.name,
            reference=f"{self.name}_ref_{len(self.requests)}",
            status=self.status,
            amount_minor=request.amount_minor,
            currency=request.currency,
            client_secret=f"{self.name}_secret_{len(self.requests)}",
        )

    async def get_payment_status(self, reference: str) -> ProviderPaymentIntent:
        if self.error is not None:
            raise self.error
        return ProviderPaymentIntent(
            provider=self.name,
            reference=reference,
            status=self.status,
            amount_minor=0,
            currency="",
        )

    async def refund_payment(
        self, reference: str, amount_minor: Optional[int] = None
    ) -> ProviderRefund:
        if self.refund_delay:
            await asyncio.sleep(self.refund_delay)
        if self.refund_error is not None:
            raise self.refund_error
        self.refunds.append((reference, amount_minor))
        return ProviderRefund(
            provider=self.name,
            refund_reference=f"re_{len(self.refunds)}",
            payment_reference=reference,
            status="succeeded",
            amount_minor=amount_minor,
        )

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def test_settings() -> Settings:
    """Settings the application was configured with for this run."""
    return get_settings()


@pytest_asyncio.fixture
async def engine(tmp_path: Any) -> AsyncGenerator[Any, None]:
    """Per-test SQLite database with all tables created."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}",
        echo=False,
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine: Any) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def test_db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Database session for a single test."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def fake_providers() -> dict:
    """Fakes named after the real card processors, plus the real bank rails."""
    return {
        "stripe": FakeProvider(STRIPE_CAPABILITIES),
        "paystack": FakeProvider(PAYSTACK_CAPABILITIES),
        "flutterwave": FakeProvider(FLUTTERWAVE_CAPABILITIES),
    }


@pytest.fixture
def provider_registry(fake_providers: dict) -> ProviderRegistry:
    """Registry in the same order as the production default."""
    registry = ProviderRegistry()
    for name in ("stripe", "paystack", "flutterwave"):
        registry.register(fake_providers[name])
    registry.register(SEPAProvider())
    registry.register(FedNowProvider())
    return registry


@pytest.fixture
def ledger_service() -> LedgerService:
    return LedgerService()


@pytest.fixture
def payment_intent_service(
    provider_registry: ProviderRegistry, ledger_service: LedgerService
) -> PaymentIntentService:
    return PaymentIntentService(
        provider_registry,
        idempotency_manager=IdempotencyManager(),
        ledger=ledger_service,
    )


@pytest.fixture
def webhook_handler(payment_intent_service: PaymentIntentService) -> WebhookHandler:
    return WebhookHandler(payment_intent_service)


@pytest.fixture
def mock_redis() -> AsyncMock:
    """Redis client double; every command is an AsyncMock."""
    redis = AsyncMock()
    redis.get.return_value = None
    redis.exists.return_value = 0
    return redis


async def make_account(
    db: AsyncSession,
    user_id: str = "user_123",
    currency: str = "USD",
    balance_minor: int = 0,
) -> Account:
    """Committed account with a starting balance (set directly, no ledger entry)."""
    account = Account(user_id=user_id, currency=currency, account_type="PERSONAL")
    account.balance_minor = balance_minor
    db.add(account)
    await db.commit()
    return account


@pytest.fixture
def account_factory(test_db: AsyncSession) -> Any:
    """Create committed accounts in the test session."""

    async def _create(**kwargs: Any) -> Account:
        return await make_account(test_db, **kwargs)

    return _create


@pytest_asyncio.fixture
async def sample_account(test_db: AsyncSession) -> Account:
    """USD wallet for user_123 with a zero balance."""
    return await make_account(test_db)


@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    provider_registry: ProviderRegistry,
) -> AsyncGenerator[AsyncClient, None]:
    """
    HTTP client bound to the app, using the per-test database and fake providers.

    The lifespan does not run under ASGITransport, so services are wired here.
    """
    from payment_routing.api import routes
    from payment_routing.api.main import app

    routes.configure_services(provider_registry)

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
