"""
Pytest configuration and fixtures.
"""
import os

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("BROADCAST_CONNECTION", "log")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./qr_payments_test.db")

from datetime import timedelta
from decimal import Decimal
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio
from fakeredis import aioredis as fake_aioredis
from httpx import ASGITransport, AsyncClient
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from qr_payments.config import Settings
from qr_payments.core.idempotency import IdempotencyGate
from qr_payments.core.qr_codes import QrCodeTracker
from qr_payments.core.sessions import SessionManager
from qr_payments.core.transactions import TransactionManager
from qr_payments.database import connection
from qr_payments.database.models import Base, PaymentSession, Transaction, utcnow
from qr_payments.integrations.balance import MockBalanceOracle
from qr_payments.integrations.notifications import NotificationDispatcher
from qr_payments.monitoring.health import HealthCheck


class RecordingBoundary:
    """Notification boundary that keeps every delivery in memory."""

    def __init__(self) -> None:
        self.deliveries: List[Tuple[str, List[str], Dict[str, Any]]] = []

    async def deliver(self, event_name: str, channels: List[str], payload: Dict[str, Any]) -> None:
        self.deliveries.append((event_name, channels, payload))

    def events(self, event_name: Optional[str] = None) -> List[Tuple[str, List[str], Dict[str, Any]]]:
        return [d for d in self.deliveries if event_name is None or d[0] == event_name]


class FailingBoundary:
    """Notification boundary whose transport is always down."""

    async def deliver(self, event_name: str, channels: List[str], payload: Dict[str, Any]) -> None:
        raise ConnectionError("broadcast transport unavailable")


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'qr_payments.db'}",
        redis_url="redis://localhost:6379/15",
        app_name="qr-payments-test",
        app_env="test",
        log_level="DEBUG",
        broadcast_connection="log",
        idempotency_wait_seconds=2.0,
    )


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[Any, Any]:
    """Temp-file SQLite engine with the schema created."""
    engine = create_async_engine(test_settings.database_url, poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: Any) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def test_db(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def redis_client() -> AsyncGenerator[Any, Any]:
    """In-memory Redis."""
    client = fake_aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def boundary() -> RecordingBoundary:
    return RecordingBoundary()


@pytest.fixture
def dispatcher(boundary: RecordingBoundary, test_settings: Settings) -> NotificationDispatcher:
    return NotificationDispatcher(boundary=boundary, settings=test_settings)


@pytest.fixture
def idempotency_gate(redis_client: Any, test_settings: Settings) -> IdempotencyGate:
    return IdempotencyGate(redis_client=redis_client, settings=test_settings)


@pytest.fixture
def qr_tracker(redis_client: Any, test_settings: Settings) -> QrCodeTracker:
    return QrCodeTracker(redis_client=redis_client, settings=test_settings)


@pytest.fixture
def session_manager(test_settings: Settings) -> SessionManager:
    return SessionManager(settings=test_settings)


@pytest.fixture
def transaction_manager(
    dispatcher: NotificationDispatcher, idempotency_gate: IdempotencyGate, test_settings: Settings
) -> TransactionManager:
    return TransactionManager(
        dispatcher=dispatcher,
        balance_oracle=MockBalanceOracle(test_settings.mock_balance_limit),
        idempotency_gate=idempotency_gate,
        settings=test_settings,
    )


@pytest.fixture
def services(
    test_settings: Settings,
    redis_client: Any,
    qr_tracker: QrCodeTracker,
    session_manager: SessionManager,
    transaction_manager: TransactionManager,
    dispatcher: NotificationDispatcher,
    idempotency_gate: IdempotencyGate,
) -> Any:
    """Service container wired against the in-memory Redis and recording boundary."""
    from qr_payments.api.dependencies import ServiceContainer

    return ServiceContainer(
        settings=test_settings,
        redis=redis_client,
        qr_codes=qr_tracker,
        sessions=session_manager,
        transactions=transaction_manager,
        dispatcher=dispatcher,
        idempotency=idempotency_gate,
        health=HealthCheck(redis_client=redis_client),
    )


@pytest_asyncio.fixture
async def client(
    monkeypatch: pytest.MonkeyPatch,
    engine: Any,
    session_factory: async_sessionmaker[AsyncSession],
    services: Any,
) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client bound to the test database and services."""
    from qr_payments.api.dependencies import get_services
    from qr_payments.api.main import app

    monkeypatch.setattr(connection, "_engine", engine)
    monkeypatch.setattr(connection, "_async_session_factory", session_factory)
    app.dependency_overrides[get_services] = lambda: services

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


async def expire_session_window(db: AsyncSession, session_id: str) -> None:
    """Move a session's ``expires_at`` into the past."""
    await db.execute(
        update(PaymentSession)
        .where(PaymentSession.session_id == session_id)
        .values(expires_at=utcnow() - timedelta(seconds=1))
    )
    await db.commit()


async def expire_transaction_window(db: AsyncSession, transaction_id: str) -> None:
    """Move a transaction's ``timeout_at`` into the past."""
    await db.execute(
        update(Transaction)
        .where(Transaction.transaction_id == transaction_id)
        .values(timeout_at=utcnow() - timedelta(seconds=1))
    )
    await db.commit()


@pytest.fixture
def make_payment(
    test_db: AsyncSession,
    session_manager: SessionManager,
    transaction_manager: TransactionManager,
) -> Callable[..., Awaitable[Tuple[PaymentSession, Transaction]]]:
    """
    Factory running a session through scan and payment creation.

    ``stage`` is one of pending, confirmed or completed.
    """

    async def _make(
        amount: str = "100.00",
        calculate_fees: bool = True,
        stage: str = "pending",
        customer_id: str = "cust-1",
        merchant_id: str = "merch-1",
    ) -> Tuple[PaymentSession, Transaction]:
        session = await session_manager.create_session(test_db, customer_id)
        await session_manager.update_with_merchant_scan(
            test_db, session.session_id, merchant_id, amount=Decimal(amount)
        )
        transaction = await transaction_manager.process_payment(
            test_db,
            session_id=session.session_id,
            customer_id=customer_id,
            merchant_id=merchant_id,
            amount=Decimal(amount),
            calculate_fees=calculate_fees,
        )
        if stage in ("confirmed", "completed"):
            transaction = await transaction_manager.confirm_transaction(
                test_db, transaction.transaction_id, "pin", {"pin": "1234"}
            )
        if stage == "completed":
            transaction = await transaction_manager.complete_transaction(
                test_db, transaction.transaction_id
            )
        session = await session_manager.require_session(test_db, session.session_id)
        return session, transaction

    return _make
