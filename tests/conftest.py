"""
Pytest Configuration and Centralized Fixtures.

Provides reusable fixtures for testing:
- A real aiosqlite database per test (atomic statements and unique
  constraints are exercised for real)
- Session factories for concurrent-session tests
- A controllable clock
- An API test client with database overrides
"""

import os
from collections.abc import AsyncGenerator, AsyncIterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event, func, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

# Set required environment variables BEFORE importing metering modules
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("LOG_FORMAT", "console")

from metering.db.models import Base, LedgerEntry
from metering.models.api import PaymentIntentKind
from metering.models.domain import CreditIntent, PaymentIntentData
from metering.services.payment_intents import PaymentIntentService
from metering.services.rate_limiter import RateLimiter
from metering.services.wallet import WalletLedger

WORKSPACE_ID = "ws_123"
USER_ID = "user_1"


# ============================================================================
# Clock
# ============================================================================


class FixedClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock() -> FixedClock:
    """Clock pinned to 2026-03-15 12:00 UTC."""
    return FixedClock(datetime(2026, 3, 15, 12, 0, tzinfo=UTC))


# ============================================================================
# Database Fixtures
# ============================================================================


def make_sqlite_engine(path: Path) -> AsyncEngine:
    """
    File-backed aiosqlite engine whose transactions start with BEGIN IMMEDIATE.

    Concurrent sessions then queue on the write lock (busy timeout) instead of
    failing with lock upgrade errors.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{path}")

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


@pytest.fixture
async def engine(tmp_path: Path) -> AsyncIterator[AsyncEngine]:
    """Fresh database with the full schema."""
    engine = make_sqlite_engine(tmp_path / "metering.db")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test database."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """One session on the test database."""
    async with session_factory() as session:
        yield session


# ============================================================================
# Helpers
# ============================================================================


async def fund_wallet(
    session: AsyncSession, amount: int, workspace_id: str = WORKSPACE_ID, clock: Any = None
) -> int:
    """Credit a wallet and return the new balance."""
    change = await WalletLedger(session, clock=clock).credit(
        CreditIntent(workspace_id=workspace_id, amount=amount, reason="test_funding")
    )
    return change.new_balance


async def ledger_sum(session: AsyncSession, workspace_id: str = WORKSPACE_ID) -> int:
    """Sum of ledger deltas for a workspace."""
    stmt = select(func.coalesce(func.sum(LedgerEntry.delta), 0)).where(
        LedgerEntry.workspace_id == workspace_id
    )
    return int((await session.execute(stmt)).scalar_one())


async def ledger_count(session: AsyncSession, workspace_id: str = WORKSPACE_ID) -> int:
    """Number of ledger entries for a workspace."""
    stmt = select(func.count()).select_from(LedgerEntry).where(
        LedgerEntry.workspace_id == workspace_id
    )
    return int((await session.execute(stmt)).scalar_one())


async def create_topup_intent(
    session: AsyncSession,
    tokens: Any = 50_000,
    amount: int = 50_000,
    workspace_id: str = WORKSPACE_ID,
    provider: str = "midtrans",
    provider_ref: str | None = None,
    clock: Any = None,
) -> PaymentIntentData:
    """Create a pending top-up intent with meta.tokens."""
    meta = {} if tokens is None else {"tokens": tokens}
    return await PaymentIntentService(session, clock=clock).create_intent(
        workspace_id=workspace_id,
        kind=PaymentIntentKind.TOPUP,
        amount=amount,
        provider=provider,
        provider_ref=provider_ref,
        meta=meta,
    )


# ============================================================================
# API Client
# ============================================================================


@pytest.fixture
def workspace_headers() -> dict[str, str]:
    """Gateway identity headers."""
    return {"X-Workspace-Id": WORKSPACE_ID, "X-User-Id": USER_ID}


@pytest.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncClient]:
    """API client with both database dependencies on the test database."""
    from metering.api.routes import get_rate_limiter
    from metering.db.session import get_read_db, get_write_db
    from metering.main import app

    async def override_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    limiter = RateLimiter(window_ms=60_000, max_requests=1_000)

    app.dependency_overrides[get_write_db] = override_db
    app.dependency_overrides[get_read_db] = override_db
    app.dependency_overrides[get_rate_limiter] = lambda: limiter

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
