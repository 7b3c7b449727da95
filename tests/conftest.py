"""Pytest configuration and fixtures."""

from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from market_indexer.models import MarketState
from market_indexer.storage.database import SessionScope, make_session_scope
from market_indexer.storage.models import Base
from market_indexer.storage.repos import MarketDTO, MarketRepository

MARKET_A = "0x1111111111111111111111111111111111111111"


@pytest.fixture
def sample_market_address() -> str:
    """Sample market contract address for testing."""
    return MARKET_A


@pytest.fixture
def now() -> datetime:
    return datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


@pytest.fixture
async def async_engine() -> AsyncIterator[AsyncEngine]:
    """Create an async SQLite engine shared by every session in a test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=async_engine, expire_on_commit=False)


@pytest.fixture
def session_scope(session_factory: async_sessionmaker[AsyncSession]) -> SessionScope:
    """Unit-of-work scope backed by the in-memory database."""
    return make_session_scope(session_factory)


@pytest.fixture
async def async_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    """Create an async session for testing."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def seed_market(session_scope: SessionScope) -> Callable[..., Awaitable[MarketDTO]]:
    """Register a tracked market the way the listing flow does."""

    async def _seed(address: str, **kwargs: Any) -> MarketDTO:
        async with session_scope() as session:
            return await MarketRepository(session).insert(address, **kwargs)

    return _seed


def _make_state(
    *,
    yes_price: str = "0.6",
    no_price: str = "0.4",
    liquidity: str = "5",
    resolved: bool = False,
    yes_wins: bool = False,
    yes_token: str | None = None,
    no_token: str | None = None,
) -> MarketState:
    return MarketState(
        yes_price=Decimal(yes_price),
        no_price=Decimal(no_price),
        yes_shares=Decimal("100"),
        no_shares=Decimal("80"),
        total_collateral=Decimal("250"),
        liquidity_parameter=Decimal(liquidity),
        resolved=resolved,
        yes_wins=yes_wins,
        yes_token_address=yes_token,
        no_token_address=no_token,
    )


@pytest.fixture
def make_state() -> Callable[..., MarketState]:
    """Factory for on-chain market projections."""
    return _make_state
