"""SQLAlchemy models for persistent storage.

This module defines the database schema for tracked markets, the trade
ledger, traders, per-cycle market snapshots and the indexer sync state.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


def _new_id() -> str:
    return str(uuid.uuid4())


class MarketModel(Base):
    """Tracked market: on-chain projection plus derived analytics."""

    __tablename__ = "markets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    address: Mapped[str] = mapped_column(String(42), nullable=False, unique=True)
    question: Mapped[str] = mapped_column(Text, nullable=False, default="")
    resolution_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    oracle_address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    creator_address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    yes_token_address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    no_token_address: Mapped[str | None] = mapped_column(String(42), nullable=True)

    # Cached on-chain projection
    yes_price: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False, default=Decimal("0.5"))
    no_price: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False, default=Decimal("0.5"))
    yes_shares: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False, default=Decimal("0"))
    no_shares: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False, default=Decimal("0"))
    total_collateral: Mapped[Decimal] = mapped_column(Numeric(38, 6), nullable=False, default=Decimal("0"))
    liquidity_parameter: Mapped[Decimal] = mapped_column(
        Numeric(38, 18), nullable=False, default=Decimal("0")
    )
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    yes_wins: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="ACTIVE")  # ACTIVE/RESOLVED/PAUSED
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Analytics block
    velocity_1m: Mapped[Decimal] = mapped_column(Numeric(20, 10), nullable=False, default=Decimal("0"))
    velocity_5m: Mapped[Decimal] = mapped_column(Numeric(20, 10), nullable=False, default=Decimal("0"))
    velocity_15m: Mapped[Decimal] = mapped_column(Numeric(20, 10), nullable=False, default=Decimal("0"))
    acceleration: Mapped[Decimal] = mapped_column(Numeric(20, 10), nullable=False, default=Decimal("0"))
    stress_score: Mapped[Decimal] = mapped_column(Numeric(10, 8), nullable=False, default=Decimal("0"))
    fragility: Mapped[Decimal] = mapped_column(Numeric(10, 8), nullable=False, default=Decimal("1"))
    heat_score: Mapped[Decimal] = mapped_column(Numeric(6, 2), nullable=False, default=Decimal("0"))
    volume_24h: Mapped[Decimal] = mapped_column(Numeric(38, 6), nullable=False, default=Decimal("0"))
    trades_24h: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    fee_velocity_24h: Mapped[Decimal] = mapped_column(Numeric(38, 12), nullable=False, default=Decimal("0"))
    analytics_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    __table_args__ = (
        Index("idx_markets_status", "status"),
        Index("idx_markets_heat_score", "heat_score"),
    )


class TraderModel(Base):
    """Wallet observed trading on a tracked market."""

    __tablename__ = "traders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    wallet_address: Mapped[str] = mapped_column(String(42), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


class TradeModel(Base):
    """Immutable trade ledger row decoded from on-chain events."""

    __tablename__ = "trades"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    market_id: Mapped[str] = mapped_column(String(36), nullable=False)
    trader_id: Mapped[int] = mapped_column(Integer, nullable=False)

    trade_type: Mapped[str] = mapped_column(String(8), nullable=False)  # BUY/SELL/REDEEM
    outcome: Mapped[str] = mapped_column(String(3), nullable=False)  # YES/NO

    shares: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(38, 6), nullable=False)
    price_at_trade: Mapped[Decimal | None] = mapped_column(Numeric(38, 18), nullable=True)

    trading_fee: Mapped[Decimal] = mapped_column(Numeric(38, 12), nullable=False, default=Decimal("0"))
    creator_fee: Mapped[Decimal] = mapped_column(Numeric(38, 12), nullable=False, default=Decimal("0"))
    protocol_fee: Mapped[Decimal] = mapped_column(Numeric(38, 12), nullable=False, default=Decimal("0"))

    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    ts: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        UniqueConstraint("tx_hash", "outcome", name="uq_trades_tx_hash_outcome"),
        Index("idx_trades_market_ts", "market_id", "ts"),
        Index("idx_trades_trader_ts", "trader_id", "ts"),
    )


class MarketSnapshotModel(Base):
    """Per-cycle price/liquidity capture, retained for a trailing window."""

    __tablename__ = "market_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    market_id: Mapped[str] = mapped_column(String(36), nullable=False)
    snapshot_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    yes_price: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    no_price: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    yes_shares: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    no_shares: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    total_collateral: Mapped[Decimal] = mapped_column(Numeric(38, 6), nullable=False)
    liquidity_parameter: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)

    __table_args__ = (
        Index("idx_market_snapshots_market_time", "market_id", "snapshot_time"),
        Index("idx_market_snapshots_time", "snapshot_time"),
    )


class IndexerStateModel(Base):
    """Sync progress and advisory lock, one row per chain."""

    __tablename__ = "indexer_state"

    chain_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    last_indexed_block: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_indexed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    is_syncing: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sync_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    consecutive_errors: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
