"""Repository pattern implementations for data access.

This module provides data access abstractions for tracked markets, the
trade ledger, traders, market snapshots and the per-chain indexer state.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from market_indexer.models import (
    ZERO_ADDRESS,
    MarketAddress,
    MarketId,
    MarketState,
    MarketStatus,
    TrackedMarket,
)
from market_indexer.storage.models import (
    IndexerStateModel,
    MarketModel,
    MarketSnapshotModel,
    TradeModel,
    TraderModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


def _insert_for(session: AsyncSession, model: type[Any]) -> Any:
    """Return a dialect-specific INSERT supporting ON CONFLICT clauses."""
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


def _ensure_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def _to_decimal(value: Any) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _has_address(value: str | None) -> bool:
    return bool(value) and value != ZERO_ADDRESS


# =============================================================================
# Markets
# =============================================================================


@dataclass
class MarketDTO:
    """Data transfer object for markets."""

    id: str
    address: str
    question: str
    resolution_time: datetime | None
    oracle_address: str | None
    creator_address: str | None
    yes_token_address: str | None
    no_token_address: str | None
    yes_price: Decimal
    no_price: Decimal
    yes_shares: Decimal
    no_shares: Decimal
    total_collateral: Decimal
    liquidity_parameter: Decimal
    resolved: bool
    yes_wins: bool
    status: str
    resolved_at: datetime | None
    velocity_1m: Decimal
    velocity_5m: Decimal
    velocity_15m: Decimal
    acceleration: Decimal
    stress_score: Decimal
    fragility: Decimal
    heat_score: Decimal
    volume_24h: Decimal
    trades_24h: int
    fee_velocity_24h: Decimal
    analytics_updated_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: MarketModel) -> MarketDTO:
        return cls(
            id=model.id,
            address=model.address,
            question=model.question,
            resolution_time=_ensure_utc(model.resolution_time),
            oracle_address=model.oracle_address,
            creator_address=model.creator_address,
            yes_token_address=model.yes_token_address,
            no_token_address=model.no_token_address,
            yes_price=model.yes_price,
            no_price=model.no_price,
            yes_shares=model.yes_shares,
            no_shares=model.no_shares,
            total_collateral=model.total_collateral,
            liquidity_parameter=model.liquidity_parameter,
            resolved=model.resolved,
            yes_wins=model.yes_wins,
            status=model.status,
            resolved_at=_ensure_utc(model.resolved_at),
            velocity_1m=model.velocity_1m,
            velocity_5m=model.velocity_5m,
            velocity_15m=model.velocity_15m,
            acceleration=model.acceleration,
            stress_score=model.stress_score,
            fragility=model.fragility,
            heat_score=model.heat_score,
            volume_24h=model.volume_24h,
            trades_24h=model.trades_24h,
            fee_velocity_24h=model.fee_velocity_24h,
            analytics_updated_at=_ensure_utc(model.analytics_updated_at),
            updated_at=_ensure_utc(model.updated_at),
        )

    def to_tracked(self) -> TrackedMarket:
        return TrackedMarket(
            market_id=MarketId(self.id),
            address=MarketAddress(self.address),
            resolved=self.resolved,
            has_token_addresses=_has_address(self.yes_token_address) and _has_address(self.no_token_address),
        )


@dataclass
class MarketAnalyticsDTO:
    """Derived analytics block written once per cycle per unresolved market."""

    velocity_1m: Decimal
    velocity_5m: Decimal
    velocity_15m: Decimal
    acceleration: Decimal
    stress_score: Decimal
    fragility: Decimal
    heat_score: Decimal
    volume_24h: Decimal
    trades_24h: int
    fee_velocity_24h: Decimal


class MarketRepository:
    """Repository for tracked markets."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, market_id: str) -> MarketDTO | None:
        result = await self.session.execute(
            select(MarketModel).where(MarketModel.id == market_id).execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return MarketDTO.from_model(model) if model else None

    async def get_by_address(self, address: str) -> MarketDTO | None:
        result = await self.session.execute(
            select(MarketModel)
            .where(MarketModel.address == address.lower())
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return MarketDTO.from_model(model) if model else None

    async def insert(
        self,
        address: str,
        *,
        question: str = "",
        resolution_time: datetime | None = None,
        oracle_address: str | None = None,
        creator_address: str | None = None,
    ) -> MarketDTO:
        """Register a market to be tracked (listing flow)."""
        model = MarketModel(
            address=address.lower(),
            question=question,
            resolution_time=resolution_time,
            oracle_address=oracle_address.lower() if oracle_address else None,
            creator_address=creator_address.lower() if creator_address else None,
        )
        self.session.add(model)
        await self.session.flush()
        await self.session.refresh(model)
        return MarketDTO.from_model(model)

    async def list_tracked(self) -> list[TrackedMarket]:
        """Enumerate every tracked market, resolved or not."""
        result = await self.session.execute(
            select(
                MarketModel.id,
                MarketModel.address,
                MarketModel.resolved,
                MarketModel.yes_token_address,
                MarketModel.no_token_address,
            ).order_by(MarketModel.created_at, MarketModel.id)
        )
        return [
            TrackedMarket(
                market_id=MarketId(row.id),
                address=MarketAddress(row.address.lower()),
                resolved=bool(row.resolved),
                has_token_addresses=_has_address(row.yes_token_address) and _has_address(row.no_token_address),
            )
            for row in result.all()
        ]

    async def list_missing_tokens(self, limit: int) -> list[TrackedMarket]:
        """Markets whose YES or NO token address is still unknown."""
        if limit <= 0:
            return []
        missing = sa.or_(
            MarketModel.yes_token_address.is_(None),
            MarketModel.yes_token_address.in_(["", ZERO_ADDRESS]),
            MarketModel.no_token_address.is_(None),
            MarketModel.no_token_address.in_(["", ZERO_ADDRESS]),
        )
        result = await self.session.execute(
            select(MarketModel).where(missing).order_by(MarketModel.created_at, MarketModel.id).limit(limit)
        )
        return [MarketDTO.from_model(m).to_tracked() for m in result.scalars().all()]

    async def apply_projection(self, market_id: str, state: MarketState, *, now: datetime) -> bool:
        """Write a refreshed on-chain projection.

        A market that is already resolved stays resolved with its original
        outcome, and a PAUSED market keeps its status until it resolves.
        Token addresses are only written when the state carries them.

        Returns:
            True if the market row exists.
        """
        values: dict[str, Any] = {
            "yes_price": state.yes_price,
            "no_price": state.no_price,
            "yes_shares": state.yes_shares,
            "no_shares": state.no_shares,
            "total_collateral": state.total_collateral,
            "liquidity_parameter": state.liquidity_parameter,
            "updated_at": now,
        }
        if state.resolved:
            values["resolved"] = True
            values["yes_wins"] = sa.case(
                (MarketModel.resolved.is_(True), MarketModel.yes_wins),
                else_=state.yes_wins,
            )
            values["status"] = MarketStatus.RESOLVED.value
            values["resolved_at"] = func.coalesce(MarketModel.resolved_at, now)
        else:
            values["status"] = sa.case(
                (MarketModel.resolved.is_(True), MarketStatus.RESOLVED.value),
                (MarketModel.status == MarketStatus.PAUSED.value, MarketStatus.PAUSED.value),
                else_=MarketStatus.ACTIVE.value,
            )
        if _has_address(state.yes_token_address):
            values["yes_token_address"] = state.yes_token_address
        if _has_address(state.no_token_address):
            values["no_token_address"] = state.no_token_address

        result = await self.session.execute(
            update(MarketModel)
            .where(MarketModel.id == market_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return (result.rowcount or 0) > 0

    async def mark_resolved(self, market_id: str, *, yes_wins: bool, at: datetime) -> bool:
        """Apply a resolution event. Only unresolved markets are changed."""
        result = await self.session.execute(
            update(MarketModel)
            .where(MarketModel.id == market_id, MarketModel.resolved.is_(False))
            .values(
                resolved=True,
                yes_wins=yes_wins,
                status=MarketStatus.RESOLVED.value,
                resolved_at=at,
                updated_at=at,
            )
            .execution_options(synchronize_session=False)
        )
        return (result.rowcount or 0) > 0

    async def set_token_addresses(
        self, market_id: str, *, yes_token_address: str, no_token_address: str, at: datetime
    ) -> bool:
        result = await self.session.execute(
            update(MarketModel)
            .where(MarketModel.id == market_id)
            .values(
                yes_token_address=yes_token_address.lower(),
                no_token_address=no_token_address.lower(),
                updated_at=at,
            )
            .execution_options(synchronize_session=False)
        )
        return (result.rowcount or 0) > 0

    async def update_analytics(self, market_id: str, analytics: MarketAnalyticsDTO, *, at: datetime) -> bool:
        """Persist all derived fields together.

        Resolved markets are never touched so their last analytics stay
        frozen.

        Returns:
            True if the row was updated.
        """
        result = await self.session.execute(
            update(MarketModel)
            .where(MarketModel.id == market_id, MarketModel.resolved.is_(False))
            .values(
                velocity_1m=analytics.velocity_1m,
                velocity_5m=analytics.velocity_5m,
                velocity_15m=analytics.velocity_15m,
                acceleration=analytics.acceleration,
                stress_score=analytics.stress_score,
                fragility=analytics.fragility,
                heat_score=analytics.heat_score,
                volume_24h=analytics.volume_24h,
                trades_24h=analytics.trades_24h,
                fee_velocity_24h=analytics.fee_velocity_24h,
                analytics_updated_at=at,
            )
            .execution_options(synchronize_session=False)
        )
        return (result.rowcount or 0) > 0

    async def upsert_from_chain(
        self,
        address: str,
        *,
        question: str,
        resolution_time: datetime | None,
        oracle_address: str | None,
        state: MarketState,
        now: datetime,
    ) -> MarketDTO:
        """Create or refresh a market from a full on-chain read, keyed by address."""
        address = address.lower()
        values: dict[str, Any] = {
            "address": address,
            "question": question,
            "resolution_time": resolution_time,
            "oracle_address": oracle_address.lower() if oracle_address else None,
            # New markets default their creator to the oracle; never overwritten.
            "creator_address": oracle_address.lower() if oracle_address else None,
            "yes_price": state.yes_price,
            "no_price": state.no_price,
            "yes_shares": state.yes_shares,
            "no_shares": state.no_shares,
            "total_collateral": state.total_collateral,
            "liquidity_parameter": state.liquidity_parameter,
            "resolved": state.resolved,
            "yes_wins": state.yes_wins,
            "status": state.status.value,
            "resolved_at": now if state.resolved else None,
            "updated_at": now,
        }
        stmt = _insert_for(self.session, MarketModel).values(**values, created_at=now)
        table = MarketModel.__table__
        already_resolved = table.c.resolved.is_(True)
        stmt = stmt.on_conflict_do_update(
            index_elements=["address"],
            set_={
                "question": stmt.excluded.question,
                "resolution_time": stmt.excluded.resolution_time,
                "oracle_address": stmt.excluded.oracle_address,
                "yes_price": stmt.excluded.yes_price,
                "no_price": stmt.excluded.no_price,
                "yes_shares": stmt.excluded.yes_shares,
                "no_shares": stmt.excluded.no_shares,
                "total_collateral": stmt.excluded.total_collateral,
                "liquidity_parameter": stmt.excluded.liquidity_parameter,
                "resolved": sa.case((already_resolved, sa.true()), else_=stmt.excluded.resolved),
                "yes_wins": sa.case((already_resolved, table.c.yes_wins), else_=stmt.excluded.yes_wins),
                "status": sa.case(
                    (already_resolved, MarketStatus.RESOLVED.value),
                    (stmt.excluded.resolved.is_(True), MarketStatus.RESOLVED.value),
                    (table.c.status == MarketStatus.PAUSED.value, MarketStatus.PAUSED.value),
                    else_=MarketStatus.ACTIVE.value,
                ),
                "resolved_at": func.coalesce(table.c.resolved_at, stmt.excluded.resolved_at),
                "updated_at": now,
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()
        market = await self.get_by_address(address)
        if market is None:
            raise RuntimeError(f"Market upsert did not persist {address}")
        return market


# =============================================================================
# Traders and trades
# =============================================================================


class TraderRepository:
    """Repository for trader identities."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_or_create(self, wallet_address: str) -> int:
        """Resolve a trader id by lowercased wallet address, creating it if new."""
        address = wallet_address.lower()
        stmt = _insert_for(self.session, TraderModel).values(
            wallet_address=address, created_at=datetime.now(UTC)
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["wallet_address"])
        await self.session.execute(stmt)
        result = await self.session.execute(
            select(TraderModel.id).where(TraderModel.wallet_address == address)
        )
        return int(result.scalar_one())


@dataclass
class TradeDTO:
    """Data transfer object for ledger trades."""

    market_id: str
    trader_id: int
    trade_type: str
    outcome: str
    shares: Decimal
    amount: Decimal
    price_at_trade: Decimal | None
    trading_fee: Decimal
    creator_fee: Decimal
    protocol_fee: Decimal
    tx_hash: str
    log_index: int
    block_number: int
    ts: datetime
    id: int | None = None
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: TradeModel) -> TradeDTO:
        return cls(
            id=model.id,
            market_id=model.market_id,
            trader_id=model.trader_id,
            trade_type=model.trade_type,
            outcome=model.outcome,
            shares=model.shares,
            amount=model.amount,
            price_at_trade=model.price_at_trade,
            trading_fee=model.trading_fee,
            creator_fee=model.creator_fee,
            protocol_fee=model.protocol_fee,
            tx_hash=model.tx_hash,
            log_index=model.log_index,
            block_number=model.block_number,
            ts=_ensure_utc(model.ts) or model.ts,
            created_at=_ensure_utc(model.created_at),
        )


@dataclass
class TradeActivityDTO:
    """Trailing-window trade activity aggregated for one market."""

    market_id: str
    trade_count: int
    volume: Decimal
    creator_fees: Decimal
    last_trade_at: datetime | None


class TradeRepository:
    """Repository for the immutable trade ledger."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_idempotent(self, dto: TradeDTO) -> bool:
        """Insert a trade keyed by (tx_hash, outcome).

        Returns:
            True if a new row was written, False if the key already existed.
        """
        values = {
            "market_id": dto.market_id,
            "trader_id": dto.trader_id,
            "trade_type": dto.trade_type,
            "outcome": dto.outcome,
            "shares": dto.shares,
            "amount": dto.amount,
            "price_at_trade": dto.price_at_trade,
            "trading_fee": dto.trading_fee,
            "creator_fee": dto.creator_fee,
            "protocol_fee": dto.protocol_fee,
            "tx_hash": dto.tx_hash.lower(),
            "log_index": dto.log_index,
            "block_number": dto.block_number,
            "ts": dto.ts,
            "created_at": datetime.now(UTC),
        }
        stmt = _insert_for(self.session, TradeModel).values(**values)
        stmt = stmt.on_conflict_do_nothing(index_elements=["tx_hash", "outcome"]).returning(TradeModel.id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def list_by_market(self, market_id: str) -> list[TradeDTO]:
        result = await self.session.execute(
            select(TradeModel)
            .where(TradeModel.market_id == market_id)
            .order_by(TradeModel.block_number, TradeModel.log_index)
        )
        return [TradeDTO.from_model(m) for m in result.scalars().all()]

    async def count(self, market_id: str | None = None) -> int:
        stmt = select(func.count()).select_from(TradeModel)
        if market_id is not None:
            stmt = stmt.where(TradeModel.market_id == market_id)
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def activity_since(self, market_ids: Sequence[str], since: datetime) -> dict[str, TradeActivityDTO]:
        """Aggregate trade count, volume, creator fees and last trade time per market."""
        if not market_ids:
            return {}
        result = await self.session.execute(
            select(
                TradeModel.market_id,
                func.count(TradeModel.id).label("trade_count"),
                func.sum(TradeModel.amount).label("volume"),
                func.sum(TradeModel.creator_fee).label("creator_fees"),
                func.max(TradeModel.ts).label("last_trade_at"),
            )
            .where(TradeModel.market_id.in_(list(market_ids)), TradeModel.ts >= since)
            .group_by(TradeModel.market_id)
        )
        out: dict[str, TradeActivityDTO] = {}
        for row in result.all():
            last = row.last_trade_at
            if isinstance(last, str):
                last = datetime.fromisoformat(last)
            out[row.market_id] = TradeActivityDTO(
                market_id=row.market_id,
                trade_count=int(row.trade_count or 0),
                volume=_to_decimal(row.volume),
                creator_fees=_to_decimal(row.creator_fees),
                last_trade_at=_ensure_utc(last),
            )
        return out


# =============================================================================
# Market snapshots
# =============================================================================


@dataclass
class MarketSnapshotDTO:
    """Data transfer object for market snapshots."""

    market_id: str
    snapshot_time: datetime
    yes_price: Decimal
    no_price: Decimal
    yes_shares: Decimal
    no_shares: Decimal
    total_collateral: Decimal
    liquidity_parameter: Decimal

    @classmethod
    def from_model(cls, model: MarketSnapshotModel) -> MarketSnapshotDTO:
        return cls(
            market_id=model.market_id,
            snapshot_time=_ensure_utc(model.snapshot_time) or model.snapshot_time,
            yes_price=model.yes_price,
            no_price=model.no_price,
            yes_shares=model.yes_shares,
            no_shares=model.no_shares,
            total_collateral=model.total_collateral,
            liquidity_parameter=model.liquidity_parameter,
        )


class MarketSnapshotRepository:
    """Repository for the append-only market snapshot series."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def append_many(self, states: Iterable[tuple[str, MarketState]], *, at: datetime) -> int:
        """Append one snapshot per (market_id, state) pair.

        Returns:
            Number of rows written.
        """
        rows = [
            {
                "market_id": market_id,
                "snapshot_time": at,
                "yes_price": state.yes_price,
                "no_price": state.no_price,
                "yes_shares": state.yes_shares,
                "no_shares": state.no_shares,
                "total_collateral": state.total_collateral,
                "liquidity_parameter": state.liquidity_parameter,
            }
            for market_id, state in states
        ]
        if not rows:
            return 0
        await self.session.execute(sa.insert(MarketSnapshotModel), rows)
        return len(rows)

    async def prune(self, older_than: datetime) -> int:
        """Delete snapshots taken before the cutoff."""
        result = await self.session.execute(
            delete(MarketSnapshotModel).where(MarketSnapshotModel.snapshot_time < older_than)
        )
        return int(result.rowcount or 0)

    async def list_since(
        self, market_ids: Sequence[str], since: datetime
    ) -> dict[str, list[MarketSnapshotDTO]]:
        """Snapshots per market at or after `since`, oldest first."""
        if not market_ids:
            return {}
        result = await self.session.execute(
            select(MarketSnapshotModel)
            .where(
                MarketSnapshotModel.market_id.in_(list(market_ids)),
                MarketSnapshotModel.snapshot_time >= since,
            )
            .order_by(MarketSnapshotModel.market_id, MarketSnapshotModel.snapshot_time)
        )
        out: dict[str, list[MarketSnapshotDTO]] = {}
        for model in result.scalars().all():
            out.setdefault(model.market_id, []).append(MarketSnapshotDTO.from_model(model))
        return out


# =============================================================================
# Indexer state
# =============================================================================


@dataclass
class IndexerStateDTO:
    """Data transfer object for the per-chain sync state."""

    chain_id: int
    last_indexed_block: int
    last_indexed_at: datetime | None
    is_syncing: bool
    sync_started_at: datetime | None
    last_error: str | None
    consecutive_errors: int

    @classmethod
    def from_model(cls, model: IndexerStateModel) -> IndexerStateDTO:
        return cls(
            chain_id=model.chain_id,
            last_indexed_block=model.last_indexed_block,
            last_indexed_at=_ensure_utc(model.last_indexed_at),
            is_syncing=model.is_syncing,
            sync_started_at=_ensure_utc(model.sync_started_at),
            last_error=model.last_error,
            consecutive_errors=model.consecutive_errors,
        )


class IndexerStateRepository:
    """Repository for the indexer sync state and its advisory lock."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, chain_id: int) -> IndexerStateDTO | None:
        result = await self.session.execute(
            select(IndexerStateModel)
            .where(IndexerStateModel.chain_id == chain_id)
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return IndexerStateDTO.from_model(model) if model else None

    async def try_acquire(
        self,
        chain_id: int,
        *,
        now: datetime,
        stale_after: timedelta,
        start_block: int = 0,
    ) -> IndexerStateDTO | None:
        """Take the sync lock with a single conditional update.

        The lock is granted when it is free, or when the holder started more
        than `stale_after` ago. The state row is created on first use with
        `last_indexed_block = start_block - 1`, so the first cycle
        indexes from `start_block`.

        Returns:
            The state after acquisition, or None if another run holds it.
            Its `sync_started_at` is the token `release` and
            `record_failure` require.
        """
        seed = _insert_for(self.session, IndexerStateModel).values(
            chain_id=chain_id,
            last_indexed_block=start_block - 1,
            is_syncing=False,
            consecutive_errors=0,
            updated_at=now,
        )
        await self.session.execute(seed.on_conflict_do_nothing(index_elements=["chain_id"]))

        cutoff = now - stale_after
        result = await self.session.execute(
            update(IndexerStateModel)
            .where(
                IndexerStateModel.chain_id == chain_id,
                sa.or_(
                    IndexerStateModel.is_syncing.is_(False),
                    IndexerStateModel.sync_started_at.is_(None),
                    IndexerStateModel.sync_started_at < cutoff,
                ),
            )
            .values(is_syncing=True, sync_started_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if (result.rowcount or 0) != 1:
            return None
        return await self.get(chain_id)

    async def release(
        self,
        chain_id: int,
        *,
        started_at: datetime,
        new_block: int,
        errors: Sequence[str],
        now: datetime,
    ) -> bool:
        """Free the lock and record the cycle's outcome.

        Only the run whose `sync_started_at` is still `started_at` may
        release. The stored block height only ever moves forward.

        Returns:
            False if the lock was taken over by another run.
        """
        column = IndexerStateModel.last_indexed_block
        result = await self.session.execute(
            update(IndexerStateModel)
            .where(
                IndexerStateModel.chain_id == chain_id,
                IndexerStateModel.is_syncing.is_(True),
                IndexerStateModel.sync_started_at == started_at,
            )
            .values(
                is_syncing=False,
                sync_started_at=None,
                last_indexed_block=sa.case((column < new_block, new_block), else_=column),
                last_indexed_at=now,
                last_error="; ".join(errors) if errors else None,
                consecutive_errors=(IndexerStateModel.consecutive_errors + 1) if errors else 0,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if (result.rowcount or 0) != 1:
            logger.warning(
                "Sync lock for chain %d was lost before release (started %s); leaving state untouched",
                chain_id,
                started_at.isoformat(),
            )
            return False
        return True

    async def record_failure(
        self,
        chain_id: int,
        *,
        started_at: datetime,
        error: str,
        now: datetime,
    ) -> bool:
        """Free the lock after a hard failure without advancing the block height.

        Returns:
            False if the lock was taken over by another run.
        """
        result = await self.session.execute(
            update(IndexerStateModel)
            .where(
                IndexerStateModel.chain_id == chain_id,
                IndexerStateModel.is_syncing.is_(True),
                IndexerStateModel.sync_started_at == started_at,
            )
            .values(
                is_syncing=False,
                sync_started_at=None,
                last_error=error,
                consecutive_errors=IndexerStateModel.consecutive_errors + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if (result.rowcount or 0) != 1:
            logger.warning(
                "Sync lock for chain %d was lost before recording failure: %s", chain_id, error
            )
            return False
        return True
