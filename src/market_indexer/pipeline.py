"""Indexer cycle orchestrator.

This module provides the IndexerPipeline class that runs one scheduled
sync cycle: lock, log ingestion, ledger writes, market refresh, token
backfill, snapshots, analytics and lock release.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

from market_indexer.analytics.engine import AnalyticsEngine
from market_indexer.chain.client import ChainClient
from market_indexer.chain.market_state import MarketStateRefresher
from market_indexer.ingestor.decoder import LogDecodeError, decode_log
from market_indexer.ingestor.ledger import TradeLedgerWriter
from market_indexer.ingestor.log_source import LogSourceClient
from market_indexer.ingestor.models import DecodedEvent, DecodedTrade, RawLog
from market_indexer.models import (
    CycleError,
    MarketId,
    MarketRegistry,
    MarketState,
    PhaseOutcome,
    TrackedMarket,
)
from market_indexer.storage.database import SessionScope
from market_indexer.storage.repos import (
    IndexerStateDTO,
    IndexerStateRepository,
    MarketRepository,
    MarketSnapshotRepository,
)

if TYPE_CHECKING:
    from redis.asyncio import Redis

    from market_indexer.config import Settings

logger = logging.getLogger(__name__)


class CycleStatus(str, Enum):
    """How a cycle ended."""

    SKIPPED_LOCKED = "skipped_locked"
    UP_TO_DATE = "up_to_date"
    COMPLETED = "completed"


class IndexerCycleError(Exception):
    """Raised when a cycle hits a hard failure and is aborted."""

    def __init__(self, message: str, *, stage: str, from_block: int | None = None) -> None:
        super().__init__(message)
        self.stage = stage
        self.from_block = from_block


@dataclass
class CycleResult:
    """Report of one indexer cycle."""

    status: CycleStatus
    current_block: int | None = None
    from_block: int | None = None
    to_block: int | None = None
    events_processed: int = 0
    trades_inserted: int = 0
    markets_resolved: int = 0
    markets_price_updated: int = 0
    markets_tracked: int = 0
    tokens_backfilled: int = 0
    snapshots_written: int = 0
    analytics_updated: int = 0
    errors: list[CycleError] = field(default_factory=list)

    @property
    def blocks_indexed(self) -> int:
        if self.from_block is None or self.to_block is None:
            return 0
        return self.to_block - self.from_block + 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "from_block": self.from_block,
            "to_block": self.to_block,
            "blocks_indexed": self.blocks_indexed,
            "events_processed": self.events_processed,
            "trades_inserted": self.trades_inserted,
            "markets_resolved": self.markets_resolved,
            "markets_price_updated": self.markets_price_updated,
            "markets_tracked": self.markets_tracked,
            "tokens_backfilled": self.tokens_backfilled,
            "errors": [str(e) for e in self.errors] or None,
        }


@dataclass(frozen=True)
class PipelineConfig:
    """Tunables for one indexer process."""

    chain_id: int
    start_block: int = 0
    lock_stale_after: timedelta = timedelta(minutes=5)
    backfill_batch_size: int = 5
    snapshot_retention: timedelta = timedelta(hours=24)
    refresh_concurrency: int = 8

    @classmethod
    def from_settings(cls, settings: Settings) -> PipelineConfig:
        return cls(
            chain_id=settings.chain.chain_id,
            start_block=settings.indexer.start_block,
            lock_stale_after=timedelta(seconds=settings.indexer.lock_stale_seconds),
            backfill_batch_size=settings.indexer.backfill_batch_size,
            snapshot_retention=timedelta(hours=settings.indexer.snapshot_retention_hours),
            refresh_concurrency=settings.indexer.refresh_concurrency,
        )


def _utcnow() -> datetime:
    return datetime.now(UTC)


class IndexerPipeline:
    """Runs indexer cycles against one chain.

    Cycles are serialized across processes by the advisory lock in the
    indexer_state row; within a cycle, chain reads run concurrently and
    database writes run one short unit of work at a time.

    Example:
        ```python
        pipeline = IndexerPipeline.from_settings(settings, db.session_scope)
        result = await pipeline.run_cycle()
        print(result.to_dict())
        await pipeline.aclose()
        ```
    """

    def __init__(
        self,
        *,
        config: PipelineConfig,
        session_scope: SessionScope,
        log_source: LogSourceClient,
        refresher: MarketStateRefresher,
        ledger: TradeLedgerWriter | None = None,
        analytics: AnalyticsEngine | None = None,
        clock: Callable[[], datetime] = _utcnow,
        chain_client: ChainClient | None = None,
    ) -> None:
        self._config = config
        self._session_scope = session_scope
        self._log_source = log_source
        self._refresher = refresher
        self._ledger = ledger or TradeLedgerWriter(session_scope)
        self._analytics = analytics or AnalyticsEngine(session_scope)
        self._clock = clock
        self._chain_client = chain_client

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_scope: SessionScope,
        *,
        redis: Redis | None = None,
    ) -> IndexerPipeline:
        """Wire the pipeline and its remote clients from application settings."""
        chain_client = ChainClient(
            settings.chain.rpc_url,
            chain_id=settings.chain.chain_id,
            fallback_rpc_url=settings.chain.fallback_rpc_url,
            redis=redis,
        )
        token = settings.log_source.bearer_token
        log_source = LogSourceClient(
            settings.log_source.url,
            bearer_token=token.get_secret_value() if token else None,
            timeout_seconds=settings.log_source.timeout_seconds,
        )
        return cls(
            config=PipelineConfig.from_settings(settings),
            session_scope=session_scope,
            log_source=log_source,
            refresher=MarketStateRefresher(chain_client),
            chain_client=chain_client,
        )

    @property
    def refresher(self) -> MarketStateRefresher:
        return self._refresher

    async def health_check(self) -> bool:
        """Check that the chain RPC answers `eth_blockNumber`."""
        return await self._refresher.client.health_check()

    async def aclose(self) -> None:
        await self._log_source.aclose()
        if self._chain_client is not None:
            await self._chain_client.aclose()

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> CycleResult:
        """Run one sync cycle.

        Returns:
            The cycle report. Per-item failures are listed in `errors`.

        Raises:
            IndexerCycleError: On a hard failure (sync state, chain height,
                market listing, log query or lock release).
        """
        now = self._clock()
        state = await self._acquire(now)
        if state is None:
            logger.info("Sync already in progress for chain %d; skipping cycle", self._config.chain_id)
            return CycleResult(status=CycleStatus.SKIPPED_LOCKED)

        lock = state.sync_started_at or now
        from_block = state.last_indexed_block + 1
        try:
            height = await self._log_source.get_height()
        except Exception as e:
            raise await self._fail("height", e, lock=lock, now=now, from_block=from_block) from e

        if from_block > height:
            await self._release(lock, state.last_indexed_block, [], now=now)
            logger.info("Already synced at block %d", state.last_indexed_block)
            return CycleResult(status=CycleStatus.UP_TO_DATE, current_block=height)

        try:
            async with self._session_scope() as session:
                tracked = await MarketRepository(session).list_tracked()
        except Exception as e:
            raise await self._fail("markets", e, lock=lock, now=now, from_block=from_block) from e
        registry = MarketRegistry(tracked)

        logger.info(
            "Indexing blocks %d-%d for %d tracked market(s)", from_block, height, len(registry)
        )
        result = CycleResult(
            status=CycleStatus.COMPLETED,
            current_block=height,
            from_block=from_block,
            to_block=height,
            markets_tracked=len(registry),
        )

        try:
            raw_logs = await self._log_source.query_logs(from_block, height, registry.addresses)
        except Exception as e:
            raise await self._fail("logs", e, lock=lock, now=now, from_block=from_block) from e

        events, decode_outcome = self._decode(raw_logs)
        ledger_outcome = await self._ledger.apply(events, registry, observed_at=now)
        result.events_processed = ledger_outcome.processed
        result.trades_inserted = ledger_outcome.trades_inserted
        result.markets_resolved = ledger_outcome.markets_resolved

        touched = {
            market.market_id
            for event in events
            if (market := registry.lookup(event.market_address)) is not None
        }
        states, refresh_outcome = await self._refresh(registry, touched, ledger_outcome.resolved, now=now)
        result.markets_price_updated = refresh_outcome.processed

        backfill_outcome = await self._backfill(now=now)
        result.tokens_backfilled = backfill_outcome.processed

        snapshot_outcome = await self._write_snapshots(states, now=now)
        result.snapshots_written = snapshot_outcome.processed

        analytics_outcome = await self._analytics.run(states, now=now)
        result.analytics_updated = analytics_outcome.processed

        result.errors = self._merge_errors(
            decode_outcome,
            ledger_outcome,
            refresh_outcome,
            backfill_outcome,
            snapshot_outcome,
            analytics_outcome,
        )
        await self._release(lock, height, [str(e) for e in result.errors], now=now)

        logger.info(
            "Cycle complete: blocks %d-%d, %d event(s), %d new trade(s), %d refreshed, %d error(s)",
            from_block,
            height,
            result.events_processed,
            result.trades_inserted,
            result.markets_price_updated,
            len(result.errors),
        )
        return result

    # ------------------------------------------------------------------
    # Lock handling
    # ------------------------------------------------------------------

    async def _acquire(self, now: datetime) -> IndexerStateDTO | None:
        try:
            async with self._session_scope() as session:
                return await IndexerStateRepository(session).try_acquire(
                    self._config.chain_id,
                    now=now,
                    stale_after=self._config.lock_stale_after,
                    start_block=self._config.start_block,
                )
        except Exception as e:
            logger.error("Failed to acquire sync lock for chain %d: %s", self._config.chain_id, e)
            raise IndexerCycleError(f"Failed to acquire sync lock: {e}", stage="lock") from e

    async def _release(self, lock: datetime, new_block: int, errors: list[str], *, now: datetime) -> None:
        try:
            async with self._session_scope() as session:
                await IndexerStateRepository(session).release(
                    self._config.chain_id, started_at=lock, new_block=new_block, errors=errors, now=now
                )
        except Exception as e:
            raise await self._fail("release", e, lock=lock, now=now) from e

    async def _fail(
        self,
        stage: str,
        error: BaseException,
        *,
        lock: datetime,
        now: datetime,
        from_block: int | None = None,
    ) -> IndexerCycleError:
        """Record a hard failure and free the lock; returns the error to raise."""
        message = f"{stage} failed: {error}"
        logger.error("Indexer cycle aborted: %s", message)
        try:
            async with self._session_scope() as session:
                await IndexerStateRepository(session).record_failure(
                    self._config.chain_id, started_at=lock, error=message, now=now
                )
        except Exception as e:
            logger.error("Failed to record cycle failure for chain %d: %s", self._config.chain_id, e)
        return IndexerCycleError(message, stage=stage, from_block=from_block)

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    @staticmethod
    def _decode(raw_logs: Iterable[RawLog]) -> tuple[list[DecodedEvent], PhaseOutcome]:
        outcome = PhaseOutcome()
        events: list[DecodedEvent] = []
        for raw in raw_logs:
            try:
                event = decode_log(raw)
            except LogDecodeError as e:
                logger.warning("Failed to decode log %s:%d: %s", raw.transaction_hash, raw.log_index, e)
                outcome.record("decode", raw.transaction_hash, e)
                continue
            if event is not None:
                events.append(event)
                outcome.processed += 1
        # Apply in chain order regardless of page ordering.
        events.sort(
            key=lambda ev: (ev.block_number, ev.log_index if isinstance(ev, DecodedTrade) else -1)
        )
        return events, outcome

    async def _read_states(
        self, markets: list[TrackedMarket], outcome: PhaseOutcome
    ) -> dict[MarketId, MarketState]:
        semaphore = asyncio.Semaphore(self._config.refresh_concurrency)

        async def read_one(market: TrackedMarket) -> MarketState:
            async with semaphore:
                return await self._refresher.read(market)

        results = await asyncio.gather(*(read_one(m) for m in markets), return_exceptions=True)
        states: dict[MarketId, MarketState] = {}
        for market, res in zip(markets, results, strict=True):
            if isinstance(res, BaseException):
                if not isinstance(res, Exception):
                    raise res
                logger.warning("Failed to read market %s: %s", market.address, res)
                outcome.record("refresh", market.address, res)
                continue
            states[market.market_id] = res
        return states

    async def _refresh(
        self,
        registry: MarketRegistry,
        touched: set[MarketId],
        resolved_this_cycle: dict[MarketId, bool],
        *,
        now: datetime,
    ) -> tuple[dict[MarketId, MarketState], PhaseOutcome]:
        """Refresh every tracked market, touched markets first."""
        outcome = PhaseOutcome()
        markets = list(registry.values())
        first = [m for m in markets if m.market_id in touched]
        rest = [m for m in markets if m.market_id not in touched]

        states: dict[MarketId, MarketState] = {}
        for group in (first, rest):
            if group:
                states.update(await self._read_states(group, outcome))

        for market_id, state in list(states.items()):
            market = registry.by_id(market_id)
            if market is None:
                continue
            if market_id in resolved_this_cycle and not state.resolved:
                # The node may lag behind the resolution log we just applied.
                state = dataclasses.replace(state, resolved=True, yes_wins=resolved_this_cycle[market_id])
            elif market.resolved and not state.resolved:
                state = dataclasses.replace(state, resolved=True)
            states[market_id] = state
            try:
                updated = await self._refresher.persist(self._session_scope, market, state, now=now)
            except Exception as e:
                logger.warning("Failed to persist projection for %s: %s", market.address, e)
                outcome.record("refresh", market.address, e)
                continue
            if updated:
                outcome.processed += 1
        return states, outcome

    async def _backfill(self, *, now: datetime) -> PhaseOutcome:
        """Fill token addresses for a bounded batch of markets still missing them."""
        outcome = PhaseOutcome()
        if self._config.backfill_batch_size <= 0:
            return outcome
        try:
            async with self._session_scope() as session:
                missing = await MarketRepository(session).list_missing_tokens(self._config.backfill_batch_size)
        except Exception as e:
            logger.warning("Failed to list markets missing token addresses: %s", e)
            outcome.record("backfill", "markets", e)
            return outcome

        for market in missing:
            try:
                yes_token, no_token = await self._refresher.fetch_token_addresses(market.address)
                if yes_token is None or no_token is None:
                    logger.debug("Token addresses not yet available for %s", market.address)
                    continue
                async with self._session_scope() as session:
                    await MarketRepository(session).set_token_addresses(
                        market.market_id, yes_token_address=yes_token, no_token_address=no_token, at=now
                    )
            except Exception as e:
                logger.warning("Failed to backfill token addresses for %s: %s", market.address, e)
                outcome.record("backfill", market.address, e)
                continue
            outcome.processed += 1
        return outcome

    async def _write_snapshots(self, states: dict[MarketId, MarketState], *, now: datetime) -> PhaseOutcome:
        outcome = PhaseOutcome()
        try:
            async with self._session_scope() as session:
                repo = MarketSnapshotRepository(session)
                pruned = await repo.prune(now - self._config.snapshot_retention)
                outcome.processed = await repo.append_many(
                    ((mid, s) for mid, s in states.items() if not s.resolved), at=now
                )
        except Exception as e:
            logger.warning("Failed to write market snapshots: %s", e)
            outcome.record("snapshot", "markets", e)
            return outcome
        if pruned:
            logger.debug("Pruned %d expired snapshot(s)", pruned)
        return outcome

    @staticmethod
    def _merge_errors(*outcomes: PhaseOutcome) -> list[CycleError]:
        errors: list[CycleError] = []
        for outcome in outcomes:
            errors.extend(outcome.errors)
        return errors
