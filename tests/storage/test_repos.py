"""Tests for storage repositories."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import update

from market_indexer.models import ZERO_ADDRESS
from market_indexer.storage.models import MarketModel
from market_indexer.storage.repos import (
    IndexerStateRepository,
    MarketAnalyticsDTO,
    MarketRepository,
    MarketSnapshotRepository,
    TradeDTO,
    TradeRepository,
    TraderRepository,
)

YES_TOKEN = "0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"
NO_TOKEN = "0xbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb"
ORACLE = "0xcccccccccccccccccccccccccccccccccccccccc"
CHAIN_ID = 10143


def _analytics(heat: str = "42.50") -> MarketAnalyticsDTO:
    return MarketAnalyticsDTO(
        velocity_1m=Decimal("0.05"),
        velocity_5m=Decimal("0.1"),
        velocity_15m=Decimal("0.12"),
        acceleration=Decimal("0.03"),
        stress_score=Decimal("0.5"),
        fragility=Decimal("0.5"),
        heat_score=Decimal(heat),
        volume_24h=Decimal("150"),
        trades_24h=3,
        fee_velocity_24h=Decimal("0.75"),
    )


def _trade(market_id: str, trader_id: int, *, tx: str = "0x" + "a" * 64, outcome: str = "YES") -> TradeDTO:
    return TradeDTO(
        market_id=market_id,
        trader_id=trader_id,
        trade_type="BUY",
        outcome=outcome,
        shares=Decimal("10"),
        amount=Decimal("5"),
        price_at_trade=Decimal("0.5"),
        trading_fee=Decimal("0.025"),
        creator_fee=Decimal("0.025"),
        protocol_fee=Decimal("0"),
        tx_hash=tx,
        log_index=0,
        block_number=100,
        ts=datetime.now(UTC),
    )


# ============================================================================
# MarketRepository Tests
# ============================================================================


class TestMarketRepository:
    """Tests for MarketRepository."""

    @pytest.mark.asyncio
    async def test_list_tracked_lowercases_and_flags_missing_tokens(self, session_scope, seed_market) -> None:
        await seed_market("0x1111111111111111111111111111111111111111")
        await seed_market("0xABCDEFABCDEFABCDEFABCDEFABCDEFABCDEFABCD")

        async with session_scope() as session:
            tracked = await MarketRepository(session).list_tracked()

        assert {m.address for m in tracked} == {
            "0x1111111111111111111111111111111111111111",
            "0xabcdefabcdefabcdefabcdefabcdefabcdefabcd",
        }
        assert all(not m.has_token_addresses for m in tracked)
        assert all(not m.resolved for m in tracked)

    @pytest.mark.asyncio
    async def test_apply_projection_writes_state_and_backfills_tokens(
        self, session_scope, seed_market, make_state, now
    ) -> None:
        market = await seed_market("0x1111111111111111111111111111111111111111")
        state = make_state(yes_price="0.625", no_price="0.375", yes_token=YES_TOKEN, no_token=NO_TOKEN)

        async with session_scope() as session:
            assert await MarketRepository(session).apply_projection(market.id, state, now=now)

        async with session_scope() as session:
            repo = MarketRepository(session)
            stored = await repo.get(market.id)
            tracked = await repo.list_tracked()

        assert stored is not None
        assert stored.yes_price == Decimal("0.625")
        assert stored.no_price == Decimal("0.375")
        assert stored.total_collateral == Decimal("250")
        assert stored.status == "ACTIVE"
        assert stored.yes_token_address == YES_TOKEN
        assert tracked[0].has_token_addresses

    @pytest.mark.asyncio
    async def test_apply_projection_without_tokens_keeps_existing_tokens(
        self, session_scope, seed_market, make_state, now
    ) -> None:
        market = await seed_market("0x1111111111111111111111111111111111111111")
        async with session_scope() as session:
            await MarketRepository(session).set_token_addresses(
                market.id, yes_token_address=YES_TOKEN, no_token_address=NO_TOKEN, at=now
            )
        async with session_scope() as session:
            await MarketRepository(session).apply_projection(market.id, make_state(), now=now)

        async with session_scope() as session:
            stored = await MarketRepository(session).get(market.id)
        assert stored is not None
        assert stored.yes_token_address == YES_TOKEN
        assert stored.no_token_address == NO_TOKEN

    @pytest.mark.asyncio
    async def test_resolved_market_never_reverts(self, session_scope, seed_market, make_state, now) -> None:
        market = await seed_market("0x1111111111111111111111111111111111111111")
        async with session_scope() as session:
            assert await MarketRepository(session).mark_resolved(market.id, yes_wins=True, at=now)

        # Stale node view: not resolved, NO winning.
        async with session_scope() as session:
            await MarketRepository(session).apply_projection(
                market.id, make_state(resolved=False, yes_wins=False), now=now + timedelta(minutes=1)
            )

        async with session_scope() as session:
            stored = await MarketRepository(session).get(market.id)
        assert stored is not None
        assert stored.resolved is True
        assert stored.yes_wins is True
        assert stored.status == "RESOLVED"
        assert stored.resolved_at == now

    @pytest.mark.asyncio
    async def test_mark_resolved_is_noop_when_already_resolved(self, session_scope, seed_market, now) -> None:
        market = await seed_market("0x1111111111111111111111111111111111111111")
        async with session_scope() as session:
            assert await MarketRepository(session).mark_resolved(market.id, yes_wins=False, at=now)
        async with session_scope() as session:
            assert not await MarketRepository(session).mark_resolved(market.id, yes_wins=True, at=now)

        async with session_scope() as session:
            stored = await MarketRepository(session).get(market.id)
        assert stored is not None
        assert stored.yes_wins is False

    @pytest.mark.asyncio
    async def test_paused_status_preserved_until_resolution(
        self, session_scope, seed_market, make_state, now
    ) -> None:
        market = await seed_market("0x1111111111111111111111111111111111111111")
        async with session_scope() as session:
            await session.execute(update(MarketModel).where(MarketModel.id == market.id).values(status="PAUSED"))

        async with session_scope() as session:
            await MarketRepository(session).apply_projection(market.id, make_state(), now=now)
        async with session_scope() as session:
            stored = await MarketRepository(session).get(market.id)
        assert stored is not None
        assert stored.status == "PAUSED"

        async with session_scope() as session:
            await MarketRepository(session).apply_projection(market.id, make_state(resolved=True), now=now)
        async with session_scope() as session:
            stored = await MarketRepository(session).get(market.id)
        assert stored is not None
        assert stored.status == "RESOLVED"

    @pytest.mark.asyncio
    async def test_list_missing_tokens_treats_zero_address_as_missing(
        self, session_scope, seed_market, now
    ) -> None:
        complete = await seed_market("0x1111111111111111111111111111111111111111")
        zeroed = await seed_market("0x2222222222222222222222222222222222222222")
        await seed_market("0x3333333333333333333333333333333333333333")
        async with session_scope() as session:
            repo = MarketRepository(session)
            await repo.set_token_addresses(
                complete.id, yes_token_address=YES_TOKEN, no_token_address=NO_TOKEN, at=now
            )
            await repo.set_token_addresses(
                zeroed.id, yes_token_address=ZERO_ADDRESS, no_token_address=ZERO_ADDRESS, at=now
            )

        async with session_scope() as session:
            repo = MarketRepository(session)
            missing = await repo.list_missing_tokens(limit=5)
            limited = await repo.list_missing_tokens(limit=1)

        assert {m.address for m in missing} == {
            "0x2222222222222222222222222222222222222222",
            "0x3333333333333333333333333333333333333333",
        }
        assert len(limited) == 1

    @pytest.mark.asyncio
    async def test_update_analytics_skips_resolved_markets(self, session_scope, seed_market, now) -> None:
        open_market = await seed_market("0x1111111111111111111111111111111111111111")
        closed_market = await seed_market("0x2222222222222222222222222222222222222222")
        async with session_scope() as session:
            await MarketRepository(session).mark_resolved(closed_market.id, yes_wins=True, at=now)

        async with session_scope() as session:
            repo = MarketRepository(session)
            assert await repo.update_analytics(open_market.id, _analytics(), at=now)
            assert not await repo.update_analytics(closed_market.id, _analytics(), at=now)

        async with session_scope() as session:
            repo = MarketRepository(session)
            updated = await repo.get(open_market.id)
            frozen = await repo.get(closed_market.id)
        assert updated is not None and frozen is not None
        assert updated.heat_score == Decimal("42.50")
        assert updated.trades_24h == 3
        assert updated.analytics_updated_at == now
        assert frozen.heat_score == Decimal("0")
        assert frozen.analytics_updated_at is None

    @pytest.mark.asyncio
    async def test_upsert_from_chain_creates_then_updates(self, session_scope, make_state, now) -> None:
        address = "0x4444444444444444444444444444444444444444"
        async with session_scope() as session:
            created = await MarketRepository(session).upsert_from_chain(
                address.upper().replace("0X", "0x"),
                question="Will it rain?",
                resolution_time=now + timedelta(days=1),
                oracle_address=ORACLE,
                state=make_state(yes_price="0.7", no_price="0.3"),
                now=now,
            )
        assert created.address == address
        assert created.creator_address == ORACLE
        assert created.status == "ACTIVE"

        async with session_scope() as session:
            updated = await MarketRepository(session).upsert_from_chain(
                address,
                question="Will it rain?",
                resolution_time=now + timedelta(days=1),
                oracle_address=ORACLE,
                state=make_state(yes_price="1", no_price="0", resolved=True, yes_wins=True),
                now=now,
            )
        assert updated.id == created.id
        assert updated.resolved is True
        assert updated.status == "RESOLVED"
        assert updated.yes_price == Decimal("1")


# ============================================================================
# Trader / Trade Repository Tests
# ============================================================================


class TestTraderRepository:
    @pytest.mark.asyncio
    async def test_get_or_create_is_case_insensitive(self, session_scope) -> None:
        async with session_scope() as session:
            first = await TraderRepository(session).get_or_create("0xABCDEFabcdefABCDEFabcdefABCDEFabcdefABCD")
        async with session_scope() as session:
            second = await TraderRepository(session).get_or_create("0xabcdefabcdefabcdefabcdefabcdefabcdefabcd")
        assert first == second


class TestTradeRepository:
    """Tests for TradeRepository."""

    @pytest.mark.asyncio
    async def test_insert_idempotent_on_tx_hash_and_outcome(self, session_scope, seed_market) -> None:
        market = await seed_market("0x1111111111111111111111111111111111111111")
        async with session_scope() as session:
            trader_id = await TraderRepository(session).get_or_create(ORACLE)

        async with session_scope() as session:
            assert await TradeRepository(session).insert_idempotent(_trade(market.id, trader_id))
        async with session_scope() as session:
            assert not await TradeRepository(session).insert_idempotent(_trade(market.id, trader_id))

        async with session_scope() as session:
            assert await TradeRepository(session).count() == 1

    @pytest.mark.asyncio
    async def test_same_tx_other_outcome_is_a_separate_trade(self, session_scope, seed_market) -> None:
        market = await seed_market("0x1111111111111111111111111111111111111111")
        async with session_scope() as session:
            trader_id = await TraderRepository(session).get_or_create(ORACLE)
            repo = TradeRepository(session)
            assert await repo.insert_idempotent(_trade(market.id, trader_id, outcome="YES"))
            assert await repo.insert_idempotent(_trade(market.id, trader_id, outcome="NO"))

        async with session_scope() as session:
            trades = await TradeRepository(session).list_by_market(market.id)
        assert sorted(t.outcome for t in trades) == ["NO", "YES"]

    @pytest.mark.asyncio
    async def test_activity_since_aggregates_window(self, session_scope, seed_market, now) -> None:
        market = await seed_market("0x1111111111111111111111111111111111111111")
        async with session_scope() as session:
            trader_id = await TraderRepository(session).get_or_create(ORACLE)
            repo = TradeRepository(session)
            old = _trade(market.id, trader_id, tx="0x" + "1" * 64)
            old.ts = now - timedelta(hours=30)
            recent = _trade(market.id, trader_id, tx="0x" + "2" * 64)
            recent.ts = now - timedelta(hours=2)
            latest = _trade(market.id, trader_id, tx="0x" + "3" * 64)
            latest.ts = now - timedelta(hours=1)
            for dto in (old, recent, latest):
                await repo.insert_idempotent(dto)

        async with session_scope() as session:
            activity = await TradeRepository(session).activity_since([market.id], now - timedelta(hours=24))

        stats = activity[market.id]
        assert stats.trade_count == 2
        assert stats.volume == Decimal("10")
        assert stats.creator_fees == Decimal("0.05")
        assert stats.last_trade_at == now - timedelta(hours=1)


# ============================================================================
# MarketSnapshotRepository Tests
# ============================================================================


class TestMarketSnapshotRepository:
    @pytest.mark.asyncio
    async def test_append_list_and_prune(self, session_scope, seed_market, make_state, now) -> None:
        market = await seed_market("0x1111111111111111111111111111111111111111")
        async with session_scope() as session:
            repo = MarketSnapshotRepository(session)
            await repo.append_many([(market.id, make_state(yes_price="0.25"))], at=now - timedelta(hours=25))
            await repo.append_many([(market.id, make_state(yes_price="0.5"))], at=now - timedelta(hours=1))
            written = await repo.append_many([(market.id, make_state(yes_price="0.75"))], at=now)
        assert written == 1

        async with session_scope() as session:
            pruned = await MarketSnapshotRepository(session).prune(now - timedelta(hours=24))
        assert pruned == 1

        async with session_scope() as session:
            series = await MarketSnapshotRepository(session).list_since([market.id], now - timedelta(hours=48))
        prices = [s.yes_price for s in series[market.id]]
        assert prices == [Decimal("0.5"), Decimal("0.75")]

    @pytest.mark.asyncio
    async def test_append_many_empty(self, session_scope, now) -> None:
        async with session_scope() as session:
            assert await MarketSnapshotRepository(session).append_many([], at=now) == 0


# ============================================================================
# IndexerStateRepository Tests
# ============================================================================


class TestIndexerStateRepository:
    """Tests for the sync state row and its advisory lock."""

    @pytest.mark.asyncio
    async def test_first_acquire_creates_row_from_start_block(self, session_scope, now) -> None:
        async with session_scope() as session:
            state = await IndexerStateRepository(session).try_acquire(
                CHAIN_ID, now=now, stale_after=timedelta(minutes=5), start_block=500
            )
        assert state is not None
        assert state.is_syncing is True
        assert state.last_indexed_block == 499
        assert state.sync_started_at == now

    @pytest.mark.asyncio
    async def test_second_acquire_within_window_fails(self, session_scope, now) -> None:
        async with session_scope() as session:
            assert await IndexerStateRepository(session).try_acquire(
                CHAIN_ID, now=now, stale_after=timedelta(minutes=5)
            )
        async with session_scope() as session:
            again = await IndexerStateRepository(session).try_acquire(
                CHAIN_ID, now=now + timedelta(minutes=4), stale_after=timedelta(minutes=5)
            )
        assert again is None

    @pytest.mark.asyncio
    async def test_stale_lock_is_taken_over(self, session_scope, now) -> None:
        async with session_scope() as session:
            assert await IndexerStateRepository(session).try_acquire(
                CHAIN_ID, now=now, stale_after=timedelta(minutes=5)
            )
        later = now + timedelta(minutes=6)
        async with session_scope() as session:
            state = await IndexerStateRepository(session).try_acquire(
                CHAIN_ID, now=later, stale_after=timedelta(minutes=5)
            )
        assert state is not None
        assert state.sync_started_at == later

    @pytest.mark.asyncio
    async def test_release_is_monotonic_and_tracks_errors(self, session_scope, now) -> None:
        stale = timedelta(minutes=5)
        async with session_scope() as session:
            repo = IndexerStateRepository(session)
            await repo.try_acquire(CHAIN_ID, now=now, stale_after=stale)
            await repo.release(
                CHAIN_ID, started_at=now, new_block=200, errors=["refresh error for 0x1: boom"], now=now
            )

        async with session_scope() as session:
            repo = IndexerStateRepository(session)
            await repo.try_acquire(CHAIN_ID, now=now, stale_after=stale)
            await repo.release(CHAIN_ID, started_at=now, new_block=150, errors=["a", "b"], now=now)

        async with session_scope() as session:
            state = await IndexerStateRepository(session).get(CHAIN_ID)
        assert state is not None
        assert state.last_indexed_block == 200
        assert state.is_syncing is False
        assert state.last_error == "a; b"
        assert state.consecutive_errors == 2

        async with session_scope() as session:
            repo = IndexerStateRepository(session)
            await repo.try_acquire(CHAIN_ID, now=now, stale_after=stale)
            await repo.release(CHAIN_ID, started_at=now, new_block=300, errors=[], now=now)

        async with session_scope() as session:
            state = await IndexerStateRepository(session).get(CHAIN_ID)
        assert state is not None
        assert state.last_indexed_block == 300
        assert state.last_error is None
        assert state.consecutive_errors == 0

    @pytest.mark.asyncio
    async def test_record_failure_frees_lock_without_advancing(self, session_scope, now) -> None:
        async with session_scope() as session:
            repo = IndexerStateRepository(session)
            await repo.try_acquire(CHAIN_ID, now=now, stale_after=timedelta(minutes=5), start_block=11)
            await repo.record_failure(
                CHAIN_ID, started_at=now, error="height failed: timeout", now=now
            )

        async with session_scope() as session:
            state = await IndexerStateRepository(session).get(CHAIN_ID)
        assert state is not None
        assert state.is_syncing is False
        assert state.last_indexed_block == 10
        assert state.last_error == "height failed: timeout"
        assert state.consecutive_errors == 1

    @pytest.mark.asyncio
    async def test_superseded_run_cannot_release_takeover_lock(self, session_scope, now) -> None:
        stale = timedelta(minutes=5)
        async with session_scope() as session:
            first = await IndexerStateRepository(session).try_acquire(
                CHAIN_ID, now=now, stale_after=stale, start_block=50
            )
        takeover_at = now + timedelta(minutes=6)
        async with session_scope() as session:
            second = await IndexerStateRepository(session).try_acquire(
                CHAIN_ID, now=takeover_at, stale_after=stale
            )
        assert first is not None
        assert second is not None

        # The first run finishes late and tries to release with its own token.
        async with session_scope() as session:
            repo = IndexerStateRepository(session)
            released = await repo.release(
                CHAIN_ID, started_at=first.sync_started_at, new_block=100, errors=[], now=takeover_at
            )
            failed = await repo.record_failure(
                CHAIN_ID, started_at=first.sync_started_at, error="logs failed: late", now=takeover_at
            )
        assert released is False
        assert failed is False

        async with session_scope() as session:
            third = await IndexerStateRepository(session).try_acquire(
                CHAIN_ID, now=takeover_at + timedelta(seconds=10), stale_after=stale
            )
        assert third is None

        async with session_scope() as session:
            state = await IndexerStateRepository(session).get(CHAIN_ID)
        assert state is not None
        assert state.is_syncing is True
        assert state.sync_started_at == takeover_at
        assert state.last_indexed_block == 49
        assert state.last_error is None
        assert state.consecutive_errors == 0

        async with session_scope() as session:
            assert await IndexerStateRepository(session).release(
                CHAIN_ID, started_at=second.sync_started_at, new_block=120, errors=[], now=takeover_at
            )
