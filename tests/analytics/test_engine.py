"""Tests for the analytics engine."""

from datetime import timedelta
from decimal import Decimal

import pytest

from market_indexer.analytics.engine import AnalyticsEngine
from market_indexer.models import MarketId
from market_indexer.storage.repos import (
    MarketRepository,
    MarketSnapshotRepository,
    TradeDTO,
    TradeRepository,
    TraderRepository,
)

MARKET_A = "0x1111111111111111111111111111111111111111"
MARKET_B = "0x2222222222222222222222222222222222222222"
TRADER = "0x3333333333333333333333333333333333333333"


async def _add_trades(session_scope, market_id: str, *, count: int, at) -> None:
    async with session_scope() as session:
        trader_id = await TraderRepository(session).get_or_create(TRADER)
        repo = TradeRepository(session)
        for i in range(count):
            await repo.insert_idempotent(
                TradeDTO(
                    market_id=market_id,
                    trader_id=trader_id,
                    trade_type="BUY",
                    outcome="YES",
                    shares=Decimal("10"),
                    amount=Decimal("5"),
                    price_at_trade=Decimal("0.5"),
                    trading_fee=Decimal("0.025"),
                    creator_fee=Decimal("0.025"),
                    protocol_fee=Decimal("0"),
                    tx_hash="0x" + f"{i + 1:064x}",
                    log_index=0,
                    block_number=100 + i,
                    ts=at,
                )
            )


class TestAnalyticsEngine:
    """Tests for AnalyticsEngine.run."""

    @pytest.mark.asyncio
    async def test_cohort_heat_and_velocity(self, session_scope, seed_market, make_state, now) -> None:
        hot = await seed_market(MARKET_A)
        cold = await seed_market(MARKET_B)
        async with session_scope() as session:
            repo = MarketSnapshotRepository(session)
            await repo.append_many([(hot.id, make_state(yes_price="0.25"))], at=now - timedelta(hours=2))
            await repo.append_many([(hot.id, make_state(yes_price="0.5"))], at=now - timedelta(minutes=1))
        await _add_trades(session_scope, hot.id, count=2, at=now - timedelta(hours=1))

        outcome = await AnalyticsEngine(session_scope).run(
            {
                MarketId(hot.id): make_state(yes_price="0.75"),
                MarketId(cold.id): make_state(),
            },
            now=now,
        )

        assert outcome.errors == []
        assert outcome.processed == 2
        hot_analytics = outcome.analytics[MarketId(hot.id)]
        assert hot_analytics.velocity_1m == Decimal("0.25")
        assert hot_analytics.velocity_5m == Decimal("0")
        assert hot_analytics.acceleration == Decimal("0.25")
        assert hot_analytics.stress_score == Decimal("0.5")
        assert hot_analytics.fragility == Decimal("0.5")
        assert hot_analytics.trades_24h == 2
        assert hot_analytics.volume_24h == Decimal("10")
        assert hot_analytics.fee_velocity_24h == Decimal("0.05")
        # 30 + 25 + 7.5 + 20 * (47/48) + 5
        assert hot_analytics.heat_score == Decimal("87.08")

        cold_analytics = outcome.analytics[MarketId(cold.id)]
        assert cold_analytics.trades_24h == 0
        assert cold_analytics.heat_score == Decimal("5.00")

        async with session_scope() as session:
            stored = await MarketRepository(session).get(hot.id)
        assert stored is not None
        assert stored.heat_score == Decimal("87.08")
        assert stored.analytics_updated_at == now

    @pytest.mark.asyncio
    async def test_resolved_state_skipped(self, session_scope, seed_market, make_state, now) -> None:
        """A market that resolves this cycle keeps its previous analytics."""
        market = await seed_market(MARKET_A)

        outcome = await AnalyticsEngine(session_scope).run(
            {MarketId(market.id): make_state(resolved=True, yes_wins=True)}, now=now
        )

        assert outcome.skipped_resolved == 1
        assert outcome.processed == 0
        async with session_scope() as session:
            stored = await MarketRepository(session).get(market.id)
        assert stored is not None
        assert stored.analytics_updated_at is None
        assert stored.heat_score == Decimal("0")

    @pytest.mark.asyncio
    async def test_resolved_row_not_overwritten(self, session_scope, seed_market, make_state, now) -> None:
        """A stale unresolved state cannot write analytics onto a resolved row."""
        market = await seed_market(MARKET_A)
        async with session_scope() as session:
            await MarketRepository(session).mark_resolved(market.id, yes_wins=False, at=now)

        outcome = await AnalyticsEngine(session_scope).run({MarketId(market.id): make_state()}, now=now)

        assert outcome.processed == 0
        assert outcome.analytics == {}
        async with session_scope() as session:
            stored = await MarketRepository(session).get(market.id)
        assert stored is not None
        assert stored.analytics_updated_at is None

    @pytest.mark.asyncio
    async def test_no_markets(self, session_scope, now) -> None:
        outcome = await AnalyticsEngine(session_scope).run({}, now=now)
        assert outcome.processed == 0
        assert outcome.errors == []
