"""Analytics engine: derives per-market signals once per cycle.

Reads the trailing snapshot series and 24h trade activity for every
unresolved market refreshed this cycle, computes velocity, stress,
fragility and the cohort-normalized heat score, and persists the full
analytics block per market.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal

from market_indexer.analytics import metrics
from market_indexer.models import MarketId, MarketState, PhaseOutcome
from market_indexer.storage.database import SessionScope
from market_indexer.storage.repos import (
    MarketAnalyticsDTO,
    MarketRepository,
    MarketSnapshotDTO,
    MarketSnapshotRepository,
    TradeActivityDTO,
    TradeRepository,
)

logger = logging.getLogger(__name__)

ACTIVITY_WINDOW = timedelta(hours=24)
STRESS_WINDOW = timedelta(hours=24)

_VELOCITY_QUANT = Decimal("0.0000000001")
_SCORE_QUANT = Decimal("0.00000001")
_HEAT_QUANT = Decimal("0.01")


def _quantize(value: float, quant: Decimal) -> Decimal:
    return Decimal(repr(value)).quantize(quant)


@dataclass
class _MarketInputs:
    market_id: MarketId
    velocity_1m: float
    velocity_5m: float
    velocity_15m: float
    stress: float
    fragility: float
    recency: float
    activity: TradeActivityDTO | None


@dataclass
class AnalyticsOutcome(PhaseOutcome):
    analytics: dict[MarketId, MarketAnalyticsDTO] = field(default_factory=dict)
    skipped_resolved: int = 0


class AnalyticsEngine:
    """Computes and persists derived market fields."""

    def __init__(self, session_scope: SessionScope) -> None:
        self._session_scope = session_scope

    async def run(self, states: Mapping[MarketId, MarketState], *, now: datetime) -> AnalyticsOutcome:
        """Compute analytics for the cycle's refreshed markets.

        Resolved markets are skipped and keep their last values.
        """
        outcome = AnalyticsOutcome()
        active = {mid: state for mid, state in states.items() if not state.resolved}
        outcome.skipped_resolved = len(states) - len(active)
        if not active:
            return outcome

        market_ids = list(active)
        try:
            async with self._session_scope() as session:
                snapshots = await MarketSnapshotRepository(session).list_since(market_ids, now - STRESS_WINDOW)
                activity = await TradeRepository(session).activity_since(market_ids, now - ACTIVITY_WINDOW)
        except Exception as e:
            logger.warning("Failed to load analytics inputs: %s", e)
            outcome.record("analytics", "cohort", e)
            return outcome

        inputs = [
            self._inputs_for(mid, state, snapshots.get(mid, []), activity.get(mid), now)
            for mid, state in active.items()
        ]
        count_divisor = metrics.cohort_divisor(float(i.activity.trade_count) for i in inputs if i.activity)
        volume_divisor = metrics.cohort_divisor(float(i.activity.volume) for i in inputs if i.activity)

        for item in inputs:
            trade_count = item.activity.trade_count if item.activity else 0
            volume = item.activity.volume if item.activity else Decimal("0")
            heat = metrics.heat_score(
                norm_count=trade_count / count_divisor,
                norm_volume=float(volume) / volume_divisor,
                stress_score=item.stress,
                recency_score=item.recency,
                fragility_score=item.fragility,
            )
            analytics = MarketAnalyticsDTO(
                velocity_1m=_quantize(item.velocity_1m, _VELOCITY_QUANT),
                velocity_5m=_quantize(item.velocity_5m, _VELOCITY_QUANT),
                velocity_15m=_quantize(item.velocity_15m, _VELOCITY_QUANT),
                acceleration=_quantize(metrics.acceleration(item.velocity_1m, item.velocity_5m), _VELOCITY_QUANT),
                stress_score=_quantize(item.stress, _SCORE_QUANT),
                fragility=_quantize(item.fragility, _SCORE_QUANT),
                heat_score=_quantize(heat, _HEAT_QUANT),
                volume_24h=volume,
                trades_24h=trade_count,
                fee_velocity_24h=item.activity.creator_fees if item.activity else Decimal("0"),
            )
            try:
                async with self._session_scope() as session:
                    written = await MarketRepository(session).update_analytics(item.market_id, analytics, at=now)
            except Exception as e:
                logger.warning("Failed to persist analytics for market %s: %s", item.market_id, e)
                outcome.record("analytics", item.market_id, e)
                continue
            if written:
                outcome.processed += 1
                outcome.analytics[item.market_id] = analytics

        logger.debug(
            "Analytics updated for %d market(s), %d resolved skipped", outcome.processed, outcome.skipped_resolved
        )
        return outcome

    @staticmethod
    def _inputs_for(
        market_id: MarketId,
        state: MarketState,
        snapshots: list[MarketSnapshotDTO],
        activity: TradeActivityDTO | None,
        now: datetime,
    ) -> _MarketInputs:
        points = [metrics.PricePoint(at=s.snapshot_time, price=float(s.yes_price)) for s in snapshots]
        current = float(state.yes_price)
        v1, v5, v15 = (metrics.velocity(current, points, now, m) for m in metrics.VELOCITY_OFFSETS_MINUTES)
        last_trade = activity.last_trade_at if activity else None
        return _MarketInputs(
            market_id=market_id,
            velocity_1m=v1,
            velocity_5m=v5,
            velocity_15m=v15,
            stress=metrics.stress(p.price for p in points),
            fragility=metrics.fragility(float(state.liquidity_parameter)),
            recency=metrics.recency(metrics.hours_since(last_trade, now)),
            activity=activity,
        )
