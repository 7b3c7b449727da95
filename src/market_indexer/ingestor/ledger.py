"""Idempotent application of decoded events to the trade ledger."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from market_indexer.ingestor.models import DecodedEvent, DecodedTrade, Resolution, TradeType
from market_indexer.models import MarketId, MarketRegistry, PhaseOutcome, TrackedMarket
from market_indexer.storage.database import SessionScope
from market_indexer.storage.repos import MarketRepository, TradeDTO, TradeRepository, TraderRepository

logger = logging.getLogger(__name__)

FEE_RATE = Decimal("0.005")
ZERO = Decimal("0")


def compute_fees(trade_type: TradeType, amount: Decimal) -> tuple[Decimal, Decimal, Decimal]:
    """Return (trading_fee, creator_fee, protocol_fee) for a trade.

    Only buys pay a fee; the creator share equals the trading fee.
    """
    if trade_type is TradeType.BUY:
        trading_fee = amount * FEE_RATE
        return trading_fee, trading_fee, ZERO
    return ZERO, ZERO, ZERO


def price_at_trade(amount: Decimal, shares: Decimal) -> Decimal | None:
    if shares <= 0:
        return None
    return amount / shares


@dataclass
class LedgerOutcome(PhaseOutcome):
    """Result of applying one cycle's decoded events."""

    trades_inserted: int = 0
    trades_duplicate: int = 0
    resolved: dict[MarketId, bool] = field(default_factory=dict)

    @property
    def markets_resolved(self) -> int:
        return len(self.resolved)


class TradeLedgerWriter:
    """Applies decoded trades and resolutions, one unit of work per event.

    Each event gets its own session so a failing trade rolls back alone and
    the rest of the batch still lands.
    """

    def __init__(self, session_scope: SessionScope) -> None:
        self._session_scope = session_scope

    async def apply(
        self,
        events: Sequence[DecodedEvent],
        registry: MarketRegistry,
        *,
        observed_at: datetime,
    ) -> LedgerOutcome:
        outcome = LedgerOutcome()
        for event in events:
            market = registry.lookup(event.market_address)
            if market is None:
                logger.debug("Skipping event for untracked market %s", event.market_address)
                continue
            outcome.processed += 1
            if isinstance(event, Resolution):
                await self._apply_resolution(event, market, observed_at, outcome)
            else:
                await self._apply_trade(event, market, observed_at, outcome)
        return outcome

    async def _apply_resolution(
        self,
        event: Resolution,
        market: TrackedMarket,
        observed_at: datetime,
        outcome: LedgerOutcome,
    ) -> None:
        try:
            async with self._session_scope() as session:
                changed = await MarketRepository(session).mark_resolved(
                    market.market_id, yes_wins=event.yes_wins, at=observed_at
                )
        except Exception as e:
            logger.warning("Failed to apply resolution for %s (tx=%s): %s", market.address, event.tx_hash, e)
            outcome.record("resolution", market.address, e)
            return
        outcome.resolved[market.market_id] = event.yes_wins
        if changed:
            logger.info("Market %s resolved (yes_wins=%s)", market.address, event.yes_wins)

    async def _apply_trade(
        self,
        trade: DecodedTrade,
        market: TrackedMarket,
        observed_at: datetime,
        outcome: LedgerOutcome,
    ) -> None:
        try:
            amount = trade.amount_decimal
            shares = trade.shares_decimal
            trading_fee, creator_fee, protocol_fee = compute_fees(trade.trade_type, amount)
            async with self._session_scope() as session:
                trader_id = await TraderRepository(session).get_or_create(trade.trader)
                inserted = await TradeRepository(session).insert_idempotent(
                    TradeDTO(
                        market_id=market.market_id,
                        trader_id=trader_id,
                        trade_type=trade.trade_type.value,
                        outcome=trade.outcome.value,
                        shares=shares,
                        amount=amount,
                        price_at_trade=price_at_trade(amount, shares),
                        trading_fee=trading_fee,
                        creator_fee=creator_fee,
                        protocol_fee=protocol_fee,
                        tx_hash=trade.tx_hash,
                        log_index=trade.log_index,
                        block_number=trade.block_number,
                        ts=observed_at,
                    )
                )
        except Exception as e:
            logger.warning("Failed to record trade %s for %s: %s", trade.tx_hash, market.address, e)
            outcome.record("trade", trade.tx_hash, e)
            return
        if inserted:
            outcome.trades_inserted += 1
        else:
            outcome.trades_duplicate += 1
