"""Data models for the ingestor module."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any


class TradeType(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    REDEEM = "REDEEM"


class Outcome(str, Enum):
    YES = "YES"
    NO = "NO"


@dataclass(frozen=True)
class RawLog:
    """A log record normalized from the log-indexing service."""

    address: str
    topics: tuple[str, ...]
    data: str
    block_number: int
    transaction_hash: str
    log_index: int

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RawLog:
        """Create a RawLog from a service record with split topic fields."""
        topics = tuple(
            str(data[key])
            for key in ("topic0", "topic1", "topic2", "topic3")
            if data.get(key)
        )
        return cls(
            address=str(data.get("address") or "").lower(),
            topics=topics,
            data=str(data.get("data") or "0x"),
            block_number=int(data.get("block_number") or 0),
            transaction_hash=str(data.get("transaction_hash") or "").lower(),
            log_index=int(data.get("log_index") or 0),
        )

    @property
    def signature(self) -> str | None:
        return self.topics[0].lower() if self.topics else None


@dataclass(frozen=True)
class DecodedTrade:
    """A buy, sell or redeem event decoded from a market contract log.

    ``shares`` and ``amount`` are fixed-point decimal strings produced by
    integer scaling (18 decimals for shares, 6 for USDC).
    """

    market_address: str
    trade_type: TradeType
    trader: str
    outcome: Outcome
    shares: str
    amount: str
    tx_hash: str
    block_number: int
    log_index: int

    @property
    def shares_decimal(self) -> Decimal:
        return Decimal(self.shares)

    @property
    def amount_decimal(self) -> Decimal:
        return Decimal(self.amount)


@dataclass(frozen=True)
class Resolution:
    """A market resolution decoded from a market contract log."""

    market_address: str
    yes_wins: bool
    tx_hash: str
    block_number: int


DecodedEvent = DecodedTrade | Resolution
