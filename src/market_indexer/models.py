"""Domain models shared across indexer phases."""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import NewType

# Lowercased 0x-prefixed contract address.
MarketAddress = NewType("MarketAddress", str)
# Primary key of the markets table.
MarketId = NewType("MarketId", str)

ZERO_ADDRESS = "0x" + "0" * 40


def normalize_address(address: str) -> MarketAddress:
    """Lowercase an address and validate its shape."""
    value = address.strip().lower()
    if len(value) != 42 or not value.startswith("0x"):
        raise ValueError(f"Invalid address: {address!r}")
    try:
        int(value[2:], 16)
    except ValueError as e:
        raise ValueError(f"Invalid address: {address!r}") from e
    return MarketAddress(value)


class MarketStatus(str, Enum):
    """Lifecycle status of a tracked market."""

    ACTIVE = "ACTIVE"
    RESOLVED = "RESOLVED"
    PAUSED = "PAUSED"


@dataclass(frozen=True)
class MarketState:
    """On-chain projection of a market as read during one cycle.

    Prices are display prices in [0, 1]; share and collateral amounts are
    exact decimals scaled from their integer on-chain representation.
    """

    yes_price: Decimal
    no_price: Decimal
    yes_shares: Decimal
    no_shares: Decimal
    total_collateral: Decimal
    liquidity_parameter: Decimal
    resolved: bool
    yes_wins: bool
    yes_token_address: str | None = None
    no_token_address: str | None = None

    @property
    def status(self) -> MarketStatus:
        return MarketStatus.RESOLVED if self.resolved else MarketStatus.ACTIVE


@dataclass(frozen=True)
class TrackedMarket:
    """Market row as enumerated at the start of a cycle."""

    market_id: MarketId
    address: MarketAddress
    resolved: bool = False
    has_token_addresses: bool = False


class MarketRegistry(Mapping[MarketAddress, TrackedMarket]):
    """Immutable address-keyed view of the markets tracked this cycle."""

    def __init__(self, markets: Iterable[TrackedMarket]) -> None:
        by_address = {m.address: m for m in markets}
        self._by_address = MappingProxyType(by_address)
        self._by_id = MappingProxyType({m.market_id: m for m in by_address.values()})

    def __getitem__(self, address: MarketAddress) -> TrackedMarket:
        return self._by_address[address]

    def __iter__(self) -> Iterator[MarketAddress]:
        return iter(self._by_address)

    def __len__(self) -> int:
        return len(self._by_address)

    def lookup(self, address: str) -> TrackedMarket | None:
        """Find a market by a raw (any-case) address."""
        return self._by_address.get(MarketAddress(address.lower()))

    def by_id(self, market_id: MarketId) -> TrackedMarket | None:
        return self._by_id.get(market_id)

    @property
    def addresses(self) -> list[MarketAddress]:
        return list(self._by_address)


@dataclass(frozen=True)
class CycleError:
    """A soft failure recorded while processing one item of a cycle."""

    stage: str
    subject: str
    message: str

    def __str__(self) -> str:
        return f"{self.stage} error for {self.subject}: {self.message}"


@dataclass
class PhaseOutcome:
    """Counters and soft errors returned by one orchestrator phase."""

    processed: int = 0
    errors: list[CycleError] = field(default_factory=list)

    def record(self, stage: str, subject: str, exc: BaseException | str) -> None:
        self.errors.append(CycleError(stage=stage, subject=subject, message=str(exc)))
