"""Market contract reads and projection refresh.

Decodes the fixed-layout `getMarketInfo()` return value and writes the
resulting projection back to the markets table.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal

from eth_abi import decode
from eth_abi.exceptions import DecodingError

from market_indexer.chain.client import ChainClient, EthCall
from market_indexer.ingestor.decoder import SHARE_DECIMALS, USDC_DECIMALS, scale_units
from market_indexer.models import ZERO_ADDRESS, MarketState, TrackedMarket
from market_indexer.storage.database import SessionScope
from market_indexer.storage.repos import MarketRepository

logger = logging.getLogger(__name__)

# Function selectors on the market contract
MARKET_INFO_SELECTOR = "0x23341a05"  # getMarketInfo()
YES_TOKEN_SELECTOR = "0xf0d9bb20"  # yesToken()
NO_TOKEN_SELECTOR = "0x11a9f10a"  # noToken()

MARKET_INFO_TYPES: tuple[str, ...] = (
    "string",  # question
    "uint256",  # resolutionTime
    "address",  # oracle
    "uint256",  # yesPrice
    "uint256",  # noPrice
    "uint256",  # yesProbability
    "uint256",  # noProbability
    "uint256",  # yesShares
    "uint256",  # noShares
    "uint256",  # totalCollateral
    "uint256",  # liquidityParam
    "uint256",  # priceSum
    "bool",  # resolved
    "bool",  # yesWins
)

PRICE_DECIMALS = 18


class MarketInfoDecodeError(Exception):
    """Raised when a getMarketInfo() result cannot be decoded."""


def _scaled(value: int, decimals: int) -> Decimal:
    return Decimal(scale_units(value, decimals))


@dataclass(frozen=True)
class MarketInfo:
    """Decoded getMarketInfo() record with exact decimal scaling applied."""

    question: str
    resolution_time: int
    oracle: str
    yes_price: Decimal
    no_price: Decimal
    yes_probability: Decimal
    no_probability: Decimal
    yes_shares: Decimal
    no_shares: Decimal
    total_collateral: Decimal
    liquidity_parameter: Decimal
    price_sum: Decimal
    resolved: bool
    yes_wins: bool

    @property
    def display_yes_price(self) -> Decimal:
        # Raw price is only used when the probability is exactly zero.
        return self.yes_probability if self.yes_probability > 0 else self.yes_price

    @property
    def display_no_price(self) -> Decimal:
        return self.no_probability if self.no_probability > 0 else self.no_price

    @property
    def resolution_datetime(self) -> datetime | None:
        if self.resolution_time <= 0:
            return None
        try:
            return datetime.fromtimestamp(self.resolution_time, tz=UTC)
        except (OverflowError, OSError, ValueError):
            logger.warning("Resolution time %d is out of range; storing none", self.resolution_time)
            return None

    def to_state(
        self,
        *,
        yes_token_address: str | None = None,
        no_token_address: str | None = None,
    ) -> MarketState:
        return MarketState(
            yes_price=self.display_yes_price,
            no_price=self.display_no_price,
            yes_shares=self.yes_shares,
            no_shares=self.no_shares,
            total_collateral=self.total_collateral,
            liquidity_parameter=self.liquidity_parameter,
            resolved=self.resolved,
            yes_wins=self.yes_wins,
            yes_token_address=yes_token_address,
            no_token_address=no_token_address,
        )


def decode_market_info(raw: bytes) -> MarketInfo:
    """Decode the ABI-encoded getMarketInfo() tuple.

    Raises:
        MarketInfoDecodeError: If the payload is short or malformed.
    """
    if len(raw) < len(MARKET_INFO_TYPES) * 32:
        raise MarketInfoDecodeError(
            f"getMarketInfo result too short: {len(raw)} bytes (expected >= {len(MARKET_INFO_TYPES) * 32})"
        )
    try:
        (
            question,
            resolution_time,
            oracle,
            yes_price,
            no_price,
            yes_probability,
            no_probability,
            yes_shares,
            no_shares,
            total_collateral,
            liquidity_param,
            price_sum,
            resolved,
            yes_wins,
        ) = decode(list(MARKET_INFO_TYPES), raw)
    except (DecodingError, ValueError, OverflowError) as e:
        raise MarketInfoDecodeError(f"Failed to decode getMarketInfo result: {e}") from e

    return MarketInfo(
        question=str(question),
        resolution_time=int(resolution_time),
        oracle=str(oracle).lower(),
        yes_price=_scaled(yes_price, PRICE_DECIMALS),
        no_price=_scaled(no_price, PRICE_DECIMALS),
        yes_probability=_scaled(yes_probability, PRICE_DECIMALS),
        no_probability=_scaled(no_probability, PRICE_DECIMALS),
        yes_shares=_scaled(yes_shares, SHARE_DECIMALS),
        no_shares=_scaled(no_shares, SHARE_DECIMALS),
        total_collateral=_scaled(total_collateral, USDC_DECIMALS),
        liquidity_parameter=_scaled(liquidity_param, SHARE_DECIMALS),
        price_sum=_scaled(price_sum, PRICE_DECIMALS),
        resolved=bool(resolved),
        yes_wins=bool(yes_wins),
    )


def decode_address_result(raw: bytes) -> str | None:
    """Decode an address-returning call; None when empty or the zero address."""
    if len(raw) < 32:
        return None
    address = "0x" + raw[12:32].hex()
    return None if address == ZERO_ADDRESS else address


class MarketStateRefresher:
    """Reads market contracts and persists their refreshed projection."""

    def __init__(self, client: ChainClient) -> None:
        self._client = client

    @property
    def client(self) -> ChainClient:
        return self._client

    async def read_info(self, address: str) -> MarketInfo:
        raw = await self._client.call(address, MARKET_INFO_SELECTOR)
        return decode_market_info(raw)

    async def read(self, market: TrackedMarket) -> MarketState:
        """Read one market's projection in a single batched request.

        Token getters are only included while the market's token addresses
        are still unknown.
        """
        calls = [EthCall(to=market.address, data=MARKET_INFO_SELECTOR)]
        if not market.has_token_addresses:
            calls.append(EthCall(to=market.address, data=YES_TOKEN_SELECTOR, cacheable=True))
            calls.append(EthCall(to=market.address, data=NO_TOKEN_SELECTOR, cacheable=True))

        results = await self._client.batch_call(calls)
        info = decode_market_info(results[0])
        if len(results) == 3:
            return info.to_state(
                yes_token_address=decode_address_result(results[1]),
                no_token_address=decode_address_result(results[2]),
            )
        return info.to_state()

    async def fetch_token_addresses(self, address: str) -> tuple[str | None, str | None]:
        yes_raw, no_raw = await self._client.batch_call(
            [
                EthCall(to=address, data=YES_TOKEN_SELECTOR, cacheable=True),
                EthCall(to=address, data=NO_TOKEN_SELECTOR, cacheable=True),
            ]
        )
        return decode_address_result(yes_raw), decode_address_result(no_raw)

    async def persist(
        self,
        session_scope: SessionScope,
        market: TrackedMarket,
        state: MarketState,
        *,
        now: datetime,
    ) -> bool:
        async with session_scope() as session:
            updated = await MarketRepository(session).apply_projection(market.market_id, state, now=now)
        if not updated:
            logger.warning("Market %s vanished before its projection could be written", market.address)
        return updated
