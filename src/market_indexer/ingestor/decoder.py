"""Decoding of market-contract logs into typed domain events.

Each tracked event signature maps to a decoder that validates the topic
count and payload length before slicing the ABI words.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from market_indexer.ingestor.models import DecodedEvent, DecodedTrade, Outcome, RawLog, Resolution, TradeType

logger = logging.getLogger(__name__)

# keccak256 topic hashes emitted by the LS-LMSR market contract
SHARES_PURCHASED = "0x9bd054fb950acb82b978a4ba93668286e2c3fa8c43589f21061c8520068ba80c"
SHARES_SOLD = "0xcf06b88583ec57d4cf2f6795931fe9057d95a86052efc8d8b3a4cad0e885d5e9"
REDEEMED = "0xf3a670cd3af7d64b488926880889d08a8585a138ff455227af6737339a1ec262"
MARKET_RESOLVED = "0xf528f3b02f5c2503827fc677c9d0cb54ffbf11ed32cb659f73243b70dea7cf0e"

EVENT_SIGNATURES: tuple[str, ...] = (SHARES_PURCHASED, SHARES_SOLD, REDEEMED, MARKET_RESOLVED)

SHARE_DECIMALS = 18
USDC_DECIMALS = 6

WORD_BYTES = 32


class LogDecodeError(Exception):
    """Raised when a log matches a tracked signature but is malformed."""


def scale_units(value: int, decimals: int) -> str:
    """Render an integer token amount as a fixed-point decimal string.

    Uses integer division only so large 256-bit values keep every digit.

    >>> scale_units(1_500_000, 6)
    '1.500000'
    """
    if value < 0:
        raise ValueError("token amounts are unsigned")
    whole, fraction = divmod(value, 10**decimals)
    return f"{whole}.{fraction:0{decimals}d}"


def _payload(log: RawLog, words: int) -> bytes:
    raw = log.data[2:] if log.data.startswith(("0x", "0X")) else log.data
    try:
        payload = bytes.fromhex(raw)
    except ValueError as e:
        raise LogDecodeError(f"log data is not hex (tx={log.transaction_hash})") from e
    if len(payload) < words * WORD_BYTES:
        raise LogDecodeError(
            f"log data too short: expected {words * WORD_BYTES} bytes, got {len(payload)} "
            f"(tx={log.transaction_hash})"
        )
    return payload


def _word(payload: bytes, index: int) -> int:
    start = index * WORD_BYTES
    return int.from_bytes(payload[start : start + WORD_BYTES], "big")


def _actor(log: RawLog) -> str:
    if len(log.topics) < 2:
        raise LogDecodeError(f"missing indexed actor topic (tx={log.transaction_hash})")
    topic = log.topics[1]
    raw = topic[2:] if topic.startswith(("0x", "0X")) else topic
    if len(raw) != WORD_BYTES * 2:
        raise LogDecodeError(f"actor topic must be 32 bytes (tx={log.transaction_hash})")
    # address is the low 20 bytes of the topic word
    return "0x" + raw[-40:].lower()


def _decode_trade(log: RawLog, trade_type: TradeType) -> DecodedTrade:
    # SharesPurchased/SharesSold(address indexed trader, bool isYes, uint256 shares, uint256 amount)
    payload = _payload(log, 3)
    return DecodedTrade(
        market_address=log.address.lower(),
        trade_type=trade_type,
        trader=_actor(log),
        outcome=Outcome.YES if _word(payload, 0) != 0 else Outcome.NO,
        shares=scale_units(_word(payload, 1), SHARE_DECIMALS),
        amount=scale_units(_word(payload, 2), USDC_DECIMALS),
        tx_hash=log.transaction_hash.lower(),
        block_number=log.block_number,
        log_index=log.log_index,
    )


def decode_buy(log: RawLog) -> DecodedTrade:
    return _decode_trade(log, TradeType.BUY)


def decode_sell(log: RawLog) -> DecodedTrade:
    return _decode_trade(log, TradeType.SELL)


def decode_redeem(log: RawLog) -> DecodedTrade:
    # Redeemed(address indexed user, uint256 shares, uint256 payout)
    payload = _payload(log, 2)
    return DecodedTrade(
        market_address=log.address.lower(),
        trade_type=TradeType.REDEEM,
        trader=_actor(log),
        # The event carries no side; recorded as YES.
        outcome=Outcome.YES,
        shares=scale_units(_word(payload, 0), SHARE_DECIMALS),
        amount=scale_units(_word(payload, 1), USDC_DECIMALS),
        tx_hash=log.transaction_hash.lower(),
        block_number=log.block_number,
        log_index=log.log_index,
    )


def decode_resolution(log: RawLog) -> Resolution:
    # MarketResolved(bool yesWins)
    payload = _payload(log, 1)
    return Resolution(
        market_address=log.address.lower(),
        yes_wins=_word(payload, 0) != 0,
        tx_hash=log.transaction_hash.lower(),
        block_number=log.block_number,
    )


DECODERS: dict[str, Callable[[RawLog], DecodedEvent]] = {
    SHARES_PURCHASED: decode_buy,
    SHARES_SOLD: decode_sell,
    REDEEMED: decode_redeem,
    MARKET_RESOLVED: decode_resolution,
}


def decode_log(log: RawLog) -> DecodedEvent | None:
    """Decode a log into a trade or resolution.

    Returns:
        The decoded event, or None when the first topic is not a tracked
        signature.

    Raises:
        LogDecodeError: If the log matches a signature but is malformed.
    """
    signature = log.signature
    if signature is None:
        return None
    decoder = DECODERS.get(signature)
    if decoder is None:
        logger.debug("Ignoring log with untracked signature %s", signature)
        return None
    return decoder(log)
