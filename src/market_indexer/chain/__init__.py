"""Chain access layer - Batched contract reads and market projections."""

from market_indexer.chain.client import ChainClient, ChainClientError, EthCall, RPCError
from market_indexer.chain.market_state import (
    MarketInfo,
    MarketInfoDecodeError,
    MarketStateRefresher,
    decode_market_info,
)

__all__ = [
    "ChainClient",
    "ChainClientError",
    "EthCall",
    "MarketInfo",
    "MarketInfoDecodeError",
    "MarketStateRefresher",
    "RPCError",
    "decode_market_info",
]
