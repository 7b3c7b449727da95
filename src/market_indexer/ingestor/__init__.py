"""Data ingestion layer - Log queries, event decoding and the trade ledger."""

from market_indexer.ingestor.decoder import LogDecodeError, decode_log, scale_units
from market_indexer.ingestor.ledger import LedgerOutcome, TradeLedgerWriter
from market_indexer.ingestor.log_source import LogSourceClient, LogSourceError
from market_indexer.ingestor.models import (
    DecodedEvent,
    DecodedTrade,
    Outcome,
    RawLog,
    Resolution,
    TradeType,
)

__all__ = [
    "DecodedEvent",
    "DecodedTrade",
    "LedgerOutcome",
    "LogDecodeError",
    "LogSourceClient",
    "LogSourceError",
    "Outcome",
    "RawLog",
    "Resolution",
    "TradeLedgerWriter",
    "TradeType",
    "decode_log",
    "scale_units",
]
