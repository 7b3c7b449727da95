"""Storage layer - Database schemas and repositories."""

from market_indexer.storage.database import (
    DatabaseManager,
    SessionScope,
    create_async_db_engine,
    create_async_session_factory,
    make_session_scope,
)
from market_indexer.storage.models import (
    Base,
    IndexerStateModel,
    MarketModel,
    MarketSnapshotModel,
    TradeModel,
    TraderModel,
)
from market_indexer.storage.repos import (
    IndexerStateDTO,
    IndexerStateRepository,
    MarketAnalyticsDTO,
    MarketDTO,
    MarketRepository,
    MarketSnapshotDTO,
    MarketSnapshotRepository,
    TradeActivityDTO,
    TradeDTO,
    TradeRepository,
    TraderRepository,
)

__all__ = [
    "Base",
    "DatabaseManager",
    "IndexerStateDTO",
    "IndexerStateModel",
    "IndexerStateRepository",
    "MarketAnalyticsDTO",
    "MarketDTO",
    "MarketModel",
    "MarketRepository",
    "MarketSnapshotDTO",
    "MarketSnapshotModel",
    "MarketSnapshotRepository",
    "SessionScope",
    "TradeActivityDTO",
    "TradeDTO",
    "TradeModel",
    "TradeRepository",
    "TraderModel",
    "TraderRepository",
    "create_async_db_engine",
    "create_async_session_factory",
    "make_session_scope",
]
