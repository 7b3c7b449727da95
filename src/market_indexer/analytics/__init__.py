"""Analytics layer - Velocity, stress, fragility and heat scoring."""

from market_indexer.analytics.engine import AnalyticsEngine, AnalyticsOutcome

__all__ = [
    "AnalyticsEngine",
    "AnalyticsOutcome",
]
