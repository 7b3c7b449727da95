"""Pure metric functions for market analytics.

All functions operate on floats and never raise for missing history:
absent data maps to a neutral default (zero velocity, full fragility,
minimal recency).
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta

VELOCITY_OFFSETS_MINUTES: tuple[int, ...] = (1, 5, 15)
SNAPSHOT_TOLERANCE_SECONDS = 90.0
STRESS_RANGE_SCALE = 0.5
ALPHA_DEEP = 10.0
RECENCY_HORIZON_HOURS = 48.0

WEIGHT_COUNT = 0.30
WEIGHT_VOLUME = 0.25
WEIGHT_STRESS = 0.15
WEIGHT_RECENCY = 0.20
WEIGHT_LIQUIDITY = 0.10


@dataclass(frozen=True)
class PricePoint:
    at: datetime
    price: float


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def price_near(
    points: Iterable[PricePoint],
    target: datetime,
    *,
    tolerance_seconds: float = SNAPSHOT_TOLERANCE_SECONDS,
) -> float | None:
    """Price of the point closest to `target`, if one lies within tolerance."""
    best: PricePoint | None = None
    best_diff = tolerance_seconds
    for point in points:
        diff = abs((point.at - target).total_seconds())
        if diff < best_diff:
            best, best_diff = point, diff
    return best.price if best is not None else None


def velocity(current_price: float, points: Sequence[PricePoint], now: datetime, minutes: int) -> float:
    """Price change over the trailing `minutes`; 0 without a nearby snapshot."""
    past = price_near(points, now - timedelta(minutes=minutes))
    if past is None:
        return 0.0
    return current_price - past


def acceleration(velocity_1m: float, velocity_5m: float) -> float:
    return velocity_1m - velocity_5m / 5


def stress(prices: Iterable[float]) -> float:
    """Trailing price range scaled so a 0.5 swing saturates at 1."""
    values = list(prices)
    if not values:
        return 0.0
    return clamp((max(values) - min(values)) / STRESS_RANGE_SCALE)


def fragility(liquidity_parameter: float | None) -> float:
    """1 for no liquidity, falling linearly to 0 at ALPHA_DEEP."""
    if liquidity_parameter is None or liquidity_parameter <= 0:
        return 1.0
    return clamp(1 - liquidity_parameter / ALPHA_DEEP)


def hours_since(last: datetime | None, now: datetime, *, default: float = RECENCY_HORIZON_HOURS) -> float:
    if last is None:
        return default
    return max(0.0, (now - last).total_seconds() / 3600)


def recency(hours: float) -> float:
    return clamp(1 - hours / RECENCY_HORIZON_HOURS)


def cohort_divisor(values: Iterable[float]) -> float:
    """Largest value in the cohort, or 1 when the whole cohort is zero."""
    peak = max(values, default=0.0)
    return peak if peak > 0 else 1.0


def heat_score(
    *,
    norm_count: float,
    norm_volume: float,
    stress_score: float,
    recency_score: float,
    fragility_score: float,
) -> float:
    """Composite 0-100 interest score, rounded to 2 decimals."""
    raw = 100 * (
        WEIGHT_COUNT * clamp(norm_count)
        + WEIGHT_VOLUME * clamp(norm_volume)
        + WEIGHT_STRESS * clamp(stress_score)
        + WEIGHT_RECENCY * clamp(recency_score)
        + WEIGHT_LIQUIDITY * (1 - clamp(fragility_score))
    )
    return round(clamp(raw, 0.0, 100.0), 2)
