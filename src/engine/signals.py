"""
PokeLedger — Market Signal Engine

Derives bounded [0, 100] signals from vendor-supplied statistics:

    squash(x, K) = clamp(round1(50 + 50·tanh(x / K)), 0, 100)

    trend    = squash(trendSlope7d / covPrice30d, 10)
    breakout = squash(trendSlope7d · ln(1 + priceChangesCount30d)
                      · (1 − priceRelativeTo30dRange), 0.25)
    value    = clamp(round1((1 − priceRelativeTo30dRange) · 100), 0, 100)

Each signal is independently nullable. A missing (or non-finite) required
input yields None, never 0. For breakout, a missing change count defaults to
0 and a missing relative-range position defaults to 0.5.
"""

from __future__ import annotations

import math
from typing import NamedTuple

import structlog

from src.config import settings

logger = structlog.get_logger(__name__)

BREAKOUT_DEFAULT_CHANGES = 0.0
BREAKOUT_DEFAULT_RELATIVE = 0.5


class SignalScores(NamedTuple):
    """Derived signals for one variant; any field may be None."""
    trend: float | None
    breakout: float | None
    value: float | None


def _finite(value: float | int | None) -> float | None:
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _round1(value: float) -> float:
    """Round to one decimal, halves rounding up."""
    return math.floor(value * 10 + 0.5) / 10


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def squash(x: float, k: float) -> float:
    """Map any finite real onto [0, 100] with 50 at x = 0."""
    return _clamp(_round1(50 + 50 * math.tanh(x / k)))


def compute_trend(
    trend_slope_7d: float | None,
    cov_price_30d: float | None,
    k: float | None = None,
) -> float | None:
    """Trend strength: 7-day slope normalized by 30-day dispersion."""
    slope = _finite(trend_slope_7d)
    cov = _finite(cov_price_30d)
    if slope is None or cov is None or cov == 0:
        return None
    ratio = slope / cov
    if not math.isfinite(ratio):
        return None
    return squash(ratio, settings.SIGNAL_TREND_K if k is None else k)


def compute_breakout(
    trend_slope_7d: float | None,
    price_changes_count_30d: float | None,
    price_relative_to_30d_range: float | None,
    k: float | None = None,
) -> float | None:
    """Breakout: slope weighted by activity and headroom under the 30-day high."""
    slope = _finite(trend_slope_7d)
    if slope is None:
        return None
    changes = _finite(price_changes_count_30d)
    relative = _finite(price_relative_to_30d_range)
    changes = BREAKOUT_DEFAULT_CHANGES if changes is None else max(0.0, changes)
    relative = BREAKOUT_DEFAULT_RELATIVE if relative is None else relative

    raw = slope * math.log1p(changes) * (1 - relative)
    if not math.isfinite(raw):
        return None
    return squash(raw, settings.SIGNAL_BREAKOUT_K if k is None else k)


def compute_value(price_relative_to_30d_range: float | None) -> float | None:
    """Value zone: 100 at the bottom of the 30-day range, 0 at the top."""
    relative = _finite(price_relative_to_30d_range)
    if relative is None:
        return None
    raw = (1 - relative) * 100
    if not math.isfinite(raw):
        return None
    return _round1(_clamp(raw))


def compute_signals(
    trend_slope_7d: float | None,
    cov_price_30d: float | None,
    price_changes_count_30d: float | None,
    price_relative_to_30d_range: float | None,
) -> SignalScores:
    """Compute all three signals from one variant's statistics."""
    scores = SignalScores(
        trend=compute_trend(trend_slope_7d, cov_price_30d),
        breakout=compute_breakout(
            trend_slope_7d, price_changes_count_30d, price_relative_to_30d_range
        ),
        value=compute_value(price_relative_to_30d_range),
    )
    logger.debug(
        "signals_computed",
        trend=scores.trend,
        breakout=scores.breakout,
        value=scores.value,
    )
    return scores
