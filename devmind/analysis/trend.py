"""Trend classification over the recent window of a metric series."""

from __future__ import annotations

from collections.abc import Sequence

from devmind.types import Trend

TREND_WINDOW = 5
SLOPE_THRESHOLD = 0.05


def slope(series: Sequence[float]) -> float:
    """Ordinary least-squares slope with the sample index as x."""
    n = len(series)
    if n < 2:
        return 0.0
    sum_x = sum_y = sum_xy = sum_xx = 0.0
    for i, y in enumerate(series):
        sum_x += i
        sum_y += y
        sum_xy += i * y
        sum_xx += i * i
    return (n * sum_xy - sum_x * sum_y) / (n * sum_xx - sum_x * sum_x)


def trend(
    series: Sequence[float],
    window: int = TREND_WINDOW,
    threshold: float = SLOPE_THRESHOLD,
) -> Trend:
    """Classify the direction of the last `window` samples.

    Fewer than `window` samples is always STABLE.
    """
    if len(series) < window:
        return Trend.STABLE

    m = slope(list(series)[-window:])
    if m > threshold:
        return Trend.INCREASING
    if m < -threshold:
        return Trend.DECREASING
    return Trend.STABLE
