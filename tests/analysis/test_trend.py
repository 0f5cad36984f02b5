"""Tests for slope-based trend detection."""

import pytest

from devmind.analysis.trend import slope, trend
from devmind.types import Trend


def test_fewer_than_window_is_stable():
    assert trend([1, 100, 1000, 10000]) == Trend.STABLE
    assert trend([]) == Trend.STABLE


def test_slope_of_line():
    assert slope([1, 2, 3, 4, 5]) == pytest.approx(1.0)
    assert slope([5, 5, 5]) == pytest.approx(0.0)


def test_increasing_and_decreasing():
    assert trend([100, 110, 120, 130, 140]) == Trend.INCREASING
    assert trend([140, 130, 120, 110, 100]) == Trend.DECREASING


def test_threshold_is_exclusive():
    # slope of exactly +-0.05 stays stable
    assert slope([0, 0, 0, 0, 0.25]) == 0.05
    assert trend([0, 0, 0, 0, 0.25]) == Trend.STABLE
    assert trend([0.25, 0, 0, 0, 0]) == Trend.STABLE
    assert trend([0, 0, 0, 0, 0.3]) == Trend.INCREASING
    assert trend([0.3, 0, 0, 0, 0]) == Trend.DECREASING


def test_only_last_window_considered():
    series = [1000, 900, 800, 700, 600, 1, 2, 3, 4, 5]
    assert trend(series) == Trend.INCREASING
