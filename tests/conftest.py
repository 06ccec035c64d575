"""
tests/conftest.py
──────────────────
Shared fixtures: small weekly count series with known structure.

Fixtures
--------
make_series
    Factory turning a list of values into a weekly ``PeriodIndex`` series.

outbreak_series
    ``[10, 12, 11, 13, 50, 14, 12]``: one obvious spike in week 5.

sinusoid_series
    Noise-free ``exp(2.5 + 0.8 sin + 0.4 cos)`` over two years, K = 1.

seasonal_counts
    Overdispersed negative-binomial draws around a seasonal mean.
"""

from __future__ import annotations

import math
from typing import Callable, Sequence

import numpy as np
import pandas as pd
import pytest

FREQ = "W-SUN"
START = "2024-01-01"


def _weekly(values: Sequence[float], start: str = START) -> pd.Series:
    index = pd.period_range(start, periods=len(values), freq=FREQ)
    index.name = "period"
    return pd.Series(np.asarray(values, dtype=float), index=index, name="count")


def true_log_mean(periods: pd.PeriodIndex) -> np.ndarray:
    """Generating function of ``sinusoid_series`` on the log scale."""
    t = np.array([p.ordinal for p in periods], dtype=float)
    angle = 2 * math.pi * t / 52
    return 2.5 + 0.8 * np.sin(angle) + 0.4 * np.cos(angle)


@pytest.fixture
def make_series() -> Callable[..., pd.Series]:
    return _weekly


@pytest.fixture
def outbreak_series() -> pd.Series:
    return _weekly([10, 12, 11, 13, 50, 14, 12])


@pytest.fixture
def sinusoid_series() -> pd.Series:
    index = pd.period_range(START, periods=104, freq=FREQ)
    return _weekly(np.exp(true_log_mean(index)))


@pytest.fixture
def seasonal_counts() -> pd.Series:
    rng = np.random.default_rng(7)
    index = pd.period_range(START, periods=80, freq=FREQ)
    mu = np.exp(true_log_mean(index) + 0.5)
    size = 10.0
    return _weekly(rng.negative_binomial(size, size / (size + mu)))
