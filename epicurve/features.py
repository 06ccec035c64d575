"""Fourier seasonal features.

Phase is a function of the absolute period index (``Period.ordinal``), never
of a position within the requested slice, so features for a forecast horizon
continue the phase of the history they extend.
"""

from __future__ import annotations

import math
from typing import Sequence, Union

import numpy as np
import pandas as pd

from epicurve.config import PERIODS_PER_CYCLE

Periods = Union[pd.PeriodIndex, Sequence[int], np.ndarray]


def feature_names(harmonics: int) -> list[str]:
    """Column names ``sin_1, cos_1, ..., sin_K, cos_K``."""
    names: list[str] = []
    for k in range(1, harmonics + 1):
        names += [f"sin_{k}", f"cos_{k}"]
    return names


def absolute_index(periods: Periods) -> np.ndarray:
    """Absolute integer position of each period."""
    if isinstance(periods, pd.PeriodIndex):
        return np.array([p.ordinal for p in periods], dtype=float)
    return np.asarray(periods, dtype=float)


def seasonal_features(
    periods: Periods,
    harmonics: int,
    periods_per_cycle: int = PERIODS_PER_CYCLE,
) -> pd.DataFrame:
    """Build the sin/cos harmonic pairs for *periods*.

    Args:
        periods: A :class:`pd.PeriodIndex`, or absolute integer indices.
        harmonics: Number of harmonics K (>= 1).
        periods_per_cycle: Periods in one seasonal cycle P (52 for weeks).

    Returns:
        DataFrame indexed by *periods* with ``2 * harmonics`` columns.
    """
    if harmonics < 1:
        raise ValueError(f"harmonics must be >= 1, got {harmonics}")
    if periods_per_cycle < 2:
        raise ValueError(f"periods_per_cycle must be >= 2, got {periods_per_cycle}")

    t = absolute_index(periods)
    columns: dict[str, np.ndarray] = {}
    for k in range(1, harmonics + 1):
        angle = 2 * math.pi * k * t / periods_per_cycle
        columns[f"sin_{k}"] = np.sin(angle)
        columns[f"cos_{k}"] = np.cos(angle)
    index = periods if isinstance(periods, pd.PeriodIndex) else pd.Index(t.astype(int))
    return pd.DataFrame(columns, index=index, columns=feature_names(harmonics))


def future_periods(last: pd.Period, horizon: int) -> pd.PeriodIndex:
    """The *horizon* periods immediately after *last*."""
    if horizon < 1:
        raise ValueError(f"horizon must be >= 1, got {horizon}")
    return pd.period_range(last + 1, periods=horizon, freq=last.freq)


def horizon_features(
    last: pd.Period,
    horizon: int,
    harmonics: int,
    periods_per_cycle: int = PERIODS_PER_CYCLE,
) -> pd.DataFrame:
    """Seasonal features for the forecast horizon following *last*."""
    return seasonal_features(future_periods(last, horizon), harmonics, periods_per_cycle)
