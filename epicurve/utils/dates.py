"""Date parsing and period-grid helpers."""

from __future__ import annotations

import pandas as pd

_DATE_FORMATS: list[str] = [
    "%Y-%m-%d",
    "%d/%m/%Y",
    "%m/%d/%Y",
    "%Y/%m/%d",
    "%d-%m-%Y",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
    "%d %b %Y",
    "%d %B %Y",
]


def parse_dates_robust(series: pd.Series) -> pd.Series:
    """Try ``pd.to_datetime`` first, then fall back to the known formats.

    Returns a :class:`pd.Series` of ``datetime64[ns]`` with unparseable entries
    set to ``NaT``.
    """
    if pd.api.types.is_datetime64_any_dtype(series):
        return series
    result = pd.to_datetime(series, errors="coerce")
    for fmt in _DATE_FORMATS:
        still_missing = result.isna() & series.notna()
        if not still_missing.any():
            break
        result = result.fillna(
            pd.to_datetime(series, format=fmt, errors="coerce")
        )
    return result


def to_periods(dates: pd.Series, freq: str) -> pd.Series:
    """Map parsed timestamps onto their ``freq`` period."""
    return dates.dt.to_period(freq)


def period_grid(start: pd.Period, end: pd.Period) -> pd.PeriodIndex:
    """Return the complete period index from *start* to *end* inclusive."""
    return pd.period_range(start, end, freq=start.freq)
