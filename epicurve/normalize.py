"""Normalisation of raw (timestamp, count) records onto a dense period grid."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence, Union

import numpy as np
import pandas as pd

from epicurve.config import PERIOD_FREQ
from epicurve.errors import InsufficientDataError, MalformedTimestampError, RangeOutOfBoundsError
from epicurve.utils.dates import parse_dates_robust, period_grid, to_periods
from epicurve.utils.logging import get_logger

log = get_logger(__name__)

Records = Union[pd.DataFrame, Iterable[Sequence]]


@dataclass(frozen=True)
class NormalizedSeries:
    """Dense count series plus what the raw input looked like."""

    counts: pd.Series
    covariate: Optional[pd.Series]
    duplicates: pd.PeriodIndex
    missing: pd.PeriodIndex

    @property
    def periods(self) -> pd.PeriodIndex:
        return self.counts.index


def _records_frame(
    records: Records,
    date_col: str,
    count_col: str,
    covariate_col: Optional[str],
) -> pd.DataFrame:
    """Coerce tuples or a frame into ``date``/``count``[/``covariate``] columns."""
    if isinstance(records, pd.DataFrame):
        missing = {date_col, count_col} - set(records.columns)
        if covariate_col is not None and covariate_col not in records.columns:
            missing.add(covariate_col)
        if missing:
            raise ValueError(
                f"Missing required columns: {sorted(missing)}. "
                f"Available: {sorted(records.columns)}"
            )
        cols = {date_col: "date", count_col: "count"}
        if covariate_col is not None:
            cols[covariate_col] = "covariate"
        return records[list(cols)].rename(columns=cols).reset_index(drop=True)

    rows = [tuple(r) for r in records]
    width = {len(r) for r in rows}
    if len(width) > 1:
        raise ValueError(f"Records have inconsistent lengths: {sorted(width)}")
    names = ["date", "count", "covariate"][: width.pop() if width else 2]
    return pd.DataFrame(rows, columns=names)


def normalize_counts(
    records: Records,
    freq: str = PERIOD_FREQ,
    date_col: str = "date",
    count_col: str = "count",
    covariate_col: Optional[str] = None,
) -> NormalizedSeries:
    """Align raw records onto a complete ``freq`` period grid.

    Records that fall into the same period are summed (covariates are
    averaged) and the period is reported in ``duplicates``. Periods between
    the first and last record that have no record at all are left as ``NaN``
    and listed in ``missing``.

    Args:
        records: A DataFrame, or an iterable of ``(timestamp, count)`` /
            ``(timestamp, count, covariate)`` tuples in any order.
        freq: pandas period frequency of the canonical grid.
        date_col: Timestamp column when *records* is a DataFrame.
        count_col: Count column when *records* is a DataFrame.
        covariate_col: Optional exogenous covariate column.

    Returns:
        :class:`NormalizedSeries` indexed by :class:`pd.PeriodIndex`.

    Raises:
        MalformedTimestampError: a timestamp cannot be mapped to a period.
        InsufficientDataError: there are no records at all.
    """
    df = _records_frame(records, date_col, count_col, covariate_col)
    if df.empty:
        raise InsufficientDataError("No records to normalise")
    has_covariate = "covariate" in df.columns

    parsed = parse_dates_robust(df["date"])
    bad = parsed.isna()
    if bad.any():
        raise MalformedTimestampError(
            "Timestamps could not be mapped to a period",
            n_bad=int(bad.sum()),
            examples=df.loc[bad, "date"].head(5).tolist(),
        )
    df = df.assign(
        period=to_periods(parsed, freq),
        count=pd.to_numeric(df["count"], errors="coerce").astype(float),
    )

    per_period = df.groupby("period").size()
    duplicates = pd.PeriodIndex(per_period.index[per_period > 1], freq=freq)
    if len(duplicates):
        log.warning("%d periods had more than one record; counts summed.", len(duplicates))

    grouped = df.groupby("period")
    counts = grouped["count"].sum(min_count=1)
    grid = period_grid(counts.index.min(), counts.index.max())
    missing = grid.difference(counts.index)

    counts = counts.reindex(grid).rename("count")
    counts.index.name = "period"
    covariate = None
    if has_covariate:
        covariate = (
            grouped["covariate"].mean().astype(float).reindex(grid).rename("covariate")
        )
        covariate.index.name = "period"

    log.info(
        "Normalised %d records onto %d periods (%s to %s); %d missing.",
        len(df),
        len(grid),
        grid[0],
        grid[-1],
        len(missing),
    )
    return NormalizedSeries(
        counts=counts,
        covariate=covariate,
        duplicates=duplicates,
        missing=missing,
    )


def mask_periods(series: pd.Series, periods: Iterable) -> pd.Series:
    """Return a copy of *series* with *periods* marked missing.

    Used to blank out periods known to be reporting anomalies before
    imputation.
    """
    freq = series.index.freq
    targets = pd.PeriodIndex([pd.Period(p, freq=freq) for p in periods], freq=freq)
    outside = targets.difference(series.index)
    if len(outside):
        raise RangeOutOfBoundsError(
            "Cannot mask periods outside the series",
            periods=[str(p) for p in outside],
            first=str(series.index[0]),
            last=str(series.index[-1]),
        )
    masked = series.copy()
    masked.loc[targets] = np.nan
    return masked
