"""Forecast accuracy metrics over backtest (actual, forecast) pairs."""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np
import pandas as pd

from epicurve.utils.logging import get_logger

log = get_logger(__name__)


@dataclass(frozen=True)
class AccuracyReport:
    """Metric name -> value, plus how many pairs each metric had to drop."""

    metrics: dict[str, float]
    n_pairs: int
    n_nonfinite: int = 0
    mape_excluded: int = 0
    mase_excluded: int = 0
    n_folds: int = 0
    n_failed_folds: int = 0
    extra: dict[str, float] = field(default_factory=dict)

    def __getitem__(self, name: str) -> float:
        return self.metrics[name]

    def as_dict(self) -> dict:
        return {
            **self.metrics,
            "n_pairs": self.n_pairs,
            "n_nonfinite": self.n_nonfinite,
            "mape_excluded": self.mape_excluded,
            "mase_excluded": self.mase_excluded,
            "n_folds": self.n_folds,
            "n_failed_folds": self.n_failed_folds,
            **self.extra,
        }


def naive_scale(series: pd.Series, lag: int = 1) -> float:
    """In-sample MAE of the naive forecast ``y[t - lag]``.

    Use ``lag=1`` for the random-walk naive or the cycle length for the
    seasonal naive. Returns ``NaN`` when fewer than ``lag + 1`` values exist.
    """
    diffs = (series - series.shift(lag)).abs().dropna()
    if diffs.empty:
        return float("nan")
    return float(diffs.mean())


def evaluate_forecasts(
    pairs: pd.DataFrame,
    forecast_col: str = "forecast",
    actual_col: str = "actual",
    scale_col: str = "naive_scale",
) -> AccuracyReport:
    """Compute RMSE, MAE, MAPE (%) and MASE over *pairs*.

    Pairs with a non-finite forecast or actual are dropped and counted.
    MAPE skips ``actual == 0`` and MASE skips zero or undefined scales; both
    report how many pairs they skipped. A metric with no usable pair is
    ``NaN``.
    """
    if pairs.empty:
        nan = float("nan")
        return AccuracyReport(
            metrics={"rmse": nan, "mae": nan, "mape": nan, "mase": nan}, n_pairs=0
        )

    actual = pairs[actual_col].to_numpy(dtype=float)
    pred = pairs[forecast_col].to_numpy(dtype=float)
    finite = np.isfinite(actual) & np.isfinite(pred)
    n_nonfinite = int((~finite).sum())
    if n_nonfinite:
        log.warning("Excluded %d pairs with non-finite values.", n_nonfinite)

    err = actual[finite] - pred[finite]
    abs_err = np.abs(err)
    if err.size:
        mae = float(np.mean(abs_err))
        rmse = float(np.sqrt(np.mean(err**2)))
    else:
        mae = rmse = float("nan")

    nonzero = actual[finite] != 0
    mape_excluded = int((~nonzero).sum())
    mape = (
        float(np.mean(abs_err[nonzero] / np.abs(actual[finite][nonzero])) * 100.0)
        if nonzero.any()
        else float("nan")
    )

    if scale_col in pairs.columns:
        scale = pairs[scale_col].to_numpy(dtype=float)[finite]
        scaled_ok = np.isfinite(scale) & (scale > 0)
        mase_excluded = int((~scaled_ok).sum())
        mase = (
            float(np.mean(abs_err[scaled_ok] / scale[scaled_ok]))
            if scaled_ok.any()
            else float("nan")
        )
    else:
        mase_excluded = int(err.size)
        mase = float("nan")

    return AccuracyReport(
        metrics={"rmse": rmse, "mae": mae, "mape": mape, "mase": mase},
        n_pairs=int(err.size),
        n_nonfinite=n_nonfinite,
        mape_excluded=mape_excluded,
        mase_excluded=mase_excluded,
    )
