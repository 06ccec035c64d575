"""Rolling-origin backtesting of the seasonal count forecaster.

Each fold is an immutable value that moves through
``PENDING -> FITTING -> FORECASTING -> RECORDED`` (or ``FAILED``). Folds
share no mutable state, so they may run on a thread pool; results are
merged in fold order once every fold has finished.
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

import pandas as pd

from epicurve.config import BacktestConfig
from epicurve.errors import FOLD_ERRORS, BacktestCancelled, EpicurveError
from epicurve.evaluate import AccuracyReport, evaluate_forecasts, naive_scale
from epicurve.features import seasonal_features
from epicurve.forecast import ForecastResult, predict
from epicurve.model import fit_count_model
from epicurve.utils.logging import get_logger

log = get_logger(__name__)

PAIR_COLUMNS: list[str] = [
    "fold",
    "cutoff",
    "period",
    "step",
    "actual",
    "forecast",
    "lower",
    "upper",
    "naive",
    "naive_scale",
]


class FoldState(str, Enum):
    PENDING = "pending"
    FITTING = "fitting"
    FORECASTING = "forecasting"
    RECORDED = "recorded"
    FAILED = "failed"


_TRANSITIONS: dict[FoldState, set[FoldState]] = {
    FoldState.PENDING: {FoldState.FITTING},
    FoldState.FITTING: {FoldState.FORECASTING, FoldState.FAILED},
    FoldState.FORECASTING: {FoldState.RECORDED, FoldState.FAILED},
    FoldState.RECORDED: set(),
    FoldState.FAILED: set(),
}


@dataclass(frozen=True)
class BacktestFold:
    """One origin: fit on ``train`` (periods <= cutoff), forecast ``horizon``."""

    index: int
    cutoff: pd.Period
    train: pd.Series
    horizon: pd.PeriodIndex
    state: FoldState = FoldState.PENDING
    forecast: Optional[ForecastResult] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    def advance(self, state: FoldState, **changes) -> "BacktestFold":
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Fold {self.index}: illegal transition {self.state} -> {state}")
        return replace(self, state=state, **changes)


@dataclass(frozen=True)
class BacktestResult:
    folds: tuple[BacktestFold, ...]
    pairs: pd.DataFrame
    report: AccuracyReport

    @property
    def n_recorded(self) -> int:
        return sum(f.state is FoldState.RECORDED for f in self.folds)

    @property
    def n_failed(self) -> int:
        return sum(f.state is FoldState.FAILED for f in self.folds)

    @property
    def failures(self) -> pd.DataFrame:
        """``fold, cutoff, code, error`` for each failed fold."""
        rows = [
            {"fold": f.index, "cutoff": f.cutoff, "code": f.error_code, "error": f.error}
            for f in self.folds
            if f.state is FoldState.FAILED
        ]
        return pd.DataFrame(rows, columns=["fold", "cutoff", "code", "error"])


def generate_folds(
    series: pd.Series,
    initial_window: int,
    horizon: int,
) -> list[BacktestFold]:
    """Folds with cutoffs after ``initial_window``, ``initial_window + 1``, ...

    The last fold's horizon ends on the last period of *series*, so there are
    ``max(0, len(series) - horizon - initial_window + 1)`` folds.
    """
    if initial_window < 1:
        raise ValueError(f"initial_window must be >= 1, got {initial_window}")
    if horizon < 1:
        raise ValueError(f"horizon must be >= 1, got {horizon}")

    folds: list[BacktestFold] = []
    for i, n_train in enumerate(range(initial_window, len(series) - horizon + 1)):
        folds.append(
            BacktestFold(
                index=i,
                cutoff=series.index[n_train - 1],
                train=series.iloc[:n_train].copy(),
                horizon=series.index[n_train : n_train + horizon],
            )
        )
    return folds


def run_fold(
    fold: BacktestFold,
    config: BacktestConfig,
    covariate: Optional[pd.Series] = None,
) -> BacktestFold:
    """Fit and forecast one fold; model failures end in ``FAILED``."""
    seasonal = config.model.seasonal
    fold = fold.advance(FoldState.FITTING)
    try:
        features = seasonal_features(
            fold.train.index, seasonal.harmonics, seasonal.periods_per_cycle
        )
        model = fit_count_model(fold.train, features, covariate, config.model)
    except FOLD_ERRORS as exc:
        log.debug("Fold %d failed while fitting: %s", fold.index, exc)
        return fold.advance(FoldState.FAILED, error=str(exc), error_code=exc.code)
    except EpicurveError as exc:
        raise exc.with_context(fold=fold.index, cutoff=str(fold.cutoff)) from exc

    fold = fold.advance(FoldState.FORECASTING)
    try:
        future = seasonal_features(fold.horizon, seasonal.harmonics, seasonal.periods_per_cycle)
        result = predict(model, fold.horizon, future, config.forecast, covariate)
    except FOLD_ERRORS as exc:
        return fold.advance(FoldState.FAILED, error=str(exc), error_code=exc.code)
    except EpicurveError as exc:
        raise exc.with_context(fold=fold.index, cutoff=str(fold.cutoff)) from exc
    return fold.advance(FoldState.RECORDED, forecast=result)


def _fold_pairs(fold: BacktestFold, series: pd.Series, naive_lag: int) -> list[dict]:
    """(actual, forecast) rows for a recorded fold, skipping missing actuals."""
    observed = fold.train.dropna()
    naive = float(observed.iloc[-1]) if not observed.empty else float("nan")
    scale = naive_scale(fold.train, naive_lag)
    rows: list[dict] = []
    for step, period in enumerate(fold.horizon, start=1):
        actual = series.loc[period]
        if pd.isna(actual):
            continue
        fc = fold.forecast.frame.loc[period]
        rows.append({
            "fold": fold.index,
            "cutoff": fold.cutoff,
            "period": period,
            "step": step,
            "actual": float(actual),
            "forecast": float(fc["forecast"]),
            "lower": float(fc["lower"]),
            "upper": float(fc["upper"]),
            "naive": naive,
            "naive_scale": scale,
        })
    return rows


def run_backtest(
    series: pd.Series,
    config: Optional[BacktestConfig] = None,
    covariate: Optional[pd.Series] = None,
    cancel: Optional[threading.Event] = None,
) -> BacktestResult:
    """Rolling-origin evaluation of the seasonal NB forecaster.

    For every fold the model is refitted on the periods up to the cutoff,
    with seasonal features regenerated for that window, and the next
    ``config.horizon`` periods are forecast. Folds that fail to fit are kept
    as ``FAILED``, excluded from the metrics and counted in the report.

    Args:
        series: Dense count series (usually the output of
            :func:`epicurve.impute.interpolate_gaps`).
        config: :class:`BacktestConfig`.
        covariate: Optional exogenous series, treated as known over the
            forecast horizon.
        cancel: Checked before each fold starts; once set, no further folds
            run and :class:`BacktestCancelled` is raised.

    Returns:
        :class:`BacktestResult` with folds, pairs and the accuracy report.
    """
    config = config or BacktestConfig()
    folds = generate_folds(series, config.initial_window, config.horizon)
    if not folds:
        log.warning(
            "No folds: %d periods is too short for window=%d and horizon=%d.",
            len(series),
            config.initial_window,
            config.horizon,
        )

    def _work(fold: BacktestFold) -> BacktestFold:
        if cancel is not None and cancel.is_set():
            return fold
        return run_fold(fold, config, covariate)

    if config.max_workers > 1 and len(folds) > 1:
        with ThreadPoolExecutor(
            max_workers=config.max_workers, thread_name_prefix="backtest"
        ) as pool:
            done = list(pool.map(_work, folds))
    else:
        done = []
        for fold in folds:
            if cancel is not None and cancel.is_set():
                break
            done.append(_work(fold))

    finished = [f for f in done if f.state is not FoldState.PENDING]
    if len(finished) < len(folds):
        raise BacktestCancelled(
            "Backtest cancelled", completed=len(finished), total=len(folds)
        )

    rows: list[dict] = []
    for fold in finished:
        if fold.state is FoldState.RECORDED:
            rows.extend(_fold_pairs(fold, series, config.naive_lag))
    pairs = pd.DataFrame(rows, columns=PAIR_COLUMNS)

    n_failed = sum(f.state is FoldState.FAILED for f in finished)
    report = evaluate_forecasts(pairs)
    naive = evaluate_forecasts(pairs, forecast_col="naive")
    report = replace(
        report,
        n_folds=len(finished),
        n_failed_folds=n_failed,
        extra={"naive_mae": naive["mae"], "naive_rmse": naive["rmse"]},
    )
    if n_failed:
        log.warning("%d of %d folds failed and were excluded.", n_failed, len(finished))
    log.info(
        "Backtest complete: %d pairs over %d folds (MAE %.3f, RMSE %.3f).",
        report.n_pairs,
        len(finished),
        report["mae"],
        report["rmse"],
    )
    return BacktestResult(folds=tuple(finished), pairs=pairs, report=report)
