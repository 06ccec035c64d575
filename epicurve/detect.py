"""Aberration detection on dense count series.

Two interchangeable strategies share one output shape, a frame indexed by
period with ``observed``, ``expected``, ``upper_bound`` and ``alarm``
(``observed > upper_bound``):

``reweighted``
    Farrington-style. For every evaluated period a negative-binomial GLM is
    fitted to reference values (a trailing window plus same-season windows
    from earlier cycles), outlying reference points are down-weighted and
    the model refitted, and the bound is an upper quantile of the fitted
    distribution.

``sequential``
    NB CUSUM. An in-control model fitted on the baseline before the range
    is compared with an out-of-control model whose mean is inflated by
    ``exp(theta)``; the cumulative log-likelihood ratio alarms when it
    reaches ``control_limit`` and then restarts from zero. It works on whole
    counts, so non-integer values (from gap interpolation) are floored and
    reported floored in ``observed``.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy.stats import nbinom, norm, poisson

from epicurve.config import DetectorConfig, ReweightedConfig, SequentialConfig
from epicurve.errors import (
    FOLD_ERRORS,
    FitNonconvergentError,
    InsufficientDataError,
    RangeOutOfBoundsError,
)
from epicurve.features import seasonal_features
from epicurve.model import NBFit, fit_negative_binomial
from epicurve.utils.logging import get_logger

log = get_logger(__name__)

STRATEGIES: tuple[str, ...] = ("reweighted", "sequential")
THRESHOLD_METHODS: tuple[str, ...] = ("nb_plugin", "muan")

# Dispersion below which the NB is treated as Poisson.
_POISSON_ALPHA: float = 1e-6


@dataclass(frozen=True)
class AberrationResult:
    """Per-period thresholds produced by one strategy."""

    strategy: str
    frame: pd.DataFrame

    @property
    def alarms(self) -> pd.PeriodIndex:
        return self.frame.index[self.frame["alarm"].to_numpy(dtype=bool)]

    @property
    def n_alarms(self) -> int:
        return int(self.frame["alarm"].sum())


def nb_quantile(q: float, mu: float, alpha: float) -> float:
    """*q*-quantile of NB2(mean=mu, dispersion=alpha); Poisson as alpha -> 0."""
    if mu <= 0:
        return 0.0
    if alpha < _POISSON_ALPHA:
        return float(poisson.ppf(q, mu))
    size = 1.0 / alpha
    return float(nbinom.ppf(q, size, size / (size + mu)))


def _resolve_range(
    series: pd.Series,
    start,
    end,
    default_start: int,
) -> tuple[int, int]:
    """Positions of the first and last evaluated period."""
    index = series.index
    if default_start >= len(index):
        raise InsufficientDataError(
            "Series is too short to leave a baseline before the evaluation range",
            n_periods=len(index),
            baseline=default_start,
        )
    first = pd.Period(start, freq=index.freq) if start is not None else index[default_start]
    last = pd.Period(end, freq=index.freq) if end is not None else index[-1]
    if first < index[0] or last > index[-1] or first > last:
        raise RangeOutOfBoundsError(
            "Evaluation range lies outside the series",
            start=str(first),
            end=str(last),
            first=str(index[0]),
            last=str(index[-1]),
        )
    return index.get_loc(first), index.get_loc(last)


def detect_aberrations(
    series: pd.Series,
    config: Optional[DetectorConfig] = None,
    start=None,
    end=None,
) -> AberrationResult:
    """Flag periods in ``[start, end]`` whose count exceeds the modelled bound.

    Args:
        series: Dense count series indexed by :class:`pd.PeriodIndex`.
        config: :class:`DetectorConfig`; ``config.strategy`` picks the method.
        start: First evaluated period (anything :class:`pd.Period` accepts).
            Defaults to the first period with a baseline behind it.
        end: Last evaluated period; defaults to the end of the series.

    Raises:
        RangeOutOfBoundsError: the range is not inside the series.
        InsufficientDataError: an evaluated period has no usable baseline.
    """
    config = config or DetectorConfig()
    if config.strategy == "reweighted":
        first, last = _resolve_range(series, start, end, default_start=1)
        frame = _reweighted(series, first, last, config)
    elif config.strategy == "sequential":
        default = config.sequential.baseline_periods or 1
        first, last = _resolve_range(series, start, end, default_start=default)
        frame = _sequential(series, first, last, config)
    else:
        raise ValueError(f"Unknown strategy {config.strategy!r}; choose from {STRATEGIES}")

    result = AberrationResult(strategy=config.strategy, frame=frame)
    log.info(
        "%s detector: %d alarms over %d periods (%s to %s).",
        config.strategy,
        result.n_alarms,
        len(frame),
        series.index[first],
        series.index[last],
    )
    return result


# ── Reweighted baseline ─────────────────────────────────────────────────────


def reference_positions(
    position: int,
    cfg: ReweightedConfig,
    periods_per_cycle: int,
) -> list[int]:
    """Positions of the reference values for the period at *position*.

    The trailing window ends ``past_periods_excluded`` periods before the
    current one; seasonal windows of half width ``window_half_width`` sit
    one, two, ... ``years_back`` cycles earlier and are cut at the same end.
    """
    end = position - cfg.past_periods_excluded
    picked = set(range(max(0, end - cfg.baseline_periods), max(0, end)))
    for back in range(1, cfg.years_back + 1):
        centre = position - back * periods_per_cycle
        for offset in range(-cfg.window_half_width, cfg.window_half_width + 1):
            j = centre + offset
            if 0 <= j < end:
                picked.add(j)
    return sorted(picked)


def _reference_fit(
    y: np.ndarray,
    t: np.ndarray,
    weights: Optional[np.ndarray],
    with_trend: bool,
    config: DetectorConfig,
) -> NBFit:
    columns = [np.ones(len(y))]
    if with_trend:
        columns.append(t)
    return fit_negative_binomial(y, np.column_stack(columns), weights, config.model)


def _anscombe(y: np.ndarray, mu: np.ndarray, alpha: float) -> np.ndarray:
    family = sm.families.NegativeBinomial(alpha=max(alpha, _POISSON_ALPHA))
    return np.asarray(family.resid_anscombe(y, mu), dtype=float)


def _upper_bound(fit: NBFit, x_now: np.ndarray, cfg: ReweightedConfig) -> tuple[float, float]:
    """Expected count and upper bound at the current period."""
    eta = float(x_now @ fit.params)
    expected = math.exp(eta)
    if cfg.threshold_method == "nb_plugin":
        return expected, nb_quantile(1.0 - cfg.alpha, expected, fit.alpha)
    if cfg.threshold_method == "muan":
        se = math.sqrt(max(float(x_now @ fit.cov_params @ x_now), 0.0))
        mu_upper = math.exp(eta + norm.ppf(1.0 - cfg.alpha) * se)
        return expected, nb_quantile(1.0 - cfg.alpha, mu_upper, fit.alpha)
    raise ValueError(
        f"Unknown threshold_method {cfg.threshold_method!r}; choose from {THRESHOLD_METHODS}"
    )


def _reweighted_period(
    series: pd.Series,
    position: int,
    config: DetectorConfig,
) -> dict:
    cfg = config.reweighted
    P = config.periods_per_cycle
    refs = [j for j in reference_positions(position, cfg, P) if pd.notna(series.iloc[j])]
    if len(refs) < cfg.min_baseline:
        raise InsufficientDataError(
            "Not enough reference values",
            period=str(series.index[position]),
            n_reference=len(refs),
            required=cfg.min_baseline,
        )
    y = series.iloc[refs].to_numpy(dtype=float)
    t = (np.asarray(refs, dtype=float) - position) / P
    observed = float(series.iloc[position])
    row = {"observed": observed, "n_reference": len(refs)}

    if y.sum() == 0:
        return {**row, "expected": 0.0, "upper_bound": 0.0}

    # Trend is kept only when it fits, is significant and does not
    # extrapolate above anything seen in the reference values.
    with_trend = cfg.trend and len(np.unique(t)) >= 3
    fit = None
    if with_trend:
        try:
            fit = _reference_fit(y, t, None, True, config)
        except FitNonconvergentError as exc:
            log.debug("Trend fit at %s failed: %s", series.index[position], exc)
        else:
            extrapolated = math.exp(fit.params[0])
            if fit.pvalues[1] > cfg.trend_p_threshold or extrapolated > y.max():
                fit = None
    with_trend = fit is not None
    if fit is None:
        fit = _reference_fit(y, t, None, False, config)

    if cfg.reweight and len(y) > 1:
        resid = _anscombe(y, fit.mu, fit.alpha)
        outlying = resid > cfg.reweight_threshold
        if outlying.any():
            weights = np.where(outlying, resid ** -2.0, 1.0)
            weights *= len(weights) / weights.sum()
            try:
                fit = _reference_fit(y, t, weights, with_trend, config)
            except FitNonconvergentError as exc:
                log.debug("Reweighted fit at %s failed: %s", series.index[position], exc)

    x_now = np.array([1.0, 0.0]) if with_trend else np.array([1.0])
    expected, bound = _upper_bound(fit, x_now, cfg)
    return {**row, "expected": expected, "upper_bound": bound}


def _recent_cases_ok(series: pd.Series, position: int, cfg: ReweightedConfig) -> bool:
    min_cases, window = cfg.min_recent_cases
    if min_cases <= 0 or window <= 0:
        return True
    recent = series.iloc[max(0, position - window + 1) : position + 1]
    return float(recent.sum()) >= min_cases


def _reweighted(series: pd.Series, first: int, last: int, config: DetectorConfig) -> pd.DataFrame:
    rows = []
    for position in range(first, last + 1):
        observed = series.iloc[position]
        if pd.isna(observed):
            rows.append({
                "observed": np.nan,
                "n_reference": 0,
                "expected": np.nan,
                "upper_bound": np.nan,
                "alarm": False,
            })
            continue
        try:
            row = _reweighted_period(series, position, config)
        except FitNonconvergentError as exc:
            log.warning(
                "No baseline model at %s; period left without a bound: %s",
                series.index[position],
                exc,
            )
            rows.append({
                "observed": float(observed),
                "n_reference": 0,
                "expected": np.nan,
                "upper_bound": np.nan,
                "alarm": False,
            })
            continue
        row["alarm"] = bool(
            row["observed"] > row["upper_bound"]
            and _recent_cases_ok(series, position, config.reweighted)
        )
        rows.append(row)
    frame = pd.DataFrame(
        rows,
        index=series.index[first : last + 1],
        columns=["observed", "expected", "upper_bound", "alarm", "n_reference"],
    )
    frame.index.name = "period"
    return frame


# ── Sequential likelihood ratio ─────────────────────────────────────────────


@dataclass(frozen=True)
class _InControl:
    params: np.ndarray
    alpha: float


def _sequential_design(periods: pd.PeriodIndex, harmonics: int, periods_per_cycle: int) -> np.ndarray:
    columns = [np.ones(len(periods))]
    if harmonics > 0:
        columns.append(seasonal_features(periods, harmonics, periods_per_cycle).to_numpy())
    return np.column_stack(columns)


def _fit_in_control(
    series: pd.Series,
    positions: list[int],
    config: DetectorConfig,
) -> _InControl:
    cfg = config.sequential
    usable = [j for j in positions if pd.notna(series.iloc[j])]
    if not usable:
        raise InsufficientDataError(
            "No baseline values for the in-control model",
            before=str(series.index[positions[-1] + 1]) if positions else "start",
        )
    y = series.iloc[usable].to_numpy(dtype=float)
    if y.sum() == 0:
        raise InsufficientDataError(
            "Baseline is all zero; the in-control mean is not identifiable",
            n_baseline=len(y),
        )
    X = _sequential_design(series.index[usable], cfg.harmonics, config.periods_per_cycle)
    fit = fit_negative_binomial(y, X, config=config.model)
    return _InControl(params=fit.params, alpha=fit.alpha)


def llr_coefficients(mu0: float, mu1: float, alpha: float) -> tuple[float, float]:
    """``(slope, intercept)`` of ``log f1(x) / f0(x)`` as a linear function of x."""
    if alpha < _POISSON_ALPHA:
        return math.log(mu1 / mu0), mu0 - mu1
    size = 1.0 / alpha
    shrink = math.log1p((mu0 - mu1) / (size + mu1))
    return math.log(mu1 / mu0) + shrink, size * shrink


def _sequential(series: pd.Series, first: int, last: int, config: DetectorConfig) -> pd.DataFrame:
    cfg: SequentialConfig = config.sequential
    if cfg.theta <= 0:
        raise ValueError(f"theta must be > 0, got {cfg.theta}")

    def baseline_positions(end: int, skip: set[int]) -> list[int]:
        lo = 0 if cfg.baseline_periods is None else max(0, end - cfg.baseline_periods)
        return [j for j in range(lo, end) if j not in skip]

    alarmed: set[int] = set()
    model = _fit_in_control(series, baseline_positions(first, alarmed), config)
    X = _sequential_design(series.index, cfg.harmonics, config.periods_per_cycle)

    statistic = 0.0
    rows = []
    for position in range(first, last + 1):
        observed = series.iloc[position]
        mu0 = float(math.exp(X[position] @ model.params))
        if pd.isna(observed):
            rows.append({
                "observed": np.nan,
                "expected": mu0,
                "upper_bound": np.nan,
                "alarm": False,
                "statistic": statistic,
            })
            continue

        # The likelihood ratio is defined on counts; interpolated values are
        # floored, with slack for float noise from the interpolation.
        observed = float(math.floor(float(observed) + 1e-9))
        mu1 = mu0 * math.exp(cfg.theta)
        slope, intercept = llr_coefficients(mu0, mu1, model.alpha)
        # Largest count that keeps the statistic below the control limit.
        bound = math.ceil((cfg.control_limit - statistic - intercept) / slope) - 1
        bound = float(max(bound, 0))
        alarm = observed > bound
        statistic = max(0.0, statistic + slope * observed + intercept)
        rows.append({
            "observed": observed,
            "expected": mu0,
            "upper_bound": bound,
            "alarm": alarm,
            "statistic": statistic,
        })
        if alarm:
            statistic = 0.0
            alarmed.add(position)
            if cfg.refit_after_alarm:
                try:
                    model = _fit_in_control(
                        series, baseline_positions(position + 1, alarmed), config
                    )
                except FOLD_ERRORS as exc:
                    log.warning(
                        "Refit after alarm at %s failed; keeping previous model: %s",
                        series.index[position],
                        exc,
                    )

    frame = pd.DataFrame(
        rows,
        index=series.index[first : last + 1],
        columns=["observed", "expected", "upper_bound", "alarm", "statistic"],
    )
    frame.index.name = "period"
    return frame
