"""Defaults and typed configuration for the epicurve pipeline.

Module-level constants hold the defaults; the frozen dataclasses below are
what components actually receive, so every call carries its configuration
explicitly.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Final, Optional

# ── Calendar ────────────────────────────────────────────────────────────────
PERIOD_FREQ: Final[str] = "W-SUN"  # Monday-start weeks
PERIODS_PER_CYCLE: Final[int] = 52

# ── Seasonal regression ─────────────────────────────────────────────────────
HARMONICS: Final[int] = 1
COVARIATE_LAG: Final[int] = 1
ALPHA_BOUNDS: Final[tuple[float, float]] = (1e-8, 1e3)
MAX_ALTERNATIONS: Final[int] = 50
ALTERNATION_TOL: Final[float] = 1e-6
IRLS_MAXITER: Final[int] = 100

# ── Forecasting ─────────────────────────────────────────────────────────────
CONFIDENCE: Final[float] = 0.95
N_DRAWS: Final[int] = 2000
RANDOM_STATE: Final[int] = 42

# ── Backtesting ─────────────────────────────────────────────────────────────
INITIAL_WINDOW: Final[int] = 52
DEFAULT_HORIZON: Final[int] = 4
MAX_WORKERS: Final[int] = 1

# ── Aberration detection ────────────────────────────────────────────────────
DETECTION_ALPHA: Final[float] = 0.01
BASELINE_PERIODS: Final[int] = 4
YEARS_BACK: Final[int] = 3
WINDOW_HALF_WIDTH: Final[int] = 3
REWEIGHT_THRESHOLD: Final[float] = 2.58
TREND_P_THRESHOLD: Final[float] = 0.05
MIN_RECENT_CASES: Final[tuple[int, int]] = (0, 4)  # (5, 4) is the classic rule
CONTROL_LIMIT: Final[float] = 5.0
THETA: Final[float] = 0.6931471805599453  # log(2): doubling of the mean

# ── Env overrides ───────────────────────────────────────────────────────────
LOG_LEVEL: Final[str] = os.getenv("LOG_LEVEL", "INFO")


@dataclass(frozen=True)
class SeasonalConfig:
    """Fourier basis: ``harmonics`` sin/cos pairs per ``periods_per_cycle``."""

    harmonics: int = HARMONICS
    periods_per_cycle: int = PERIODS_PER_CYCLE


@dataclass(frozen=True)
class ModelConfig:
    """Negative-binomial count regression settings."""

    seasonal: SeasonalConfig = field(default_factory=SeasonalConfig)
    trend: bool = True
    covariate_lag: Optional[int] = None
    alpha_bounds: tuple[float, float] = ALPHA_BOUNDS
    max_alternations: int = MAX_ALTERNATIONS
    tol: float = ALTERNATION_TOL
    irls_maxiter: int = IRLS_MAXITER


@dataclass(frozen=True)
class ForecastConfig:
    """Prediction-interval settings."""

    confidence: float = CONFIDENCE
    n_draws: int = N_DRAWS
    random_state: int = RANDOM_STATE


@dataclass(frozen=True)
class BacktestConfig:
    """Rolling-origin backtest settings (the origin advances one period per fold)."""

    initial_window: int = INITIAL_WINDOW
    horizon: int = DEFAULT_HORIZON
    model: ModelConfig = field(default_factory=ModelConfig)
    forecast: ForecastConfig = field(default_factory=ForecastConfig)
    naive_lag: int = 1
    max_workers: int = MAX_WORKERS


@dataclass(frozen=True)
class ReweightedConfig:
    """Controls for the reweighted-baseline (Farrington-style) detector."""

    alpha: float = DETECTION_ALPHA
    baseline_periods: int = BASELINE_PERIODS
    past_periods_excluded: int = 0
    years_back: int = YEARS_BACK
    window_half_width: int = WINDOW_HALF_WIDTH
    reweight: bool = True
    reweight_threshold: float = REWEIGHT_THRESHOLD
    trend: bool = True
    trend_p_threshold: float = TREND_P_THRESHOLD
    threshold_method: str = "nb_plugin"
    min_baseline: int = 1
    min_recent_cases: tuple[int, int] = MIN_RECENT_CASES


@dataclass(frozen=True)
class SequentialConfig:
    """Controls for the sequential likelihood-ratio (NB CUSUM) detector."""

    control_limit: float = CONTROL_LIMIT
    theta: float = THETA
    baseline_periods: Optional[int] = BASELINE_PERIODS
    harmonics: int = 0
    refit_after_alarm: bool = False


@dataclass(frozen=True)
class DetectorConfig:
    """Aberration detector: ``strategy`` selects which control block applies."""

    strategy: str = "reweighted"
    periods_per_cycle: int = PERIODS_PER_CYCLE
    reweighted: ReweightedConfig = field(default_factory=ReweightedConfig)
    sequential: SequentialConfig = field(default_factory=SequentialConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
