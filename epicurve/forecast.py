"""Point forecasts and prediction intervals from a fitted count model."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np
import pandas as pd

from epicurve.config import ForecastConfig, ModelConfig
from epicurve.errors import FeatureHorizonMismatchError, FitNonconvergentError
from epicurve.features import horizon_features, seasonal_features
from epicurve.model import FittedModel, fit_count_model
from epicurve.utils.logging import get_logger

log = get_logger(__name__)

# Below this dispersion the NB draws are taken as Poisson.
_POISSON_ALPHA: float = 1e-6
# Largest mean numpy can draw Poisson counts from.
_MAX_DRAW_MEAN: float = 1e18


@dataclass(frozen=True)
class ForecastResult:
    """Per-period ``forecast``, ``lower`` and ``upper`` at ``confidence``."""

    frame: pd.DataFrame
    confidence: float

    @property
    def forecast(self) -> pd.Series:
        return self.frame["forecast"]

    @property
    def lower(self) -> pd.Series:
        return self.frame["lower"]

    @property
    def upper(self) -> pd.Series:
        return self.frame["upper"]


def simulate_counts(
    mu: np.ndarray,
    alpha: float,
    rng: np.random.Generator,
) -> np.ndarray:
    """Draw negative-binomial counts with means *mu* and dispersion *alpha*."""
    if alpha < _POISSON_ALPHA:
        return rng.poisson(mu).astype(float)
    size = 1.0 / alpha
    prob = np.clip(size / (size + mu), 1e-12, 1.0)
    return rng.negative_binomial(size, prob).astype(float)


def predict(
    model: FittedModel,
    periods: pd.PeriodIndex,
    features: pd.DataFrame,
    config: Optional[ForecastConfig] = None,
    covariate: Optional[pd.Series] = None,
) -> ForecastResult:
    """Forecast *periods* from *model*.

    The point forecast is the inverse-link mean ``exp(X @ beta)``. The
    prediction interval is simulated: coefficients are drawn from their
    asymptotic normal distribution, then counts are drawn from the
    negative-binomial around each drawn mean, so the interval reflects both
    parameter uncertainty and overdispersion.

    Args:
        model: A :class:`FittedModel`.
        periods: Target periods.
        features: Seasonal features for exactly *periods*, generated from
            the same absolute phase as the training features.
        config: :class:`ForecastConfig` (confidence, draws, seed).
        covariate: Exogenous series covering ``periods - lag`` when the
            model has a covariate term.

    Raises:
        FeatureHorizonMismatchError: features (or lagged covariate values)
            do not line up with *periods*.
        FitNonconvergentError: the point or simulated means overflow, which
            happens when the fit has diverging coefficients.
    """
    config = config or ForecastConfig()
    if not 0.0 < config.confidence < 1.0:
        raise ValueError(f"confidence must lie in (0, 1), got {config.confidence}")
    if len(features) != len(periods) or not features.index.equals(periods):
        raise FeatureHorizonMismatchError(
            "Feature rows must match the target periods one to one",
            n_features=len(features),
            n_periods=len(periods),
        )

    X = model.design(periods, features, covariate)
    unavailable = X.isna().any(axis=1)
    if unavailable.any():
        raise FeatureHorizonMismatchError(
            "Lagged covariate not available for target periods",
            periods=[str(p) for p in periods[unavailable.to_numpy()]],
        )

    X_arr = X.to_numpy(dtype=float)
    beta = model.params.reindex(X.columns).to_numpy(dtype=float)
    cov = model.cov_params.reindex(index=X.columns, columns=X.columns).to_numpy(dtype=float)
    rng = np.random.default_rng(config.random_state)
    beta_draws = rng.multivariate_normal(beta, cov, size=config.n_draws)
    with np.errstate(over="ignore"):
        mean = np.exp(X_arr @ beta)
        mu_draws = np.exp(X_arr @ beta_draws.T)
    if not np.all(np.isfinite(mean)) or not np.all(mu_draws < _MAX_DRAW_MEAN):
        raise FitNonconvergentError(
            "Forecast means overflow; the fitted coefficients are not usable",
            first=str(periods[0]),
            last=str(periods[-1]),
            max_eta=float(np.max(X_arr @ beta)),
        )
    count_draws = simulate_counts(mu_draws, model.alpha, rng)

    tail = (1.0 - config.confidence) / 2.0
    lower, upper = np.quantile(count_draws, [tail, 1.0 - tail], axis=1)
    frame = pd.DataFrame(
        {"forecast": mean, "lower": lower, "upper": upper},
        index=periods,
    )
    frame.index.name = "period"
    return ForecastResult(frame=frame, confidence=config.confidence)


def forecast_series(
    series: pd.Series,
    horizon: int,
    model_config: Optional[ModelConfig] = None,
    forecast_config: Optional[ForecastConfig] = None,
    covariate: Optional[pd.Series] = None,
) -> ForecastResult:
    """Fit on all of *series* and forecast the next *horizon* periods."""
    model_config = model_config or ModelConfig()
    seasonal = model_config.seasonal
    features = seasonal_features(series.index, seasonal.harmonics, seasonal.periods_per_cycle)
    model = fit_count_model(series, features, covariate, model_config)
    future = horizon_features(
        series.index[-1], horizon, seasonal.harmonics, seasonal.periods_per_cycle
    )
    result = predict(model, future.index, future, forecast_config, covariate)
    log.info(
        "Forecast %d periods after %s (alpha=%.3g).", horizon, series.index[-1], model.alpha
    )
    return result
