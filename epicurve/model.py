"""Negative-binomial seasonal count regression.

The model is assembled from an explicit list of :class:`ModelTerm` values
(intercept, trend, Fourier harmonics, lagged covariate) and fitted with a
log link. The dispersion ``alpha`` is estimated jointly with the mean
coefficients by alternating IRLS fits of a statsmodels negative-binomial GLM
at fixed ``alpha`` with a bounded profile-likelihood update of ``alpha``.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy.optimize import minimize_scalar

from epicurve.config import COVARIATE_LAG, ModelConfig
from epicurve.errors import (
    EpicurveError,
    FeatureHorizonMismatchError,
    FitNonconvergentError,
    InsufficientDataError,
)
from epicurve.features import feature_names, seasonal_features
from epicurve.utils.logging import get_logger

log = get_logger(__name__)

# Fitted means this small only arise when IRLS chases a zero-count region
# towards log(0) (quasi-separation).
_MIN_FITTED_MEAN: float = 1e-8


class TermKind(str, Enum):
    INTERCEPT = "intercept"
    TREND = "trend"
    SEASONAL = "seasonal"
    COVARIATE = "covariate"


@dataclass(frozen=True)
class ModelTerm:
    """One named column of the design matrix."""

    name: str
    kind: TermKind
    lag: Optional[int] = None


def build_terms(
    harmonics: int,
    trend: bool = True,
    covariate_lag: Optional[int] = None,
) -> list[ModelTerm]:
    """Ordered term list: intercept, trend, ``2 * harmonics`` seasonal, covariate."""
    terms = [ModelTerm("intercept", TermKind.INTERCEPT)]
    if trend:
        terms.append(ModelTerm("trend", TermKind.TREND))
    terms += [ModelTerm(name, TermKind.SEASONAL) for name in feature_names(harmonics)]
    if covariate_lag is not None:
        if covariate_lag < 0:
            raise ValueError(f"covariate_lag must be >= 0, got {covariate_lag}")
        terms.append(
            ModelTerm(f"covariate_lag{covariate_lag}", TermKind.COVARIATE, lag=covariate_lag)
        )
    return terms


def design_matrix(
    terms: list[ModelTerm],
    periods: pd.PeriodIndex,
    origin: pd.Period,
    periods_per_cycle: int,
    features: Optional[pd.DataFrame] = None,
    covariate: Optional[pd.Series] = None,
) -> pd.DataFrame:
    """Evaluate *terms* on *periods*.

    The trend is the number of cycles since *origin* (the first period of the
    training window). Lagged covariate values that are not available are
    ``NaN``.
    """
    columns: dict[str, np.ndarray] = {}
    for term in terms:
        if term.kind is TermKind.INTERCEPT:
            columns[term.name] = np.ones(len(periods))
        elif term.kind is TermKind.TREND:
            offsets = np.array([p.ordinal - origin.ordinal for p in periods], dtype=float)
            columns[term.name] = offsets / periods_per_cycle
        elif term.kind is TermKind.SEASONAL:
            if features is None or term.name not in features.columns:
                raise FeatureHorizonMismatchError(
                    "Seasonal feature column not supplied", term=term.name
                )
            columns[term.name] = features[term.name].to_numpy(dtype=float)
        elif term.kind is TermKind.COVARIATE:
            if covariate is None:
                raise FeatureHorizonMismatchError(
                    "Model has a covariate term but no covariate was supplied",
                    term=term.name,
                )
            lagged = covariate.reindex(periods - term.lag)
            columns[term.name] = lagged.to_numpy(dtype=float)
    return pd.DataFrame(columns, index=periods)


# ── Negative-binomial fitting ───────────────────────────────────────────────


@dataclass(frozen=True)
class NBFit:
    """Raw output of :func:`fit_negative_binomial`."""

    params: np.ndarray
    cov_params: np.ndarray
    pvalues: np.ndarray
    alpha: float
    mu: np.ndarray
    loglike: float
    n_iter: int


def _initial_alpha(y: np.ndarray, bounds: tuple[float, float]) -> float:
    """Method-of-moments starting value for the dispersion."""
    mean = float(np.mean(y))
    if mean <= 0 or len(y) < 2:
        return 1.0
    excess = (float(np.var(y, ddof=1)) - mean) / mean**2
    return float(np.clip(excess, *bounds))


def _profile_alpha(
    y: np.ndarray,
    mu: np.ndarray,
    weights: np.ndarray,
    bounds: tuple[float, float],
) -> float:
    """Maximise the NB log-likelihood over ``alpha`` at fixed means."""

    def negloglike(log_alpha: float) -> float:
        family = sm.families.NegativeBinomial(alpha=math.exp(log_alpha))
        return -family.loglike(y, mu, freq_weights=weights)

    res = minimize_scalar(
        negloglike,
        bounds=(math.log(bounds[0]), math.log(bounds[1])),
        method="bounded",
        options={"xatol": 1e-6},
    )
    return float(math.exp(res.x))


def _glm_fit(y, X, alpha, weights, maxiter):
    model = sm.GLM(
        y,
        X,
        family=sm.families.NegativeBinomial(alpha=alpha),
        freq_weights=weights,
    )
    try:
        res = model.fit(maxiter=maxiter)
    except (np.linalg.LinAlgError, ValueError) as exc:
        raise FitNonconvergentError(f"IRLS failed: {exc}", n_obs=len(y)) from exc
    if not res.converged or not np.all(np.isfinite(res.params)):
        raise FitNonconvergentError("IRLS did not converge", n_obs=len(y), alpha=alpha)
    fitted = np.asarray(res.fittedvalues, dtype=float)
    if not np.all(np.isfinite(fitted)) or fitted.min() < _MIN_FITTED_MEAN:
        raise FitNonconvergentError(
            "Fitted means collapsed towards zero; coefficients diverge",
            n_obs=len(y),
            min_mean=float(np.nanmin(fitted)),
        )
    return res


def fit_negative_binomial(
    y: np.ndarray,
    X: np.ndarray,
    weights: Optional[np.ndarray] = None,
    config: Optional[ModelConfig] = None,
) -> NBFit:
    """Fit a log-link NB2 regression with jointly estimated dispersion.

    Args:
        y: Non-negative responses.
        X: Full-rank design matrix.
        weights: Optional frequency weights (e.g. from outlier reweighting).
        config: Solver settings; defaults to :class:`ModelConfig`.

    Raises:
        FitNonconvergentError: rank-deficient design, IRLS failure,
            non-finite estimates, or no agreement between the mean and
            dispersion updates within ``config.max_alternations``.
    """
    config = config or ModelConfig()
    y = np.asarray(y, dtype=float)
    X = np.asarray(X, dtype=float)
    weights = np.ones(len(y)) if weights is None else np.asarray(weights, dtype=float)

    if np.linalg.matrix_rank(X) < X.shape[1]:
        raise FitNonconvergentError(
            "Design matrix is rank deficient", n_obs=len(y), n_params=X.shape[1]
        )

    alpha = _initial_alpha(y, config.alpha_bounds)
    prev_ll = -np.inf
    for n_iter in range(1, config.max_alternations + 1):
        res = _glm_fit(y, X, alpha, weights, config.irls_maxiter)
        mu = np.asarray(res.fittedvalues, dtype=float)
        new_alpha = _profile_alpha(y, mu, weights, config.alpha_bounds)
        ll = float(
            sm.families.NegativeBinomial(alpha=new_alpha).loglike(y, mu, freq_weights=weights)
        )
        alpha_step = abs(math.log(new_alpha) - math.log(alpha))
        alpha = new_alpha
        if alpha_step < 1e-4 or abs(ll - prev_ll) <= config.tol * (abs(ll) + config.tol):
            break
        prev_ll = ll
    else:
        raise FitNonconvergentError(
            "Mean and dispersion updates did not converge",
            n_obs=len(y),
            alternations=config.max_alternations,
        )

    res = _glm_fit(y, X, alpha, weights, config.irls_maxiter)
    params = np.asarray(res.params, dtype=float)
    cov = np.asarray(res.cov_params(), dtype=float)
    if not np.all(np.isfinite(cov)):
        raise FitNonconvergentError("Final fit produced non-finite estimates", n_obs=len(y))
    mu = np.asarray(res.fittedvalues, dtype=float)
    return NBFit(
        params=params,
        cov_params=cov,
        pvalues=np.asarray(res.pvalues, dtype=float),
        alpha=alpha,
        mu=mu,
        loglike=float(
            sm.families.NegativeBinomial(alpha=alpha).loglike(y, mu, freq_weights=weights)
        ),
        n_iter=n_iter,
    )


# ── Seasonal count model ────────────────────────────────────────────────────


@dataclass(frozen=True)
class FittedModel:
    """Immutable fitted seasonal NB regression."""

    terms: tuple[ModelTerm, ...]
    params: pd.Series
    cov_params: pd.DataFrame
    alpha: float
    first_period: pd.Period
    last_period: pd.Period
    harmonics: int
    periods_per_cycle: int
    n_obs: int
    loglike: float

    @property
    def aic(self) -> float:
        # +1 for the dispersion parameter
        return -2.0 * self.loglike + 2.0 * (len(self.params) + 1)

    @property
    def term_names(self) -> list[str]:
        return [t.name for t in self.terms]

    def design(
        self,
        periods: pd.PeriodIndex,
        features: Optional[pd.DataFrame] = None,
        covariate: Optional[pd.Series] = None,
    ) -> pd.DataFrame:
        """Design matrix for *periods* on this model's training origin."""
        return design_matrix(
            list(self.terms),
            periods,
            self.first_period,
            self.periods_per_cycle,
            features,
            covariate,
        )


def _check_features(features: pd.DataFrame, periods: pd.PeriodIndex, harmonics: int) -> None:
    if len(features) != len(periods) or not features.index.equals(periods):
        raise FeatureHorizonMismatchError(
            "Seasonal features do not match the requested periods",
            n_features=len(features),
            n_periods=len(periods),
        )
    missing = set(feature_names(harmonics)) - set(features.columns)
    if missing:
        raise FeatureHorizonMismatchError(
            "Seasonal features lack harmonic columns", missing=sorted(missing)
        )


def fit_count_model(
    series: pd.Series,
    features: pd.DataFrame,
    covariate: Optional[pd.Series] = None,
    config: Optional[ModelConfig] = None,
) -> FittedModel:
    """Fit ``count ~ trend + harmonics (+ lagged covariate)``.

    Args:
        series: Counts indexed by a dense :class:`pd.PeriodIndex`; ``NaN``
            rows are left out of the fit.
        features: Seasonal features for exactly ``series.index``.
        covariate: Optional exogenous series; it enters lagged by
            ``config.covariate_lag`` periods (default 1).
        config: :class:`ModelConfig`.

    Raises:
        InsufficientDataError: fewer usable rows than ``2K + 2 + n_covariates``
            or every usable count is zero.
        FitNonconvergentError: the solver failed.
    """
    config = config or ModelConfig()
    harmonics = config.seasonal.harmonics
    periods = series.index
    _check_features(features, periods, harmonics)

    lag = None
    if covariate is not None:
        lag = config.covariate_lag if config.covariate_lag is not None else COVARIATE_LAG
    terms = build_terms(harmonics, trend=config.trend, covariate_lag=lag)
    X = design_matrix(
        terms, periods, periods[0], config.seasonal.periods_per_cycle, features, covariate
    )
    usable = series.notna() & X.notna().all(axis=1)
    required = 2 * harmonics + 2 + (1 if lag is not None else 0)
    n_obs = int(usable.sum())
    if n_obs < required:
        raise InsufficientDataError(
            "Too few observations to fit the count model",
            n_obs=n_obs,
            required=required,
            first=str(periods[0]),
            last=str(periods[-1]),
        )

    if float(series[usable].sum()) == 0:
        raise InsufficientDataError(
            "All usable counts are zero; the mean is not identifiable",
            n_obs=n_obs,
            first=str(periods[0]),
            last=str(periods[-1]),
        )

    fit = fit_negative_binomial(
        series[usable].to_numpy(dtype=float),
        X[usable].to_numpy(dtype=float),
        config=config,
    )
    names = [t.name for t in terms]
    log.debug(
        "Fitted NB model on %s..%s: n=%d alpha=%.4g in %d alternations.",
        periods[0],
        periods[-1],
        n_obs,
        fit.alpha,
        fit.n_iter,
    )
    return FittedModel(
        terms=tuple(terms),
        params=pd.Series(fit.params, index=names),
        cov_params=pd.DataFrame(fit.cov_params, index=names, columns=names),
        alpha=fit.alpha,
        first_period=periods[0],
        last_period=periods[-1],
        harmonics=harmonics,
        periods_per_cycle=config.seasonal.periods_per_cycle,
        n_obs=n_obs,
        loglike=fit.loglike,
    )


def select_harmonics(
    series: pd.Series,
    max_harmonics: int,
    covariate: Optional[pd.Series] = None,
    config: Optional[ModelConfig] = None,
) -> FittedModel:
    """Fit K = 1..*max_harmonics* and return the lowest-AIC model."""
    if max_harmonics < 1:
        raise ValueError(f"max_harmonics must be >= 1, got {max_harmonics}")
    config = config or ModelConfig()
    best: Optional[FittedModel] = None
    errors: list[EpicurveError] = []
    for k in range(1, max_harmonics + 1):
        cfg = replace(config, seasonal=replace(config.seasonal, harmonics=k))
        features = seasonal_features(series.index, k, cfg.seasonal.periods_per_cycle)
        try:
            model = fit_count_model(series, features, covariate, cfg)
        except (InsufficientDataError, FitNonconvergentError) as exc:
            log.warning("K=%d skipped: %s", k, exc)
            errors.append(exc)
            continue
        if best is None or model.aic < best.aic:
            best = model
    if best is None:
        raise errors[-1]
    log.info("Selected K=%d (AIC %.2f).", best.harmonics, best.aic)
    return best
