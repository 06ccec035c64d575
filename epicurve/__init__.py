"""Epidemic-curve forecasting, rolling-origin backtesting and aberration detection."""

from epicurve.backtest import BacktestResult, run_backtest
from epicurve.detect import AberrationResult, detect_aberrations
from epicurve.evaluate import AccuracyReport, evaluate_forecasts
from epicurve.forecast import ForecastResult, forecast_series, predict
from epicurve.impute import ImputedSeries, interpolate_gaps
from epicurve.model import FittedModel, fit_count_model
from epicurve.normalize import NormalizedSeries, normalize_counts

__version__ = "0.1.0"

__all__ = [
    "AberrationResult",
    "AccuracyReport",
    "BacktestResult",
    "FittedModel",
    "ForecastResult",
    "ImputedSeries",
    "NormalizedSeries",
    "detect_aberrations",
    "evaluate_forecasts",
    "fit_count_model",
    "forecast_series",
    "interpolate_gaps",
    "normalize_counts",
    "predict",
    "run_backtest",
]
