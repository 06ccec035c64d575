"""Error taxonomy shared by every pipeline stage."""

from __future__ import annotations

from typing import Any


class EpicurveError(ValueError):
    """Base class: a stable ``code`` plus the context needed to reproduce."""

    code: str = "EPICURVE_ERROR"

    def __init__(self, message: str, **context: Any) -> None:
        self.message = message
        self.context = context
        if context:
            details = ", ".join(f"{k}={v}" for k, v in context.items())
            message = f"{message} ({details})"
        super().__init__(f"[{self.code}] {message}")

    def with_context(self, **context: Any) -> "EpicurveError":
        """Same error, with *context* merged in."""
        return type(self)(self.message, **{**self.context, **context})


class MalformedTimestampError(EpicurveError):
    code = "MALFORMED_TIMESTAMP"


class UninterpolableBoundaryError(EpicurveError):
    code = "UNINTERPOLABLE_BOUNDARY"


class InsufficientDataError(EpicurveError):
    code = "INSUFFICIENT_DATA"


class FitNonconvergentError(EpicurveError):
    code = "FIT_NONCONVERGENT"


class RangeOutOfBoundsError(EpicurveError):
    code = "RANGE_OUT_OF_BOUNDS"


class FeatureHorizonMismatchError(EpicurveError):
    code = "FEATURE_HORIZON_MISMATCH"


class BacktestCancelled(EpicurveError):
    code = "BACKTEST_CANCELLED"


#: Failures a backtest fold absorbs instead of aborting the run.
FOLD_ERRORS: tuple[type[EpicurveError], ...] = (
    InsufficientDataError,
    FitNonconvergentError,
)
