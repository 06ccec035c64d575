"""Linear gap filling for dense period series."""

from __future__ import annotations

from dataclasses import dataclass

import pandas as pd

from epicurve.errors import UninterpolableBoundaryError
from epicurve.utils.logging import get_logger

log = get_logger(__name__)

BOUNDARY_POLICIES: tuple[str, ...] = ("raise", "keep")


@dataclass(frozen=True)
class ImputedSeries:
    """Imputed values alongside the untouched original for audit."""

    values: pd.Series
    original: pd.Series
    imputed: pd.Series  # boolean mask, True where a value was filled

    @property
    def n_imputed(self) -> int:
        return int(self.imputed.sum())

    def residuals(self) -> pd.Series:
        """Imputed minus original on the periods that were observed."""
        return (self.values - self.original).dropna()


def interpolate_gaps(series: pd.Series, boundary: str = "raise") -> ImputedSeries:
    """Fill interior gaps by linear interpolation between nearest neighbours.

    Leading and trailing gaps have no neighbour on one side. With
    ``boundary="raise"`` they raise :class:`UninterpolableBoundaryError`;
    with ``boundary="keep"`` they are left missing.

    Args:
        series: Dense series indexed by period; ``NaN`` marks a missing value.
        boundary: ``"raise"`` or ``"keep"``.

    Returns:
        :class:`ImputedSeries`. The input is never modified.
    """
    if boundary not in BOUNDARY_POLICIES:
        raise ValueError(f"Unsupported boundary policy: {boundary}")

    original = series.astype(float).copy()
    missing = original.isna()
    if not missing.any():
        return ImputedSeries(
            values=original.copy(),
            original=original,
            imputed=pd.Series(False, index=original.index),
        )

    observed = original.dropna()
    if observed.empty:
        raise UninterpolableBoundaryError(
            "Series has no observed values",
            first=str(original.index[0]),
            last=str(original.index[-1]),
        )
    leading = original.index[original.index < observed.index[0]]
    trailing = original.index[original.index > observed.index[-1]]
    if boundary == "raise" and (len(leading) or len(trailing)):
        raise UninterpolableBoundaryError(
            "Leading or trailing values are missing",
            leading=[str(p) for p in leading],
            trailing=[str(p) for p in trailing],
        )

    # Positions on a dense grid are equally spaced, so positional
    # interpolation is linear in time.
    filled = original.reset_index(drop=True).interpolate(
        method="linear", limit_area="inside"
    )
    filled.index = original.index
    imputed = missing & filled.notna()
    log.info(
        "Imputed %d of %d periods (%d boundary periods left missing).",
        int(imputed.sum()),
        len(original),
        len(leading) + len(trailing),
    )
    return ImputedSeries(values=filled, original=original, imputed=imputed)
