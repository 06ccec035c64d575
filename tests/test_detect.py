"""
tests/test_detect.py
─────────────────────
Reweighted-baseline and sequential aberration detectors.
"""

from __future__ import annotations

import math

import numpy as np
import pytest
from scipy.stats import poisson

import epicurve.detect
from epicurve.config import DetectorConfig, ReweightedConfig, SequentialConfig
from epicurve.detect import (
    detect_aberrations,
    llr_coefficients,
    nb_quantile,
    reference_positions,
)
from epicurve.errors import (
    FitNonconvergentError,
    InsufficientDataError,
    RangeOutOfBoundsError,
)

_SEQUENTIAL = DetectorConfig(strategy="sequential")


def _alarm_rule_holds(frame) -> bool:
    observed = frame["observed"].to_numpy(dtype=float)
    bound = frame["upper_bound"].to_numpy(dtype=float)
    return bool((frame["alarm"].to_numpy(dtype=bool) == (observed > bound)).all())


# ── Helpers ─────────────────────────────────────────────────────────────────


class TestQuantilesAndLikelihoodRatio:

    def test_quantile_falls_back_to_poisson(self) -> None:
        assert nb_quantile(0.99, 11.5, 1e-9) == poisson.ppf(0.99, 11.5)

    def test_overdispersion_raises_the_quantile(self) -> None:
        assert nb_quantile(0.99, 10.0, 0.5) > nb_quantile(0.99, 10.0, 1e-9)

    def test_zero_mean(self) -> None:
        assert nb_quantile(0.99, 0.0, 0.3) == 0.0

    def test_poisson_llr(self) -> None:
        """Doubling a Poisson mean: slope log 2, intercept mu0 - mu1."""
        slope, intercept = llr_coefficients(10.0, 20.0, 0.0)
        assert slope == pytest.approx(math.log(2))
        assert intercept == pytest.approx(-10.0)

    def test_nb_llr_tends_to_poisson(self) -> None:
        slope, intercept = llr_coefficients(10.0, 20.0, 1e-5)
        assert slope == pytest.approx(math.log(2), rel=1e-3)
        assert intercept == pytest.approx(-10.0, rel=1e-3)

    def test_reference_positions(self) -> None:
        """Trailing window plus a seasonal window one cycle back."""
        cfg = ReweightedConfig(baseline_periods=4, years_back=1, window_half_width=1)
        assert reference_positions(60, cfg, 52) == [7, 8, 9, 56, 57, 58, 59]

    def test_reference_positions_respect_exclusion(self) -> None:
        cfg = ReweightedConfig(baseline_periods=3, years_back=0, past_periods_excluded=2)
        assert reference_positions(10, cfg, 52) == [5, 6, 7]


# ── Reweighted ──────────────────────────────────────────────────────────────


class TestReweighted:

    def test_flags_only_the_spike(self, outbreak_series) -> None:
        """Week 5 (50 cases) is the only alarm."""
        result = detect_aberrations(outbreak_series)
        assert list(result.alarms) == [outbreak_series.index[4]]
        assert result.frame.index[0] == outbreak_series.index[1]
        assert _alarm_rule_holds(result.frame)

    def test_flat_series_never_alarms(self, make_series) -> None:
        result = detect_aberrations(make_series([10] * 30))
        assert result.n_alarms == 0
        np.testing.assert_allclose(result.frame["expected"], 10.0, rtol=1e-3)
        assert (result.frame["upper_bound"] >= 10).all()

    def test_muan_bound_is_not_lower(self, outbreak_series) -> None:
        """Widening the mean by its standard error can only raise the bound."""
        muan = DetectorConfig(reweighted=ReweightedConfig(threshold_method="muan"))
        plugin = detect_aberrations(outbreak_series).frame["upper_bound"]
        widened = detect_aberrations(outbreak_series, muan).frame["upper_bound"]
        assert (widened >= plugin).all()

    def test_all_zero_reference(self, make_series) -> None:
        """Zero history gives a zero bound, so any case alarms."""
        result = detect_aberrations(make_series([0, 0, 0, 0, 3]))
        assert list(result.frame["expected"]) == [0.0, 0.0, 0.0, 0.0]
        assert result.alarms[-1] == result.frame.index[-1]

    def test_recent_cases_rule_suppresses_small_alarms(self, make_series) -> None:
        cfg = DetectorConfig(reweighted=ReweightedConfig(min_recent_cases=(5, 4)))
        result = detect_aberrations(make_series([0, 0, 0, 0, 3]), cfg)
        assert result.n_alarms == 0

    def test_missing_period_is_not_alarmed(self, outbreak_series) -> None:
        series = outbreak_series.copy()
        series.iloc[5] = np.nan
        result = detect_aberrations(series)
        assert not result.frame["alarm"].iloc[4]
        assert np.isnan(result.frame["upper_bound"].iloc[4])

    def test_explicit_range(self, outbreak_series) -> None:
        idx = outbreak_series.index
        result = detect_aberrations(outbreak_series, start=idx[3], end=idx[5])
        assert list(result.frame.index) == list(idx[3:6])

    def test_unknown_threshold_method(self, outbreak_series) -> None:
        cfg = DetectorConfig(reweighted=ReweightedConfig(threshold_method="exact"))
        with pytest.raises(ValueError, match="threshold_method"):
            detect_aberrations(outbreak_series, cfg)


class TestReweightedSparse:
    """Low counts where the baseline regression cannot always be fitted."""

    def test_low_rate_series_completes(self, make_series) -> None:
        rng = np.random.default_rng(17)
        series = make_series(rng.poisson(0.3, 120))
        result = detect_aberrations(series)

        assert list(result.frame.index) == list(series.index[1:])
        assert _alarm_rule_holds(result.frame)
        bounds = result.frame["upper_bound"].dropna()
        assert (bounds >= 0).all()

    def test_trend_fit_falls_back_to_constant(self, make_series) -> None:
        """A lone case at the oldest reference period cannot support a trend."""
        series = make_series([1] + [0] * 11)
        cfg = DetectorConfig(reweighted=ReweightedConfig(baseline_periods=11, years_back=0))
        frame = detect_aberrations(series, cfg, start=series.index[11]).frame

        assert 0 < frame["expected"].iloc[0] < 1
        assert np.isfinite(frame["upper_bound"].iloc[0])
        assert not frame["alarm"].iloc[0]

    def test_unfittable_baseline_leaves_period_unbounded(
        self, outbreak_series, monkeypatch
    ) -> None:
        def fail(*args, **kwargs):
            raise FitNonconvergentError("IRLS did not converge")

        monkeypatch.setattr(epicurve.detect, "_reference_fit", fail)
        frame = detect_aberrations(outbreak_series).frame

        assert frame["upper_bound"].isna().all()
        assert not frame["alarm"].any()
        assert list(frame["observed"]) == list(outbreak_series.iloc[1:])


# ── Sequential ──────────────────────────────────────────────────────────────


class TestSequential:

    def test_flags_only_the_spike(self, outbreak_series) -> None:
        """Baseline is weeks 1-4; monitoring starts at the spike."""
        result = detect_aberrations(outbreak_series, _SEQUENTIAL)
        assert list(result.frame.index) == list(outbreak_series.index[4:])
        assert list(result.alarms) == [outbreak_series.index[4]]
        assert result.frame["expected"].iloc[0] == pytest.approx(11.5, rel=1e-3)
        assert result.frame["upper_bound"].iloc[0] == 23.0
        assert _alarm_rule_holds(result.frame)

    def test_statistic_restarts_after_alarm(self, outbreak_series) -> None:
        frame = detect_aberrations(outbreak_series, _SEQUENTIAL).frame
        assert frame["statistic"].iloc[0] >= 5.0
        assert frame["statistic"].iloc[1] < frame["statistic"].iloc[0]

    def test_sustained_rise_accumulates(self, make_series) -> None:
        """Moderate excess every week alarms once the statistic builds up."""
        series = make_series([10, 11, 9, 10] + [18] * 6)
        frame = detect_aberrations(series, _SEQUENTIAL).frame
        assert not frame["alarm"].iloc[0]
        assert frame["alarm"].any()
        assert _alarm_rule_holds(frame)

    def test_refit_after_alarm(self, make_series) -> None:
        """Refitting excludes alarmed periods and keeps running."""
        cfg = DetectorConfig(
            strategy="sequential",
            sequential=SequentialConfig(refit_after_alarm=True),
        )
        series = make_series([10, 11, 9, 10, 60, 10, 12, 11])
        result = detect_aberrations(series, cfg)
        assert result.alarms[0] == series.index[4]
        assert result.frame["expected"].iloc[-1] < 20

    def test_zero_baseline(self, make_series) -> None:
        with pytest.raises(InsufficientDataError):
            detect_aberrations(make_series([0, 0, 0, 0, 5]), _SEQUENTIAL)

    def test_series_shorter_than_baseline(self, make_series) -> None:
        with pytest.raises(InsufficientDataError):
            detect_aberrations(make_series([3, 4]), _SEQUENTIAL)

    def test_fractional_counts_are_floored(self, make_series) -> None:
        """23.5 is judged as 23 cases, which stays under the bound of 23."""
        frame = detect_aberrations(make_series([10, 12, 11, 13, 23.5]), _SEQUENTIAL).frame
        assert frame["observed"].iloc[0] == 23.0
        assert frame["upper_bound"].iloc[0] == 23.0
        assert not frame["alarm"].iloc[0]
        assert frame["statistic"].iloc[0] < 5.0
        assert _alarm_rule_holds(frame)


# ── Shared validation ───────────────────────────────────────────────────────


class TestValidation:

    def test_range_outside_series(self, outbreak_series) -> None:
        with pytest.raises(RangeOutOfBoundsError):
            detect_aberrations(outbreak_series, end="2030-01-01")

    def test_range_before_series(self, outbreak_series) -> None:
        with pytest.raises(RangeOutOfBoundsError):
            detect_aberrations(outbreak_series, start="2020-01-01")

    def test_first_period_has_no_baseline(self, outbreak_series) -> None:
        with pytest.raises(InsufficientDataError):
            detect_aberrations(outbreak_series, start=outbreak_series.index[0])

    def test_unknown_strategy(self, outbreak_series) -> None:
        with pytest.raises(ValueError, match="Unknown strategy"):
            detect_aberrations(outbreak_series, DetectorConfig(strategy="ewma"))
