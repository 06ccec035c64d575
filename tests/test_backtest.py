"""
tests/test_backtest.py
───────────────────────
Rolling-origin folds, fold failures, cancellation and parallel runs.
"""

from __future__ import annotations

import threading

import numpy as np
import pandas as pd
import pytest

from epicurve.backtest import (
    PAIR_COLUMNS,
    FoldState,
    generate_folds,
    run_backtest,
    run_fold,
)
from epicurve.config import BacktestConfig, ForecastConfig
from epicurve.errors import BacktestCancelled

_FAST = ForecastConfig(n_draws=200)


def _config(initial_window: int, horizon: int, **kwargs) -> BacktestConfig:
    return BacktestConfig(
        initial_window=initial_window, horizon=horizon, forecast=_FAST, **kwargs
    )


# ── Folds ───────────────────────────────────────────────────────────────────


class TestGenerateFolds:

    @pytest.mark.parametrize(
        "length, window, horizon",
        [(20, 10, 1), (20, 10, 4), (20, 17, 4), (20, 18, 4), (5, 10, 2)],
    )
    def test_fold_count(self, make_series, length, window, horizon) -> None:
        """There are max(0, L - H - W + 1) folds."""
        folds = generate_folds(make_series(range(length)), window, horizon)
        assert len(folds) == max(0, length - horizon - window + 1)

    def test_training_window_ends_at_cutoff(self, make_series) -> None:
        """No fold sees a period after its cutoff."""
        series = make_series(range(15))
        for fold in generate_folds(series, 8, 3):
            assert fold.train.index[-1] == fold.cutoff
            assert fold.horizon[0] == fold.cutoff + 1
            assert len(fold.horizon) == 3
            assert fold.state is FoldState.PENDING

    def test_origin_advances_one_period(self, make_series) -> None:
        folds = generate_folds(make_series(range(12)), 5, 2)
        assert [len(f.train) for f in folds] == [5, 6, 7, 8, 9, 10]

    def test_invalid_window(self, make_series) -> None:
        with pytest.raises(ValueError, match="initial_window"):
            generate_folds(make_series(range(5)), 0, 1)


class TestFoldState:

    def test_illegal_transition(self, make_series) -> None:
        fold = generate_folds(make_series(range(6)), 3, 1)[0]
        with pytest.raises(RuntimeError, match="illegal transition"):
            fold.advance(FoldState.RECORDED)

    def test_terminal_states_are_final(self, make_series) -> None:
        fold = generate_folds(make_series(range(6)), 3, 1)[0]
        failed = fold.advance(FoldState.FITTING).advance(FoldState.FAILED)
        with pytest.raises(RuntimeError):
            failed.advance(FoldState.FITTING)

    def test_future_values_do_not_affect_a_fold(self, seasonal_counts) -> None:
        """Changing counts after the cutoff leaves the fold's forecast alone."""
        config = _config(60, 2)
        altered = seasonal_counts.copy()
        altered.iloc[62:] = altered.iloc[62:] * 10
        first = run_fold(generate_folds(seasonal_counts, 60, 2)[0], config)
        second = run_fold(generate_folds(altered, 60, 2)[0], config)
        pd.testing.assert_frame_equal(first.forecast.frame, second.forecast.frame)


# ── Runs ────────────────────────────────────────────────────────────────────


class TestRunBacktest:

    def test_pairs_and_report(self, seasonal_counts) -> None:
        result = run_backtest(seasonal_counts, _config(70, 2))
        assert list(result.pairs.columns) == PAIR_COLUMNS
        assert result.n_recorded == 9
        assert len(result.pairs) == 18
        assert set(result.pairs["step"]) == {1, 2}
        assert result.report.n_folds == 9
        assert result.report["rmse"] >= result.report["mae"] >= 0
        assert {"naive_mae", "naive_rmse"} <= set(result.report.extra)

    def test_naive_is_last_training_value(self, seasonal_counts) -> None:
        result = run_backtest(seasonal_counts, _config(76, 1))
        for fold in result.folds:
            row = result.pairs[result.pairs["fold"] == fold.index].iloc[0]
            assert row["naive"] == fold.train.iloc[-1]

    def test_failed_folds_are_counted_not_scored(self, make_series) -> None:
        """Windows shorter than the parameter count fail with INSUFFICIENT_DATA."""
        rng = np.random.default_rng(5)
        series = make_series(rng.integers(20, 40, 12))
        result = run_backtest(series, _config(2, 2))

        assert len(result.folds) == 9
        assert [f.error_code for f in result.folds[:2]] == ["INSUFFICIENT_DATA"] * 2
        assert result.n_failed >= 2
        assert result.n_recorded + result.n_failed == 9
        assert result.report.n_failed_folds == result.n_failed
        failed = {f.index for f in result.folds if f.state is FoldState.FAILED}
        assert failed.isdisjoint(set(result.pairs["fold"]))
        assert len(result.failures) == result.n_failed

    def test_too_short_series_has_no_folds(self, make_series) -> None:
        result = run_backtest(make_series([1, 2, 3]), _config(5, 2))
        assert result.folds == ()
        assert result.pairs.empty
        assert result.report.n_pairs == 0

    def test_missing_actuals_are_skipped(self, seasonal_counts) -> None:
        series = seasonal_counts.copy()
        series.iloc[-1] = np.nan
        result = run_backtest(series, _config(76, 2))
        assert series.index[-1] not in set(result.pairs["period"])

    def test_parallel_matches_sequential(self, seasonal_counts) -> None:
        """Fold order and values do not depend on the worker count."""
        serial = run_backtest(seasonal_counts, _config(70, 2))
        parallel = run_backtest(seasonal_counts, _config(70, 2, max_workers=3))
        pd.testing.assert_frame_equal(serial.pairs, parallel.pairs)
        assert [f.index for f in parallel.folds] == list(range(9))

    def test_cancellation(self, seasonal_counts) -> None:
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(BacktestCancelled) as info:
            run_backtest(seasonal_counts, _config(70, 2), cancel=cancel)
        assert info.value.context["completed"] == 0

    def test_cancellation_on_thread_pool(self, seasonal_counts) -> None:
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(BacktestCancelled):
            run_backtest(seasonal_counts, _config(70, 2, max_workers=2), cancel=cancel)


# ── Sparse counts ───────────────────────────────────────────────────────────


class TestSparseCounts:
    """Zero-heavy series finish with failed folds and bounded forecasts."""

    def test_all_zero_leading_windows(self, make_series) -> None:
        series = make_series([0] * 20 + [3, 5, 2, 4, 6, 3])
        result = run_backtest(series, _config(12, 2))

        assert len(result.folds) == 13
        assert [f.error_code for f in result.folds[:9]] == ["INSUFFICIENT_DATA"] * 9
        assert result.n_recorded + result.n_failed == 13
        assert result.report.n_failed_folds == result.n_failed

    def test_isolated_cases_do_not_blow_up(self, make_series) -> None:
        """Single cases after long zero runs never yield astronomical forecasts."""
        values = [0] * 40
        for position, count in [(12, 1), (20, 2), (27, 1), (33, 2)]:
            values[position] = count
        result = run_backtest(make_series(values), _config(10, 2))

        assert result.n_recorded + result.n_failed == len(result.folds) == 29
        assert result.n_failed > 0
        assert {f.error_code for f in result.folds if f.state is FoldState.FAILED} <= {
            "INSUFFICIENT_DATA",
            "FIT_NONCONVERGENT",
        }
        forecasts = result.pairs[["forecast", "lower", "upper"]].to_numpy(dtype=float)
        assert np.isfinite(forecasts).all()
        assert (forecasts < 1e3).all()
        if result.report.n_pairs:
            assert result.report["mae"] < 1e3
            assert result.report["rmse"] < 1e3
