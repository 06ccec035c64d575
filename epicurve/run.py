"""CLI entry point: ``epicurve <command>`` or ``python -m epicurve.run <command>``."""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Optional, Sequence

from epicurve.utils.logging import get_logger, set_level

log = get_logger("epicurve.run")


def _load_series(args: argparse.Namespace):
    from epicurve.impute import interpolate_gaps
    from epicurve.normalize import normalize_counts
    from epicurve.utils.io import load_csv

    raw = load_csv(Path(args.csv))
    normalized = normalize_counts(
        raw,
        freq=args.freq,
        date_col=args.date_col,
        count_col=args.count_col,
        covariate_col=args.covariate_col,
    )
    imputed = interpolate_gaps(normalized.counts, boundary="keep")
    covariate = None
    if normalized.covariate is not None:
        covariate = interpolate_gaps(normalized.covariate, boundary="keep").values
    return imputed.values, covariate


def cmd_backtest(args: argparse.Namespace) -> None:
    from epicurve.backtest import run_backtest
    from epicurve.config import BacktestConfig, ForecastConfig, ModelConfig, SeasonalConfig
    from epicurve.report import plot_backtest, write_backtest_report
    from epicurve.utils.io import save_csv, save_json

    series, covariate = _load_series(args)
    config = BacktestConfig(
        initial_window=args.initial_window,
        horizon=args.horizon,
        model=ModelConfig(
            seasonal=SeasonalConfig(
                harmonics=args.harmonics, periods_per_cycle=args.periods_per_cycle
            ),
            covariate_lag=args.covariate_lag if covariate is not None else None,
        ),
        forecast=ForecastConfig(confidence=args.confidence),
        max_workers=args.workers,
    )
    result = run_backtest(series, config, covariate)

    out = Path(args.output)
    save_csv(result.pairs, out / "backtest_pairs.csv", index=False)
    save_json(result.report.as_dict(), out / "backtest_metrics.json")
    write_backtest_report(result, out / "backtest_summary.md")
    if args.plot:
        plot_backtest(result, series, out / "figures")
    log.info(
        "MAE %.3f vs naive %.3f (%d failed folds).",
        result.report["mae"],
        result.report.extra["naive_mae"],
        result.n_failed,
    )


def cmd_detect(args: argparse.Namespace) -> None:
    from epicurve.config import DetectorConfig, ReweightedConfig, SequentialConfig
    from epicurve.detect import detect_aberrations
    from epicurve.report import plot_detection
    from epicurve.utils.io import save_csv

    series, _ = _load_series(args)
    config = DetectorConfig(
        strategy=args.strategy,
        periods_per_cycle=args.periods_per_cycle,
        reweighted=ReweightedConfig(
            alpha=args.alpha,
            baseline_periods=args.baseline_periods,
            years_back=args.years_back,
        ),
        sequential=SequentialConfig(
            control_limit=args.control_limit,
            baseline_periods=args.baseline_periods,
            refit_after_alarm=args.refit_after_alarm,
        ),
    )
    result = detect_aberrations(series, config, start=args.start, end=args.end)

    out = Path(args.output)
    save_csv(result.frame, out / f"thresholds_{args.strategy}.csv")
    if args.plot:
        plot_detection(result, out / "figures")
    for period in result.alarms:
        log.info("Alarm: %s", period)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Epidemic curve forecasting and surveillance")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL.")
    sub = parser.add_subparsers(dest="command", required=True)

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("csv", help="CSV with one row per dated count.")
    common.add_argument("--date-col", default="date")
    common.add_argument("--count-col", default="count")
    common.add_argument("--covariate-col", default=None)
    common.add_argument("--freq", default="W-SUN", help="pandas period frequency.")
    common.add_argument("--periods-per-cycle", type=int, default=52)
    common.add_argument("--output", default="reports", help="Output directory.")
    common.add_argument("--plot", action="store_true", help="Save figures (needs matplotlib).")

    bt = sub.add_parser("backtest", parents=[common], help="Rolling-origin backtest.")
    bt.add_argument("--initial-window", type=int, default=52)
    bt.add_argument("--horizon", type=int, default=4)
    bt.add_argument("--harmonics", type=int, default=1)
    bt.add_argument("--covariate-lag", type=int, default=1)
    bt.add_argument("--confidence", type=float, default=0.95)
    bt.add_argument("--workers", type=int, default=1)
    bt.set_defaults(func=cmd_backtest)

    dt = sub.add_parser("detect", parents=[common], help="Aberration detection.")
    dt.add_argument("--strategy", choices=["reweighted", "sequential"], default="reweighted")
    dt.add_argument("--start", default=None)
    dt.add_argument("--end", default=None)
    dt.add_argument("--baseline-periods", type=int, default=4)
    dt.add_argument("--years-back", type=int, default=3)
    dt.add_argument("--alpha", type=float, default=0.01)
    dt.add_argument("--control-limit", type=float, default=5.0)
    dt.add_argument("--refit-after-alarm", action="store_true")
    dt.set_defaults(func=cmd_detect)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    if args.log_level:
        set_level(args.log_level)
    args.func(args)


if __name__ == "__main__":
    main()
