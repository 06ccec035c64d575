"""Markdown reports and figures for the command-line entry point."""

from __future__ import annotations

import math
from pathlib import Path

import pandas as pd

from epicurve.backtest import BacktestResult
from epicurve.detect import AberrationResult
from epicurve.utils.io import ensure_dir
from epicurve.utils.logging import get_logger

log = get_logger(__name__)


def _fmt(value: float) -> str:
    return "n/a" if value is None or not math.isfinite(value) else f"{value:.4f}"


def backtest_markdown(result: BacktestResult) -> str:
    """Render the accuracy summary of a backtest as markdown."""
    r = result.report
    lines = [
        "# Backtest Summary",
        "",
        f"**Folds:** {r.n_folds} run, {r.n_failed_folds} failed",
        f"**Pairs evaluated:** {r.n_pairs}",
        "",
        "## Accuracy",
        "",
        "| Model       | MAE    | RMSE   | MAPE (%) | MASE   |",
        "|-------------|--------|--------|----------|--------|",
        f"| NB seasonal | {_fmt(r['mae'])} | {_fmt(r['rmse'])} "
        f"| {_fmt(r['mape'])} | {_fmt(r['mase'])} |",
        f"| Naive       | {_fmt(r.extra.get('naive_mae'))} "
        f"| {_fmt(r.extra.get('naive_rmse'))} | | |",
        "",
        "## Exclusions",
        "",
        f"- MAPE skipped {r.mape_excluded} pairs with a zero actual.",
        f"- MASE skipped {r.mase_excluded} pairs with a zero naive scale.",
        f"- {r.n_nonfinite} pairs had non-finite values.",
    ]
    failures = result.failures
    if not failures.empty:
        lines += [
            "",
            "## Failed Folds",
            "",
            "| Fold | Cutoff | Code |",
            "|------|--------|------|",
        ]
        for row in failures.itertuples(index=False):
            lines.append(f"| {row.fold} | {row.cutoff} | {row.code} |")
    return "\n".join(lines) + "\n"


def write_backtest_report(result: BacktestResult, path: Path) -> None:
    """Write the backtest summary markdown to *path*."""
    ensure_dir(path.parent)
    path.write_text(backtest_markdown(result))
    log.info("Backtest report -> %s", path)


def _pyplot():
    try:
        import matplotlib
        matplotlib.use("Agg")
        import matplotlib.pyplot as plt
    except ImportError:
        log.warning("matplotlib not installed; skipping plots.")
        return None
    return plt


def plot_backtest(result: BacktestResult, series: pd.Series, out_dir: Path) -> None:
    """Save actual counts against one-step-ahead backtest forecasts."""
    plt = _pyplot()
    if plt is None or result.pairs.empty:
        return
    ensure_dir(out_dir)
    one_step = result.pairs[result.pairs["step"] == 1]
    x_actual = series.index.to_timestamp()
    x_pred = pd.PeriodIndex(one_step["period"]).to_timestamp()

    fig, ax = plt.subplots(figsize=(10, 4))
    ax.plot(x_actual, series.to_numpy(), "ko-", label="Actual", ms=3)
    ax.plot(x_pred, one_step["forecast"].to_numpy(), "r-", label="Forecast (1 step)")
    ax.fill_between(
        x_pred,
        one_step["lower"].to_numpy(),
        one_step["upper"].to_numpy(),
        color="red",
        alpha=0.15,
        label="Prediction interval",
    )
    ax.set_title("Rolling-origin backtest")
    ax.set_xlabel("Period")
    ax.set_ylabel("Count")
    ax.legend(fontsize=8)
    fig.tight_layout()
    fig.savefig(out_dir / "backtest.png", dpi=120)
    plt.close(fig)
    log.info("Saved backtest plot to %s", out_dir)


def plot_detection(result: AberrationResult, out_dir: Path) -> None:
    """Save observed counts, upper bounds and alarms."""
    plt = _pyplot()
    if plt is None:
        return
    ensure_dir(out_dir)
    frame = result.frame
    x = frame.index.to_timestamp()
    alarms = frame["alarm"].to_numpy(dtype=bool)

    fig, ax = plt.subplots(figsize=(10, 4))
    ax.bar(x, frame["observed"].to_numpy(), width=5, color="grey", label="Observed")
    ax.step(x, frame["upper_bound"].to_numpy(), "b-", where="mid", label="Upper bound")
    ax.scatter(x[alarms], frame["observed"].to_numpy()[alarms], color="red", zorder=5, label="Alarm")
    ax.set_title(f"Aberration detection ({result.strategy})")
    ax.set_xlabel("Period")
    ax.set_ylabel("Count")
    ax.legend(fontsize=8)
    fig.tight_layout()
    fig.savefig(out_dir / f"detect_{result.strategy}.png", dpi=120)
    plt.close(fig)
    log.info("Saved detection plot to %s", out_dir)
