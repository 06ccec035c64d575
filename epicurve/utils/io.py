"""I/O helpers used by the command-line entry point."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pandas as pd

from epicurve.utils.logging import get_logger

log = get_logger(__name__)


def ensure_dir(path: Path) -> Path:
    """Create directory (and parents) if it doesn't exist. Returns *path*."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def load_csv(path: Path, **kwargs: Any) -> pd.DataFrame:
    """Load a CSV of period counts with informative logging."""
    if not path.exists():
        raise FileNotFoundError(f"CSV not found: {path}")
    log.info("Loading CSV: %s", path)
    return pd.read_csv(path, **kwargs)


def save_csv(df: pd.DataFrame, path: Path, **kwargs: Any) -> None:
    """Persist a result frame to CSV, creating parent dirs as needed."""
    ensure_dir(path.parent)
    df.to_csv(path, **kwargs)
    log.info("Saved CSV (%d rows): %s", len(df), path)


def save_json(data: dict, path: Path) -> None:
    """Write a JSON file (periods and numpy scalars are stringified)."""
    ensure_dir(path.parent)
    with open(path, "w") as fh:
        json.dump(data, fh, indent=2, default=str)
    log.info("Saved JSON: %s", path)
