"""Atomic writers for run artifacts.

Every writer renders into a hidden temp file beside the target and then
swaps it in with ``os.replace``, so a crashed run never leaves a half
written table or figure in a run directory.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Callable
from uuid import uuid4

import numpy as np
import polars as pl
import plotly.graph_objects as go


def _atomic_temp_path(target_path: Path) -> Path:
    return target_path.parent / f".{target_path.name}.{uuid4().hex}.tmp"


def _replace_atomically(output_path: Path, render: Callable[[Path], None]) -> Path:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = _atomic_temp_path(output_path)
    try:
        render(temp_path)
        os.replace(temp_path, output_path)
    finally:
        if temp_path.exists():
            temp_path.unlink()
    return output_path


def json_default(value: Any) -> Any:
    """Convert numpy scalars/arrays and paths found in fit metadata."""

    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, Path):
        return str(value)
    return str(value)


def write_json_atomically(payload: dict[str, Any], output_path: Path) -> Path:
    text = json.dumps(payload, indent=2, sort_keys=True, default=json_default) + "\n"
    return _replace_atomically(output_path, lambda temp: temp.write_text(text, encoding="utf-8"))


def write_parquet_atomically(df: pl.DataFrame, output_path: Path) -> Path:
    return _replace_atomically(output_path, df.write_parquet)


def write_csv_atomically(df: pl.DataFrame, output_path: Path) -> Path:
    """Write a table as CSV; list columns are joined with ``;``."""

    nested = [name for name, dtype in df.schema.items() if isinstance(dtype, pl.List)]
    flat = df.with_columns(pl.col(nested).cast(pl.List(pl.Utf8)).list.join(";")) if nested else df
    return _replace_atomically(output_path, flat.write_csv)


def write_figure_atomically(fig: go.Figure, output_path: Path) -> Path:
    """Write a plotly figure as standalone HTML."""

    return _replace_atomically(
        output_path,
        lambda temp: fig.write_html(str(temp), include_plotlyjs="cdn", full_html=True),
    )
