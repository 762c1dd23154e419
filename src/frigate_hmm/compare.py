"""Barometric versus GPS altitude run comparison."""

from __future__ import annotations

import importlib.util
from dataclasses import dataclass
from typing import Any

import numpy as np
import polars as pl

PARAMETER_COLUMNS: tuple[str, ...] = (
    "step_mean_m",
    "step_sd_m",
    "angle_mean_rad",
    "angle_kappa",
    "alt_mean_m",
    "alt_sd_m",
    "self_transition_prob",
    "stationary_share",
)


@dataclass(frozen=True, slots=True)
class DecodedComparison:
    """Agreement tables between two decoded runs on shared fixes."""

    confusion_long: pl.DataFrame
    confusion_wide: pl.DataFrame
    label_shares: pl.DataFrame
    metrics: dict[str, Any]


def _require_sklearn() -> None:
    if importlib.util.find_spec("sklearn") is None:
        raise RuntimeError(
            "scikit-learn is required for run comparison. Install with: pip install scikit-learn"
        )


def compare_decoded(
    baro_rows: pl.DataFrame,
    gps_rows: pl.DataFrame,
    *,
    label_order: list[str],
) -> DecodedComparison:
    """Cross-tabulate state labels of two decoded runs joined on ``(bird_id, timestamp)``.

    Confusion rows are the barometric labels, columns the GPS labels, both in
    ``label_order``. Labels seen in the data but missing from ``label_order``
    are appended in sorted order.
    """

    _require_sklearn()
    keys = ["bird_id", "timestamp"]
    for name, frame in (("baro_rows", baro_rows), ("gps_rows", gps_rows)):
        missing = sorted(set(keys + ["state_label"]) - set(frame.columns))
        if missing:
            raise ValueError(f"{name} is missing columns: {missing}")

    joined = baro_rows.select([*keys, pl.col("state_label").alias("baro_label")]).join(
        gps_rows.select([*keys, pl.col("state_label").alias("gps_label")]),
        on=keys,
        how="inner",
    )
    if joined.height == 0:
        raise ValueError("Barometric and GPS runs share no (bird_id, timestamp) rows.")

    from sklearn.metrics import cohen_kappa_score, confusion_matrix

    baro_labels = joined["baro_label"].to_numpy()
    gps_labels = joined["gps_label"].to_numpy()
    seen = set(baro_labels.tolist()) | set(gps_labels.tolist())
    labels = list(label_order) + sorted(seen - set(label_order))

    matrix = confusion_matrix(baro_labels, gps_labels, labels=labels)
    long_rows = [
        {
            "baro_label": labels[i],
            "gps_label": labels[j],
            "count": int(matrix[i, j]),
            "share_of_baro_label": (float(matrix[i, j]) / float(matrix[i].sum())) if matrix[i].sum() > 0 else None,
        }
        for i in range(len(labels))
        for j in range(len(labels))
    ]
    confusion_long = pl.DataFrame(
        long_rows,
        schema={
            "baro_label": pl.String,
            "gps_label": pl.String,
            "count": pl.Int64,
            "share_of_baro_label": pl.Float64,
        },
    )
    confusion_wide = pl.DataFrame(
        {"baro_label": labels, **{label: matrix[:, j].astype(np.int64) for j, label in enumerate(labels)}}
    )

    agreement = float(np.trace(matrix)) / float(joined.height)
    kappa = float(cohen_kappa_score(baro_labels, gps_labels, labels=labels))
    if not np.isfinite(kappa):
        kappa_out: float | None = None
    else:
        kappa_out = kappa

    baro_counts = np.asarray(matrix.sum(axis=1), dtype=np.float64)
    gps_counts = np.asarray(matrix.sum(axis=0), dtype=np.float64)
    label_shares = pl.DataFrame(
        {
            "state_label": labels,
            "baro_share": baro_counts / float(joined.height),
            "gps_share": gps_counts / float(joined.height),
        }
    ).with_columns((pl.col("gps_share") - pl.col("baro_share")).alias("share_diff"))

    metrics = {
        "rows_compared": int(joined.height),
        "rows_baro": int(baro_rows.height),
        "rows_gps": int(gps_rows.height),
        "labels": labels,
        "agreement_rate": agreement,
        "cohen_kappa": kappa_out,
    }
    return DecodedComparison(
        confusion_long=confusion_long,
        confusion_wide=confusion_wide,
        label_shares=label_shares,
        metrics=metrics,
    )


def compare_parameters(baro_table: pl.DataFrame, gps_table: pl.DataFrame) -> pl.DataFrame:
    """Side-by-side fitted parameters per state label with ``gps - baro`` differences."""

    for name, table in (("baro_table", baro_table), ("gps_table", gps_table)):
        if "state_label" not in table.columns:
            raise ValueError(f"{name} must include state_label.")

    columns = [c for c in PARAMETER_COLUMNS if c in baro_table.columns and c in gps_table.columns]
    joined = baro_table.select(
        ["state_label", *[pl.col(c).alias(f"{c}_baro") for c in columns]]
    ).join(
        gps_table.select(["state_label", *[pl.col(c).alias(f"{c}_gps") for c in columns]]),
        on="state_label",
        how="full",
        coalesce=True,
    )
    return joined.with_columns(
        [(pl.col(f"{c}_gps") - pl.col(f"{c}_baro")).alias(f"{c}_diff") for c in columns]
    ).sort("state_label")
