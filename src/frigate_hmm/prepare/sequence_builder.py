"""Sequence construction utilities for HMM input matrices."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import polars as pl

from frigate_hmm.prepare.altitude import altitude_column_for_source

LOGGER = logging.getLogger(__name__)

MOVEMENT_FEATURES: tuple[str, ...] = ("step_m", "angle_rad")


@dataclass(frozen=True, slots=True)
class SequenceBuildResult:
    """HMM sequence-matrix outputs with row alignment metadata."""

    frame: pl.DataFrame
    X: np.ndarray
    lengths: np.ndarray
    feature_list: list[str]
    bursts_dropped_short: list[str]
    rows_dropped_missing: int


def feature_list_for_source(source: str) -> list[str]:
    """Observation columns for an altitude source: step, angle, then altitude if any."""

    altitude_column = altitude_column_for_source(source)
    features = list(MOVEMENT_FEATURES)
    if altitude_column is not None:
        features.append(altitude_column)
    return features


def build_hmm_sequences(
    df: pl.DataFrame,
    *,
    feature_list: list[str],
    min_sequence_length: int = 20,
    logger: logging.Logger | None = None,
) -> SequenceBuildResult:
    """Build stacked HMM matrix and lengths from per-burst time series."""

    effective_logger = logger or LOGGER
    if min_sequence_length < 1:
        raise ValueError("min_sequence_length must be >= 1.")
    if "burst_id" not in df.columns or "timestamp" not in df.columns:
        raise ValueError("Dataframe must include burst_id and timestamp.")
    if not feature_list:
        raise ValueError("feature_list must not be empty.")

    missing = [column for column in feature_list if column not in df.columns]
    if missing:
        raise ValueError(f"Missing feature columns for HMM sequence build: {missing}")

    complete = df.filter(pl.all_horizontal([pl.col(column).is_not_null() for column in feature_list]))
    rows_dropped_missing = df.height - complete.height

    sorted_df = complete.sort(["bird_id", "burst_id", "timestamp"])
    groups = sorted_df.partition_by("burst_id", maintain_order=True)

    kept_groups: list[pl.DataFrame] = []
    lengths: list[int] = []
    dropped_bursts: list[str] = []
    for group in groups:
        burst_id = str(group["burst_id"][0])
        n_rows = group.height
        if n_rows < min_sequence_length:
            dropped_bursts.append(burst_id)
            continue
        kept_groups.append(group)
        lengths.append(n_rows)

    if not kept_groups:
        raise ValueError(
            f"No burst sequences remain after min_sequence_length={min_sequence_length}."
        )

    combined = pl.concat(kept_groups, how="vertical_relaxed")
    if "row_id" in combined.columns:
        combined = combined.drop("row_id")
    combined = combined.with_row_index("row_id")
    X = combined.select(feature_list).to_numpy().astype(np.float64, copy=False)
    lengths_arr = np.asarray(lengths, dtype=np.int32)
    if int(np.sum(lengths_arr)) != int(combined.height):
        raise ValueError("HMM sequence alignment mismatch: sum(lengths) != row count.")

    if rows_dropped_missing:
        effective_logger.warning(
            "hmm.sequence_builder dropped_rows_missing count=%s features=%s",
            rows_dropped_missing,
            feature_list,
        )
    if dropped_bursts:
        effective_logger.warning(
            "hmm.sequence_builder dropped_bursts_short count=%s min_sequence_length=%s sample=%s",
            len(dropped_bursts),
            min_sequence_length,
            dropped_bursts[:10],
        )
    effective_logger.info(
        "hmm.sequence_builder built_rows=%s sequences=%s features=%s",
        combined.height,
        len(lengths),
        feature_list,
    )
    return SequenceBuildResult(
        frame=combined,
        X=X,
        lengths=lengths_arr,
        feature_list=list(feature_list),
        bursts_dropped_short=dropped_bursts,
        rows_dropped_missing=rows_dropped_missing,
    )
