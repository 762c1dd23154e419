"""Decoded-state dataframe builders for movement HMM runs."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import numpy as np
import polars as pl


def _compute_state_change_features(group: pl.DataFrame) -> pl.DataFrame:
    states = group["hmm_state"].to_numpy().astype(np.int32, copy=False)
    n = states.shape[0]

    prev: list[int | None] = [None] * n
    changed = np.zeros(n, dtype=bool)
    run_len = np.zeros(n, dtype=np.int32)

    current_run = 0
    for idx in range(n):
        if idx == 0:
            current_run = 1
            run_len[idx] = current_run
            continue

        prev_state = int(states[idx - 1])
        prev[idx] = prev_state
        is_changed = int(states[idx]) != prev_state
        changed[idx] = is_changed
        current_run = 1 if is_changed else current_run + 1
        run_len[idx] = current_run

    return group.with_columns(
        [
            pl.Series(name="hmm_state_prev", values=prev, dtype=pl.Int16),
            pl.Series(name="hmm_state_changed", values=changed),
            pl.Series(name="hmm_state_run_length", values=run_len),
        ]
    )


def build_decoded_rows(
    base_frame: pl.DataFrame,
    *,
    decoded_states: np.ndarray,
    posterior_probs: np.ndarray | None,
    state_labels: dict[int, str],
    run_id: str,
    source: str,
    built_ts: datetime | None = None,
) -> pl.DataFrame:
    """Attach decoded states, labels and run-length helpers to aligned rows."""

    if "burst_id" not in base_frame.columns or "timestamp" not in base_frame.columns:
        raise ValueError("base_frame must include burst_id and timestamp.")
    if base_frame.height != decoded_states.shape[0]:
        raise ValueError("decoded_states length must match base_frame row count.")
    unknown = sorted({int(state) for state in np.unique(decoded_states)} - set(state_labels))
    if unknown:
        raise ValueError(f"decoded states without a label: {unknown}")

    ts = built_ts or datetime.now(timezone.utc)
    decoded = base_frame.with_columns(
        pl.Series(name="hmm_state", values=decoded_states.astype(np.int16, copy=False))
    ).with_columns(
        pl.col("hmm_state")
        .replace_strict({int(k): v for k, v in state_labels.items()}, return_dtype=pl.String)
        .alias("state_label")
    )
    if posterior_probs is not None:
        if posterior_probs.shape[0] != base_frame.height:
            raise ValueError("posterior_probs row count must match base_frame.")
        prob_max = posterior_probs.max(axis=1).astype(np.float32, copy=False)
        entropy = (
            -(posterior_probs * np.log(np.clip(posterior_probs, 1e-12, None))).sum(axis=1)
        ).astype(np.float32, copy=False)
        decoded = decoded.with_columns(
            [
                pl.Series(name="hmm_state_prob_max", values=prob_max),
                pl.Series(name="hmm_state_entropy", values=entropy),
            ]
        )
    else:
        decoded = decoded.with_columns(
            [
                pl.lit(None, dtype=pl.Float32).alias("hmm_state_prob_max"),
                pl.lit(None, dtype=pl.Float32).alias("hmm_state_entropy"),
            ]
        )

    decoded = (
        decoded.sort(["burst_id", "timestamp"])
        .group_by("burst_id", maintain_order=True)
        .map_groups(_compute_state_change_features)
        .sort(["bird_id", "timestamp"])
        .with_columns(
            [
                pl.lit(source).alias("altitude_source"),
                pl.lit(run_id).alias("run_id"),
                pl.lit(ts).alias("built_ts"),
            ]
        )
    )

    ordered = [
        "bird_id",
        "burst_id",
        "timestamp",
        "lon",
        "lat",
        "hmm_state",
        "state_label",
        "hmm_state_prob_max",
        "hmm_state_entropy",
        "hmm_state_changed",
        "hmm_state_prev",
        "hmm_state_run_length",
        "step_m",
        "angle_rad",
        "speed_ms",
        "alt_baro",
        "alt_gps",
        "altitude_source",
        "run_id",
        "built_ts",
    ]
    trailing = [column for column in decoded.columns if column not in ordered]
    return decoded.select([column for column in ordered if column in decoded.columns] + trailing)


def decode_with_model(
    model: Any,
    X: np.ndarray,
    lengths: np.ndarray,
) -> tuple[np.ndarray, np.ndarray | None]:
    """Decode Viterbi states and optional posterior probabilities."""

    _, states = model.decode(X, lengths=lengths.tolist(), algorithm="viterbi")
    states = np.asarray(states).astype(np.int16, copy=False)
    probs: np.ndarray | None = None
    if hasattr(model, "predict_proba"):
        probs = model.predict_proba(X, lengths=lengths.tolist()).astype(np.float64, copy=False)
    return states, probs
