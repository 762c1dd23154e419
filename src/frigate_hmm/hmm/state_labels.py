"""Behavioural labels for fitted movement HMM states.

Labels follow simple rules on the fitted emission parameters:

* the state with the smallest mean step length is ``resting``;
* with two states the other one is ``flying``;
* with three or more, among the moving states the one with the largest
  turning-angle concentration (straightest paths) is ``gliding`` and the one
  with the smallest concentration (thermal circling) is ``soaring``; any
  further states are ``intermediate_<k>`` in order of mean step length.
"""

from __future__ import annotations

from typing import Any

import numpy as np
import polars as pl

from frigate_hmm.config import LabelsConfig
from frigate_hmm.hmm.movement_hmm import MovementHMM


def state_parameter_table(model: MovementHMM) -> pl.DataFrame:
    """One row per state with fitted emission parameters and stationary share."""

    n_states = int(model.n_components)
    columns: dict[str, Any] = {
        "hmm_state": np.arange(n_states, dtype=np.int16),
        "step_mean_m": np.asarray(model.step_mean_, dtype=np.float64),
        "step_sd_m": np.asarray(model.step_sd_, dtype=np.float64),
        "angle_mean_rad": np.asarray(model.angle_mean_, dtype=np.float64),
        "angle_kappa": np.asarray(model.angle_kappa_, dtype=np.float64),
        "alt_mean_m": (
            np.asarray(model.alt_mean_, dtype=np.float64) if model.use_altitude else np.full(n_states, np.nan)
        ),
        "alt_sd_m": (
            np.asarray(model.alt_sd_, dtype=np.float64) if model.use_altitude else np.full(n_states, np.nan)
        ),
        "start_prob": np.asarray(model.startprob_, dtype=np.float64),
        "self_transition_prob": np.diag(model.transmat_).astype(np.float64),
        "stationary_share": model.stationary_distribution().astype(np.float64),
    }
    return pl.DataFrame(columns).with_columns(
        [
            pl.col("alt_mean_m").fill_nan(None),
            pl.col("alt_sd_m").fill_nan(None),
        ]
    )


def label_states(parameters: pl.DataFrame, labels: LabelsConfig) -> dict[int, str]:
    """Map state index to behavioural label from a state parameter table."""

    required = {"hmm_state", "step_mean_m", "angle_kappa"}
    missing = sorted(required - set(parameters.columns))
    if missing:
        raise ValueError(f"state parameter table is missing columns: {missing}")
    n_states = parameters.height
    if n_states < 2:
        raise ValueError("At least two states are required for labelling.")

    by_step = parameters.sort(["step_mean_m", "hmm_state"])
    states_by_step = [int(state) for state in by_step["hmm_state"].to_list()]
    resting = states_by_step[0]
    moving = states_by_step[1:]

    mapping: dict[int, str] = {resting: labels.resting}
    if len(moving) == 1:
        mapping[moving[0]] = labels.flying
        return mapping

    kappa = {int(row["hmm_state"]): float(row["angle_kappa"]) for row in parameters.iter_rows(named=True)}
    gliding = max(moving, key=lambda state: (kappa[state], -state))
    soaring = min((state for state in moving if state != gliding), key=lambda state: (kappa[state], state))
    mapping[gliding] = labels.gliding
    mapping[soaring] = labels.soaring

    extra = [state for state in moving if state not in (gliding, soaring)]
    for rank, state in enumerate(extra, start=1):
        mapping[state] = f"{labels.intermediate_prefix}_{rank}"
    return mapping


def label_order(labels: LabelsConfig, mapping: dict[int, str]) -> list[str]:
    """Stable display order of labels: resting, soaring, gliding/flying, then extras."""

    preferred = [labels.resting, labels.soaring, labels.gliding, labels.flying]
    present = set(mapping.values())
    ordered = [label for label in preferred if label in present]
    ordered.extend(sorted(present - set(ordered)))
    return ordered


def labelled_parameter_table(parameters: pl.DataFrame, mapping: dict[int, str]) -> pl.DataFrame:
    """Attach labels to a state parameter table."""

    return parameters.with_columns(
        pl.col("hmm_state")
        .replace_strict({int(k): v for k, v in mapping.items()}, return_dtype=pl.String)
        .alias("state_label")
    ).select(["hmm_state", "state_label", *[c for c in parameters.columns if c != "hmm_state"]])


def labelling_checks(labelled: pl.DataFrame, labels: LabelsConfig) -> dict[str, Any]:
    """Plausibility flags for the labelling rules."""

    rows = {row["state_label"]: row for row in labelled.iter_rows(named=True)}
    checks: dict[str, Any] = {"labels": sorted(rows)}
    soaring = rows.get(labels.soaring)
    gliding = rows.get(labels.gliding)
    resting = rows.get(labels.resting)
    if soaring is not None and gliding is not None:
        if soaring.get("alt_mean_m") is not None and gliding.get("alt_mean_m") is not None:
            checks["soaring_higher_than_gliding"] = bool(soaring["alt_mean_m"] > gliding["alt_mean_m"])
        else:
            checks["soaring_higher_than_gliding"] = None
    if resting is not None:
        resting_alt = resting.get("alt_mean_m")
        other_alts = [
            row["alt_mean_m"]
            for label, row in rows.items()
            if label != labels.resting and row.get("alt_mean_m") is not None
        ]
        checks["resting_lowest_altitude"] = (
            bool(resting_alt <= min(other_alts)) if resting_alt is not None and other_alts else None
        )
    return checks
