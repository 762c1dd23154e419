"""Transition, dwell-time, time-budget and profile tables for decoded states."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import polars as pl

from frigate_hmm.hmm.movement_hmm import MovementHMM


@dataclass(frozen=True, slots=True)
class HMMDiagnostics:
    """Diagnostics tables derived from decoded HMM rows."""

    transition_counts: pl.DataFrame
    transition_matrix: pl.DataFrame
    initial_state_distribution: pl.DataFrame
    dwell_stats: pl.DataFrame
    state_frequency: pl.DataFrame
    time_budget: pl.DataFrame
    state_profile: pl.DataFrame


def fitted_transition_table(model: MovementHMM, state_labels: dict[int, str]) -> pl.DataFrame:
    """Long table of the fitted transition matrix with labels."""

    rows = [
        {
            "from_state": i,
            "from_label": state_labels[i],
            "to_state": j,
            "to_label": state_labels[j],
            "probability": float(model.transmat_[i, j]),
        }
        for i in range(model.n_components)
        for j in range(model.n_components)
    ]
    return pl.DataFrame(rows).with_columns(
        [pl.col("from_state").cast(pl.Int16), pl.col("to_state").cast(pl.Int16)]
    )


def _state_profile(decoded_df: pl.DataFrame) -> pl.DataFrame:
    total_rows = decoded_df.height
    agg: list[pl.Expr] = [
        pl.col("hmm_state").first().alias("hmm_state"),
        pl.len().alias("row_count"),
        pl.col("bird_id").n_unique().alias("bird_count"),
        pl.col("step_m").mean().alias("step_m_mean"),
        pl.col("step_m").median().alias("step_m_median"),
        pl.col("angle_rad").abs().mean().alias("abs_angle_rad_mean"),
    ]
    if "speed_ms" in decoded_df.columns:
        agg.append(pl.col("speed_ms").mean().alias("speed_ms_mean"))
    for column in ("alt_baro", "alt_gps"):
        if column in decoded_df.columns:
            agg.extend(
                [
                    pl.col(column).mean().alias(f"{column}_mean"),
                    pl.col(column).median().alias(f"{column}_median"),
                ]
            )
    return (
        decoded_df.group_by("state_label")
        .agg(agg)
        .with_columns((pl.col("row_count") / float(total_rows)).alias("share_of_rows"))
        .sort("hmm_state")
    )


def build_hmm_diagnostics(decoded_df: pl.DataFrame) -> HMMDiagnostics:
    """Build transition/dwell/frequency/time-budget diagnostics from decoded rows."""

    required = {"hmm_state", "state_label", "burst_id", "bird_id", "timestamp"}
    missing = sorted(required - set(decoded_df.columns))
    if missing:
        raise ValueError(f"decoded_df is missing columns: {missing}")
    if decoded_df.height == 0:
        raise ValueError("decoded_df has zero rows.")

    transition_counts = (
        decoded_df.filter(pl.col("hmm_state_prev").is_not_null())
        .group_by(["hmm_state_prev", "hmm_state"])
        .len(name="transition_count")
        .with_columns(
            [
                pl.col("hmm_state_prev").cast(pl.Int16, strict=False),
                pl.col("hmm_state").cast(pl.Int16, strict=False),
            ]
        )
        .sort(["hmm_state_prev", "hmm_state"])
    )
    transition_matrix = (
        transition_counts.join(
            transition_counts.group_by("hmm_state_prev")
            .agg(pl.col("transition_count").sum().alias("from_state_total")),
            on="hmm_state_prev",
            how="left",
        )
        .with_columns(
            (pl.col("transition_count") / pl.col("from_state_total")).alias("transition_probability")
        )
        .select(["hmm_state_prev", "hmm_state", "transition_count", "transition_probability"])
        .sort(["hmm_state_prev", "hmm_state"])
    )

    initial_state_distribution = (
        decoded_df.sort(["burst_id", "timestamp"])
        .group_by("burst_id", maintain_order=True)
        .first()
        .group_by(["hmm_state", "state_label"])
        .len(name="start_count")
        .with_columns((pl.col("start_count") / pl.col("start_count").sum()).alias("start_share"))
        .sort("hmm_state")
    )

    runs = (
        decoded_df.sort(["burst_id", "timestamp"])
        .with_columns(pl.col("hmm_state_changed").cast(pl.Int32).cum_sum().over("burst_id").alias("__hmm_run_id"))
        .group_by(["burst_id", "__hmm_run_id"])
        .agg(
            [
                pl.col("hmm_state").first().alias("hmm_state"),
                pl.col("state_label").first().alias("state_label"),
                pl.col("hmm_state_run_length").max().alias("dwell_length"),
                (pl.col("timestamp").max() - pl.col("timestamp").min())
                .dt.total_seconds()
                .alias("dwell_seconds"),
            ]
        )
    )
    dwell_stats = (
        runs.group_by(["hmm_state", "state_label"])
        .agg(
            [
                pl.len().alias("dwell_count"),
                pl.col("dwell_length").mean().alias("dwell_mean"),
                pl.col("dwell_length").median().alias("dwell_median"),
                pl.col("dwell_length").quantile(0.10, interpolation="linear").alias("dwell_p10"),
                pl.col("dwell_length").quantile(0.90, interpolation="linear").alias("dwell_p90"),
                pl.col("dwell_length").max().alias("max_dwell"),
                pl.col("dwell_seconds").mean().alias("dwell_seconds_mean"),
            ]
        )
        .sort("hmm_state")
    )

    state_frequency = (
        decoded_df.group_by(["hmm_state", "state_label"])
        .len(name="row_count")
        .with_columns((pl.col("row_count") / pl.col("row_count").sum()).alias("share_of_rows"))
        .sort("hmm_state")
    )

    time_budget = (
        decoded_df.group_by(["bird_id", "state_label"])
        .len(name="row_count")
        .with_columns(
            (pl.col("row_count") / pl.col("row_count").sum().over("bird_id")).alias("share_of_bird")
        )
        .sort(["bird_id", "state_label"])
    )

    return HMMDiagnostics(
        transition_counts=transition_counts,
        transition_matrix=transition_matrix,
        initial_state_distribution=initial_state_distribution,
        dwell_stats=dwell_stats,
        state_frequency=state_frequency,
        time_budget=time_budget,
        state_profile=_state_profile(decoded_df),
    )


def state_concentration_metrics(state_frequency: pl.DataFrame) -> tuple[float | None, float | None]:
    """Largest state share and effective number of states."""

    if state_frequency.height == 0 or "share_of_rows" not in state_frequency.columns:
        return None, None
    shares = state_frequency.select("share_of_rows").to_series().to_numpy()
    shares = shares[np.isfinite(shares)]
    if shares.size == 0:
        return None, None
    return float(np.max(shares)), float(1.0 / np.sum(np.square(shares)))


def avg_self_transition_prob(transition_matrix: pl.DataFrame) -> float | None:
    """Mean decoded self-transition probability over states."""

    if transition_matrix.height == 0:
        return None
    diag = transition_matrix.filter(pl.col("hmm_state_prev") == pl.col("hmm_state"))
    if diag.height == 0:
        return None
    return float(diag.select(pl.col("transition_probability").mean()).item())
