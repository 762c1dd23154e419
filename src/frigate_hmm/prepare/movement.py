"""Burst segmentation, movement metrics and model-ready track preparation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import numpy as np
import polars as pl

from frigate_hmm.config import PreprocessConfig
from frigate_hmm.prepare.altitude import clean_altitude, ensure_barometric_altitude

LOGGER = logging.getLogger(__name__)

EARTH_RADIUS_M = 6_371_000.0
ALTITUDE_COLUMNS: tuple[str, ...] = ("alt_baro", "alt_gps")


@dataclass(frozen=True, slots=True)
class PreparedTracks:
    """Model-ready track rows and a preparation summary."""

    frame: pl.DataFrame
    summary: dict[str, Any]


def haversine_m(lat1: np.ndarray, lon1: np.ndarray, lat2: np.ndarray, lon2: np.ndarray) -> np.ndarray:
    """Great-circle distance in metres."""

    lat1, lon1, lat2, lon2 = map(np.radians, [lat1, lon1, lat2, lon2])
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = np.sin(dlat / 2.0) ** 2 + np.cos(lat1) * np.cos(lat2) * np.sin(dlon / 2.0) ** 2
    return 2.0 * EARTH_RADIUS_M * np.arcsin(np.sqrt(np.clip(a, 0.0, 1.0)))


def initial_bearing_rad(lat1: np.ndarray, lon1: np.ndarray, lat2: np.ndarray, lon2: np.ndarray) -> np.ndarray:
    """Initial bearing in radians, clockwise from north, in [-pi, pi]."""

    lat1, lon1, lat2, lon2 = map(np.radians, [lat1, lon1, lat2, lon2])
    dlon = lon2 - lon1
    x = np.sin(dlon) * np.cos(lat2)
    y = np.cos(lat1) * np.sin(lat2) - np.sin(lat1) * np.cos(lat2) * np.cos(dlon)
    return np.arctan2(x, y)


def wrap_angle(angle: np.ndarray) -> np.ndarray:
    """Wrap radians to [-pi, pi)."""

    return np.mod(angle + np.pi, 2.0 * np.pi) - np.pi


def assign_bursts(df: pl.DataFrame, *, max_gap_seconds: float) -> pl.DataFrame:
    """Sort fixes and split each bird's track where the fix gap exceeds ``max_gap_seconds``.

    Adds ``dt_s`` (seconds since the previous fix of the same bird, null at a
    bird's first fix) and ``burst_id`` of the form ``<bird_id>_<k>``.
    """

    if max_gap_seconds <= 0:
        raise ValueError("max_gap_seconds must be > 0.")
    for column in ("bird_id", "timestamp"):
        if column not in df.columns:
            raise ValueError(f"Track frame must include {column}.")

    return (
        df.sort(["bird_id", "timestamp"])
        .with_columns(
            (pl.col("timestamp").diff().over("bird_id").dt.total_milliseconds() / 1000.0).alias("dt_s")
        )
        .with_columns(
            (pl.col("dt_s").is_null() | (pl.col("dt_s") > max_gap_seconds))
            .cast(pl.Int32)
            .cum_sum()
            .over("bird_id")
            .alias("__burst_no")
        )
        .with_columns(
            pl.concat_str([pl.col("bird_id"), pl.col("__burst_no").cast(pl.String)], separator="_").alias("burst_id")
        )
        .drop("__burst_no")
    )


def add_movement_metrics(df: pl.DataFrame) -> pl.DataFrame:
    """Add step length, heading, turning angle and speed per burst.

    ``step_m`` and ``heading_rad`` describe the step from this fix to the next
    one and are null at the last fix of a burst. ``angle_rad`` is the change of
    heading between the previous step and this one, wrapped to [-pi, pi); it is
    null at the first and last fix and wherever either step has zero length.
    """

    if "burst_id" not in df.columns:
        raise ValueError("Track frame must include burst_id; run assign_bursts first.")

    with_next = df.with_columns(
        [
            pl.col("lat").shift(-1).over("burst_id").alias("__lat_next"),
            pl.col("lon").shift(-1).over("burst_id").alias("__lon_next"),
            pl.col("dt_s").shift(-1).over("burst_id").alias("__dt_next"),
        ]
    )
    lat = with_next["lat"].to_numpy().astype(np.float64)
    lon = with_next["lon"].to_numpy().astype(np.float64)
    lat_next = with_next["__lat_next"].fill_null(np.nan).to_numpy().astype(np.float64)
    lon_next = with_next["__lon_next"].fill_null(np.nan).to_numpy().astype(np.float64)

    step = haversine_m(lat, lon, lat_next, lon_next)
    heading = initial_bearing_rad(lat, lon, lat_next, lon_next)
    heading = np.where(np.isfinite(step) & (step > 0.0), heading, np.nan)

    metrics = with_next.with_columns(
        [
            pl.Series("step_m", step).fill_nan(None),
            pl.Series("heading_rad", heading).fill_nan(None),
        ]
    ).with_columns(pl.col("heading_rad").shift(1).over("burst_id").alias("__heading_prev"))

    heading_prev = metrics["__heading_prev"].fill_null(np.nan).to_numpy().astype(np.float64)
    heading_now = metrics["heading_rad"].fill_null(np.nan).to_numpy().astype(np.float64)
    angle = wrap_angle(heading_now - heading_prev)

    return metrics.with_columns(
        [
            pl.Series("angle_rad", angle).fill_nan(None),
            pl.when(pl.col("__dt_next") > 0)
            .then(pl.col("step_m") / pl.col("__dt_next"))
            .otherwise(None)
            .alias("speed_ms"),
        ]
    ).drop(["__lat_next", "__lon_next", "__dt_next", "__heading_prev"])


def _drop_short_bursts(df: pl.DataFrame, min_sequence_length: int) -> tuple[pl.DataFrame, list[str]]:
    counts = df.group_by("burst_id").len()
    short = counts.filter(pl.col("len") < min_sequence_length)["burst_id"].sort().to_list()
    if not short:
        return df, []
    return df.filter(~pl.col("burst_id").is_in(short)), short


def prepare_tracks(
    df: pl.DataFrame,
    config: PreprocessConfig,
    logger: logging.Logger | None = None,
) -> PreparedTracks:
    """Turn canonical fixes into model-ready rows for every altitude source."""

    effective_logger = logger or LOGGER
    if df.height == 0:
        raise ValueError("Track frame has zero rows.")

    rows_in = df.height
    with_baro = ensure_barometric_altitude(
        df,
        sea_level_pressure_hpa=config.sea_level_pressure_hpa,
        logger=effective_logger,
    )
    bursts = assign_bursts(with_baro, max_gap_seconds=config.max_gap_seconds)
    moved = add_movement_metrics(bursts)

    below_step_floor = pl.col("step_m").is_not_null() & (pl.col("step_m") < config.step_floor_m)
    steps_clamped = int(moved.select(below_step_floor.sum()).item())
    prepared = moved.with_columns(
        pl.when(below_step_floor).then(pl.lit(config.step_floor_m)).otherwise(pl.col("step_m")).alias("step_m")
    )

    altitude_summary: dict[str, dict[str, int]] = {}
    for column in ALTITUDE_COLUMNS:
        if column not in prepared.columns:
            continue
        cleaned = clean_altitude(
            prepared,
            column,
            floor_m=config.altitude_floor_m,
            interpolate=config.interpolate_altitude,
        )
        prepared = cleaned.frame
        altitude_summary[column] = {
            "interpolated": cleaned.interpolated,
            "clamped": cleaned.clamped,
            "remaining_null": cleaned.remaining_null,
        }
        if cleaned.clamped > 0:
            effective_logger.info(
                "prepare.altitude_clamped column=%s count=%s floor_m=%s",
                column,
                cleaned.clamped,
                config.altitude_floor_m,
            )

    required = ["step_m", "angle_rad"]
    if config.common_rows_only:
        required.extend(column for column in ALTITUDE_COLUMNS if column in prepared.columns)
    before_null_filter = prepared.height
    prepared = prepared.filter(pl.all_horizontal([pl.col(column).is_not_null() for column in required]))
    rows_dropped_missing = before_null_filter - prepared.height

    prepared, short_bursts = _drop_short_bursts(prepared, config.min_sequence_length)
    if short_bursts:
        effective_logger.warning(
            "prepare.dropped_short_bursts count=%s min_sequence_length=%s sample=%s",
            len(short_bursts),
            config.min_sequence_length,
            short_bursts[:10],
        )
    if prepared.height == 0:
        raise ValueError(
            f"No track rows remain after preparation (min_sequence_length={config.min_sequence_length})."
        )

    prepared = prepared.sort(["bird_id", "timestamp"])
    summary: dict[str, Any] = {
        "rows_in": rows_in,
        "rows_out": prepared.height,
        "birds": int(prepared.select(pl.col("bird_id").n_unique()).item()),
        "bursts": int(prepared.select(pl.col("burst_id").n_unique()).item()),
        "bursts_dropped_short": len(short_bursts),
        "rows_dropped_missing": rows_dropped_missing,
        "required_columns": required,
        "steps_clamped": steps_clamped,
        "altitude": altitude_summary,
        "max_gap_seconds": config.max_gap_seconds,
        "min_sequence_length": config.min_sequence_length,
    }
    effective_logger.info(
        "prepare.done rows_in=%s rows_out=%s birds=%s bursts=%s",
        rows_in,
        summary["rows_out"],
        summary["birds"],
        summary["bursts"],
    )
    return PreparedTracks(frame=prepared, summary=summary)
