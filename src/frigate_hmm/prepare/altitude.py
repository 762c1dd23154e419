"""Altitude derivation, cleaning and barometric-vs-GPS agreement."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import numpy as np
import polars as pl

LOGGER = logging.getLogger(__name__)

ALTITUDE_SOURCES: dict[str, str | None] = {
    "baro": "alt_baro",
    "gps": "alt_gps",
    "none": None,
}

_PER_BIRD_SCHEMA: dict[str, pl.DataType] = {
    "bird_id": pl.String,
    "n": pl.Int64,
    "mean_diff_m": pl.Float64,
    "sd_diff_m": pl.Float64,
    "rmse_m": pl.Float64,
    "pearson_r": pl.Float64,
}


@dataclass(frozen=True, slots=True)
class AltitudeCleanResult:
    """Cleaned frame plus counts of interpolated and clamped values."""

    frame: pl.DataFrame
    column: str
    interpolated: int
    clamped: int
    remaining_null: int


def altitude_column_for_source(source: str) -> str | None:
    """Resolve an altitude source name to its canonical column."""

    key = source.strip().lower()
    if key not in ALTITUDE_SOURCES:
        allowed = ",".join(sorted(ALTITUDE_SOURCES))
        raise ValueError(f"altitude source must be one of: {allowed}")
    return ALTITUDE_SOURCES[key]


def derive_barometric_altitude(pressure_hpa: pl.Expr, sea_level_pressure_hpa: float) -> pl.Expr:
    """International barometric formula, metres above the reference pressure level."""

    if sea_level_pressure_hpa <= 0:
        raise ValueError("sea_level_pressure_hpa must be > 0.")
    ratio = pressure_hpa / sea_level_pressure_hpa
    return 44330.0 * (1.0 - ratio.pow(1.0 / 5.255))


def ensure_barometric_altitude(
    df: pl.DataFrame,
    *,
    sea_level_pressure_hpa: float,
    logger: logging.Logger | None = None,
) -> pl.DataFrame:
    """Fill ``alt_baro`` from ``pressure_hpa`` where no barometric altitude was supplied."""

    effective_logger = logger or LOGGER
    if "pressure_hpa" not in df.columns:
        return df
    derived = derive_barometric_altitude(pl.col("pressure_hpa"), sea_level_pressure_hpa)
    if "alt_baro" in df.columns:
        filled = int(df.select((pl.col("alt_baro").is_null() & pl.col("pressure_hpa").is_not_null()).sum()).item())
        if filled == 0:
            return df
        effective_logger.info("altitude.fill_barometric_from_pressure rows=%s", filled)
        return df.with_columns(pl.coalesce(pl.col("alt_baro"), derived).alias("alt_baro"))
    effective_logger.info(
        "altitude.derive_barometric sea_level_pressure_hpa=%s rows=%s",
        sea_level_pressure_hpa,
        df.height,
    )
    return df.with_columns(derived.alias("alt_baro"))


def clean_altitude(
    df: pl.DataFrame,
    column: str,
    *,
    floor_m: float,
    interpolate: bool,
    group_column: str = "burst_id",
) -> AltitudeCleanResult:
    """Interpolate gaps inside each burst, then clamp values below ``floor_m``.

    Gamma emissions need strictly positive altitudes, so negative and zero
    readings (sea-surface noise on both sensors) are clamped to the floor.
    Leading and trailing gaps in a burst stay null.
    """

    if column not in df.columns:
        raise ValueError(f"Altitude column not found: {column}")
    if floor_m <= 0:
        raise ValueError("floor_m must be > 0.")

    nulls_before = int(df.select(pl.col(column).is_null().sum()).item())
    out = df
    if interpolate and nulls_before > 0:
        out = out.with_columns(pl.col(column).interpolate().over(group_column).alias(column))
    nulls_after = int(out.select(pl.col(column).is_null().sum()).item())

    below_floor = pl.col(column).is_not_null() & (pl.col(column) < floor_m)
    clamped = int(out.select(below_floor.sum()).item())
    out = out.with_columns(
        pl.when(below_floor).then(pl.lit(floor_m)).otherwise(pl.col(column)).alias(column)
    )
    return AltitudeCleanResult(
        frame=out,
        column=column,
        interpolated=nulls_before - nulls_after,
        clamped=clamped,
        remaining_null=nulls_after,
    )


def _agreement_stats(diff: np.ndarray, baro: np.ndarray, gps: np.ndarray) -> dict[str, Any]:
    n = int(diff.shape[0])
    if n == 0:
        return {"n": 0, "mean_diff_m": None, "sd_diff_m": None, "rmse_m": None, "pearson_r": None}
    pearson: float | None = None
    if n >= 3 and np.std(baro) > 0 and np.std(gps) > 0:
        pearson = float(np.corrcoef(baro, gps)[0, 1])
    return {
        "n": n,
        "mean_diff_m": float(np.mean(diff)),
        "sd_diff_m": float(np.std(diff, ddof=1)) if n > 1 else None,
        "rmse_m": float(np.sqrt(np.mean(np.square(diff)))),
        "pearson_r": pearson,
    }


def altitude_agreement(df: pl.DataFrame) -> tuple[dict[str, Any], pl.DataFrame]:
    """Compare barometric and GPS altitude where both are present.

    Differences are barometric minus GPS. Returns overall statistics and a
    per-bird table.
    """

    if "alt_baro" not in df.columns or "alt_gps" not in df.columns:
        raise ValueError("altitude agreement requires alt_baro and alt_gps columns.")
    paired = df.filter(pl.col("alt_baro").is_not_null() & pl.col("alt_gps").is_not_null())
    baro = paired["alt_baro"].to_numpy().astype(np.float64, copy=False)
    gps = paired["alt_gps"].to_numpy().astype(np.float64, copy=False)
    overall = _agreement_stats(baro - gps, baro, gps)

    rows: list[dict[str, Any]] = []
    for group in paired.partition_by("bird_id", maintain_order=True):
        g_baro = group["alt_baro"].to_numpy().astype(np.float64, copy=False)
        g_gps = group["alt_gps"].to_numpy().astype(np.float64, copy=False)
        rows.append({"bird_id": str(group["bird_id"][0]), **_agreement_stats(g_baro - g_gps, g_baro, g_gps)})
    per_bird = pl.DataFrame(rows, schema=_PER_BIRD_SCHEMA) if rows else pl.DataFrame(schema=_PER_BIRD_SCHEMA)
    return overall, per_bird.sort("bird_id")
