"""Read tracking CSV exports into a canonical Polars DataFrame."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import polars as pl

from frigate_hmm.config import ColumnsConfig

LOGGER = logging.getLogger(__name__)

REQUIRED_CANONICAL: tuple[str, ...] = ("bird_id", "timestamp", "lon", "lat")
NUMERIC_CANONICAL: tuple[str, ...] = ("lon", "lat", "alt_gps", "alt_baro", "pressure_hpa")


@dataclass(frozen=True, slots=True)
class TrackReadResult:
    """Container for parsed track rows and rejected-row metadata."""

    data: pl.DataFrame
    rejects: pl.DataFrame
    source_rows: int
    duplicate_rows: int


def _column_mapping(columns: ColumnsConfig) -> dict[str, str]:
    """Map source column names to canonical names."""

    return {
        columns.individual: "bird_id",
        columns.timestamp: "timestamp",
        columns.longitude: "lon",
        columns.latitude: "lat",
        columns.gps_altitude: "alt_gps",
        columns.baro_altitude: "alt_baro",
        columns.baro_pressure: "pressure_hpa",
    }


def _parse_timestamp(expr: pl.Expr, timestamp_format: str | None) -> pl.Expr:
    return expr.cast(pl.String).str.strip_chars().str.to_datetime(
        format=timestamp_format,
        time_unit="us",
        strict=False,
    )


def _reject_reason_expr() -> pl.Expr:
    return (
        pl.when(pl.col("bird_id").is_null())
        .then(pl.lit("missing_bird_id"))
        .when(pl.col("timestamp").is_null())
        .then(pl.lit("bad_timestamp"))
        .when(pl.col("lon").is_null() | pl.col("lat").is_null())
        .then(pl.lit("missing_coordinates"))
        .when(~pl.col("lon").is_between(-180.0, 180.0) | ~pl.col("lat").is_between(-90.0, 90.0))
        .then(pl.lit("coordinates_out_of_range"))
        .otherwise(pl.lit(None, dtype=pl.String))
    )


def normalize_track_frame(
    raw: pl.DataFrame,
    columns: ColumnsConfig,
    logger: logging.Logger | None = None,
) -> TrackReadResult:
    """Rename, cast and validate an already-loaded raw track frame."""

    effective_logger = logger or LOGGER
    mapping = {source: target for source, target in _column_mapping(columns).items() if source in raw.columns}
    missing = [name for name in REQUIRED_CANONICAL if name not in mapping.values()]
    if missing:
        raise ValueError(f"Track file is missing required columns for: {missing}")

    renamed = raw.select([pl.col(source).alias(target) for source, target in mapping.items()])
    casts: list[pl.Expr] = [
        pl.col("bird_id").cast(pl.String).str.strip_chars().alias("bird_id"),
        _parse_timestamp(pl.col("timestamp"), columns.timestamp_format).alias("timestamp"),
    ]
    casts.extend(
        pl.col(name).cast(pl.Float64, strict=False).alias(name)
        for name in NUMERIC_CANONICAL
        if name in renamed.columns
    )
    typed = (
        renamed.with_row_index("source_row_no", offset=1)
        .with_columns(casts)
        .with_columns(
            pl.when(pl.col("bird_id") == "").then(None).otherwise(pl.col("bird_id")).alias("bird_id")
        )
        .with_columns(_reject_reason_expr().alias("reject_reason"))
    )

    rejects = typed.filter(pl.col("reject_reason").is_not_null()).select(
        ["source_row_no", "bird_id", "reject_reason"]
    )
    valid = typed.filter(pl.col("reject_reason").is_null()).drop("reject_reason")
    before_dedup = valid.height
    data = valid.sort(["bird_id", "timestamp", "source_row_no"]).unique(
        subset=["bird_id", "timestamp"],
        keep="first",
        maintain_order=True,
    )
    duplicate_rows = before_dedup - data.height

    if rejects.height > 0:
        effective_logger.warning(
            "read_tracks.rejected_rows count=%s reasons=%s",
            rejects.height,
            rejects.group_by("reject_reason").len().sort("reject_reason").to_dicts(),
        )
    if duplicate_rows > 0:
        effective_logger.warning("read_tracks.duplicate_fixes_dropped count=%s", duplicate_rows)
    effective_logger.info(
        "read_tracks.loaded rows=%s birds=%s columns=%s",
        data.height,
        data.select(pl.col("bird_id").n_unique()).item() if data.height else 0,
        data.columns,
    )
    return TrackReadResult(
        data=data,
        rejects=rejects,
        source_rows=raw.height,
        duplicate_rows=duplicate_rows,
    )


def read_tracks(
    path: Path,
    columns: ColumnsConfig,
    logger: logging.Logger | None = None,
) -> TrackReadResult:
    """Read one tracking CSV into canonical columns.

    Canonical columns are ``bird_id``, ``timestamp``, ``lon``, ``lat`` and,
    when present in the file, ``alt_gps``, ``alt_baro`` and ``pressure_hpa``.
    Rows lacking an id, a parsable timestamp or coordinates are returned in
    ``rejects``; ``source_row_no`` is 1-based over data rows.
    """

    if not path.exists():
        raise FileNotFoundError(f"Track file not found: {path}")
    raw = pl.read_csv(path, infer_schema=False, null_values=["", "NA", "NaN", "nan"])
    if raw.height == 0:
        raise ValueError(f"Track file has no data rows: {path}")
    return normalize_track_frame(raw, columns, logger=logger)
