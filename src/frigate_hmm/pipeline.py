"""Track preparation, movement HMM runs, altitude comparison and state sweeps."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from uuid import uuid4

import numpy as np
import polars as pl

from frigate_hmm.compare import compare_decoded, compare_parameters
from frigate_hmm.config import AppSettings
from frigate_hmm.hmm.decode import build_decoded_rows, decode_with_model
from frigate_hmm.hmm.diagnostics import (
    avg_self_transition_prob,
    build_hmm_diagnostics,
    fitted_transition_table,
    state_concentration_metrics,
)
from frigate_hmm.hmm.fit import HMMFitResult, fit_movement_hmm
from frigate_hmm.hmm.state_labels import (
    label_order,
    label_states,
    labelled_parameter_table,
    labelling_checks,
    state_parameter_table,
)
from frigate_hmm.ingest.read_tracks import TrackReadResult, read_tracks
from frigate_hmm.plots import (
    build_altitude_scatter_figure,
    build_altitude_timeline_figure,
    build_confusion_figure,
    build_state_density_figure,
    build_sweep_figure,
    build_track_map_figure,
)
from frigate_hmm.prepare.altitude import altitude_agreement, altitude_column_for_source
from frigate_hmm.prepare.movement import PreparedTracks, prepare_tracks
from frigate_hmm.prepare.sequence_builder import (
    SequenceBuildResult,
    build_hmm_sequences,
    feature_list_for_source,
)
from frigate_hmm.writer import (
    write_csv_atomically,
    write_figure_atomically,
    write_json_atomically,
    write_parquet_atomically,
)

LOGGER = logging.getLogger(__name__)

COMPARISON_SOURCES: tuple[str, str] = ("baro", "gps")


@dataclass(frozen=True, slots=True)
class PreparedDataset:
    """Read and prepared track rows shared by runs on one dataset."""

    dataset_path: Path
    read_result: TrackReadResult
    prepared: PreparedTracks


@dataclass(frozen=True, slots=True)
class PrepareRunResult:
    """Artifact outputs for a standalone preparation pass."""

    output_dir: Path
    prepared_path: Path
    summary_path: Path
    rows: int


@dataclass(frozen=True, slots=True)
class SourceRunOutputs:
    """In-memory outputs of one fitted altitude source."""

    source: str
    output_dir: Path
    fit: HMMFitResult
    state_labels: dict[int, str]
    label_order: list[str]
    decoded_rows: pl.DataFrame
    state_parameters: pl.DataFrame
    summary: dict[str, Any]


@dataclass(frozen=True, slots=True)
class HMMRunResult:
    """Artifact outputs for one single-source movement HMM run."""

    run_id: str
    source: str
    output_dir: Path
    run_summary_path: Path
    decoded_rows_path: Path
    state_parameters_path: Path


@dataclass(frozen=True, slots=True)
class ComparisonRunResult:
    """Artifact outputs for a barometric vs GPS comparison run."""

    run_id: str
    output_dir: Path
    run_summary_path: Path
    source_dirs: dict[str, Path]
    metrics: dict[str, Any]


@dataclass(frozen=True, slots=True)
class StateSweepResult:
    """Artifact outputs for a state-count sweep."""

    run_id: str
    output_dir: Path
    summary_json_path: Path
    summary_csv_path: Path
    rows: int


def load_prepared_dataset(
    settings: AppSettings,
    *,
    dataset_path: Path,
    logger: logging.Logger | None = None,
) -> PreparedDataset:
    """Read a tracking CSV and prepare model-ready rows."""

    effective_logger = logger or LOGGER
    read_result = read_tracks(dataset_path, settings.columns, logger=effective_logger)
    prepared = prepare_tracks(read_result.data, settings.preprocess, logger=effective_logger)
    return PreparedDataset(dataset_path=dataset_path, read_result=read_result, prepared=prepared)


def _dataset_tag(dataset_path: Path) -> str:
    return dataset_path.stem.replace(" ", "_")


def _read_summary(dataset: PreparedDataset) -> dict[str, Any]:
    return {
        "source_rows": dataset.read_result.source_rows,
        "rows_valid": dataset.read_result.data.height,
        "rows_rejected": dataset.read_result.rejects.height,
        "duplicate_rows": dataset.read_result.duplicate_rows,
    }


def run_prepare(
    settings: AppSettings,
    *,
    dataset_path: Path,
    logger: logging.Logger | None = None,
) -> PrepareRunResult:
    """Prepare a dataset and write the cleaned rows, rejects and summary."""

    effective_logger = logger or LOGGER
    dataset = load_prepared_dataset(settings, dataset_path=dataset_path, logger=effective_logger)
    output_dir = settings.paths.artifacts_root / "prepared" / _dataset_tag(dataset_path)
    prepared_path = output_dir / "prepared_tracks.parquet"
    rejects_path = output_dir / "rejected_rows.csv"
    summary_path = output_dir / "prepare_summary.json"

    write_parquet_atomically(dataset.prepared.frame, prepared_path)
    write_csv_atomically(dataset.read_result.rejects, rejects_path)
    payload: dict[str, Any] = {
        "dataset_path": str(dataset_path),
        "read": _read_summary(dataset),
        "prepare": dataset.prepared.summary,
        "outputs": {
            "prepared_tracks": str(prepared_path),
            "rejected_rows": str(rejects_path),
        },
    }
    if {"alt_baro", "alt_gps"}.issubset(dataset.prepared.frame.columns):
        overall, per_bird = altitude_agreement(dataset.prepared.frame)
        agreement_path = output_dir / "altitude_agreement_by_bird.csv"
        write_csv_atomically(per_bird, agreement_path)
        payload["altitude_agreement"] = overall
        payload["outputs"]["altitude_agreement_by_bird"] = str(agreement_path)
    write_json_atomically(payload, summary_path)
    effective_logger.info(
        "prepare_run.complete rows=%s output=%s",
        dataset.prepared.frame.height,
        output_dir,
    )
    return PrepareRunResult(
        output_dir=output_dir,
        prepared_path=prepared_path,
        summary_path=summary_path,
        rows=dataset.prepared.frame.height,
    )


def _sequences_for_source(
    settings: AppSettings,
    frame: pl.DataFrame,
    source: str,
    logger: logging.Logger,
) -> SequenceBuildResult:
    return build_hmm_sequences(
        frame,
        feature_list=feature_list_for_source(source),
        min_sequence_length=settings.preprocess.min_sequence_length,
        logger=logger,
    )


def _fit_source(
    settings: AppSettings,
    sequences: SequenceBuildResult,
    *,
    source: str,
    n_states: int,
    random_state: int | None,
    n_starts: int | None,
    logger: logging.Logger,
) -> HMMFitResult:
    return fit_movement_hmm(
        sequences.X,
        sequences.lengths,
        n_states=n_states,
        use_altitude=altitude_column_for_source(source) is not None,
        config=settings.hmm,
        random_state=random_state,
        n_starts=n_starts,
        logger=logger,
    )


def _fit_decode_and_write_source(
    settings: AppSettings,
    frame: pl.DataFrame,
    *,
    source: str,
    n_states: int,
    run_id: str,
    output_dir: Path,
    random_state: int | None,
    n_starts: int | None,
    write_figures: bool,
    logger: logging.Logger,
) -> SourceRunOutputs:
    sequences = _sequences_for_source(settings, frame, source, logger)
    fit_result = _fit_source(
        settings,
        sequences,
        source=source,
        n_states=n_states,
        random_state=random_state,
        n_starts=n_starts,
        logger=logger,
    )
    parameters = state_parameter_table(fit_result.model)
    mapping = label_states(parameters, settings.labels)
    labelled = labelled_parameter_table(parameters, mapping)
    ordered_labels = label_order(settings.labels, mapping)
    checks = labelling_checks(labelled, settings.labels)

    states, posterior = decode_with_model(fit_result.model, sequences.X, sequences.lengths)
    decoded = build_decoded_rows(
        sequences.frame,
        decoded_states=states,
        posterior_probs=posterior,
        state_labels=mapping,
        run_id=run_id,
        source=source,
    )
    diagnostics = build_hmm_diagnostics(decoded)
    fitted_transitions = fitted_transition_table(fit_result.model, mapping)
    largest_share, effective_count = state_concentration_metrics(diagnostics.state_frequency)

    output_dir.mkdir(parents=True, exist_ok=True)
    outputs: dict[str, str] = {}

    def _csv(df: pl.DataFrame, name: str) -> None:
        outputs[name] = str(write_csv_atomically(df, output_dir / f"{name}.csv"))

    outputs["decoded_rows"] = str(write_parquet_atomically(decoded, output_dir / "decoded_rows.parquet"))
    _csv(decoded.head(5_000), "decoded_rows_sample")
    _csv(labelled, "state_parameters")
    _csv(fitted_transitions, "fitted_transition_matrix")
    _csv(diagnostics.transition_counts, "transition_counts")
    _csv(diagnostics.transition_matrix, "transition_matrix")
    _csv(diagnostics.dwell_stats, "dwell_stats")
    _csv(diagnostics.state_frequency, "state_frequency")
    _csv(diagnostics.initial_state_distribution, "initial_state_distribution")
    _csv(diagnostics.time_budget, "time_budget")
    _csv(diagnostics.state_profile, "state_profile")
    outputs["hmm_model_meta"] = str(
        write_json_atomically(fit_result.model_meta, output_dir / "hmm_model_meta.json")
    )
    outputs["initial_parameters"] = str(
        write_json_atomically(fit_result.initial.as_dict(), output_dir / "initial_parameters.json")
    )

    altitude_column = altitude_column_for_source(source)
    if write_figures:
        figures_dir = output_dir / "figures"
        outputs["state_densities_html"] = str(
            write_figure_atomically(
                build_state_density_figure(
                    decoded,
                    labelled,
                    altitude_column=altitude_column,
                    labels=ordered_labels,
                    title=f"Fitted state densities ({source})",
                ),
                figures_dir / "state_densities.html",
            )
        )
        outputs["track_map_html"] = str(
            write_figure_atomically(
                build_track_map_figure(decoded, labels=ordered_labels, title=f"Tracks by state ({source})"),
                figures_dir / "track_map.html",
            )
        )
        if altitude_column is not None:
            outputs["altitude_timeline_html"] = str(
                write_figure_atomically(
                    build_altitude_timeline_figure(decoded, altitude_column=altitude_column, labels=ordered_labels),
                    figures_dir / "altitude_timeline.html",
                )
            )

    summary: dict[str, Any] = {
        "source": source,
        "altitude_column": altitude_column,
        "feature_list": sequences.feature_list,
        "n_states": int(n_states),
        "rows_fit": int(sequences.X.shape[0]),
        "sequences_fit": int(sequences.lengths.shape[0]),
        "rows_dropped_missing": sequences.rows_dropped_missing,
        "bursts_dropped_short": len(sequences.bursts_dropped_short),
        "loglik": fit_result.loglik,
        "aic": fit_result.aic,
        "bic": fit_result.bic,
        "converged": fit_result.model_meta["converged"],
        "converged_by_tol": fit_result.model_meta["converged_by_tol"],
        "hit_iteration_cap": fit_result.model_meta["hit_iteration_cap"],
        "state_labels": {str(k): v for k, v in sorted(mapping.items())},
        "label_order": ordered_labels,
        "labelling_checks": checks,
        "largest_state_share": largest_share,
        "effective_state_count": effective_count,
        "avg_self_transition_prob": avg_self_transition_prob(diagnostics.transition_matrix),
        "outputs": outputs,
    }
    logger.info(
        "hmm_source.complete source=%s n_states=%s loglik=%.3f labels=%s output=%s",
        source,
        n_states,
        fit_result.loglik,
        summary["state_labels"],
        output_dir,
    )
    return SourceRunOutputs(
        source=source,
        output_dir=output_dir,
        fit=fit_result,
        state_labels=mapping,
        label_order=ordered_labels,
        decoded_rows=decoded,
        state_parameters=labelled,
        summary=summary,
    )


def run_hmm_source(
    settings: AppSettings,
    *,
    dataset_path: Path,
    source: str,
    n_states: int | None = None,
    random_state: int | None = None,
    n_starts: int | None = None,
    write_figures: bool = True,
    logger: logging.Logger | None = None,
) -> HMMRunResult:
    """Fit, label and decode one altitude source and write a run directory."""

    effective_logger = logger or LOGGER
    source_norm = source.strip().lower()
    altitude_column_for_source(source_norm)
    started_ts = datetime.now(timezone.utc)
    dataset = load_prepared_dataset(settings, dataset_path=dataset_path, logger=effective_logger)

    run_id = f"hmm-{uuid4().hex[:12]}"
    output_dir = settings.paths.artifacts_root / "hmm_runs" / f"{run_id}_{source_norm}"
    states = n_states if n_states is not None else settings.hmm.n_states
    outputs = _fit_decode_and_write_source(
        settings,
        dataset.prepared.frame,
        source=source_norm,
        n_states=states,
        run_id=run_id,
        output_dir=output_dir,
        random_state=random_state,
        n_starts=n_starts,
        write_figures=write_figures,
        logger=effective_logger,
    )

    finished_ts = datetime.now(timezone.utc)
    run_summary_path = output_dir / "run_summary.json"
    run_summary = {
        "run_id": run_id,
        "mode": "source",
        "dataset_path": str(dataset_path),
        "started_ts": started_ts.isoformat(),
        "finished_ts": finished_ts.isoformat(),
        "duration_sec": round((finished_ts - started_ts).total_seconds(), 3),
        "read": _read_summary(dataset),
        "prepare": dataset.prepared.summary,
        "sources": {source_norm: outputs.summary},
    }
    write_json_atomically(run_summary, run_summary_path)
    effective_logger.info("hmm_run.complete run_id=%s source=%s output=%s", run_id, source_norm, output_dir)
    return HMMRunResult(
        run_id=run_id,
        source=source_norm,
        output_dir=output_dir,
        run_summary_path=run_summary_path,
        decoded_rows_path=Path(outputs.summary["outputs"]["decoded_rows"]),
        state_parameters_path=Path(outputs.summary["outputs"]["state_parameters"]),
    )


def run_altitude_comparison(
    settings: AppSettings,
    *,
    dataset_path: Path,
    n_states: int | None = None,
    random_state: int | None = None,
    n_starts: int | None = None,
    write_figures: bool = True,
    logger: logging.Logger | None = None,
) -> ComparisonRunResult:
    """Fit barometric and GPS altitude models on the same rows and compare their states.

    Prepared rows missing either altitude are dropped before fitting,
    whatever ``common_rows_only`` says.
    """

    effective_logger = logger or LOGGER
    started_ts = datetime.now(timezone.utc)
    dataset = load_prepared_dataset(settings, dataset_path=dataset_path, logger=effective_logger)
    frame = dataset.prepared.frame
    missing = [column for column in ("alt_baro", "alt_gps") if column not in frame.columns]
    if missing:
        raise ValueError(f"Altitude comparison needs both altitude columns; missing: {missing}")
    paired = frame.filter(pl.col("alt_baro").is_not_null() & pl.col("alt_gps").is_not_null())
    rows_without_pair = frame.height - paired.height
    if rows_without_pair > 0:
        effective_logger.warning("compare_run.dropped_unpaired_rows count=%s", rows_without_pair)
    if paired.height == 0:
        raise ValueError("No prepared rows carry both barometric and GPS altitude.")
    frame = paired

    run_id = f"hmm-{uuid4().hex[:12]}"
    output_dir = settings.paths.artifacts_root / "hmm_runs" / f"{run_id}_compare"
    states = n_states if n_states is not None else settings.hmm.n_states
    by_source: dict[str, SourceRunOutputs] = {}
    for source in COMPARISON_SOURCES:
        by_source[source] = _fit_decode_and_write_source(
            settings,
            frame,
            source=source,
            n_states=states,
            run_id=run_id,
            output_dir=output_dir / source,
            random_state=random_state,
            n_starts=n_starts,
            write_figures=write_figures,
            logger=effective_logger,
        )

    baro, gps = by_source["baro"], by_source["gps"]
    shared_order = baro.label_order + [label for label in gps.label_order if label not in baro.label_order]
    comparison = compare_decoded(baro.decoded_rows, gps.decoded_rows, label_order=shared_order)
    parameter_comparison = compare_parameters(baro.state_parameters, gps.state_parameters)
    agreement_overall, agreement_by_bird = altitude_agreement(frame)

    outputs: dict[str, str] = {}
    for name, table in (
        ("confusion_long", comparison.confusion_long),
        ("confusion_matrix", comparison.confusion_wide),
        ("label_shares", comparison.label_shares),
        ("parameter_comparison", parameter_comparison),
        ("altitude_agreement_by_bird", agreement_by_bird),
    ):
        outputs[name] = str(write_csv_atomically(table, output_dir / f"{name}.csv"))
    metrics = {
        **comparison.metrics,
        "altitude_agreement": agreement_overall,
        "rows_without_altitude_pair": rows_without_pair,
        "loglik_baro": baro.fit.loglik,
        "loglik_gps": gps.fit.loglik,
    }
    outputs["comparison_metrics"] = str(write_json_atomically(metrics, output_dir / "comparison_metrics.json"))
    if write_figures:
        outputs["confusion_matrix_html"] = str(
            write_figure_atomically(
                build_confusion_figure(comparison.confusion_wide),
                output_dir / "figures" / "confusion_matrix.html",
            )
        )
        outputs["altitude_scatter_html"] = str(
            write_figure_atomically(
                build_altitude_scatter_figure(frame, seed=settings.hmm.random_state),
                output_dir / "figures" / "altitude_scatter.html",
            )
        )

    finished_ts = datetime.now(timezone.utc)
    run_summary_path = output_dir / "run_summary.json"
    run_summary = {
        "run_id": run_id,
        "mode": "compare",
        "dataset_path": str(dataset_path),
        "started_ts": started_ts.isoformat(),
        "finished_ts": finished_ts.isoformat(),
        "duration_sec": round((finished_ts - started_ts).total_seconds(), 3),
        "read": _read_summary(dataset),
        "prepare": dataset.prepared.summary,
        "sources": {source: result.summary for source, result in by_source.items()},
        "comparison": metrics,
        "outputs": outputs,
    }
    write_json_atomically(run_summary, run_summary_path)
    effective_logger.info(
        "compare_run.complete run_id=%s rows_compared=%s agreement=%.3f kappa=%s output=%s",
        run_id,
        metrics["rows_compared"],
        metrics["agreement_rate"],
        metrics["cohen_kappa"],
        output_dir,
    )
    return ComparisonRunResult(
        run_id=run_id,
        output_dir=output_dir,
        run_summary_path=run_summary_path,
        source_dirs={source: result.output_dir for source, result in by_source.items()},
        metrics=metrics,
    )


def run_state_sweep(
    settings: AppSettings,
    *,
    dataset_path: Path,
    source: str,
    components: list[int],
    random_state: int | None = None,
    n_starts: int | None = None,
    logger: logging.Logger | None = None,
) -> StateSweepResult:
    """Fit one altitude source across state counts and tabulate information criteria."""

    effective_logger = logger or LOGGER
    if not components:
        raise ValueError("components must not be empty.")
    source_norm = source.strip().lower()
    altitude_column_for_source(source_norm)
    dataset = load_prepared_dataset(settings, dataset_path=dataset_path, logger=effective_logger)
    sequences = _sequences_for_source(settings, dataset.prepared.frame, source_norm, effective_logger)

    rows: list[dict[str, Any]] = []
    for n_states in components:
        try:
            fit_result = _fit_source(
                settings,
                sequences,
                source=source_norm,
                n_states=int(n_states),
                random_state=random_state,
                n_starts=n_starts,
                logger=effective_logger,
            )
        except (ValueError, FloatingPointError, np.linalg.LinAlgError) as exc:
            effective_logger.warning("hmm_sweep.fit_failed n_states=%s error=%s", n_states, exc)
            rows.append(
                {
                    "n_states": int(n_states),
                    "loglik": None,
                    "aic": None,
                    "bic": None,
                    "n_free_parameters": None,
                    "converged": None,
                    "labels": None,
                    "status": "failed",
                    "error": str(exc),
                }
            )
            continue
        mapping = label_states(state_parameter_table(fit_result.model), settings.labels)
        rows.append(
            {
                "n_states": int(n_states),
                "loglik": fit_result.loglik,
                "aic": fit_result.aic,
                "bic": fit_result.bic,
                "n_free_parameters": fit_result.model_meta["n_free_parameters"],
                "converged": fit_result.model_meta["converged"],
                "labels": ",".join(mapping[state] for state in sorted(mapping)),
                "status": "ok",
                "error": None,
            }
        )

    summary_df = pl.DataFrame(
        rows,
        schema={
            "n_states": pl.Int64,
            "loglik": pl.Float64,
            "aic": pl.Float64,
            "bic": pl.Float64,
            "n_free_parameters": pl.Int64,
            "converged": pl.Boolean,
            "labels": pl.String,
            "status": pl.String,
            "error": pl.String,
        },
    ).sort("n_states")
    ok_rows = summary_df.filter(pl.col("status") == "ok")
    best_by_bic = int(ok_rows.sort("bic").row(0, named=True)["n_states"]) if ok_rows.height else None

    run_id = f"hmm-sweep-{uuid4().hex[:12]}"
    output_dir = settings.paths.artifacts_root / "hmm_runs" / f"{run_id}_{source_norm}"
    summary_json_path = output_dir / "hmm_sweep_summary.json"
    summary_csv_path = output_dir / "hmm_sweep_summary.csv"
    write_csv_atomically(summary_df, summary_csv_path)
    write_figure_atomically(
        build_sweep_figure(summary_df.to_dicts(), title=f"Information criteria by number of states ({source_norm})"),
        output_dir / "figures" / "sweep_information_criteria.html",
    )
    write_json_atomically(
        {
            "run_id": run_id,
            "dataset_path": str(dataset_path),
            "source": source_norm,
            "components": [int(c) for c in components],
            "rows_fit": int(sequences.X.shape[0]),
            "sequences_fit": int(sequences.lengths.shape[0]),
            "best_n_states_by_bic": best_by_bic,
            "rows": summary_df.to_dicts(),
        },
        summary_json_path,
    )
    effective_logger.info(
        "hmm_sweep.complete run_id=%s source=%s components=%s best_by_bic=%s output=%s",
        run_id,
        source_norm,
        components,
        best_by_bic,
        output_dir,
    )
    return StateSweepResult(
        run_id=run_id,
        output_dir=output_dir,
        summary_json_path=summary_json_path,
        summary_csv_path=summary_csv_path,
        rows=summary_df.height,
    )
