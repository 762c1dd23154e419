"""Typer CLI entrypoint for frigate_hmm."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import typer
import yaml

from frigate_hmm.config import AppSettings, load_settings
from frigate_hmm.logging_utils import configure_logging
from frigate_hmm.pipeline import (
    run_altitude_comparison,
    run_hmm_source,
    run_prepare,
    run_state_sweep,
)
from frigate_hmm.prepare.altitude import ALTITUDE_SOURCES
from frigate_hmm.sanity import summarize_run

app = typer.Typer(
    add_completion=False,
    help="frigate_hmm command line interface.",
    no_args_is_help=True,
)

_CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    help="Optional settings YAML path.",
    exists=False,
    file_okay=True,
    dir_okay=False,
    readable=True,
)
_DATASET_OPTION = typer.Option(
    ...,
    "--dataset",
    help="Path to the tracking CSV export.",
    exists=True,
    file_okay=True,
    dir_okay=False,
    readable=True,
)


def _load_and_optionally_configure_logger(
    config_file: Path | None,
    configure: bool,
) -> tuple[AppSettings, logging.Logger]:
    settings = load_settings(config_file=config_file)
    if configure:
        logger = configure_logging(settings.paths.logs_root / "frigate_hmm.log")
    else:
        logger = logging.getLogger("frigate_hmm")
    return settings, logger


def _parse_int_csv(value: str, option_name: str) -> list[int]:
    items = [part.strip() for part in value.split(",") if part.strip() != ""]
    if not items:
        raise typer.BadParameter(f"{option_name} must contain at least one integer.")
    parsed: list[int] = []
    for item in items:
        try:
            parsed.append(int(item))
        except ValueError as exc:
            raise typer.BadParameter(f"{option_name} must be comma-separated integers.") from exc
    if any(item < 2 for item in parsed):
        raise typer.BadParameter(f"{option_name} values must be >= 2.")
    return parsed


def _normalize_choice(value: str, *, allowed: set[str], option_name: str) -> str:
    normalized = value.strip().lower()
    if normalized not in allowed:
        allowed_rendered = ",".join(sorted(allowed))
        raise typer.BadParameter(f"{option_name} must be one of: {allowed_rendered}")
    return normalized


@app.command("show-config")
def show_config(config_file: Path | None = _CONFIG_FILE_OPTION) -> None:
    """Print the effective configuration after env overrides."""

    settings, _ = _load_and_optionally_configure_logger(config_file, configure=False)
    rendered = yaml.safe_dump(settings.as_dict(), sort_keys=False)
    typer.echo(rendered)


@app.command("prepare")
def prepare(
    dataset: Path = _DATASET_OPTION,
    config_file: Path | None = _CONFIG_FILE_OPTION,
) -> None:
    """Read and clean a tracking CSV and write model-ready rows."""

    settings, logger = _load_and_optionally_configure_logger(config_file, configure=True)
    result = run_prepare(settings, dataset_path=dataset, logger=logger)
    summary = json.loads(result.summary_path.read_text(encoding="utf-8"))
    typer.echo(f"rows_in: {summary['prepare'].get('rows_in')}")
    typer.echo(f"rows_out: {result.rows}")
    typer.echo(f"birds: {summary['prepare'].get('birds')}")
    typer.echo(f"bursts: {summary['prepare'].get('bursts')}")
    typer.echo(f"rows_rejected: {summary['read'].get('rows_rejected')}")
    agreement = summary.get("altitude_agreement")
    if agreement is not None:
        typer.echo(f"baro_minus_gps_mean_m: {agreement.get('mean_diff_m')}")
        typer.echo(f"baro_gps_pearson_r: {agreement.get('pearson_r')}")
    typer.echo(f"output_dir: {result.output_dir}")


@app.command("hmm-run")
def hmm_run(
    dataset: Path = _DATASET_OPTION,
    source: str = typer.Option(
        "baro",
        "--source",
        help="Altitude source: baro, gps or none.",
    ),
    n_states: int | None = typer.Option(
        None,
        "--n-states",
        min=2,
        help="Number of HMM states (defaults to config).",
    ),
    random_state: int | None = typer.Option(
        None,
        "--random-state",
        help="Optional random seed override.",
    ),
    n_starts: int | None = typer.Option(
        None,
        "--n-starts",
        min=1,
        help="Optional number of k-means starts override.",
    ),
    no_figures: bool = typer.Option(
        False,
        "--no-figures",
        help="Skip writing HTML figures.",
    ),
    config_file: Path | None = _CONFIG_FILE_OPTION,
) -> None:
    """Fit, label and decode a movement HMM for one altitude source."""

    source_norm = _normalize_choice(source, allowed=set(ALTITUDE_SOURCES), option_name="source")
    settings, logger = _load_and_optionally_configure_logger(config_file, configure=True)
    result = run_hmm_source(
        settings,
        dataset_path=dataset,
        source=source_norm,
        n_states=n_states,
        random_state=random_state,
        n_starts=n_starts,
        write_figures=not no_figures,
        logger=logger,
    )
    summary = json.loads(result.run_summary_path.read_text(encoding="utf-8"))
    source_summary = summary["sources"][source_norm]
    typer.echo(f"run_id: {result.run_id}")
    typer.echo(f"source: {source_norm}")
    typer.echo(f"n_states: {source_summary.get('n_states')}")
    typer.echo(f"rows_fit: {source_summary.get('rows_fit')}")
    typer.echo(f"loglik: {source_summary.get('loglik')}")
    typer.echo(f"bic: {source_summary.get('bic')}")
    typer.echo(f"state_labels: {source_summary.get('state_labels')}")
    typer.echo(f"output_dir: {result.output_dir}")


@app.command("compare-run")
def compare_run(
    dataset: Path = _DATASET_OPTION,
    n_states: int | None = typer.Option(
        None,
        "--n-states",
        min=2,
        help="Number of HMM states (defaults to config).",
    ),
    random_state: int | None = typer.Option(
        None,
        "--random-state",
        help="Optional random seed override.",
    ),
    n_starts: int | None = typer.Option(
        None,
        "--n-starts",
        min=1,
        help="Optional number of k-means starts override.",
    ),
    no_figures: bool = typer.Option(
        False,
        "--no-figures",
        help="Skip writing HTML figures.",
    ),
    config_file: Path | None = _CONFIG_FILE_OPTION,
) -> None:
    """Fit barometric and GPS altitude models and compare their decoded states."""

    settings, logger = _load_and_optionally_configure_logger(config_file, configure=True)
    result = run_altitude_comparison(
        settings,
        dataset_path=dataset,
        n_states=n_states,
        random_state=random_state,
        n_starts=n_starts,
        write_figures=not no_figures,
        logger=logger,
    )
    typer.echo(f"run_id: {result.run_id}")
    typer.echo(f"rows_compared: {result.metrics.get('rows_compared')}")
    typer.echo(f"agreement_rate: {result.metrics.get('agreement_rate')}")
    typer.echo(f"cohen_kappa: {result.metrics.get('cohen_kappa')}")
    for source, source_dir in result.source_dirs.items():
        typer.echo(f"{source}_dir: {source_dir}")
    typer.echo(f"output_dir: {result.output_dir}")


@app.command("hmm-sweep")
def hmm_sweep(
    dataset: Path = _DATASET_OPTION,
    source: str = typer.Option(
        "baro",
        "--source",
        help="Altitude source: baro, gps or none.",
    ),
    components: str | None = typer.Option(
        None,
        "--components",
        help="Comma-separated state counts, e.g. 2,3,4 (defaults to config).",
    ),
    random_state: int | None = typer.Option(
        None,
        "--random-state",
        help="Optional random seed override.",
    ),
    n_starts: int | None = typer.Option(
        None,
        "--n-starts",
        min=1,
        help="Optional number of k-means starts override.",
    ),
    config_file: Path | None = _CONFIG_FILE_OPTION,
) -> None:
    """Fit one altitude source across state counts and compare AIC/BIC."""

    source_norm = _normalize_choice(source, allowed=set(ALTITUDE_SOURCES), option_name="source")
    parsed_components = _parse_int_csv(components, "components") if components is not None else None
    settings, logger = _load_and_optionally_configure_logger(config_file, configure=True)
    result = run_state_sweep(
        settings,
        dataset_path=dataset,
        source=source_norm,
        components=parsed_components or list(settings.sweep.components_default),
        random_state=random_state,
        n_starts=n_starts,
        logger=logger,
    )
    payload = json.loads(result.summary_json_path.read_text(encoding="utf-8"))
    typer.echo(f"run_id: {result.run_id}")
    typer.echo(f"rows: {result.rows}")
    typer.echo(f"best_n_states_by_bic: {payload.get('best_n_states_by_bic')}")
    for row in payload.get("rows", []):
        typer.echo(
            f"n_states={row.get('n_states')} | status={row.get('status')} | aic={row.get('aic')} | bic={row.get('bic')}"
        )
    typer.echo(f"output_dir: {result.output_dir}")


@app.command("hmm-sanity")
def hmm_sanity(
    run_dir: Path = typer.Option(
        ...,
        "--run-dir",
        help="Path to one HMM run output directory.",
        exists=True,
        file_okay=False,
        dir_okay=True,
        readable=True,
    ),
) -> None:
    """Inspect a completed run and print labels, time budgets and agreement."""

    summary = summarize_run(run_dir)
    typer.echo(f"run_id: {summary.get('run_id')}")
    typer.echo(f"mode: {summary.get('mode')}")
    typer.echo(f"rows_prepared: {summary.get('rows_prepared')}")
    for source, source_summary in summary.get("sources", {}).items():
        typer.echo(f"[{source}] labels: {source_summary.get('labels')}")
        for row in source_summary.get("mean_time_budget", []):
            typer.echo(f"[{source}] label={row.get('state_label')} | mean_share_of_bird={row.get('mean_share_of_bird')}")
    if summary.get("mode") == "compare":
        typer.echo(f"rows_compared: {summary.get('rows_compared')}")
        typer.echo(f"agreement_rate: {summary.get('agreement_rate')}")
        typer.echo(f"cohen_kappa: {summary.get('cohen_kappa')}")


def main() -> None:
    """CLI script entrypoint."""

    app()


if __name__ == "__main__":
    main()
