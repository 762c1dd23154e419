"""Sanity helpers for completed movement HMM runs."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import polars as pl


def _summarize_source_dir(source_dir: Path) -> dict[str, Any]:
    parameters_path = source_dir / "state_parameters.csv"
    budget_path = source_dir / "time_budget.csv"
    frequency_path = source_dir / "state_frequency.csv"
    for path in (parameters_path, budget_path, frequency_path):
        if not path.exists():
            raise FileNotFoundError(f"{path.name} missing in {source_dir}")

    parameters = pl.read_csv(parameters_path)
    budget = pl.read_csv(budget_path)
    frequency = pl.read_csv(frequency_path)
    mean_budget = (
        budget.group_by("state_label")
        .agg(pl.col("share_of_bird").mean().alias("mean_share_of_bird"))
        .sort("state_label")
    )
    keep = [c for c in ("hmm_state", "state_label", "step_mean_m", "angle_kappa", "alt_mean_m") if c in parameters.columns]
    return {
        "state_count": parameters.height,
        "state_parameters": parameters.select(keep).sort("hmm_state").to_dicts(),
        "state_frequency": frequency.select(["state_label", "share_of_rows"]).to_dicts(),
        "mean_time_budget": mean_budget.to_dicts(),
        "birds": int(budget.select(pl.col("bird_id").n_unique()).item()) if budget.height else 0,
    }


def summarize_run(run_dir: Path) -> dict[str, Any]:
    """Read run artifacts and return a compact summary of labels, budgets and agreement."""

    if not run_dir.exists() or not run_dir.is_dir():
        raise FileNotFoundError(f"HMM run directory not found: {run_dir}")
    run_summary_path = run_dir / "run_summary.json"
    if not run_summary_path.exists():
        raise FileNotFoundError(f"run_summary.json missing in {run_dir}")

    run_summary = json.loads(run_summary_path.read_text(encoding="utf-8"))
    mode = run_summary.get("mode", "source")
    sources: dict[str, Any] = {}
    for source, source_summary in run_summary.get("sources", {}).items():
        source_dir = run_dir / source if mode == "compare" else run_dir
        sources[source] = {
            "labels": source_summary.get("state_labels"),
            "loglik": source_summary.get("loglik"),
            "bic": source_summary.get("bic"),
            "converged": source_summary.get("converged"),
            "labelling_checks": source_summary.get("labelling_checks"),
            **_summarize_source_dir(source_dir),
        }

    out: dict[str, Any] = {
        "run_dir": str(run_dir),
        "run_id": run_summary.get("run_id"),
        "mode": mode,
        "rows_prepared": run_summary.get("prepare", {}).get("rows_out"),
        "sources": sources,
    }
    if mode == "compare":
        metrics_path = run_dir / "comparison_metrics.json"
        confusion_path = run_dir / "confusion_long.csv"
        if not metrics_path.exists():
            raise FileNotFoundError(f"comparison_metrics.json missing in {run_dir}")
        metrics = json.loads(metrics_path.read_text(encoding="utf-8"))
        out["agreement_rate"] = metrics.get("agreement_rate")
        out["cohen_kappa"] = metrics.get("cohen_kappa")
        out["rows_compared"] = metrics.get("rows_compared")
        out["altitude_agreement"] = metrics.get("altitude_agreement")
        if confusion_path.exists():
            confusion = pl.read_csv(confusion_path)
            out["largest_disagreements"] = (
                confusion.filter(pl.col("baro_label") != pl.col("gps_label"))
                .sort("count", descending=True)
                .head(5)
                .to_dicts()
            )
    return out
