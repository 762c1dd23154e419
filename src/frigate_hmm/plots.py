"""Plotly figure builders for movement HMM runs."""

from __future__ import annotations

from typing import Any

import numpy as np
import plotly.graph_objects as go
import polars as pl
from plotly.subplots import make_subplots
from scipy import stats

from frigate_hmm.hmm.movement_hmm import gamma_shape_scale

_STATE_COLORS = [
    "rgb(0,114,178)",
    "rgb(213,94,0)",
    "rgb(0,158,115)",
    "rgb(204,121,167)",
    "rgb(240,228,66)",
    "rgb(86,180,233)",
    "rgb(230,159,0)",
    "rgb(0,0,0)",
]


def label_colors(labels: list[str]) -> dict[str, str]:
    """Stable color per state label."""

    return {label: _STATE_COLORS[idx % len(_STATE_COLORS)] for idx, label in enumerate(labels)}


def _gamma_curve(grid: np.ndarray, mean: float, sd: float) -> np.ndarray:
    shape, scale = gamma_shape_scale(np.asarray([mean]), np.asarray([sd]))
    return stats.gamma.pdf(grid, a=float(shape[0]), scale=float(scale[0]))


def build_state_density_figure(
    decoded: pl.DataFrame,
    parameters: pl.DataFrame,
    *,
    altitude_column: str | None,
    labels: list[str],
    title: str | None = None,
) -> go.Figure:
    """Histograms of step, turning angle and altitude with stationary-weighted fitted densities."""

    panels: list[tuple[str, str]] = [("step_m", "Step length (m)"), ("angle_rad", "Turning angle (rad)")]
    if altitude_column is not None and "alt_mean_m" in parameters.columns:
        panels.append((altitude_column, "Altitude (m)"))
    fig = make_subplots(rows=1, cols=len(panels), subplot_titles=[name for _, name in panels])
    colors = label_colors(labels)
    param_rows = {row["state_label"]: row for row in parameters.iter_rows(named=True)}

    for col_idx, (column, _name) in enumerate(panels, start=1):
        values = decoded[column].drop_nulls().to_numpy().astype(np.float64)
        if values.size == 0:
            continue
        fig.add_trace(
            go.Histogram(
                x=values,
                histnorm="probability density",
                nbinsx=60,
                marker_color="rgba(120,120,120,0.35)",
                name="observed",
                showlegend=col_idx == 1,
            ),
            row=1,
            col=col_idx,
        )
        if column == "angle_rad":
            grid = np.linspace(-np.pi, np.pi, 361)
        else:
            upper = float(np.quantile(values, 0.99)) if values.size > 1 else float(values.max())
            grid = np.linspace(max(float(values.min()), 1e-6), max(upper, 1e-3), 400)
        for label in labels:
            row = param_rows.get(label)
            if row is None:
                continue
            weight = float(row.get("stationary_share") or 0.0)
            if column == "step_m":
                density = _gamma_curve(grid, row["step_mean_m"], row["step_sd_m"])
            elif column == "angle_rad":
                density = stats.vonmises.pdf(grid, kappa=row["angle_kappa"], loc=row["angle_mean_rad"])
            else:
                if row.get("alt_mean_m") is None:
                    continue
                density = _gamma_curve(grid, row["alt_mean_m"], row["alt_sd_m"])
            fig.add_trace(
                go.Scatter(
                    x=grid,
                    y=weight * density,
                    mode="lines",
                    line={"color": colors[label], "width": 2},
                    name=label,
                    legendgroup=label,
                    showlegend=col_idx == 1,
                ),
                row=1,
                col=col_idx,
            )

    fig.update_layout(title=title or "Fitted state densities", barmode="overlay", template="plotly_white")
    return fig


def build_track_map_figure(decoded: pl.DataFrame, *, labels: list[str], title: str | None = None) -> go.Figure:
    """Longitude/latitude scatter of fixes coloured by state label."""

    fig = go.Figure()
    colors = label_colors(labels)
    for label in labels:
        subset = decoded.filter(pl.col("state_label") == label)
        if subset.height == 0:
            continue
        fig.add_trace(
            go.Scattergl(
                x=subset["lon"].to_numpy(),
                y=subset["lat"].to_numpy(),
                mode="markers",
                marker={"size": 3, "color": colors[label]},
                name=label,
                text=subset["bird_id"].to_list(),
            )
        )
    fig.update_layout(
        title=title or "Tracks by state",
        xaxis_title="Longitude",
        yaxis_title="Latitude",
        template="plotly_white",
    )
    fig.update_yaxes(scaleanchor="x", scaleratio=1.0)
    return fig


def build_altitude_timeline_figure(
    decoded: pl.DataFrame,
    *,
    altitude_column: str,
    labels: list[str],
    bird_id: str | None = None,
    title: str | None = None,
) -> go.Figure:
    """Altitude over time for one bird with markers coloured by state label."""

    if altitude_column not in decoded.columns:
        raise ValueError(f"decoded rows have no {altitude_column} column.")
    if bird_id is None:
        bird_id = str(decoded["bird_id"].sort()[0])
    bird = decoded.filter(pl.col("bird_id") == bird_id).sort("timestamp")
    fig = go.Figure()
    fig.add_trace(
        go.Scatter(
            x=bird["timestamp"].to_list(),
            y=bird[altitude_column].to_numpy(),
            mode="lines",
            line={"color": "rgba(120,120,120,0.5)", "width": 1},
            name=altitude_column,
        )
    )
    colors = label_colors(labels)
    for label in labels:
        subset = bird.filter(pl.col("state_label") == label)
        if subset.height == 0:
            continue
        fig.add_trace(
            go.Scatter(
                x=subset["timestamp"].to_list(),
                y=subset[altitude_column].to_numpy(),
                mode="markers",
                marker={"size": 4, "color": colors[label]},
                name=label,
            )
        )
    fig.update_layout(
        title=title or f"Altitude and states for {bird_id}",
        xaxis_title="Time",
        yaxis_title="Altitude (m)",
        template="plotly_white",
    )
    return fig


def build_confusion_figure(confusion_wide: pl.DataFrame, *, title: str | None = None) -> go.Figure:
    """Heatmap of the barometric (rows) by GPS (columns) label confusion matrix."""

    row_labels = confusion_wide["baro_label"].to_list()
    col_labels = [c for c in confusion_wide.columns if c != "baro_label"]
    z = confusion_wide.select(col_labels).to_numpy()
    fig = go.Figure(
        go.Heatmap(
            z=z,
            x=col_labels,
            y=row_labels,
            colorscale="Blues",
            text=z,
            texttemplate="%{text}",
        )
    )
    fig.update_layout(
        title=title or "State labels: barometric vs GPS",
        xaxis_title="GPS altitude run",
        yaxis_title="Barometric altitude run",
        template="plotly_white",
    )
    fig.update_yaxes(autorange="reversed")
    return fig


def build_altitude_scatter_figure(
    df: pl.DataFrame,
    *,
    max_points: int = 20_000,
    seed: int = 0,
    title: str | None = None,
) -> go.Figure:
    """Barometric against GPS altitude with the identity line."""

    pairs = df.select(["alt_baro", "alt_gps"]).drop_nulls()
    if pairs.height > max_points:
        pairs = pairs.sample(n=max_points, seed=seed)
    baro = pairs["alt_baro"].to_numpy()
    gps = pairs["alt_gps"].to_numpy()
    fig = go.Figure(
        go.Scattergl(
            x=gps,
            y=baro,
            mode="markers",
            marker={"size": 3, "color": "rgba(0,114,178,0.4)"},
            name="fixes",
        )
    )
    if pairs.height > 0:
        lo = float(min(baro.min(), gps.min()))
        hi = float(max(baro.max(), gps.max()))
        fig.add_trace(
            go.Scatter(x=[lo, hi], y=[lo, hi], mode="lines", line={"color": "black", "dash": "dash"}, name="1:1")
        )
    fig.update_layout(
        title=title or "Barometric vs GPS altitude",
        xaxis_title="GPS altitude (m)",
        yaxis_title="Barometric altitude (m)",
        template="plotly_white",
    )
    return fig


def build_sweep_figure(sweep_rows: list[dict[str, Any]], *, title: str | None = None) -> go.Figure:
    """AIC and BIC by number of states."""

    ok = [row for row in sweep_rows if row.get("status") == "ok"]
    n_states = [row["n_states"] for row in ok]
    fig = go.Figure()
    for key in ("aic", "bic"):
        fig.add_trace(go.Scatter(x=n_states, y=[row[key] for row in ok], mode="lines+markers", name=key.upper()))
    fig.update_layout(
        title=title or "Information criteria by number of states",
        xaxis_title="Number of states",
        yaxis_title="Criterion",
        template="plotly_white",
    )
    return fig
