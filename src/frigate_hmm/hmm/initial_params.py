"""K-means starting values for movement HMM fits."""

from __future__ import annotations

import importlib.util
from dataclasses import dataclass
from typing import Any

import numpy as np

from frigate_hmm.hmm.movement_hmm import (
    ALTITUDE_COLUMN,
    ANGLE_COLUMN,
    STEP_COLUMN,
    MovementHMM,
    circular_moments,
    gamma_moments,
    mean_resultant_to_kappa,
)


@dataclass(frozen=True, slots=True)
class InitialParameters:
    """Starting values derived from one k-means partition."""

    startprob: np.ndarray
    transmat: np.ndarray
    step_mean: np.ndarray
    step_sd: np.ndarray
    angle_mean: np.ndarray
    angle_kappa: np.ndarray
    alt_mean: np.ndarray | None
    alt_sd: np.ndarray | None
    labels: np.ndarray
    kmeans_meta: dict[str, Any]

    def apply(self, model: MovementHMM) -> MovementHMM:
        """Copy starting values onto an unfitted model."""

        model.startprob_ = self.startprob.copy()
        model.transmat_ = self.transmat.copy()
        model.step_mean_ = self.step_mean.copy()
        model.step_sd_ = self.step_sd.copy()
        model.angle_mean_ = self.angle_mean.copy()
        model.angle_kappa_ = self.angle_kappa.copy()
        if model.use_altitude:
            if self.alt_mean is None or self.alt_sd is None:
                raise ValueError("Initial parameters carry no altitude values for an altitude model.")
            model.alt_mean_ = self.alt_mean.copy()
            model.alt_sd_ = self.alt_sd.copy()
        return model

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "startprob": self.startprob.tolist(),
            "transmat": self.transmat.tolist(),
            "step_mean": self.step_mean.tolist(),
            "step_sd": self.step_sd.tolist(),
            "angle_mean": self.angle_mean.tolist(),
            "angle_kappa": self.angle_kappa.tolist(),
            "kmeans": self.kmeans_meta,
        }
        if self.alt_mean is not None and self.alt_sd is not None:
            payload["alt_mean"] = self.alt_mean.tolist()
            payload["alt_sd"] = self.alt_sd.tolist()
        return payload


def _require_sklearn() -> None:
    if importlib.util.find_spec("sklearn") is None:
        raise RuntimeError(
            "scikit-learn is required for k-means starting values. Install with: pip install scikit-learn"
        )


def kmeans_feature_matrix(X: np.ndarray, *, use_altitude: bool) -> np.ndarray:
    """Standardised clustering features: log step, cos/sin angle, log altitude.

    The cos and sin columns are each scaled by ``1/sqrt(2)`` so the turning
    angle weighs as much as one other feature.
    """

    columns = [
        np.log(X[:, STEP_COLUMN]),
        np.cos(X[:, ANGLE_COLUMN]),
        np.sin(X[:, ANGLE_COLUMN]),
    ]
    if use_altitude:
        columns.append(np.log(X[:, ALTITUDE_COLUMN]))
    features = np.column_stack(columns)
    center = features.mean(axis=0)
    spread = features.std(axis=0)
    spread = np.where(np.isfinite(spread) & (spread > 0.0), spread, 1.0)
    weights = np.ones(features.shape[1])
    weights[1:3] = 1.0 / np.sqrt(2.0)
    return (features - center) / spread * weights


def _count_transitions(labels: np.ndarray, lengths: np.ndarray, n_states: int, pseudocount: float) -> tuple[np.ndarray, np.ndarray]:
    start_counts = np.full(n_states, pseudocount, dtype=np.float64)
    trans_counts = np.full((n_states, n_states), pseudocount, dtype=np.float64)
    offset = 0
    for length in lengths.tolist():
        seq = labels[offset : offset + length]
        offset += length
        if seq.shape[0] == 0:
            continue
        start_counts[seq[0]] += 1.0
        np.add.at(trans_counts, (seq[:-1], seq[1:]), 1.0)
    # Rows with no observed transitions and zero pseudocount fall back to uniform.
    row_sums = trans_counts.sum(axis=1, keepdims=True)
    trans = np.where(row_sums > 0, trans_counts / np.where(row_sums > 0, row_sums, 1.0), 1.0 / n_states)
    start_total = start_counts.sum()
    start = start_counts / start_total if start_total > 0 else np.full(n_states, 1.0 / n_states)
    return start, trans


def kmeans_initial_parameters(
    X: np.ndarray,
    lengths: np.ndarray,
    *,
    n_states: int,
    use_altitude: bool,
    random_state: int = 42,
    n_init: int = 20,
    pseudocount: float = 1.0,
    min_sd_fraction: float = 0.01,
    kappa_min: float = 1e-3,
    kappa_max: float = 500.0,
    estimate_angle_mean: bool = True,
) -> InitialParameters:
    """Partition observations with k-means and turn clusters into HMM starting values.

    Clusters are relabelled by ascending mean step length so state 0 always
    starts as the slowest cluster. Start and transition probabilities are
    smoothed counts of the k-means labels along each sequence. With
    ``estimate_angle_mean=False`` every turning-angle mean starts at 0.
    """

    _require_sklearn()
    if X.ndim != 2 or X.shape[0] == 0:
        raise ValueError("X must be a non-empty 2D matrix.")
    if n_states < 2:
        raise ValueError("n_states must be >= 2.")
    if X.shape[0] < n_states:
        raise ValueError(f"X has {X.shape[0]} rows, fewer than n_states={n_states}.")
    if int(np.sum(lengths)) != int(X.shape[0]):
        raise ValueError("sum(lengths) must equal X row count.")

    from sklearn.cluster import KMeans

    features = kmeans_feature_matrix(X, use_altitude=use_altitude)
    model = KMeans(n_clusters=n_states, random_state=random_state, n_init=n_init)
    raw_labels = model.fit_predict(features).astype(np.int32)

    step = X[:, STEP_COLUMN]
    cluster_step_means = np.array(
        [step[raw_labels == k].mean() if np.any(raw_labels == k) else np.inf for k in range(n_states)]
    )
    order = np.argsort(cluster_step_means, kind="stable")
    remap = np.empty(n_states, dtype=np.int32)
    remap[order] = np.arange(n_states, dtype=np.int32)
    labels = remap[raw_labels]

    step_mean = np.empty(n_states)
    step_sd = np.empty(n_states)
    angle_mean = np.zeros(n_states)
    r_bar = np.zeros(n_states)
    alt_mean = np.empty(n_states) if use_altitude else None
    alt_sd = np.empty(n_states) if use_altitude else None
    overall_step = gamma_moments(step, min_sd_fraction)
    for state in range(n_states):
        members = labels == state
        if not np.any(members):
            step_mean[state], step_sd[state] = overall_step
            if alt_mean is not None and alt_sd is not None:
                alt_mean[state], alt_sd[state] = gamma_moments(X[:, ALTITUDE_COLUMN], min_sd_fraction)
            continue
        step_mean[state], step_sd[state] = gamma_moments(step[members], min_sd_fraction)
        angle_mean[state], r_bar[state] = circular_moments(
            X[members, ANGLE_COLUMN], estimate_mean=estimate_angle_mean
        )
        if alt_mean is not None and alt_sd is not None:
            alt_mean[state], alt_sd[state] = gamma_moments(X[members, ALTITUDE_COLUMN], min_sd_fraction)

    angle_kappa = mean_resultant_to_kappa(r_bar, kappa_min=kappa_min, kappa_max=kappa_max)
    startprob, transmat = _count_transitions(labels, np.asarray(lengths), n_states, pseudocount)
    cluster_sizes = np.bincount(labels, minlength=n_states)
    return InitialParameters(
        startprob=startprob,
        transmat=transmat,
        step_mean=step_mean,
        step_sd=step_sd,
        angle_mean=angle_mean,
        angle_kappa=angle_kappa,
        alt_mean=alt_mean,
        alt_sd=alt_sd,
        labels=labels,
        kmeans_meta={
            "n_clusters": int(n_states),
            "n_init": int(n_init),
            "random_state": int(random_state),
            "inertia": float(model.inertia_),
            "cluster_sizes": cluster_sizes.astype(int).tolist(),
            "use_altitude": bool(use_altitude),
            "estimate_angle_mean": bool(estimate_angle_mean),
        },
    )
