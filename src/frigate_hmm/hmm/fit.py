"""Movement HMM fit wrapper with k-means starts."""

from __future__ import annotations

import importlib.util
import logging
from dataclasses import dataclass
from typing import Any

import numpy as np

from frigate_hmm.config import HMMConfig
from frigate_hmm.hmm.initial_params import InitialParameters, kmeans_initial_parameters
from frigate_hmm.hmm.movement_hmm import MovementHMM

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class HMMFitResult:
    """Container for the best fitted HMM and fit diagnostics."""

    model: MovementHMM
    loglik: float
    aic: float
    bic: float
    initial: InitialParameters
    start_logliks: list[float | None]
    model_meta: dict[str, Any]


def _require_hmmlearn() -> None:
    if importlib.util.find_spec("hmmlearn") is None:
        raise RuntimeError(
            "hmmlearn is required for movement HMM fits. Install with: pip install hmmlearn"
        )


def _fit_one_start(
    X: np.ndarray,
    lengths: np.ndarray,
    initial: InitialParameters,
    *,
    n_states: int,
    use_altitude: bool,
    config: HMMConfig,
    random_state: int,
) -> MovementHMM:
    model = MovementHMM(
        n_components=n_states,
        use_altitude=use_altitude,
        estimate_angle_mean=config.estimate_angle_mean,
        min_sd_fraction=config.min_sd_fraction,
        kappa_min=config.kappa_min,
        kappa_max=config.kappa_max,
        random_state=random_state,
        n_iter=config.n_iter,
        tol=config.tol,
        init_params="",
    )
    initial.apply(model)
    model.fit(X, lengths=lengths.tolist())
    return model


def fit_movement_hmm(
    X: np.ndarray,
    lengths: np.ndarray,
    *,
    n_states: int,
    use_altitude: bool,
    config: HMMConfig,
    random_state: int | None = None,
    n_starts: int | None = None,
    logger: logging.Logger | None = None,
) -> HMMFitResult:
    """Fit a movement HMM from several k-means starts and keep the best log-likelihood.

    Start ``i`` seeds k-means with ``random_state + i``. A start whose fit
    raises a numerical error is logged and skipped; if every start fails the
    last error propagates.
    """

    _require_hmmlearn()
    effective_logger = logger or LOGGER
    if X.ndim != 2 or X.shape[0] == 0:
        raise ValueError("X must be a non-empty 2D matrix.")
    if lengths.ndim != 1 or lengths.shape[0] == 0:
        raise ValueError("lengths must be a non-empty 1D array.")
    if int(np.sum(lengths)) != int(X.shape[0]):
        raise ValueError("sum(lengths) must equal X row count.")

    base_seed = config.random_state if random_state is None else random_state
    starts = config.n_starts if n_starts is None else n_starts
    if starts < 1:
        raise ValueError("n_starts must be >= 1.")

    best_model: MovementHMM | None = None
    best_initial: InitialParameters | None = None
    best_loglik = -np.inf
    best_start: int | None = None
    start_logliks: list[float | None] = []
    last_error: Exception | None = None
    for start in range(starts):
        seed = base_seed + start
        initial = kmeans_initial_parameters(
            X,
            lengths,
            n_states=n_states,
            use_altitude=use_altitude,
            random_state=seed,
            n_init=config.kmeans_n_init,
            pseudocount=config.transition_pseudocount,
            min_sd_fraction=config.min_sd_fraction,
            kappa_min=config.kappa_min,
            kappa_max=config.kappa_max,
            estimate_angle_mean=config.estimate_angle_mean,
        )
        try:
            model = _fit_one_start(
                X,
                lengths,
                initial,
                n_states=n_states,
                use_altitude=use_altitude,
                config=config,
                random_state=seed,
            )
            loglik = float(model.score(X, lengths=lengths.tolist()))
        except (ValueError, FloatingPointError, np.linalg.LinAlgError) as exc:
            effective_logger.warning("hmm.fit start_failed start=%s seed=%s error=%s", start, seed, exc)
            start_logliks.append(None)
            last_error = exc
            continue
        if not np.isfinite(loglik):
            effective_logger.warning("hmm.fit start_nonfinite start=%s seed=%s loglik=%s", start, seed, loglik)
            start_logliks.append(None)
            continue
        start_logliks.append(loglik)
        effective_logger.info(
            "hmm.fit start=%s seed=%s loglik=%.3f converged=%s iterations=%s",
            start,
            seed,
            loglik,
            model.monitor_.converged,
            model.monitor_.iter,
        )
        if loglik > best_loglik:
            best_model, best_initial, best_loglik, best_start = model, initial, loglik, start

    if best_model is None or best_initial is None:
        if last_error is not None:
            raise last_error
        raise ValueError("No movement HMM start produced a finite log-likelihood.")

    aic = float(best_model.aic(X, lengths=lengths.tolist()))
    bic = float(best_model.bic(X, lengths=lengths.tolist()))
    n_params = int(sum(best_model._get_n_fit_scalars_per_param().values()))
    # hmmlearn also reports converged when the iteration cap is reached
    history = list(best_model.monitor_.history)
    converged_by_tol = len(history) >= 2 and (history[-1] - history[-2]) < config.tol
    model_meta = {
        "model_type": "MovementHMM",
        "n_states": int(n_states),
        "use_altitude": bool(use_altitude),
        "estimate_angle_mean": bool(config.estimate_angle_mean),
        "n_iter_requested": int(config.n_iter),
        "tol": float(config.tol),
        "random_state": int(base_seed),
        "n_starts": int(starts),
        "best_start": best_start,
        "start_logliks": start_logliks,
        "loglik": best_loglik,
        "loglik_per_obs": best_loglik / float(X.shape[0]),
        "aic": aic,
        "bic": bic,
        "n_free_parameters": n_params,
        "converged": bool(best_model.monitor_.converged),
        "converged_by_tol": bool(converged_by_tol),
        "hit_iteration_cap": bool(best_model.monitor_.iter >= config.n_iter),
        "n_iter_used": int(best_model.monitor_.iter),
        "rows": int(X.shape[0]),
        "sequences": int(lengths.shape[0]),
    }
    return HMMFitResult(
        model=best_model,
        loglik=best_loglik,
        aic=aic,
        bic=bic,
        initial=best_initial,
        start_logliks=start_logliks,
        model_meta=model_meta,
    )
