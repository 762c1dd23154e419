"""Hidden Markov model with gamma step, von Mises angle and gamma altitude emissions.

The forward/backward passes, Baum-Welch loop, Viterbi decoding and sampling
are hmmlearn's. This module only supplies the emission densities and their
posterior-weighted maximum-likelihood updates, the way hmmlearn's own
emission classes plug into :class:`hmmlearn.base.BaseHMM`.

Observation columns are ``[step_m, angle_rad]`` or, with ``use_altitude``,
``[step_m, angle_rad, altitude_m]``. Gamma distributions are parametrised by
mean and standard deviation.

Parameter codes for ``params`` / ``init_params``: ``s`` start probabilities,
``t`` transitions, ``l`` step length, ``a`` turning angle, ``h`` altitude.
"""

from __future__ import annotations

import logging

import numpy as np
from hmmlearn.base import BaseHMM
from scipy import special, stats
from sklearn.utils import check_random_state

LOGGER = logging.getLogger(__name__)

STEP_COLUMN = 0
ANGLE_COLUMN = 1
ALTITUDE_COLUMN = 2
_MIN_WEIGHT = 1e-10
_MIN_SHAPE = 1e-3


def gamma_shape_scale(mean: np.ndarray, sd: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Convert gamma mean/sd to scipy's shape/scale."""

    mean = np.asarray(mean, dtype=np.float64)
    sd = np.asarray(sd, dtype=np.float64)
    return (mean / sd) ** 2, sd**2 / mean


def weighted_gamma_mle(
    weight: np.ndarray,
    weighted_sum: np.ndarray,
    weighted_log_sum: np.ndarray,
    *,
    max_shape: float,
    n_newton: int = 8,
) -> tuple[np.ndarray, np.ndarray]:
    """Gamma mean/sd maximising the weighted likelihood, per state.

    Uses Minka's closed-form start followed by Newton steps on
    ``log(a) - digamma(a) = log(mean) - mean(log x)``. The shape is clipped to
    ``max_shape`` which bounds the coefficient of variation from below.
    """

    mean = weighted_sum / weight
    mean_log = weighted_log_sum / weight
    s = np.log(mean) - mean_log
    degenerate = ~np.isfinite(s) | (s <= 1.0 / (2.0 * max_shape))
    s_safe = np.where(degenerate, 1.0, s)

    shape = (3.0 - s_safe + np.sqrt((s_safe - 3.0) ** 2 + 24.0 * s_safe)) / (12.0 * s_safe)
    for _ in range(n_newton):
        numerator = np.log(shape) - special.digamma(shape) - s_safe
        denominator = 1.0 / shape - special.polygamma(1, shape)
        shape = np.clip(shape - numerator / denominator, _MIN_SHAPE, max_shape)
    shape = np.where(degenerate, max_shape, shape)
    return mean, mean / np.sqrt(shape)


def gamma_moments(values: np.ndarray, min_sd_fraction: float) -> tuple[float, float]:
    """Sample mean and sd, with sd floored at ``min_sd_fraction * mean``."""

    mean = float(np.mean(values))
    sd = float(np.std(values)) if values.shape[0] > 1 else 0.0
    return mean, max(sd, min_sd_fraction * mean)


def circular_moments(angles: np.ndarray, *, estimate_mean: bool) -> tuple[float, float]:
    """Mean direction and mean resultant length of turning angles.

    With ``estimate_mean=False`` the direction is fixed at 0 and the resultant
    length is the mean cosine, floored at 0.
    """

    cos_mean = float(np.mean(np.cos(angles)))
    if not estimate_mean:
        return 0.0, max(cos_mean, 0.0)
    sin_mean = float(np.mean(np.sin(angles)))
    return float(np.arctan2(sin_mean, cos_mean)), float(np.hypot(cos_mean, sin_mean))


def mean_resultant_to_kappa(r_bar: np.ndarray, *, kappa_min: float, kappa_max: float, n_newton: int = 2) -> np.ndarray:
    """Solve ``I1(k)/I0(k) = r_bar`` for the von Mises concentration.

    Best & Fisher's approximation refined by Newton steps.
    """

    r = np.clip(np.asarray(r_bar, dtype=np.float64), 0.0, 1.0 - 1e-12)
    kappa = np.where(
        r < 0.53,
        2.0 * r + r**3 + 5.0 * r**5 / 6.0,
        np.where(r < 0.85, -0.4 + 1.39 * r + 0.43 / (1.0 - r), 1.0 / (r**3 - 4.0 * r**2 + 3.0 * r)),
    )
    kappa = np.clip(kappa, kappa_min, kappa_max)
    for _ in range(n_newton):
        a1 = special.i1e(kappa) / special.i0e(kappa)
        derivative = 1.0 - a1 / kappa - a1**2
        kappa = np.clip(kappa - (a1 - r) / np.maximum(derivative, 1e-12), kappa_min, kappa_max)
    return kappa


class MovementHMM(BaseHMM):
    """Movement HMM for GPS fixes with optional altitude observations.

    Attributes
    ----------
    step_mean_, step_sd_ : array, shape (n_components,)
        Gamma step-length mean and standard deviation per state.
    angle_mean_, angle_kappa_ : array, shape (n_components,)
        Von Mises turning-angle mean and concentration per state.
    alt_mean_, alt_sd_ : array, shape (n_components,)
        Gamma altitude mean and standard deviation, only with ``use_altitude``.
    """

    def __init__(
        self,
        n_components=3,
        use_altitude=True,
        estimate_angle_mean=True,
        min_sd_fraction=0.01,
        kappa_min=1e-3,
        kappa_max=500.0,
        startprob_prior=1.0,
        transmat_prior=1.0,
        algorithm="viterbi",
        random_state=None,
        n_iter=200,
        tol=1e-4,
        verbose=False,
        params="stlah",
        init_params="stlah",
        implementation="log",
    ):
        super().__init__(
            n_components=n_components,
            startprob_prior=startprob_prior,
            transmat_prior=transmat_prior,
            algorithm=algorithm,
            random_state=random_state,
            n_iter=n_iter,
            tol=tol,
            verbose=verbose,
            params=params,
            init_params=init_params,
            implementation=implementation,
        )
        self.use_altitude = use_altitude
        self.estimate_angle_mean = estimate_angle_mean
        self.min_sd_fraction = min_sd_fraction
        self.kappa_min = kappa_min
        self.kappa_max = kappa_max

    @property
    def n_observation_columns(self) -> int:
        return 3 if self.use_altitude else 2

    def _check_observations(self, X):
        if X.ndim != 2 or X.shape[1] != self.n_observation_columns:
            raise ValueError(
                f"MovementHMM expects {self.n_observation_columns} observation columns, got shape {X.shape}."
            )
        if np.any(X[:, STEP_COLUMN] <= 0):
            raise ValueError("step lengths must be > 0; clamp zero steps before fitting.")
        if self.use_altitude and np.any(X[:, ALTITUDE_COLUMN] <= 0):
            raise ValueError("altitudes must be > 0; clamp non-positive altitudes before fitting.")

    def _get_n_fit_scalars_per_param(self):
        nc = self.n_components
        return {
            "s": nc - 1,
            "t": nc * (nc - 1),
            "l": 2 * nc,
            "a": (2 if self.estimate_angle_mean else 1) * nc,
            "h": 2 * nc if self.use_altitude else 0,
        }

    def _init(self, X, lengths=None):
        """Moment starting values from equal-count step-length groups.

        Observations are sorted by step length and split into
        ``n_components`` groups; group ``k`` seeds state ``k``.
        """

        self._check_observations(X)
        super()._init(X, lengths)
        nc = self.n_components
        if X.shape[0] < nc:
            raise ValueError(f"X has {X.shape[0]} rows, fewer than n_components={nc}.")
        groups = np.array_split(np.argsort(X[:, STEP_COLUMN], kind="stable"), nc)
        if self._needs_init("l", "step_mean_"):
            moments = np.array([gamma_moments(X[g, STEP_COLUMN], self.min_sd_fraction) for g in groups])
            self.step_mean_ = moments[:, 0]
            self.step_sd_ = moments[:, 1]
        if self._needs_init("a", "angle_mean_"):
            circular = np.array(
                [circular_moments(X[g, ANGLE_COLUMN], estimate_mean=self.estimate_angle_mean) for g in groups]
            )
            self.angle_mean_ = circular[:, 0]
            self.angle_kappa_ = mean_resultant_to_kappa(
                circular[:, 1], kappa_min=self.kappa_min, kappa_max=self.kappa_max
            )
        if self.use_altitude and self._needs_init("h", "alt_mean_"):
            moments = np.array([gamma_moments(X[g, ALTITUDE_COLUMN], self.min_sd_fraction) for g in groups])
            self.alt_mean_ = moments[:, 0]
            self.alt_sd_ = moments[:, 1]

    def _check(self):
        super()._check()
        nc = self.n_components
        names = ["step_mean_", "step_sd_", "angle_mean_", "angle_kappa_"]
        if self.use_altitude:
            names.extend(["alt_mean_", "alt_sd_"])
        for name in names:
            value = np.asarray(getattr(self, name), dtype=np.float64)
            if value.shape != (nc,):
                raise ValueError(f"{name} must have shape ({nc},), got {value.shape}.")
            setattr(self, name, value)
        for name in ("step_mean_", "step_sd_", "angle_kappa_") + (("alt_mean_", "alt_sd_") if self.use_altitude else ()):
            if np.any(getattr(self, name) <= 0):
                raise ValueError(f"{name} must be strictly positive.")

    def _compute_log_likelihood(self, X):
        self._check_observations(X)
        step_shape, step_scale = gamma_shape_scale(self.step_mean_, self.step_sd_)
        log_prob = stats.gamma.logpdf(X[:, [STEP_COLUMN]], a=step_shape[None, :], scale=step_scale[None, :])
        log_prob = log_prob + stats.vonmises.logpdf(
            X[:, [ANGLE_COLUMN]],
            self.angle_kappa_[None, :],
            loc=self.angle_mean_[None, :],
        )
        if self.use_altitude:
            alt_shape, alt_scale = gamma_shape_scale(self.alt_mean_, self.alt_sd_)
            log_prob = log_prob + stats.gamma.logpdf(
                X[:, [ALTITUDE_COLUMN]],
                a=alt_shape[None, :],
                scale=alt_scale[None, :],
            )
        return log_prob

    def _generate_sample_from_state(self, state, random_state=None):
        random_state = check_random_state(random_state)
        step_shape, step_scale = gamma_shape_scale(self.step_mean_[state], self.step_sd_[state])
        step = stats.gamma.rvs(step_shape, scale=step_scale, random_state=random_state)
        angle = stats.vonmises.rvs(self.angle_kappa_[state], loc=self.angle_mean_[state], random_state=random_state)
        angle = np.mod(angle + np.pi, 2.0 * np.pi) - np.pi
        sample = [step, angle]
        if self.use_altitude:
            alt_shape, alt_scale = gamma_shape_scale(self.alt_mean_[state], self.alt_sd_[state])
            sample.append(stats.gamma.rvs(alt_shape, scale=alt_scale, random_state=random_state))
        return np.asarray(sample, dtype=np.float64)

    def _initialize_sufficient_statistics(self):
        stats_ = super()._initialize_sufficient_statistics()
        nc = self.n_components
        stats_["post"] = np.zeros(nc)
        stats_["step"] = np.zeros(nc)
        stats_["log_step"] = np.zeros(nc)
        stats_["cos"] = np.zeros(nc)
        stats_["sin"] = np.zeros(nc)
        stats_["alt"] = np.zeros(nc)
        stats_["log_alt"] = np.zeros(nc)
        return stats_

    def _accumulate_sufficient_statistics(self, stats, X, lattice, posteriors, fwdlattice, bwdlattice):
        super()._accumulate_sufficient_statistics(stats, X, lattice, posteriors, fwdlattice, bwdlattice)
        stats["post"] += posteriors.sum(axis=0)
        if "l" in self.params:
            step = X[:, STEP_COLUMN]
            stats["step"] += posteriors.T @ step
            stats["log_step"] += posteriors.T @ np.log(step)
        if "a" in self.params:
            angle = X[:, ANGLE_COLUMN]
            stats["cos"] += posteriors.T @ np.cos(angle)
            stats["sin"] += posteriors.T @ np.sin(angle)
        if self.use_altitude and "h" in self.params:
            alt = X[:, ALTITUDE_COLUMN]
            stats["alt"] += posteriors.T @ alt
            stats["log_alt"] += posteriors.T @ np.log(alt)

    def _do_mstep(self, stats):
        super()._do_mstep(stats)
        weight = stats["post"]
        active = weight > _MIN_WEIGHT
        if not np.all(active):
            LOGGER.debug("movement_hmm.mstep inactive_states=%s", np.flatnonzero(~active).tolist())
        safe_weight = np.where(active, weight, 1.0)
        max_shape = 1.0 / self.min_sd_fraction**2

        if "l" in self.params:
            mean, sd = weighted_gamma_mle(
                safe_weight,
                np.where(active, stats["step"], self.step_mean_),
                np.where(active, stats["log_step"], np.log(self.step_mean_)),
                max_shape=max_shape,
            )
            self.step_mean_ = np.where(active, mean, self.step_mean_)
            self.step_sd_ = np.where(active, sd, self.step_sd_)

        if "a" in self.params:
            cos_mean = stats["cos"] / safe_weight
            sin_mean = stats["sin"] / safe_weight
            if self.estimate_angle_mean:
                angle_mean = np.arctan2(sin_mean, cos_mean)
                r_bar = np.hypot(cos_mean, sin_mean)
            else:
                angle_mean = np.zeros(self.n_components)
                r_bar = np.maximum(cos_mean * np.cos(angle_mean) + sin_mean * np.sin(angle_mean), 0.0)
            kappa = mean_resultant_to_kappa(r_bar, kappa_min=self.kappa_min, kappa_max=self.kappa_max)
            self.angle_mean_ = np.where(active, angle_mean, self.angle_mean_)
            self.angle_kappa_ = np.where(active, kappa, self.angle_kappa_)

        if self.use_altitude and "h" in self.params:
            mean, sd = weighted_gamma_mle(
                safe_weight,
                np.where(active, stats["alt"], self.alt_mean_),
                np.where(active, stats["log_alt"], np.log(self.alt_mean_)),
                max_shape=max_shape,
            )
            self.alt_mean_ = np.where(active, mean, self.alt_mean_)
            self.alt_sd_ = np.where(active, sd, self.alt_sd_)

    def stationary_distribution(self) -> np.ndarray:
        """Stationary distribution of the fitted transition matrix."""

        eigvals, eigvecs = np.linalg.eig(self.transmat_.T)
        vector = np.real(eigvecs[:, np.argmin(np.abs(eigvals - 1.0))])
        vector = np.abs(vector)
        return vector / vector.sum()
