"""
Tests for the gamma / von Mises emission model plugged into hmmlearn.
"""

import numpy as np
import pytest
from scipy import special, stats

from frigate_hmm.hmm.movement_hmm import (
    MovementHMM,
    gamma_shape_scale,
    mean_resultant_to_kappa,
    weighted_gamma_mle,
)

from conftest import TRUE_ANGLE_KAPPA, TRUE_STEP_MEAN, build_true_model


class TestEstimators:
    def test_gamma_shape_scale_round_trip(self):
        shape, scale = gamma_shape_scale(np.array([10.0]), np.array([5.0]))
        assert shape[0] == pytest.approx(4.0)
        assert scale[0] == pytest.approx(2.5)

    def test_weighted_gamma_mle_recovers_parameters(self):
        rng = np.random.default_rng(0)
        x = stats.gamma.rvs(3.0, scale=20.0, size=20_000, random_state=rng)
        mean, sd = weighted_gamma_mle(
            np.array([x.size], dtype=float),
            np.array([x.sum()]),
            np.array([np.log(x).sum()]),
            max_shape=1e4,
        )
        assert mean[0] == pytest.approx(60.0, rel=0.03)
        assert sd[0] == pytest.approx(60.0 / np.sqrt(3.0), rel=0.05)

    def test_weighted_gamma_mle_constant_data_hits_shape_cap(self):
        mean, sd = weighted_gamma_mle(
            np.array([4.0]),
            np.array([40.0]),
            np.array([4.0 * np.log(10.0)]),
            max_shape=100.0,
        )
        assert mean[0] == pytest.approx(10.0)
        assert sd[0] == pytest.approx(1.0)

    @pytest.mark.parametrize("kappa", [0.2, 1.0, 4.0, 30.0])
    def test_kappa_inverts_mean_resultant_length(self, kappa):
        r_bar = special.i1e(kappa) / special.i0e(kappa)
        estimate = mean_resultant_to_kappa(np.array([r_bar]), kappa_min=1e-3, kappa_max=500.0)
        assert estimate[0] == pytest.approx(kappa, rel=1e-3)

    def test_kappa_clipped(self):
        estimate = mean_resultant_to_kappa(np.array([0.0, 1.0]), kappa_min=0.01, kappa_max=50.0)
        assert estimate[0] == pytest.approx(0.01)
        assert estimate[1] == pytest.approx(50.0)


class TestMovementHMM:
    def test_free_parameter_counts(self):
        model = MovementHMM(n_components=3, use_altitude=True)
        counts = model._get_n_fit_scalars_per_param()
        assert counts == {"s": 2, "t": 6, "l": 6, "a": 6, "h": 6}
        no_alt = MovementHMM(n_components=3, use_altitude=False, estimate_angle_mean=False)
        assert no_alt._get_n_fit_scalars_per_param()["a"] == 3
        assert no_alt._get_n_fit_scalars_per_param()["h"] == 0

    def test_sample_respects_supports(self, true_model):
        X, states = true_model.sample(500, random_state=1)
        assert X.shape == (500, 3)
        assert np.all(X[:, 0] > 0)
        assert np.all((X[:, 1] >= -np.pi) & (X[:, 1] < np.pi))
        assert set(np.unique(states)) <= {0, 1, 2}

    def test_score_is_finite(self, true_model):
        X, _ = true_model.sample(300, random_state=2)
        assert np.isfinite(true_model.score(X))

    def test_fit_recovers_step_means(self, true_model):
        X, _ = true_model.sample(3_000, random_state=3)
        model = MovementHMM(n_components=3, random_state=0, n_iter=100)
        model.fit(X)
        np.testing.assert_allclose(np.sort(model.step_mean_), TRUE_STEP_MEAN, rtol=0.25)
        gliding = int(np.argmax(model.step_mean_))
        assert model.angle_kappa_[gliding] == pytest.approx(TRUE_ANGLE_KAPPA[2], rel=0.4)

    def test_default_init_separates_step_groups(self, true_model):
        X, _ = true_model.sample(1_500, random_state=3)
        model = MovementHMM(n_components=3, random_state=0)
        model._init(X)
        assert np.all(np.diff(model.step_mean_) > 0)
        assert model.step_mean_[2] > 1.5 * model.step_mean_[1]
        assert model.alt_mean_.shape == (3,)
        assert np.all(model.angle_kappa_ > 0)

    def test_default_init_fixed_angle_mean(self, true_model):
        X, _ = true_model.sample(600, random_state=3)
        model = MovementHMM(n_components=3, random_state=0, estimate_angle_mean=False)
        model._init(X)
        np.testing.assert_array_equal(model.angle_mean_, 0.0)

    def test_fit_without_altitude(self):
        truth = build_true_model(use_altitude=False)
        X, _ = truth.sample(1_500, random_state=4)
        model = MovementHMM(n_components=3, use_altitude=False, random_state=0, n_iter=50)
        model.fit(X)
        assert not hasattr(model, "alt_mean_")
        assert np.allclose(model.transmat_.sum(axis=1), 1.0)

    def test_non_positive_step_rejected(self, true_model):
        X, _ = true_model.sample(50, random_state=5)
        X[3, 0] = 0.0
        with pytest.raises(ValueError, match="step lengths"):
            true_model.score(X)

    def test_wrong_column_count_rejected(self, true_model):
        with pytest.raises(ValueError, match="observation columns"):
            true_model.score(np.ones((10, 2)))

    def test_stationary_distribution(self, true_model):
        pi = true_model.stationary_distribution()
        assert pi.sum() == pytest.approx(1.0)
        np.testing.assert_allclose(pi @ true_model.transmat_, pi, atol=1e-10)
