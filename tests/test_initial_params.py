"""
Tests for k-means starting values.
"""

import numpy as np
import pytest

from frigate_hmm.hmm.initial_params import kmeans_feature_matrix, kmeans_initial_parameters
from frigate_hmm.hmm.movement_hmm import MovementHMM

from conftest import TRUE_STEP_MEAN


@pytest.fixture
def sampled(true_model):
    X, states = true_model.sample(1_200, random_state=11)
    return X, np.array([400, 400, 400]), states


class TestKMeansStarts:
    def test_states_ordered_by_step_mean(self, sampled):
        X, lengths, _ = sampled
        initial = kmeans_initial_parameters(X, lengths, n_states=3, use_altitude=True, random_state=0, n_init=5)
        assert np.all(np.diff(initial.step_mean) > 0)
        np.testing.assert_allclose(initial.step_mean, TRUE_STEP_MEAN, rtol=0.5)

    def test_probabilities_are_normalised(self, sampled):
        X, lengths, _ = sampled
        initial = kmeans_initial_parameters(X, lengths, n_states=3, use_altitude=True, random_state=0, n_init=5)
        assert initial.startprob.sum() == pytest.approx(1.0)
        np.testing.assert_allclose(initial.transmat.sum(axis=1), 1.0)
        assert np.all(initial.transmat > 0)

    def test_resting_cluster_matches_resting_state(self, sampled):
        X, lengths, states = sampled
        initial = kmeans_initial_parameters(X, lengths, n_states=3, use_altitude=True, random_state=0, n_init=5)
        assert np.mean((initial.labels == 0) == (states == 0)) > 0.95
        assert initial.transmat[0, 0] > 0.8

    def test_fixed_angle_mean(self, sampled):
        X, lengths, _ = sampled
        initial = kmeans_initial_parameters(
            X, lengths, n_states=3, use_altitude=True, random_state=0, n_init=5, estimate_angle_mean=False
        )
        np.testing.assert_array_equal(initial.angle_mean, 0.0)
        assert np.all(initial.angle_kappa > 0)
        assert initial.kmeans_meta["estimate_angle_mean"] is False

    def test_apply_sets_model_parameters(self, sampled):
        X, lengths, _ = sampled
        initial = kmeans_initial_parameters(X, lengths, n_states=3, use_altitude=True, random_state=0, n_init=5)
        model = initial.apply(MovementHMM(n_components=3, init_params=""))
        np.testing.assert_array_equal(model.step_mean_, initial.step_mean)
        np.testing.assert_array_equal(model.alt_sd_, initial.alt_sd)
        assert np.isfinite(model.score(X, lengths=lengths.tolist()))

    def test_no_altitude(self, sampled):
        X, lengths, _ = sampled
        initial = kmeans_initial_parameters(X[:, :2], lengths, n_states=2, use_altitude=False, random_state=0, n_init=5)
        assert initial.alt_mean is None
        assert "alt_mean" not in initial.as_dict()
        with pytest.raises(ValueError, match="altitude"):
            initial.apply(MovementHMM(n_components=2, use_altitude=True))

    def test_feature_matrix_standardised(self, sampled):
        X, _, _ = sampled
        features = kmeans_feature_matrix(X, use_altitude=True)
        assert features.shape == (X.shape[0], 4)
        np.testing.assert_allclose(features.mean(axis=0), 0.0, atol=1e-9)

    def test_too_few_rows(self):
        X = np.array([[1.0, 0.0, 5.0], [2.0, 0.1, 6.0]])
        with pytest.raises(ValueError, match="fewer than n_states"):
            kmeans_initial_parameters(X, np.array([2]), n_states=3, use_altitude=True)

    def test_lengths_must_cover_rows(self, sampled):
        X, _, _ = sampled
        with pytest.raises(ValueError, match="sum\\(lengths\\)"):
            kmeans_initial_parameters(X, np.array([10]), n_states=3, use_altitude=True)
