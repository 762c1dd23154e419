"""
Tests for decoded-row construction and the diagnostics tables built from it.
"""

from datetime import datetime, timedelta

import numpy as np
import polars as pl
import pytest

from frigate_hmm.hmm.decode import build_decoded_rows, decode_with_model
from frigate_hmm.hmm.diagnostics import (
    avg_self_transition_prob,
    build_hmm_diagnostics,
    fitted_transition_table,
    state_concentration_metrics,
)

MAPPING = {0: "resting", 1: "soaring", 2: "gliding"}


def _base_frame():
    t0 = datetime(2013, 6, 1)
    bursts = ["A_1"] * 6 + ["B_1"] * 4
    birds = ["A"] * 6 + ["B"] * 4
    return pl.DataFrame(
        {
            "bird_id": birds,
            "burst_id": bursts,
            "timestamp": [t0 + timedelta(minutes=i) for i in range(10)],
            "lon": np.linspace(-14.4, -14.3, 10),
            "lat": np.full(10, -7.9),
            "step_m": [3.0, 4.0, 300.0, 280.0, 900.0, 950.0, 2.0, 2.0, 2.0, 260.0],
            "angle_rad": [0.1, -0.4, 0.9, 1.1, 0.0, 0.05, 2.0, -2.0, 1.0, 0.8],
            "alt_baro": [5.0, 6.0, 600.0, 650.0, 300.0, 310.0, 4.0, 4.0, 5.0, 500.0],
        }
    )


STATES = np.array([0, 0, 1, 1, 2, 2, 0, 0, 0, 1])


@pytest.fixture
def decoded():
    posterior = np.zeros((10, 3))
    posterior[np.arange(10), STATES] = 0.9
    posterior[np.arange(10), (STATES + 1) % 3] = 0.1
    return build_decoded_rows(
        _base_frame(),
        decoded_states=STATES,
        posterior_probs=posterior,
        state_labels=MAPPING,
        run_id="hmm-test",
        source="baro",
    )


class TestBuildDecodedRows:
    def test_labels_and_run_lengths(self, decoded):
        assert decoded["state_label"].to_list()[:6] == ["resting", "resting", "soaring", "soaring", "gliding", "gliding"]
        assert decoded["hmm_state_run_length"].to_list() == [1, 2, 1, 2, 1, 2, 1, 2, 3, 1]
        assert decoded["hmm_state_prev"].to_list()[:3] == [None, 0, 0]
        assert decoded["hmm_state_changed"].to_list()[:3] == [False, False, True]

    def test_run_lengths_restart_per_burst(self, decoded):
        b = decoded.filter(pl.col("burst_id") == "B_1")
        assert b["hmm_state_prev"][0] is None
        assert b["hmm_state_run_length"][0] == 1

    def test_posterior_summaries(self, decoded):
        assert decoded["hmm_state_prob_max"][0] == pytest.approx(0.9)
        expected_entropy = -(0.9 * np.log(0.9) + 0.1 * np.log(0.1))
        assert decoded["hmm_state_entropy"][0] == pytest.approx(expected_entropy, rel=1e-5)

    def test_run_metadata(self, decoded):
        assert decoded["altitude_source"].unique().to_list() == ["baro"]
        assert decoded["run_id"].unique().to_list() == ["hmm-test"]

    def test_unlabelled_state_rejected(self):
        with pytest.raises(ValueError, match="without a label"):
            build_decoded_rows(
                _base_frame(),
                decoded_states=STATES,
                posterior_probs=None,
                state_labels={0: "resting", 1: "soaring"},
                run_id="x",
                source="baro",
            )

    def test_length_mismatch_rejected(self):
        with pytest.raises(ValueError, match="length"):
            build_decoded_rows(
                _base_frame(),
                decoded_states=STATES[:5],
                posterior_probs=None,
                state_labels=MAPPING,
                run_id="x",
                source="baro",
            )


class TestDecodeWithModel:
    def test_viterbi_and_posteriors(self, true_model):
        X, _ = true_model.sample(200, random_state=9)
        states, probs = decode_with_model(true_model, X, np.array([120, 80]))
        assert states.shape == (200,)
        assert probs.shape == (200, 3)
        np.testing.assert_allclose(probs.sum(axis=1), 1.0)


class TestDiagnostics:
    def test_transition_tables(self, decoded):
        diagnostics = build_hmm_diagnostics(decoded)
        counts = {
            (row["hmm_state_prev"], row["hmm_state"]): row["transition_count"]
            for row in diagnostics.transition_counts.iter_rows(named=True)
        }
        assert counts == {(0, 0): 3, (0, 1): 2, (1, 1): 1, (1, 2): 1, (2, 2): 1}
        probs = diagnostics.transition_matrix.filter(pl.col("hmm_state_prev") == 0)
        assert probs["transition_probability"].sum() == pytest.approx(1.0)

    def test_dwell_and_starts(self, decoded):
        diagnostics = build_hmm_diagnostics(decoded)
        resting = diagnostics.dwell_stats.filter(pl.col("state_label") == "resting").row(0, named=True)
        assert resting["dwell_count"] == 2
        assert resting["max_dwell"] == 3
        starts = diagnostics.initial_state_distribution
        assert starts["start_count"].sum() == 2
        assert starts.filter(pl.col("state_label") == "resting")["start_share"][0] == pytest.approx(1.0)

    def test_time_budget_per_bird(self, decoded):
        diagnostics = build_hmm_diagnostics(decoded)
        budget = diagnostics.time_budget
        bird_b = {row["state_label"]: row["share_of_bird"] for row in budget.filter(pl.col("bird_id") == "B").iter_rows(named=True)}
        assert bird_b == pytest.approx({"resting": 0.75, "soaring": 0.25})
        sums = budget.group_by("bird_id").agg(pl.col("share_of_bird").sum())["share_of_bird"].to_list()
        assert sums == pytest.approx([1.0, 1.0])

    def test_state_profile(self, decoded):
        profile = build_hmm_diagnostics(decoded).state_profile
        assert profile["state_label"].to_list() == ["resting", "soaring", "gliding"]
        assert "alt_baro_mean" in profile.columns
        gliding = profile.filter(pl.col("state_label") == "gliding").row(0, named=True)
        assert gliding["step_m_mean"] == pytest.approx(925.0)

    def test_concentration_and_persistence(self, decoded):
        diagnostics = build_hmm_diagnostics(decoded)
        largest, effective = state_concentration_metrics(diagnostics.state_frequency)
        assert largest == pytest.approx(0.5)
        assert effective == pytest.approx(1.0 / (0.25 + 0.09 + 0.04))
        assert avg_self_transition_prob(diagnostics.transition_matrix) == pytest.approx((0.6 + 0.5 + 1.0) / 3)

    def test_fitted_transition_table(self, true_model):
        table = fitted_transition_table(true_model, MAPPING)
        assert table.height == 9
        row = table.filter((pl.col("from_label") == "resting") & (pl.col("to_label") == "resting")).row(0, named=True)
        assert row["probability"] == pytest.approx(0.92)

    def test_missing_columns(self):
        with pytest.raises(ValueError, match="missing columns"):
            build_hmm_diagnostics(pl.DataFrame({"hmm_state": [0]}))
