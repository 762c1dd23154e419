"""
Tests for settings loading: YAML defaults, env overrides and path resolution.
"""

import pytest
from pydantic import ValidationError

from frigate_hmm.config import HMMConfig, PreprocessConfig, load_settings


class TestLoadSettings:
    def test_yaml_values_override_model_defaults(self, settings):
        assert settings.hmm.n_starts == 2
        assert settings.hmm.kmeans_n_init == 5
        assert settings.sweep.components_default == [2, 3]

    def test_unset_sections_keep_defaults(self, settings):
        assert settings.preprocess.max_gap_seconds == 900.0
        assert settings.preprocess.altitude_floor_m == 0.1
        assert settings.labels.resting == "resting"
        assert settings.columns.individual == "individual-local-identifier"

    def test_relative_paths_resolve_against_project_root(self, settings, tmp_path):
        assert settings.paths.artifacts_root == (tmp_path / "artifacts").resolve()
        assert settings.paths.logs_root.is_absolute()

    def test_env_override_nested_value(self, settings_file, monkeypatch):
        monkeypatch.setenv("FRIGATE_HMM_HMM__N_STATES", "4")
        monkeypatch.setenv("FRIGATE_HMM_PREPROCESS__COMMON_ROWS_ONLY", "false")
        settings = load_settings(settings_file)
        assert settings.hmm.n_states == 4
        assert settings.preprocess.common_rows_only is False

    def test_as_dict_is_json_ready(self, settings):
        payload = settings.as_dict()
        assert isinstance(payload["paths"]["artifacts_root"], str)
        assert payload["hmm"]["n_states"] == 3


class TestValidation:
    def test_kappa_bounds_must_be_ordered(self):
        with pytest.raises(ValidationError):
            HMMConfig(kappa_min=10.0, kappa_max=1.0)

    def test_at_least_two_states(self):
        with pytest.raises(ValidationError):
            HMMConfig(n_states=1)

    def test_floors_must_be_positive(self):
        with pytest.raises(ValidationError):
            PreprocessConfig(step_floor_m=0.0)
        with pytest.raises(ValidationError):
            PreprocessConfig(altitude_floor_m=-1.0)
