"""
Tests for the typer command line interface.
"""

import pytest
import typer
import yaml
from typer.testing import CliRunner

from frigate_hmm.cli import _parse_int_csv, app
from frigate_hmm.pipeline import run_hmm_source

runner = CliRunner()


class TestShowConfig:
    def test_prints_effective_settings(self, settings, settings_file):
        result = runner.invoke(app, ["show-config", "--config-file", str(settings_file)])
        assert result.exit_code == 0, result.output
        rendered = yaml.safe_load(result.output)
        assert rendered["hmm"]["n_iter"] == 60
        assert rendered["sweep"]["components_default"] == [2, 3]

    def test_env_override(self, settings, settings_file, monkeypatch):
        monkeypatch.setenv("FRIGATE_HMM_HMM__N_STATES", "4")
        result = runner.invoke(app, ["show-config", "--config-file", str(settings_file)])
        assert result.exit_code == 0, result.output
        assert yaml.safe_load(result.output)["hmm"]["n_states"] == 4


class TestCommands:
    def test_prepare(self, settings, settings_file, track_csv):
        result = runner.invoke(
            app,
            ["prepare", "--dataset", str(track_csv), "--config-file", str(settings_file)],
        )
        assert result.exit_code == 0, result.output
        assert "rows_rejected: 1" in result.output
        assert "baro_gps_pearson_r:" in result.output
        assert (settings.paths.logs_root / "frigate_hmm.log").exists()

    def test_bad_source_rejected(self, settings, settings_file, track_csv):
        result = runner.invoke(
            app,
            ["hmm-run", "--dataset", str(track_csv), "--source", "radar", "--config-file", str(settings_file)],
        )
        assert result.exit_code != 0

    def test_missing_dataset_rejected(self, settings, settings_file, tmp_path):
        result = runner.invoke(
            app,
            ["prepare", "--dataset", str(tmp_path / "missing.csv"), "--config-file", str(settings_file)],
        )
        assert result.exit_code != 0

    def test_hmm_run_without_figures(self, settings, settings_file, track_csv):
        result = runner.invoke(
            app,
            [
                "hmm-run",
                "--dataset",
                str(track_csv),
                "--source",
                "none",
                "--n-states",
                "2",
                "--n-starts",
                "1",
                "--no-figures",
                "--config-file",
                str(settings_file),
            ],
        )
        assert result.exit_code == 0, result.output
        assert "source: none" in result.output
        assert "n_states: 2" in result.output

    def test_hmm_sanity(self, settings, settings_file, track_csv):
        run = run_hmm_source(settings, dataset_path=track_csv, source="gps", n_states=2, n_starts=1, write_figures=False)
        result = runner.invoke(app, ["hmm-sanity", "--run-dir", str(run.output_dir)])
        assert result.exit_code == 0, result.output
        assert f"run_id: {run.run_id}" in result.output
        assert "mode: source" in result.output
        assert "[gps] label=resting" in result.output


class TestParseIntCsv:
    def test_parses(self):
        assert _parse_int_csv("2, 3,4", "components") == [2, 3, 4]

    @pytest.mark.parametrize("value", ["", "2,x", "1,2"])
    def test_rejects(self, value):
        with pytest.raises(typer.BadParameter):
            _parse_int_csv(value, "components")
