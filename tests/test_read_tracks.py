"""
Tests for tracking CSV ingest: canonical columns, rejects and duplicate fixes.
"""

import polars as pl
import pytest

from frigate_hmm.config import ColumnsConfig
from frigate_hmm.ingest.read_tracks import normalize_track_frame, read_tracks


class TestReadTracks:
    def test_canonical_columns_and_types(self, track_csv, simulated):
        result = read_tracks(track_csv, ColumnsConfig())
        rows, _ = simulated
        assert {"bird_id", "timestamp", "lon", "lat", "alt_gps", "alt_baro", "source_row_no"} <= set(result.data.columns)
        assert result.data.schema["timestamp"] == pl.Datetime("us")
        assert result.data.schema["lat"] == pl.Float64
        assert result.data.height == rows.height
        assert result.source_rows == rows.height + 2

    def test_missing_coordinates_rejected(self, track_csv):
        result = read_tracks(track_csv, ColumnsConfig())
        assert result.rejects.height == 1
        assert result.rejects["reject_reason"].to_list() == ["missing_coordinates"]

    def test_duplicate_fix_dropped(self, track_csv):
        result = read_tracks(track_csv, ColumnsConfig())
        assert result.duplicate_rows == 1
        assert result.data.select(pl.struct(["bird_id", "timestamp"]).is_unique().all()).item()

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            read_tracks(tmp_path / "nope.csv", ColumnsConfig())

    def test_header_only_file_raises(self, tmp_path):
        path = tmp_path / "empty.csv"
        path.write_text("individual-local-identifier,timestamp,location-long,location-lat\n", encoding="utf-8")
        with pytest.raises(ValueError, match="no data rows"):
            read_tracks(path, ColumnsConfig())


class TestNormalizeTrackFrame:
    def test_missing_required_column_raises(self):
        raw = pl.DataFrame({"individual-local-identifier": ["A"], "timestamp": ["2013-06-01 00:00:00"]})
        with pytest.raises(ValueError, match="missing required columns"):
            normalize_track_frame(raw, ColumnsConfig())

    def test_unparsable_values_become_rejects_or_nulls(self):
        raw = pl.DataFrame(
            {
                "individual-local-identifier": ["A", "A", "", "A"],
                "timestamp": ["2013-06-01 00:00:00", "not a time", "2013-06-01 00:02:00", "2013-06-01 00:03:00"],
                "location-long": ["-14.3", "-14.3", "-14.3", "200.0"],
                "location-lat": ["-7.9", "-7.9", "-7.9", "-7.9"],
                "height-above-msl": ["abc", "10", "10", "10"],
            }
        )
        result = normalize_track_frame(raw, ColumnsConfig())
        reasons = sorted(result.rejects["reject_reason"].to_list())
        assert reasons == ["bad_timestamp", "coordinates_out_of_range", "missing_bird_id"]
        assert result.data.height == 1
        assert result.data["alt_gps"].to_list() == [None]

    def test_custom_column_names(self):
        raw = pl.DataFrame(
            {
                "id": ["A", "A"],
                "time": ["2013-06-01T00:00:00", "2013-06-01T00:01:00"],
                "x": ["-14.3", "-14.31"],
                "y": ["-7.9", "-7.91"],
            }
        )
        columns = ColumnsConfig(individual="id", timestamp="time", longitude="x", latitude="y")
        result = normalize_track_frame(raw, columns)
        assert result.data.columns[:5] == ["source_row_no", "bird_id", "timestamp", "lon", "lat"]
        assert "alt_gps" not in result.data.columns
