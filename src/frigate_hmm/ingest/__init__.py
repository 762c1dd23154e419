"""Ingestion package for tracking CSV exports."""

from frigate_hmm.ingest.read_tracks import TrackReadResult, normalize_track_frame, read_tracks

__all__ = [
    "TrackReadResult",
    "normalize_track_frame",
    "read_tracks",
]
