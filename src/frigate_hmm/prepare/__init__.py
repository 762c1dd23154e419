"""Track preparation: bursts, movement metrics, altitude cleaning and HMM sequences."""

from frigate_hmm.prepare.altitude import (
    ALTITUDE_SOURCES,
    AltitudeCleanResult,
    altitude_agreement,
    altitude_column_for_source,
    clean_altitude,
    derive_barometric_altitude,
    ensure_barometric_altitude,
)
from frigate_hmm.prepare.movement import (
    PreparedTracks,
    add_movement_metrics,
    assign_bursts,
    haversine_m,
    prepare_tracks,
)
from frigate_hmm.prepare.sequence_builder import (
    SequenceBuildResult,
    build_hmm_sequences,
    feature_list_for_source,
)

__all__ = [
    "ALTITUDE_SOURCES",
    "AltitudeCleanResult",
    "PreparedTracks",
    "SequenceBuildResult",
    "add_movement_metrics",
    "altitude_agreement",
    "altitude_column_for_source",
    "assign_bursts",
    "build_hmm_sequences",
    "clean_altitude",
    "derive_barometric_altitude",
    "ensure_barometric_altitude",
    "feature_list_for_source",
    "haversine_m",
    "prepare_tracks",
]
