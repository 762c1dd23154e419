"""Movement HMM package exports."""

from frigate_hmm.hmm.decode import build_decoded_rows, decode_with_model
from frigate_hmm.hmm.diagnostics import HMMDiagnostics, build_hmm_diagnostics, fitted_transition_table
from frigate_hmm.hmm.fit import HMMFitResult, fit_movement_hmm
from frigate_hmm.hmm.initial_params import InitialParameters, kmeans_initial_parameters
from frigate_hmm.hmm.movement_hmm import MovementHMM
from frigate_hmm.hmm.state_labels import (
    label_order,
    label_states,
    labelled_parameter_table,
    labelling_checks,
    state_parameter_table,
)

__all__ = [
    "HMMDiagnostics",
    "HMMFitResult",
    "InitialParameters",
    "MovementHMM",
    "build_decoded_rows",
    "build_hmm_diagnostics",
    "decode_with_model",
    "fit_movement_hmm",
    "fitted_transition_table",
    "kmeans_initial_parameters",
    "label_order",
    "label_states",
    "labelled_parameter_table",
    "labelling_checks",
    "state_parameter_table",
]
