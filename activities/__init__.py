"""Activity definitions module."""

from activities.matching import (
    match_invoice,
    MatchInvoiceInput,
    MatchInvoiceOutput,
)
from activities.learning import (
    capture_training_data,
    record_match_correction,
    reconcile_draw_flags,
    CaptureTrainingInput,
    CaptureTrainingOutput,
    MatchCorrectionInput,
    ReconcileFlagsInput,
)

__all__ = [
    # Matching activities
    "match_invoice",
    "MatchInvoiceInput",
    "MatchInvoiceOutput",
    # Learning activities
    "capture_training_data",
    "record_match_correction",
    "reconcile_draw_flags",
    "CaptureTrainingInput",
    "CaptureTrainingOutput",
    "MatchCorrectionInput",
    "ReconcileFlagsInput",
]
