"""Learning activities.

Temporal activities for the learning loop:
- capture_training_data: runs after a draw is funded
- record_match_correction: records a reviewer's re-match
- reconcile_draw_flags: refreshes NO_INVOICE flags on a draw's lines
"""

import time
from dataclasses import dataclass, field
from typing import List, Optional

from temporalio import activity

from core.observability.logging import (
    log_activity_complete,
    log_activity_error,
    log_activity_start,
    with_correlation,
)
from draw_matching.coverage import reconcile_no_invoice_flags
from draw_matching.engine import build_engine
from draw_matching.webhooks import EVENT_TRAINING_CAPTURED


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class CaptureTrainingInput:
    """Input for capture_training_data activity."""
    draw_id: str


@dataclass
class CaptureTrainingOutput:
    """Output from capture_training_data activity.

    Attributes:
        draw_id: Funded draw
        success: False only if the draw's invoices could not be loaded
        invoices_processed: Matched invoices considered
        training_records_created: New training records
        vendor_associations_updated: Associations created or incremented
        errors: Per-invoice failures
    """
    draw_id: str
    success: bool
    invoices_processed: int = 0
    training_records_created: int = 0
    vendor_associations_updated: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class MatchCorrectionInput:
    """Input for record_match_correction activity."""
    invoice_id: str
    new_line_id: str
    previous_line_id: Optional[str] = None
    new_category: Optional[str] = None
    reason: Optional[str] = None
    user_id: Optional[str] = None


@dataclass
class ReconcileFlagsInput:
    draw_id: str


# =============================================================================
# Activity Definitions
# =============================================================================

@activity.defn
async def capture_training_data(input: CaptureTrainingInput) -> CaptureTrainingOutput:
    """Capture training data for a funded draw.

    Never raises for per-invoice problems; they come back in `errors`.
    """
    start_time = time.time()

    with with_correlation(draw_id=input.draw_id, activity_name="capture_training_data"):
        log_activity_start("capture_training_data")

        engine = build_engine()
        result = await engine.learning.capture_training_data_for_draw(input.draw_id)

        if engine.webhook is not None:
            await engine.webhook.notify(EVENT_TRAINING_CAPTURED, result.model_dump(mode="json"))

        if result.success:
            log_activity_complete(
                "capture_training_data",
                duration_ms=(time.time() - start_time) * 1000,
                records_created=result.training_records_created,
                errors=len(result.errors),
            )
        else:
            log_activity_error("capture_training_data", "; ".join(result.errors))

    return CaptureTrainingOutput(
        draw_id=input.draw_id,
        success=result.success,
        invoices_processed=result.invoices_processed,
        training_records_created=result.training_records_created,
        vendor_associations_updated=result.vendor_associations_updated,
        errors=result.errors,
    )


@activity.defn
async def record_match_correction(input: MatchCorrectionInput) -> bool:
    """Record a reviewer's correction. Returns False if it could not be applied."""
    with with_correlation(invoice_id=input.invoice_id, activity_name="record_match_correction"):
        log_activity_start("record_match_correction", new_line_id=input.new_line_id)

        engine = build_engine()
        ok = await engine.learning.record_match_correction(
            invoice_id=input.invoice_id,
            previous_line_id=input.previous_line_id,
            new_line_id=input.new_line_id,
            new_category=input.new_category,
            reason=input.reason,
            user_id=input.user_id,
        )

        if ok:
            log_activity_complete("record_match_correction")
        else:
            log_activity_error("record_match_correction", "correction not applied")
        return ok


@activity.defn
async def reconcile_draw_flags(input: ReconcileFlagsInput) -> int:
    """Refresh NO_INVOICE flags for a draw. Returns lines changed."""
    with with_correlation(draw_id=input.draw_id, activity_name="reconcile_draw_flags"):
        engine = build_engine()
        return await reconcile_no_invoice_flags(engine.store, input.draw_id)
