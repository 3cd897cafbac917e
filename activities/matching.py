"""Matching activities.

Temporal activity that runs one extracted invoice through the matching
engine: candidate scoring, classification, AI selection when ambiguous, and
persisting the result.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from temporalio import activity

from core.observability.logging import (
    log_activity_complete,
    log_activity_start,
    with_correlation,
)
from draw_matching.engine import build_engine
from draw_matching.models import ExtractedInvoiceData


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class MatchInvoiceInput:
    """Input for match_invoice activity.

    Attributes:
        invoice_id: Stored invoice to match
        extracted_data: Extraction payload; None reuses what is stored
        require_human_signoff: Leave ambiguous invoices unlinked for review
    """
    invoice_id: str
    extracted_data: Optional[Dict[str, Any]] = None
    require_human_signoff: bool = False


@dataclass
class MatchInvoiceOutput:
    """Output from match_invoice activity."""
    invoice_id: str
    classification: str
    match_status: str
    draw_line_id: Optional[str] = None
    budget_category: Optional[str] = None
    confidence: float = 0.0
    candidate_count: int = 0
    flags: List[str] = field(default_factory=list)
    reason: str = ""


# =============================================================================
# Activity Definition
# =============================================================================

@activity.defn
async def match_invoice(input: MatchInvoiceInput) -> MatchInvoiceOutput:
    """Match an invoice to a draw request line.

    Args:
        input: MatchInvoiceInput

    Returns:
        MatchInvoiceOutput summarizing the applied outcome

    Raises:
        RecordNotFound: If the invoice does not exist (not retryable)
    """
    start_time = time.time()

    with with_correlation(invoice_id=input.invoice_id, activity_name="match_invoice"):
        log_activity_start("match_invoice", require_human_signoff=input.require_human_signoff)

        extracted = None
        if input.extracted_data is not None:
            extracted = ExtractedInvoiceData.model_validate(input.extracted_data)

        engine = build_engine()
        outcome = await engine.match_invoice_by_id(
            input.invoice_id,
            extracted,
            require_human_signoff=input.require_human_signoff,
        )

        log_activity_complete(
            "match_invoice",
            duration_ms=(time.time() - start_time) * 1000,
            classification=outcome.classification.value,
            match_status=outcome.match_status.value,
        )

    return MatchInvoiceOutput(
        invoice_id=outcome.invoice_id,
        classification=outcome.classification.value,
        match_status=outcome.match_status.value,
        draw_line_id=outcome.draw_line_id,
        budget_category=outcome.budget_category,
        confidence=outcome.confidence,
        candidate_count=len(outcome.candidates),
        flags=outcome.flags,
        reason=outcome.reason,
    )
