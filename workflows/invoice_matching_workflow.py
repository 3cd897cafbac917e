"""
Invoice Matching Workflow

Started when an invoice has been extracted. Runs the matching activity on
the LLM queue (it may call the AI selection model) and, once the invoice is
placed, refreshes the draw's NO_INVOICE flags.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from temporalio import workflow
from temporalio.common import RetryPolicy

with workflow.unsafe.imports_passed_through():
    from activities.matching import match_invoice, MatchInvoiceInput
    from activities.learning import reconcile_draw_flags, ReconcileFlagsInput


# =============================================================================
# Task Queues
# =============================================================================

TASK_QUEUE_DEFAULT = "draw-default"   # Store-bound activities, workflows
TASK_QUEUE_LLM = "draw-llm"           # Matching (may call the AI model)


# =============================================================================
# Workflow Input/Output
# =============================================================================

class ProcessingStatus(str, Enum):
    """Overall processing status"""
    COMPLETED = "COMPLETED"
    NEEDS_REVIEW = "NEEDS_REVIEW"
    FAILED = "FAILED"


@dataclass
class InvoiceMatchingInput:
    """Input for invoice matching workflow"""
    invoice_id: str
    draw_id: Optional[str] = None
    extracted_data: Optional[Dict[str, Any]] = None
    require_human_signoff: bool = False


@dataclass
class InvoiceMatchingOutput:
    """Output from invoice matching workflow"""
    invoice_id: str
    status: str
    classification: Optional[str] = None
    match_status: Optional[str] = None
    draw_line_id: Optional[str] = None
    confidence: float = 0.0
    flags: List[str] = field(default_factory=list)
    error_message: Optional[str] = None


# =============================================================================
# Activity Options
# =============================================================================

MATCHING_ACTIVITY_OPTIONS = {
    "start_to_close_timeout": timedelta(minutes=2),
    "retry_policy": RetryPolicy(
        maximum_attempts=3,
        initial_interval=timedelta(seconds=2),
        maximum_interval=timedelta(seconds=30),
        backoff_coefficient=2.0,
        # Bad input and missing rows won't self-heal
        non_retryable_error_types=["ValidationError", "RecordNotFound"],
    ),
    "task_queue": TASK_QUEUE_LLM,
}

DB_ACTIVITY_OPTIONS = {
    "start_to_close_timeout": timedelta(seconds=30),
    "retry_policy": RetryPolicy(
        maximum_attempts=3,
        initial_interval=timedelta(seconds=1),
        backoff_coefficient=2.0,
    ),
    "task_queue": TASK_QUEUE_DEFAULT,
}


# =============================================================================
# Invoice Matching Workflow
# =============================================================================

@workflow.defn
class InvoiceMatchingWorkflow:
    """Matches one extracted invoice to a draw request line."""

    @workflow.run
    async def run(self, input: InvoiceMatchingInput) -> InvoiceMatchingOutput:
        workflow.logger.info(f"Starting invoice matching for {input.invoice_id}")

        try:
            result = await workflow.execute_activity(
                match_invoice,
                MatchInvoiceInput(
                    invoice_id=input.invoice_id,
                    extracted_data=input.extracted_data,
                    require_human_signoff=input.require_human_signoff,
                ),
                **MATCHING_ACTIVITY_OPTIONS,
            )
        except Exception as e:
            workflow.logger.error(f"Matching failed for {input.invoice_id}: {e}")
            return InvoiceMatchingOutput(
                invoice_id=input.invoice_id,
                status=ProcessingStatus.FAILED.value,
                error_message=str(e),
            )

        if input.draw_id:
            await workflow.execute_activity(
                reconcile_draw_flags,
                ReconcileFlagsInput(draw_id=input.draw_id),
                **DB_ACTIVITY_OPTIONS,
            )

        status = (
            ProcessingStatus.NEEDS_REVIEW
            if result.match_status in ("needs_review", "no_match")
            else ProcessingStatus.COMPLETED
        )
        workflow.logger.info(
            f"Invoice {input.invoice_id} {result.match_status} "
            f"({result.classification}, confidence {result.confidence:.2f})"
        )

        return InvoiceMatchingOutput(
            invoice_id=input.invoice_id,
            status=status.value,
            classification=result.classification,
            match_status=result.match_status,
            draw_line_id=result.draw_line_id,
            confidence=result.confidence,
            flags=result.flags,
        )
