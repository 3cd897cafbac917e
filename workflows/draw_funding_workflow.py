"""
Draw Funded Workflow

Started after a draw's funding is durable. Captures training data for the
draw's matched invoices. A capture failure is logged and reported in the
result, never raised: funding has already happened and must not be undone.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import List

from temporalio import workflow
from temporalio.common import RetryPolicy

with workflow.unsafe.imports_passed_through():
    from activities.learning import capture_training_data, CaptureTrainingInput
    from workflows.invoice_matching_workflow import TASK_QUEUE_DEFAULT


@dataclass
class DrawFundedInput:
    draw_id: str


@dataclass
class DrawFundedOutput:
    draw_id: str
    success: bool
    training_records_created: int = 0
    vendor_associations_updated: int = 0
    errors: List[str] = field(default_factory=list)


CAPTURE_ACTIVITY_OPTIONS = {
    "start_to_close_timeout": timedelta(minutes=5),
    "retry_policy": RetryPolicy(
        maximum_attempts=3,
        initial_interval=timedelta(seconds=5),
        backoff_coefficient=2.0,
    ),
    "task_queue": TASK_QUEUE_DEFAULT,
}


@workflow.defn
class DrawFundedWorkflow:
    """Runs training capture for a funded draw."""

    @workflow.run
    async def run(self, input: DrawFundedInput) -> DrawFundedOutput:
        workflow.logger.info(f"Draw {input.draw_id} funded, capturing training data")

        try:
            result = await workflow.execute_activity(
                capture_training_data,
                CaptureTrainingInput(draw_id=input.draw_id),
                **CAPTURE_ACTIVITY_OPTIONS,
            )
        except Exception as e:
            workflow.logger.warning(f"Training capture failed for draw {input.draw_id}: {e}")
            return DrawFundedOutput(draw_id=input.draw_id, success=False, errors=[str(e)])

        workflow.logger.info(
            f"Captured {result.training_records_created} training records for draw {input.draw_id}"
        )
        return DrawFundedOutput(
            draw_id=input.draw_id,
            success=result.success,
            training_records_created=result.training_records_created,
            vendor_associations_updated=result.vendor_associations_updated,
            errors=result.errors,
        )
