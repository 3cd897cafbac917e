"""Worker for draw invoice matching.

Listens for tasks and executes workflows/activities.

Two task queues:
- draw-default: workflows, store-bound activities (capture, corrections, flags)
- draw-llm: invoice matching, which may call the AI selection model

Run with --queue <name> to specify which queue to poll.
Run with --all to poll both queues (for local development).
"""

import argparse
import asyncio
import logging

from temporalio.worker import Worker

from core.observability.logging import configure_logging, get_logger
from temporal_client import get_temporal_client
from workflows.invoice_matching_workflow import (
    InvoiceMatchingWorkflow,
    TASK_QUEUE_DEFAULT,
    TASK_QUEUE_LLM,
)
from workflows.draw_funding_workflow import DrawFundedWorkflow
from activities.matching import match_invoice
from activities.learning import capture_training_data, record_match_correction, reconcile_draw_flags


logger = get_logger(__name__)

# =============================================================================
# Activity Groupings by Task Queue
# =============================================================================

DEFAULT_QUEUE_ACTIVITIES = [
    capture_training_data,
    record_match_correction,
    reconcile_draw_flags,
]

LLM_QUEUE_ACTIVITIES = [
    match_invoice,
]

WORKFLOWS = [InvoiceMatchingWorkflow, DrawFundedWorkflow]

ALL_ACTIVITIES = DEFAULT_QUEUE_ACTIVITIES + LLM_QUEUE_ACTIVITIES


def build_workers(client, queue: str = TASK_QUEUE_DEFAULT, all_queues: bool = False):
    """Create the workers for one queue, or both in local dev mode."""
    if all_queues:
        return [
            Worker(
                client,
                task_queue=task_queue,
                workflows=WORKFLOWS if task_queue == TASK_QUEUE_DEFAULT else [],
                activities=ALL_ACTIVITIES,
            )
            for task_queue in (TASK_QUEUE_DEFAULT, TASK_QUEUE_LLM)
        ]

    if queue == TASK_QUEUE_LLM:
        return [Worker(client, task_queue=queue, workflows=[], activities=LLM_QUEUE_ACTIVITIES)]

    return [Worker(client, task_queue=queue, workflows=WORKFLOWS, activities=DEFAULT_QUEUE_ACTIVITIES)]


async def run_worker(queue: str = TASK_QUEUE_DEFAULT, all_queues: bool = False):
    """Start worker(s) listening on task queue(s).

    Args:
        queue: Specific queue to poll (draw-default, draw-llm)
        all_queues: If True, poll both queues with all activities
    """
    client = await get_temporal_client()
    logger.info(f"Connected to Temporal: {client.namespace}")

    workers = build_workers(client, queue, all_queues)
    for worker in workers:
        logger.info(f"Worker created for queue '{worker.task_queue}'")

    logger.info("Worker(s) running... (Ctrl+C to stop)")
    try:
        await asyncio.gather(*[w.run() for w in workers])
    except KeyboardInterrupt:
        logger.info("Worker interrupted by user")


def main():
    """Entry point for worker with CLI args."""
    parser = argparse.ArgumentParser(description="Draw Matching Temporal Worker")
    parser.add_argument(
        "--queue", "-q",
        choices=[TASK_QUEUE_DEFAULT, TASK_QUEUE_LLM],
        default=TASK_QUEUE_DEFAULT,
        help="Task queue to poll (default: draw-default)"
    )
    parser.add_argument(
        "--all", "-a",
        action="store_true",
        dest="all_queues",
        help="Poll both queues (local development mode)"
    )

    args = parser.parse_args()
    configure_logging(level=logging.INFO)
    asyncio.run(run_worker(queue=args.queue, all_queues=args.all_queues))


if __name__ == "__main__":
    main()
