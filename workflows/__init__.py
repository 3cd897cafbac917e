"""Workflow definitions module."""

from workflows.invoice_matching_workflow import (
    InvoiceMatchingWorkflow,
    InvoiceMatchingInput,
    InvoiceMatchingOutput,
    TASK_QUEUE_DEFAULT,
    TASK_QUEUE_LLM,
)
from workflows.draw_funding_workflow import DrawFundedWorkflow, DrawFundedInput, DrawFundedOutput

__all__ = [
    "InvoiceMatchingWorkflow",
    "InvoiceMatchingInput",
    "InvoiceMatchingOutput",
    "DrawFundedWorkflow",
    "DrawFundedInput",
    "DrawFundedOutput",
    "TASK_QUEUE_DEFAULT",
    "TASK_QUEUE_LLM",
]
