"""
Observability for Draw Invoice Matching

Provides:
- Structured logging with correlation IDs (draw, invoice, workflow)
- Metrics collection (classifications, AI outcomes, training capture, timings)
"""

from core.observability.metrics import (
    MetricsCollector,
    get_metrics,
    record_classification,
    record_ai_selection,
    record_training_capture,
    record_correction,
    record_processing_time,
)

from core.observability.logging import (
    get_logger,
    configure_logging,
    CorrelationContext,
    with_correlation,
)

__all__ = [
    # Metrics
    "MetricsCollector",
    "get_metrics",
    "record_classification",
    "record_ai_selection",
    "record_training_capture",
    "record_correction",
    "record_processing_time",
    # Logging
    "get_logger",
    "configure_logging",
    "CorrelationContext",
    "with_correlation",
]
