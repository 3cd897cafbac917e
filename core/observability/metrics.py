"""
Metrics Collection for Draw Invoice Matching

In-process counters, exposed through GET /metrics:
- Classification outcomes and the match status they produced
- AI selection calls, keyed by the primary factor returned
- Training capture (records created, associations updated, errors) and corrections
- Processing times per stage (average, p95)
"""

import statistics
from collections import Counter, deque
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Deque, Dict, Optional

MAX_TIMING_SAMPLES = 1000
OVERALL = "overall"


@dataclass
class MatchingMetrics:
    invoices_processed: int = 0
    by_classification: Counter = field(default_factory=Counter)
    by_match_status: Counter = field(default_factory=Counter)
    ai_by_factor: Counter = field(default_factory=Counter)

    @property
    def ai_calls(self) -> int:
        return sum(self.ai_by_factor.values())

    def snapshot(self) -> Dict[str, Any]:
        return {
            "invoices_processed": self.invoices_processed,
            "by_classification": dict(self.by_classification),
            "by_match_status": dict(self.by_match_status),
            "ai_calls": self.ai_calls,
            "ai_by_factor": dict(self.ai_by_factor),
        }


@dataclass
class LearningMetrics:
    captures: int = 0
    training_records_created: int = 0
    vendor_associations_updated: int = 0
    capture_errors: int = 0
    corrections: int = 0

    def snapshot(self) -> Dict[str, int]:
        return dict(self.__dict__)


def _window() -> Deque[float]:
    return deque(maxlen=MAX_TIMING_SAMPLES)


def _stats(samples: Deque[float]) -> Dict[str, float]:
    if not samples:
        return {"average_ms": 0.0, "p95_ms": 0.0, "sample_count": 0}
    if len(samples) == 1:
        p95 = samples[0]
    else:
        p95 = statistics.quantiles(samples, n=20, method="inclusive")[18]
    return {
        "average_ms": statistics.fmean(samples),
        "p95_ms": p95,
        "sample_count": len(samples),
    }


class MetricsCollector:
    """
    Thread-safe metrics collector shared by the engine, activities and API.

    Usage:
        metrics = MetricsCollector.instance()
        metrics.record_classification("AUTO_MATCH", "auto_matched")
        metrics.record_processing_time("candidates", duration_ms=12.5)
    """

    _instance: Optional["MetricsCollector"] = None
    _instance_lock = Lock()

    def __init__(self):
        self.matching = MatchingMetrics()
        self.learning = LearningMetrics()
        self.timings: Dict[str, Deque[float]] = {OVERALL: _window()}
        self._lock = Lock()

    @classmethod
    def instance(cls) -> "MetricsCollector":
        if cls._instance is None:
            with cls._instance_lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Drop the singleton; the next instance() starts from zero."""
        with cls._instance_lock:
            cls._instance = None

    def record_classification(self, classification: str, match_status: str):
        with self._lock:
            self.matching.invoices_processed += 1
            self.matching.by_classification[classification] += 1
            self.matching.by_match_status[match_status] += 1

    def record_ai_selection(self, primary_factor: str):
        with self._lock:
            self.matching.ai_by_factor[primary_factor] += 1

    def record_training_capture(self, records_created: int, associations_updated: int, errors: int):
        with self._lock:
            self.learning.captures += 1
            self.learning.training_records_created += records_created
            self.learning.vendor_associations_updated += associations_updated
            self.learning.capture_errors += errors

    def record_correction(self):
        with self._lock:
            self.learning.corrections += 1

    def record_processing_time(self, stage: str, duration_ms: float):
        with self._lock:
            self.timings[OVERALL].append(duration_ms)
            self.timings.setdefault(stage, _window()).append(duration_ms)

    def get_timing_stats(self, stage: str = OVERALL) -> Dict[str, float]:
        with self._lock:
            return _stats(self.timings.get(stage, _window()))

    def get_summary(self) -> Dict[str, Any]:
        with self._lock:
            overall = _stats(self.timings[OVERALL])
            return {
                "matching": self.matching.snapshot(),
                "learning": self.learning.snapshot(),
                "timings": {
                    OVERALL: {"average_ms": overall["average_ms"], "p95_ms": overall["p95_ms"]},
                    "by_stage": {
                        stage: _stats(samples)
                        for stage, samples in self.timings.items()
                        if stage != OVERALL
                    },
                },
            }


def get_metrics() -> MetricsCollector:
    return MetricsCollector.instance()


def record_classification(classification: str, match_status: str):
    get_metrics().record_classification(classification, match_status)


def record_ai_selection(primary_factor: str):
    get_metrics().record_ai_selection(primary_factor)


def record_training_capture(records_created: int, associations_updated: int, errors: int):
    get_metrics().record_training_capture(records_created, associations_updated, errors)


def record_correction():
    get_metrics().record_correction()


def record_processing_time(stage: str, duration_ms: float):
    get_metrics().record_processing_time(stage, duration_ms)
