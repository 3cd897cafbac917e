"""Draw Matching - invoice-to-budget-line matching and learning.

Matches extracted invoices to draw request lines with weighted deterministic
scoring, escalates ambiguous cases to a constrained AI selection step, and
learns from funded draws (vendor associations, trade and keyword patterns).

Usage:
    from draw_matching import build_engine, ExtractedInvoiceData

    engine = build_engine()
    outcome = await engine.match_invoice_by_id(
        "INV-001",
        ExtractedInvoiceData(vendor_name="Bright Spark Electric", amount="12400", trade="electrical"),
    )

    # After the draw is funded
    result = await engine.learning.capture_training_data_for_draw("DRAW-7")
"""

# Enums
from draw_matching.models import (
    DecisionSource,
    DecisionType,
    MatchClassification,
    MatchMethod,
    MatchStatus,
    SelectionFactor,
)

# Models
from draw_matching.models import (
    AISelectionResponse,
    BudgetLine,
    ClassificationResult,
    ExtractedInvoiceData,
    InvoiceRecord,
    MatchCandidate,
    MatchDecision,
    MatchOutcome,
    TrainingCaptureResult,
    TrainingRecord,
    VendorCategoryAssociation,
)

# Configuration
from draw_matching.config import (
    DEFAULT_MATCHING_CONFIG,
    MatchingConfig,
    Settings,
    load_settings,
)

# Components
from draw_matching.normalize import normalize_vendor_name
from draw_matching.candidates import CandidateGenerator
from draw_matching.classifier import classify_candidates
from draw_matching.ai_selection import (
    AISelectionGate,
    OpenAISelectionModel,
    SelectionModel,
    get_best_candidate,
    should_use_ai_selection,
)
from draw_matching.history import HistoryLookup
from draw_matching.learning import TrainingCapture
from draw_matching.coverage import (
    find_exact_amount_matches,
    reconcile_no_invoice_flags,
    validate_coverage,
)
from draw_matching.engine import MatchingEngine, build_engine

# Storage
from draw_matching.store import (
    InMemoryMatchingStore,
    MatchingStore,
    RecordNotFound,
    StoreError,
    UniqueViolation,
)
from draw_matching.db import SQLiteMatchingStore, init_matching_db

__all__ = [
    # Enums
    "DecisionSource",
    "DecisionType",
    "MatchClassification",
    "MatchMethod",
    "MatchStatus",
    "SelectionFactor",
    # Models
    "AISelectionResponse",
    "BudgetLine",
    "ClassificationResult",
    "ExtractedInvoiceData",
    "InvoiceRecord",
    "MatchCandidate",
    "MatchDecision",
    "MatchOutcome",
    "TrainingCaptureResult",
    "TrainingRecord",
    "VendorCategoryAssociation",
    # Configuration
    "DEFAULT_MATCHING_CONFIG",
    "MatchingConfig",
    "Settings",
    "load_settings",
    # Components
    "normalize_vendor_name",
    "CandidateGenerator",
    "classify_candidates",
    "AISelectionGate",
    "OpenAISelectionModel",
    "SelectionModel",
    "get_best_candidate",
    "should_use_ai_selection",
    "HistoryLookup",
    "TrainingCapture",
    "find_exact_amount_matches",
    "reconcile_no_invoice_flags",
    "validate_coverage",
    "MatchingEngine",
    "build_engine",
    # Storage
    "InMemoryMatchingStore",
    "MatchingStore",
    "RecordNotFound",
    "StoreError",
    "UniqueViolation",
    "SQLiteMatchingStore",
    "init_matching_db",
]
