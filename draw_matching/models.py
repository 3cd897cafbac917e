"""Draw Matching Data Models.

Pydantic models for invoice-to-draw-line matching and learning:
- ExtractedInvoiceData: what upstream extraction pulled off an invoice
- BudgetLine: an open draw request line joined with its budget category
- MatchCandidate: one scored line for an invoice
- ClassificationResult / AISelectionResponse: the matching decision inputs
- TrainingRecord / VendorCategoryAssociation: what the learning loop stores
- MatchDecision: the audit record written for every applied match

Rows read from the store are validated through these models, so storage
never hands raw dicts to the scoring code.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.functional_validators import BeforeValidator
from typing_extensions import Annotated


# =============================================================================
# Value Parsers
# =============================================================================

def _parse_decimal(value):
    """Parse decimal from various formats (string with $ or commas, floats, etc.)."""
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if isinstance(value, str):
        s = value.strip()
        if s == "":
            return None
        s = s.replace("$", "").replace(",", "")
        if s.startswith("(") and s.endswith(")"):
            s = "-" + s[1:-1]
        return Decimal(s)
    return value


def parse_string_list(value):
    """Accept a list, a comma-separated string, or None."""
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return [str(v) for v in value if v is not None and str(v).strip()]


DecimalValue = Annotated[Decimal, BeforeValidator(_parse_decimal)]
StringList = Annotated[List[str], BeforeValidator(parse_string_list)]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================

class MatchClassification(str, Enum):
    """Outcome of deterministic classification."""
    AUTO_MATCH = "AUTO_MATCH"
    MULTIPLE_CANDIDATES = "MULTIPLE_CANDIDATES"
    NO_CANDIDATES = "NO_CANDIDATES"


class MatchStatus(str, Enum):
    """Match status stored on the invoice row."""
    PENDING = "pending"
    AUTO_MATCHED = "auto_matched"
    AI_MATCHED = "ai_matched"
    NEEDS_REVIEW = "needs_review"
    MANUALLY_MATCHED = "manually_matched"
    NO_MATCH = "no_match"


class MatchMethod(str, Enum):
    """How an approved match was made (training ground truth)."""
    AUTO = "auto"
    AI = "ai"
    MANUAL = "manual"


class DecisionType(str, Enum):
    AUTO_SINGLE = "auto_single"
    AI_SELECTED = "ai_selected"
    FALLBACK_TOP = "fallback_top_candidate"
    MANUAL_OVERRIDE = "manual_override"
    MANUAL_INITIAL = "manual_initial"


class DecisionSource(str, Enum):
    SYSTEM = "system"
    AI = "ai"
    USER = "user"


class SelectionFactor(str, Enum):
    """Primary factors the AI gate reports when it declines to select."""
    NO_CANDIDATES = "no_candidates"
    AI_ERROR = "ai_error"
    PARSE_ERROR = "parse_error"
    INVALID_SELECTION = "invalid_selection"


# =============================================================================
# Matching Inputs
# =============================================================================

class ExtractedInvoiceData(BaseModel):
    """Structured data extracted from an invoice document.

    Attributes:
        vendor_name: Vendor as printed on the invoice (free text)
        amount: Invoice total
        context: Short description of the work billed
        keywords: Keywords describing the work
        trade: Trade signal (e.g. "electrical", "plumbing")
        work_type: Work-type signal (e.g. "rough-in", "finish")
        vendor_type: Vendor-type signal (e.g. "subcontractor", "supplier")
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    vendor_name: Optional[str] = Field(default=None, description="Vendor name as extracted")
    amount: DecimalValue = Field(default=Decimal("0"), description="Invoice total")
    context: Optional[str] = Field(default=None, description="Work description snippet")
    keywords: StringList = Field(default_factory=list)
    trade: Optional[str] = None
    work_type: Optional[str] = None
    vendor_type: Optional[str] = None

    invoice_number: Optional[str] = None
    invoice_date: Optional[date] = None
    project_reference: Optional[str] = None
    has_lien_waiver: Optional[bool] = None
    extraction_confidence: Optional[float] = Field(default=None, ge=0, le=1)


class BudgetLine(BaseModel):
    """An open draw request line joined with its budget.

    budget_category is the display name the line is matched against; lines
    without one are never candidates.
    """
    model_config = ConfigDict(populate_by_name=True)

    id: str
    draw_request_id: Optional[str] = None
    budget_id: Optional[str] = None
    budget_category: Optional[str] = None
    nahb_category: Optional[str] = None
    nahb_subcategory: Optional[str] = None
    cost_code: Optional[str] = None
    amount_requested: DecimalValue = Decimal("0")
    invoice_id: Optional[str] = None


# =============================================================================
# Candidates
# =============================================================================

class CandidateScores(BaseModel):
    """Per-dimension scores in [0, 1]."""
    amount: float = 0.0
    trade: float = 0.0
    keywords: float = 0.0
    training: float = 0.0
    composite: float = 0.0


class CandidateFactors(BaseModel):
    """Explanation of how a candidate scored.

    amount_variance is relative (|delta| / requested); amount_variance_absolute
    is the signed currency delta, invoice amount minus requested amount.
    """
    amount_variance: float = 0.0
    amount_variance_absolute: DecimalValue = Decimal("0")
    trade_match: Optional[str] = None
    keyword_matches: List[str] = Field(default_factory=list)
    vendor_previous_match: bool = False
    training_reason: Optional[str] = None


class MatchCandidate(BaseModel):
    """A draw line scored against one invoice."""
    draw_line_id: str
    budget_id: Optional[str] = None
    budget_category: str
    nahb_category: Optional[str] = None
    amount_requested: DecimalValue
    scores: CandidateScores
    factors: CandidateFactors


class ClassificationResult(BaseModel):
    """Result of deterministic classification."""
    status: MatchClassification
    candidates: List[MatchCandidate] = Field(default_factory=list)
    selected_draw_line_id: Optional[str] = None
    confidence: float = 0.0
    needs_ai: bool = False
    needs_review: bool = False
    reason: str = ""


class SelectionFactors(BaseModel):
    primary: str = ""
    supporting: List[str] = Field(default_factory=list)


class AISelectionResponse(BaseModel):
    """Validated output of the AI selection gate.

    A non-null selected_draw_line_id is always one of the candidates the gate
    was given. A null selection is always flagged for review.
    """
    selected_draw_line_id: Optional[str] = None
    confidence: float = Field(default=0.0, ge=0, le=1)
    reasoning: str = ""
    flag_for_review: bool = True
    factors: SelectionFactors = Field(default_factory=SelectionFactors)


class MatchOutcome(BaseModel):
    """What the engine did with one invoice."""
    invoice_id: str
    classification: MatchClassification
    match_status: MatchStatus
    draw_line_id: Optional[str] = None
    budget_category: Optional[str] = None
    confidence: float = 0.0
    candidates: List[MatchCandidate] = Field(default_factory=list)
    ai_response: Optional[AISelectionResponse] = None
    flags: List[str] = Field(default_factory=list)
    reason: str = ""


# =============================================================================
# Stored Rows
# =============================================================================

class InvoiceRecord(BaseModel):
    """Invoice row as stored."""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    draw_request_id: Optional[str] = None
    vendor_name: Optional[str] = None
    amount: Optional[DecimalValue] = None
    extracted_data: Optional[Dict[str, Any]] = None
    match_status: MatchStatus = MatchStatus.PENDING
    matched_to_category: Optional[str] = None
    matched_to_nahb_code: Optional[str] = None
    draw_request_line_id: Optional[str] = None
    confidence_score: Optional[float] = None
    candidate_count: Optional[int] = None
    was_manually_corrected: bool = False
    flags: StringList = Field(default_factory=list)

    @field_validator("match_status", mode="before")
    @classmethod
    def _default_status(cls, value):
        return MatchStatus.PENDING if value is None else value

    @field_validator("was_manually_corrected", mode="before")
    @classmethod
    def _null_is_false(cls, value):
        return False if value is None else value

    def extracted(self) -> ExtractedInvoiceData:
        """Extracted data, falling back to the row's own vendor and amount."""
        data = dict(self.extracted_data or {})
        if not data.get("vendor_name"):
            data["vendor_name"] = self.vendor_name
        if data.get("amount") in (None, ""):
            data["amount"] = self.amount if self.amount is not None else Decimal("0")
        return ExtractedInvoiceData.model_validate(data)


class TrainingRecord(BaseModel):
    """Ground-truth example captured when a draw is funded. One per invoice."""
    invoice_id: str
    draw_request_id: str
    approved_at: datetime = Field(default_factory=utc_now)
    vendor_name_normalized: str
    amount: DecimalValue
    context: Optional[str] = None
    keywords: StringList = Field(default_factory=list)
    trade: Optional[str] = None
    work_type: Optional[str] = None
    budget_category: str
    nahb_category: Optional[str] = None
    nahb_subcategory: Optional[str] = None
    match_method: MatchMethod
    confidence_at_match: Optional[float] = None
    was_corrected: bool = False
    association_applied: bool = False


class VendorCategoryAssociation(BaseModel):
    """Aggregate of approved matches between a vendor and a category."""
    vendor_name_normalized: str
    budget_category: str
    nahb_category: Optional[str] = None
    match_count: int = 0
    total_amount: DecimalValue = Decimal("0")
    last_matched_at: Optional[datetime] = None


class VendorHistoryEntry(BaseModel):
    match_count: int
    total_amount: DecimalValue


class MatchDecision(BaseModel):
    """Audit record for a match decision. Never deleted."""
    id: Optional[str] = None
    invoice_id: str
    draw_request_line_id: Optional[str] = None
    decision_type: DecisionType
    decision_source: DecisionSource
    decided_by: Optional[str] = None
    decided_at: datetime = Field(default_factory=utc_now)
    candidates: List[Dict[str, Any]] = Field(default_factory=list)
    selected_draw_line_id: Optional[str] = None
    selected_confidence: Optional[float] = None
    selection_factors: Optional[Dict[str, Any]] = None
    ai_reasoning: Optional[str] = None
    flags: List[str] = Field(default_factory=list)
    previous_draw_line_id: Optional[str] = None
    correction_reason: Optional[str] = None


class TrainingCaptureResult(BaseModel):
    """Summary of one capture run. Failures are collected, never raised."""
    success: bool = True
    draw_request_id: Optional[str] = None
    invoices_processed: int = 0
    training_records_created: int = 0
    vendor_associations_updated: int = 0
    errors: List[str] = Field(default_factory=list)
