"""Invoice matching endpoints.

Inbound triggers for the matching engine:
- POST /invoices/{invoice_id}/match       invoice extracted
- POST /invoices/{invoice_id}/correction  reviewer re-matched an invoice
- POST /draws/{draw_id}/match             match every pending invoice on a draw
- POST /draws/{draw_id}/funded            draw funded (capture runs in background)
- GET  /draws/{draw_id}/coverage          invoice coverage of a draw
- GET  /vendors/history                   learned categories for a vendor
"""

from decimal import Decimal
from functools import lru_cache
from typing import Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from core.observability.logging import get_logger
from draw_matching.coverage import CoverageValidation, validate_coverage
from draw_matching.engine import MatchingEngine, build_engine
from draw_matching.models import ExtractedInvoiceData, MatchOutcome, VendorHistoryEntry
from draw_matching.normalize import normalize_vendor_name
from draw_matching.store import DRAW_REQUEST_LINES, RecordNotFound


logger = get_logger(__name__)

router = APIRouter()


@lru_cache(maxsize=1)
def get_engine() -> MatchingEngine:
    """Engine built from environment settings (overridden in tests)."""
    return build_engine()


# =============================================================================
# Request / Response Models
# =============================================================================

class MatchRequest(BaseModel):
    extracted: Optional[ExtractedInvoiceData] = Field(
        default=None, description="Extraction payload; omit to reuse the stored one"
    )
    require_human_signoff: bool = False


class CorrectionRequest(BaseModel):
    new_line_id: str
    previous_line_id: Optional[str] = None
    new_category: Optional[str] = None
    reason: Optional[str] = None
    user_id: Optional[str] = None


class CorrectionResponse(BaseModel):
    success: bool
    invoice_id: str
    draw_line_id: str


class FundedResponse(BaseModel):
    draw_id: str
    status: str = "accepted"


class VendorHistoryResponse(BaseModel):
    vendor_name: str
    vendor_name_normalized: str
    history: Dict[str, VendorHistoryEntry] = Field(default_factory=dict)


# =============================================================================
# Endpoints
# =============================================================================

@router.post("/invoices/{invoice_id}/match", response_model=MatchOutcome)
async def match_invoice(
    invoice_id: str,
    request: MatchRequest,
    engine: MatchingEngine = Depends(get_engine),
) -> MatchOutcome:
    """Match an extracted invoice to a line on its draw."""
    try:
        return await engine.match_invoice_by_id(
            invoice_id,
            request.extracted,
            require_human_signoff=request.require_human_signoff,
        )
    except RecordNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.post("/invoices/{invoice_id}/correction", response_model=CorrectionResponse)
async def correct_match(
    invoice_id: str,
    request: CorrectionRequest,
    engine: MatchingEngine = Depends(get_engine),
) -> CorrectionResponse:
    """Record a reviewer's correction of an invoice match."""
    ok = await engine.learning.record_match_correction(
        invoice_id=invoice_id,
        previous_line_id=request.previous_line_id,
        new_line_id=request.new_line_id,
        new_category=request.new_category,
        reason=request.reason,
        user_id=request.user_id,
    )
    if not ok:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Correction could not be applied; check the invoice and draw line",
        )
    return CorrectionResponse(success=True, invoice_id=invoice_id, draw_line_id=request.new_line_id)


@router.post("/draws/{draw_id}/match", response_model=List[MatchOutcome])
async def match_draw(
    draw_id: str,
    require_human_signoff: bool = False,
    engine: MatchingEngine = Depends(get_engine),
) -> List[MatchOutcome]:
    """Match every pending invoice on a draw."""
    return await engine.match_draw(draw_id, require_human_signoff=require_human_signoff)


async def _capture_in_background(engine: MatchingEngine, draw_id: str) -> None:
    result = await engine.learning.capture_training_data_for_draw(draw_id)
    if not result.success:
        logger.warning("Background training capture failed", extra_fields={"draw_id": draw_id, "errors": result.errors})


@router.post("/draws/{draw_id}/funded", response_model=FundedResponse, status_code=status.HTTP_202_ACCEPTED)
async def draw_funded(
    draw_id: str,
    background_tasks: BackgroundTasks,
    engine: MatchingEngine = Depends(get_engine),
) -> FundedResponse:
    """Acknowledge a funded draw and capture training data after responding."""
    background_tasks.add_task(_capture_in_background, engine, draw_id)
    return FundedResponse(draw_id=draw_id)


@router.get("/draws/{draw_id}/coverage", response_model=CoverageValidation)
async def draw_coverage(
    draw_id: str,
    engine: MatchingEngine = Depends(get_engine),
) -> CoverageValidation:
    """How well the draw's matched invoices cover its requested amounts."""
    lines = await engine.load_draw_lines(draw_id)
    matched: Dict[str, Decimal] = {}
    for row in await engine.store.select(DRAW_REQUEST_LINES, {"draw_request_id": draw_id}):
        if row.get("invoice_id") and row.get("matched_invoice_amount") is not None:
            matched[row["id"]] = Decimal(str(row["matched_invoice_amount"]))
    return validate_coverage(lines, matched, engine.config.coverage_variance_pct)


@router.get("/vendors/history", response_model=VendorHistoryResponse)
async def vendor_history(
    vendor_name: str = Query(..., min_length=1),
    engine: MatchingEngine = Depends(get_engine),
) -> VendorHistoryResponse:
    """Categories a vendor has been approved against, with counts."""
    history = await engine.history.get_vendor_history(vendor_name)
    return VendorHistoryResponse(
        vendor_name=vendor_name,
        vendor_name_normalized=normalize_vendor_name(vendor_name),
        history=history,
    )
