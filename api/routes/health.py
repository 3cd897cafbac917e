"""Health, probe and metrics endpoints."""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter
from pydantic import BaseModel

from core.observability.metrics import get_metrics


router = APIRouter()

API_VERSION = "1.0.0"


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    version: str
    invoices_processed: int
    training_captures: int


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    summary = get_metrics().get_summary()
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc).isoformat(),
        version=API_VERSION,
        invoices_processed=summary["matching"]["invoices_processed"],
        training_captures=summary["learning"]["captures"],
    )


@router.get("/ready")
async def readiness_check() -> Dict[str, str]:
    """Readiness probe."""
    return {"status": "ready"}


@router.get("/live")
async def liveness_check() -> Dict[str, str]:
    """Liveness probe."""
    return {"status": "alive"}


@router.get("/metrics")
async def metrics_summary() -> Dict[str, Any]:
    """In-process matching and learning counters."""
    return get_metrics().get_summary()
