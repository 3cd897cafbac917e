"""Learning loop: capture approved matches and record corrections.

When a draw is funded, every matched invoice on it becomes a write-once
training record, and the vendor's association with the matched category is
incremented exactly once per record (tracked by association_applied).
Corrections made by reviewers are recorded as decision rows and flip the
invoice to a manual match, so the next capture learns from them.

Nothing here raises to the caller: per-invoice failures are collected into
the capture result, and corrections report success as a bool.
"""

import asyncio
import random
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from core.observability.logging import get_logger, with_correlation
from core.observability.metrics import record_correction, record_training_capture
from draw_matching.config import MatchingConfig, DEFAULT_MATCHING_CONFIG
from draw_matching.models import (
    DecisionSource,
    DecisionType,
    InvoiceRecord,
    MatchDecision,
    MatchMethod,
    MatchStatus,
    TrainingCaptureResult,
    TrainingRecord,
    VendorCategoryAssociation,
)
from draw_matching.normalize import normalize_keywords, normalize_trade, normalize_vendor_name
from draw_matching.store import (
    BUDGETS,
    DRAW_REQUEST_LINES,
    INVOICES,
    MATCH_DECISIONS,
    TRAINING_RECORDS,
    VENDOR_ASSOCIATIONS,
    MatchingStore,
    StoreError,
    UniqueViolation,
)


logger = get_logger(__name__)


def determine_match_method(invoice: InvoiceRecord) -> MatchMethod:
    """ai_matched -> ai; manual or corrected -> manual; anything else -> auto."""
    if invoice.match_status == MatchStatus.AI_MATCHED:
        return MatchMethod.AI
    if invoice.match_status == MatchStatus.MANUALLY_MATCHED or invoice.was_manually_corrected:
        return MatchMethod.MANUAL
    return MatchMethod.AUTO


class TrainingCapture:
    """Writes training data and corrections through a MatchingStore."""

    def __init__(self, store: MatchingStore, config: MatchingConfig = DEFAULT_MATCHING_CONFIG):
        self.store = store
        self.config = config

    # =========================================================================
    # Capture
    # =========================================================================

    async def capture_training_data_for_draw(self, draw_id: str) -> TrainingCaptureResult:
        """Capture training records for every matched invoice on a funded draw.

        Idempotent: each invoice gets one training record and increments its
        vendor association once. A record whose increment failed (contention
        or a store error) stays pending and is retried by the next capture.

        Args:
            draw_id: Funded draw request ID

        Returns:
            TrainingCaptureResult with counts and collected errors
        """
        result = TrainingCaptureResult(draw_request_id=draw_id)

        with with_correlation(draw_id=draw_id, stage="training_capture"):
            try:
                rows = await self.store.select(INVOICES, {"draw_request_id": draw_id})
            except StoreError as e:
                logger.error("Could not load invoices for capture", extra_fields={"error": str(e)})
                result.success = False
                result.errors.append(f"Failed to load invoices: {e}")
                return result

            matched = [row for row in rows if row.get("matched_to_category")]
            logger.info(
                "Capturing training data",
                extra_fields={"invoices": len(rows), "matched": len(matched)},
            )

            for row in matched:
                result.invoices_processed += 1
                invoice_id = row.get("id")
                with with_correlation(invoice_id=invoice_id):
                    try:
                        invoice = InvoiceRecord.model_validate(row)
                        record = await self._build_training_record(invoice, draw_id)

                        if await self._insert_training_record(record):
                            result.training_records_created += 1
                        else:
                            record = await self._stored_training_record(invoice_id) or record

                        if not await self._claim_association(invoice_id):
                            continue

                        if await self._apply_association(record):
                            result.vendor_associations_updated += 1
                        else:
                            result.errors.append(f"Vendor association not updated for invoice {invoice_id}")
                    except Exception as e:
                        logger.warning("Training capture failed for invoice", extra_fields={"error": str(e)})
                        result.errors.append(f"Invoice {invoice_id}: {e}")

            logger.info(
                "Training capture complete",
                extra_fields={
                    "invoices_processed": result.invoices_processed,
                    "records_created": result.training_records_created,
                    "associations_updated": result.vendor_associations_updated,
                    "errors": len(result.errors),
                },
            )

        record_training_capture(
            result.training_records_created,
            result.vendor_associations_updated,
            len(result.errors),
        )
        return result

    async def _build_training_record(self, invoice: InvoiceRecord, draw_id: str) -> TrainingRecord:
        extracted = invoice.extracted()

        nahb_category, nahb_subcategory = None, None
        line = None
        if invoice.draw_request_line_id:
            line = await self.store.select_one(DRAW_REQUEST_LINES, {"id": invoice.draw_request_line_id})
        if line and line.get("budget_id"):
            budget = await self.store.select_one(BUDGETS, {"id": line["budget_id"]})
            if budget:
                nahb_category = budget.get("nahb_category")
                nahb_subcategory = budget.get("nahb_subcategory")

        return TrainingRecord(
            invoice_id=invoice.id,
            draw_request_id=draw_id,
            vendor_name_normalized=normalize_vendor_name(extracted.vendor_name),
            amount=invoice.amount if invoice.amount is not None else extracted.amount,
            context=extracted.context,
            keywords=normalize_keywords(extracted.keywords),
            trade=normalize_trade(extracted.trade),
            work_type=extracted.work_type,
            budget_category=invoice.matched_to_category,
            nahb_category=nahb_category or invoice.matched_to_nahb_code,
            nahb_subcategory=nahb_subcategory,
            match_method=determine_match_method(invoice),
            confidence_at_match=invoice.confidence_score,
            was_corrected=invoice.was_manually_corrected,
        )

    async def _insert_training_record(self, record: TrainingRecord) -> bool:
        try:
            await self.store.insert(TRAINING_RECORDS, record.model_dump(mode="json"))
        except UniqueViolation:
            logger.info("Training record already exists")
            return False
        return True

    async def _stored_training_record(self, invoice_id: str) -> Optional[TrainingRecord]:
        row = await self.store.select_one(TRAINING_RECORDS, {"invoice_id": invoice_id})
        return TrainingRecord.model_validate(row) if row else None

    async def _claim_association(self, invoice_id: str) -> bool:
        """Mark a record's association as applied, if no one has yet.

        The flag flips false -> true in a single compare-and-swap, so of any
        number of concurrent captures exactly one goes on to increment.
        """
        claimed = await self.store.update(
            TRAINING_RECORDS,
            {"invoice_id": invoice_id, "association_applied": False},
            {"association_applied": True},
        )
        return claimed > 0

    async def _apply_association(self, record: TrainingRecord) -> bool:
        """Increment the record's vendor association, releasing the claim on failure.

        A released claim is picked up again by the next capture of the draw.
        """
        applied = False
        try:
            applied = await self.upsert_vendor_association(
                record.vendor_name_normalized,
                record.budget_category,
                record.nahb_category,
                record.amount,
            )
        finally:
            if not applied:
                await self.store.update(
                    TRAINING_RECORDS,
                    {"invoice_id": record.invoice_id},
                    {"association_applied": False},
                )
                logger.warning("Vendor association left pending for the next capture")
        return applied

    # =========================================================================
    # Vendor Associations
    # =========================================================================

    async def upsert_vendor_association(
        self,
        vendor_name_normalized: str,
        budget_category: str,
        nahb_category: Optional[str],
        amount: Decimal,
    ) -> bool:
        """Increment (or create) a vendor/category association.

        Insert first; on a unique conflict, read the current counters and
        apply the increment only if match_count is still what was read.
        Retried up to association_max_attempts times with jittered,
        doubling backoff; a False return leaves the caller's record pending.

        Returns:
            True if the increment was applied
        """
        key = {"vendor_name_normalized": vendor_name_normalized, "budget_category": budget_category}
        amount = Decimal(amount or 0)
        now = datetime.now(timezone.utc).isoformat()

        for attempt in range(self.config.association_max_attempts):
            existing = await self.store.select_one(VENDOR_ASSOCIATIONS, key)

            if existing is None:
                association = VendorCategoryAssociation(
                    vendor_name_normalized=vendor_name_normalized,
                    budget_category=budget_category,
                    nahb_category=nahb_category,
                    match_count=1,
                    total_amount=amount,
                    last_matched_at=now,
                )
                try:
                    await self.store.insert(VENDOR_ASSOCIATIONS, association.model_dump(mode="json"))
                    return True
                except UniqueViolation:
                    logger.debug("Association created concurrently, retrying as update")
                    await self._backoff(attempt)
                    continue

            current = VendorCategoryAssociation.model_validate(existing)
            values = {
                "match_count": current.match_count + 1,
                "total_amount": str(current.total_amount + amount),
                "last_matched_at": now,
            }
            if nahb_category and not current.nahb_category:
                values["nahb_category"] = nahb_category

            changed = await self.store.update(
                VENDOR_ASSOCIATIONS,
                {**key, "match_count": existing["match_count"]},
                values,
            )
            if changed:
                return True

            logger.debug(
                "Association changed concurrently, retrying",
                extra_fields={"attempt": attempt + 1},
            )
            await self._backoff(attempt)

        logger.warning(
            "Vendor association update gave up after retries",
            extra_fields={"vendor": vendor_name_normalized, "budget_category": budget_category},
        )
        return False

    async def _backoff(self, attempt: int) -> None:
        base = self.config.association_retry_delay_seconds
        if attempt + 1 < self.config.association_max_attempts:
            await asyncio.sleep(random.uniform(0, base * 2 ** attempt))

    # =========================================================================
    # Corrections
    # =========================================================================

    async def record_match_correction(
        self,
        invoice_id: str,
        previous_line_id: Optional[str],
        new_line_id: str,
        new_category: Optional[str] = None,
        reason: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> bool:
        """Record a reviewer's match and relink the invoice.

        Writes a manual_override decision (manual_initial if the invoice was
        never matched), carrying the candidate snapshot of the last decision,
        then marks the invoice manually matched and corrected.

        Returns:
            True on success; False if the invoice or line is missing, a stored
            row is malformed or the store failed
        """
        with with_correlation(invoice_id=invoice_id, stage="correction"):
            try:
                invoice_row = await self.store.select_one(INVOICES, {"id": invoice_id})
                if invoice_row is None:
                    logger.warning("Correction for unknown invoice")
                    return False
                invoice = InvoiceRecord.model_validate(invoice_row)

                line = await self.store.select_one(DRAW_REQUEST_LINES, {"id": new_line_id})
                if line is None:
                    logger.warning("Correction targets unknown draw line", extra_fields={"line_id": new_line_id})
                    return False

                budget = None
                if line.get("budget_id"):
                    budget = await self.store.select_one(BUDGETS, {"id": line["budget_id"]})
                category = new_category or (budget or {}).get("category")
                if not category:
                    logger.warning("Correction has no category", extra_fields={"line_id": new_line_id})
                    return False

                previous_line_id = previous_line_id or invoice.draw_request_line_id
                is_override = previous_line_id is not None or invoice.matched_to_category is not None

                decisions = await self.store.select(
                    MATCH_DECISIONS,
                    {"invoice_id": invoice_id},
                    order_by="decided_at",
                    descending=True,
                    limit=1,
                )
                candidates: List[Dict[str, Any]] = decisions[0].get("candidates") or [] if decisions else []

                decision = MatchDecision(
                    invoice_id=invoice_id,
                    draw_request_line_id=new_line_id,
                    decision_type=DecisionType.MANUAL_OVERRIDE if is_override else DecisionType.MANUAL_INITIAL,
                    decision_source=DecisionSource.USER,
                    decided_by=user_id,
                    candidates=candidates,
                    selected_draw_line_id=new_line_id,
                    selected_confidence=1.0,
                    previous_draw_line_id=previous_line_id,
                    correction_reason=reason,
                )
                await self.store.insert(MATCH_DECISIONS, decision.model_dump(mode="json"))

                await link_invoice_to_line(self.store, invoice, line, confidence=1.0)
                await self.store.update(
                    INVOICES,
                    {"id": invoice_id},
                    {
                        "match_status": MatchStatus.MANUALLY_MATCHED.value,
                        "was_manually_corrected": is_override,
                        "draw_request_line_id": new_line_id,
                        "matched_to_category": category,
                        "matched_to_nahb_code": (budget or {}).get("nahb_category"),
                        "confidence_score": 1.0,
                        "flags": [],
                    },
                )
            except (StoreError, ValidationError) as e:
                logger.error("Correction failed", extra_fields={"error": str(e)})
                return False

            logger.info(
                "Match correction recorded",
                extra_fields={"previous_line_id": previous_line_id, "new_line_id": new_line_id},
            )
            record_correction()
            return True


# =============================================================================
# Line Linking
# =============================================================================

async def clear_line(store: MatchingStore, line_id: str) -> None:
    await store.update(
        DRAW_REQUEST_LINES,
        {"id": line_id},
        {
            "invoice_id": None,
            "matched_invoice_amount": None,
            "invoice_vendor_name": None,
            "confidence_score": None,
            "variance": None,
        },
    )


async def link_invoice_to_line(
    store: MatchingStore,
    invoice: InvoiceRecord,
    line: Dict[str, Any],
    confidence: float,
) -> None:
    """Point a draw line at an invoice, keeping the pairing one-to-one.

    The invoice's previous line is cleared. An invoice previously holding the
    target line is unlinked and sent back to review.
    """
    line_id = line["id"]

    if invoice.draw_request_line_id and invoice.draw_request_line_id != line_id:
        await clear_line(store, invoice.draw_request_line_id)

    displaced_id = line.get("invoice_id")
    if displaced_id and displaced_id != invoice.id:
        await store.update(
            INVOICES,
            {"id": displaced_id},
            {
                "draw_request_line_id": None,
                "matched_to_category": None,
                "matched_to_nahb_code": None,
                "match_status": MatchStatus.NEEDS_REVIEW.value,
                "flags": ["LINE_REASSIGNED"],
            },
        )
        logger.info("Displaced invoice from draw line", extra_fields={"displaced_invoice_id": displaced_id})

    amount = invoice.amount if invoice.amount is not None else Decimal("0")
    requested = Decimal(str(line.get("amount_requested") or "0"))
    await store.update(
        DRAW_REQUEST_LINES,
        {"id": line_id},
        {
            "invoice_id": invoice.id,
            "matched_invoice_amount": str(amount),
            "invoice_vendor_name": invoice.vendor_name,
            "confidence_score": confidence,
            "variance": str(amount - requested),
        },
    )
