"""Matching Engine - per-invoice matching pipeline.

Orchestrates one invoice through:
1. Candidate generation (amount, trade, keywords, learned history)
2. Deterministic classification
3. AI selection, only for MULTIPLE_CANDIDATES
4. Applying the decision to the invoice and draw line rows, with an audit
   decision record

Usage:
    from draw_matching import build_engine

    engine = build_engine()
    outcome = await engine.match_invoice_by_id("INV-001")
    print(outcome.match_status, outcome.draw_line_id)
"""

import asyncio
import time
from typing import List, Optional, Sequence

from core.observability.logging import get_logger, with_correlation
from core.observability.metrics import record_ai_selection, record_classification, record_processing_time
from draw_matching.ai_selection import AISelectionGate, OpenAISelectionModel
from draw_matching.candidates import CandidateGenerator
from draw_matching.classifier import classify_candidates
from draw_matching.coverage import find_exact_amount_matches
from draw_matching.config import MatchingConfig, Settings, DEFAULT_MATCHING_CONFIG, load_settings
from draw_matching.db import SQLiteMatchingStore
from draw_matching.history import HistoryLookup
from draw_matching.learning import TrainingCapture, clear_line, link_invoice_to_line
from draw_matching.models import (
    AISelectionResponse,
    BudgetLine,
    ClassificationResult,
    DecisionSource,
    DecisionType,
    ExtractedInvoiceData,
    InvoiceRecord,
    MatchCandidate,
    MatchClassification,
    MatchDecision,
    MatchOutcome,
    MatchStatus,
)
from draw_matching.store import (
    BUDGETS,
    DRAW_REQUEST_LINES,
    INVOICES,
    MATCH_DECISIONS,
    MatchingStore,
    RecordNotFound,
)
from draw_matching.webhooks import EVENT_NEEDS_REVIEW, WorkflowWebhook


logger = get_logger(__name__)

FLAG_AI_FLAGGED = "AI_FLAGGED"
FLAG_AI_UNAVAILABLE = "AI_UNAVAILABLE"
FLAG_NO_CANDIDATES = "NO_CANDIDATES"
FLAG_LOW_CONFIDENCE = "LOW_CONFIDENCE"


class MatchingEngine:
    """Matches invoices to draw request lines.

    The engine falls back to the best deterministic candidate when the AI
    declines or fails, marking the invoice for review, unless the caller
    requires human sign-off, in which case nothing is linked.
    """

    def __init__(
        self,
        store: MatchingStore,
        config: MatchingConfig = DEFAULT_MATCHING_CONFIG,
        ai_gate: Optional[AISelectionGate] = None,
        webhook: Optional[WorkflowWebhook] = None,
        history_timeout_seconds: Optional[float] = 5.0,
    ):
        """Initialize the engine.

        Args:
            store: Persistence for invoices, lines and learning tables
            config: Weights and thresholds
            ai_gate: AI selection gate; None means ambiguous matches go
                straight to the deterministic fallback
            webhook: Notifier for invoices needing review
            history_timeout_seconds: Timeout for each history lookup
        """
        self.store = store
        self.config = config
        self.ai_gate = ai_gate
        self.webhook = webhook
        self.history = HistoryLookup(store, keyword_sample_limit=config.keyword_sample_limit)
        self.generator = CandidateGenerator(self.history, config, history_timeout_seconds)
        self.learning = TrainingCapture(store, config)

    # =========================================================================
    # Public API
    # =========================================================================

    async def load_open_lines(self, draw_id: str, invoice_id: Optional[str] = None) -> List[BudgetLine]:
        """Lines of a draw that can take this invoice.

        Lines already holding a different invoice are excluded.
        """
        lines = await self.load_draw_lines(draw_id)
        return [line for line in lines if not line.invoice_id or line.invoice_id == invoice_id]

    async def load_draw_lines(self, draw_id: str) -> List[BudgetLine]:
        """All lines of a draw joined with their budgets."""
        rows = await self.store.select(DRAW_REQUEST_LINES, {"draw_request_id": draw_id})

        budget_ids = sorted({r["budget_id"] for r in rows if r.get("budget_id")})
        budget_rows = await asyncio.gather(*[
            self.store.select_one(BUDGETS, {"id": budget_id}) for budget_id in budget_ids
        ])
        budgets = {b["id"]: b for b in budget_rows if b}

        lines = []
        for row in rows:
            budget = budgets.get(row.get("budget_id")) or {}
            lines.append(BudgetLine(
                id=row["id"],
                draw_request_id=row.get("draw_request_id"),
                budget_id=row.get("budget_id"),
                budget_category=budget.get("category"),
                nahb_category=budget.get("nahb_category"),
                nahb_subcategory=budget.get("nahb_subcategory"),
                cost_code=budget.get("cost_code"),
                amount_requested=row.get("amount_requested") or "0",
                invoice_id=row.get("invoice_id"),
            ))
        return lines

    async def match_invoice_by_id(
        self,
        invoice_id: str,
        extracted: Optional[ExtractedInvoiceData] = None,
        require_human_signoff: bool = False,
    ) -> MatchOutcome:
        """Match a stored invoice against the open lines of its draw.

        If `extracted` is given it replaces the invoice's stored extraction.

        Raises:
            RecordNotFound: If the invoice does not exist
        """
        invoice = InvoiceRecord.model_validate(await self.store.get(INVOICES, invoice_id))

        if extracted is not None:
            await self.store.update(
                INVOICES,
                {"id": invoice_id},
                {
                    "extracted_data": extracted.model_dump(mode="json"),
                    "vendor_name": extracted.vendor_name or invoice.vendor_name,
                    "amount": str(extracted.amount),
                },
            )
        else:
            extracted = invoice.extracted()

        lines = []
        if invoice.draw_request_id:
            lines = await self.load_open_lines(invoice.draw_request_id, invoice_id)

        with with_correlation(draw_id=invoice.draw_request_id):
            return await self.match_invoice(invoice_id, extracted, lines, require_human_signoff)

    async def match_draw(self, draw_id: str, require_human_signoff: bool = False) -> List[MatchOutcome]:
        """Match every pending invoice on a draw, one at a time.

        Invoices with a near-exact amount pairing go first so they claim
        their lines before less certain invoices are scored.
        """
        rows = await self.store.select(INVOICES, {"draw_request_id": draw_id})
        pending = [
            InvoiceRecord.model_validate(row) for row in rows
            if row.get("match_status") in (None, MatchStatus.PENDING.value)
        ]
        if not pending:
            return []

        lines = await self.load_open_lines(draw_id)
        exact = find_exact_amount_matches(
            [(inv.id, inv.extracted().amount) for inv in pending],
            lines,
            tolerance=self.config.exact_match_tolerance_pct,
        )
        pending.sort(key=lambda inv: (inv.id not in exact, inv.id))

        outcomes = []
        with with_correlation(draw_id=draw_id):
            for invoice in pending:
                outcomes.append(await self.match_invoice_by_id(
                    invoice.id, require_human_signoff=require_human_signoff
                ))

        logger.info(
            "Draw matching complete",
            extra_fields={"invoices": len(outcomes), "exact_pairings": len(exact)},
        )
        return outcomes

    async def match_invoice(
        self,
        invoice_id: str,
        extracted: ExtractedInvoiceData,
        lines: Sequence[BudgetLine],
        require_human_signoff: bool = False,
    ) -> MatchOutcome:
        """Run the full pipeline for one invoice and persist the result.

        Args:
            invoice_id: Stored invoice to update
            extracted: Extracted invoice data
            lines: Open draw lines to consider
            require_human_signoff: Never link on AI failure; leave for review

        Returns:
            MatchOutcome describing what was applied
        """
        start_time = time.time()

        with with_correlation(invoice_id=invoice_id, stage="matching"):
            # Step 1: Score every open line
            candidates = await self.generator.generate(extracted, lines)

            # Step 2: Classify
            classification = classify_candidates(candidates, self.config)
            logger.info(
                f"Classified as {classification.status.value}",
                extra_fields={
                    "candidates": len(candidates),
                    "top_score": classification.confidence,
                    "reason": classification.reason,
                },
            )

            # Step 3: Decide and apply
            if classification.status == MatchClassification.AUTO_MATCH:
                outcome = await self._apply_match(
                    invoice_id,
                    classification,
                    candidates[0],
                    status=MatchStatus.AUTO_MATCHED,
                    decision_type=DecisionType.AUTO_SINGLE,
                    decision_source=DecisionSource.SYSTEM,
                    confidence=classification.confidence,
                )
            elif classification.status == MatchClassification.MULTIPLE_CANDIDATES:
                outcome = await self._resolve_multiple(
                    invoice_id, extracted, classification, require_human_signoff
                )
            else:
                outcome = await self._mark_unmatched(invoice_id, classification)

        duration_ms = (time.time() - start_time) * 1000
        record_classification(outcome.classification.value, outcome.match_status.value)
        record_processing_time("matching", duration_ms)

        if outcome.match_status == MatchStatus.NEEDS_REVIEW and self.webhook is not None:
            await self.webhook.notify(EVENT_NEEDS_REVIEW, {
                "invoice_id": invoice_id,
                "classification": outcome.classification.value,
                "draw_line_id": outcome.draw_line_id,
                "flags": outcome.flags,
                "reason": outcome.reason,
            })

        return outcome

    # =========================================================================
    # Decision Paths
    # =========================================================================

    async def _resolve_multiple(
        self,
        invoice_id: str,
        extracted: ExtractedInvoiceData,
        classification: ClassificationResult,
        require_human_signoff: bool,
    ) -> MatchOutcome:
        candidates = classification.candidates
        ai_response: Optional[AISelectionResponse] = None

        if self.ai_gate is not None:
            ai_response = await self.ai_gate.select(extracted, candidates)
            record_ai_selection(ai_response.factors.primary or "selected")

            if ai_response.selected_draw_line_id and not ai_response.flag_for_review:
                chosen = next(c for c in candidates if c.draw_line_id == ai_response.selected_draw_line_id)
                return await self._apply_match(
                    invoice_id,
                    classification,
                    chosen,
                    status=MatchStatus.AI_MATCHED,
                    decision_type=DecisionType.AI_SELECTED,
                    decision_source=DecisionSource.AI,
                    confidence=ai_response.confidence,
                    ai_response=ai_response,
                )

        flags = [FLAG_AI_FLAGGED if ai_response is not None else FLAG_AI_UNAVAILABLE]
        reason = ai_response.reasoning if ai_response is not None else classification.reason

        if require_human_signoff:
            return await self._mark_unmatched(
                invoice_id,
                classification,
                status=MatchStatus.NEEDS_REVIEW,
                flags=flags,
                ai_response=ai_response,
                reason=reason,
            )

        logger.info("Falling back to top deterministic candidate", extra_fields={"flags": flags})
        return await self._apply_match(
            invoice_id,
            classification,
            candidates[0],
            status=MatchStatus.NEEDS_REVIEW,
            decision_type=DecisionType.FALLBACK_TOP,
            decision_source=DecisionSource.SYSTEM,
            confidence=candidates[0].scores.composite,
            ai_response=ai_response,
            flags=flags,
            reason=reason,
        )

    async def _apply_match(
        self,
        invoice_id: str,
        classification: ClassificationResult,
        chosen: MatchCandidate,
        status: MatchStatus,
        decision_type: DecisionType,
        decision_source: DecisionSource,
        confidence: float,
        ai_response: Optional[AISelectionResponse] = None,
        flags: Optional[List[str]] = None,
        reason: Optional[str] = None,
    ) -> MatchOutcome:
        invoice = InvoiceRecord.model_validate(await self.store.get(INVOICES, invoice_id))
        line = await self.store.select_one(DRAW_REQUEST_LINES, {"id": chosen.draw_line_id})
        if line is None:
            raise RecordNotFound(DRAW_REQUEST_LINES, chosen.draw_line_id)

        flags = flags or []
        await link_invoice_to_line(self.store, invoice, line, confidence)
        await self.store.update(
            INVOICES,
            {"id": invoice_id},
            {
                "match_status": status.value,
                "draw_request_line_id": chosen.draw_line_id,
                "matched_to_category": chosen.budget_category,
                "matched_to_nahb_code": chosen.nahb_category,
                "confidence_score": confidence,
                "candidate_count": len(classification.candidates),
                "flags": flags,
            },
        )

        decision = MatchDecision(
            invoice_id=invoice_id,
            draw_request_line_id=chosen.draw_line_id,
            decision_type=decision_type,
            decision_source=decision_source,
            decided_by="ai" if decision_source == DecisionSource.AI else "system",
            candidates=[c.model_dump(mode="json") for c in classification.candidates],
            selected_draw_line_id=chosen.draw_line_id,
            selected_confidence=confidence,
            selection_factors=ai_response.factors.model_dump() if ai_response else None,
            ai_reasoning=ai_response.reasoning if ai_response else None,
            flags=flags,
            previous_draw_line_id=invoice.draw_request_line_id,
        )
        await self.store.insert(MATCH_DECISIONS, decision.model_dump(mode="json"))

        logger.info(
            f"Invoice matched ({status.value})",
            extra_fields={
                "draw_line_id": chosen.draw_line_id,
                "budget_category": chosen.budget_category,
                "confidence": round(confidence, 4),
            },
        )

        return MatchOutcome(
            invoice_id=invoice_id,
            classification=classification.status,
            match_status=status,
            draw_line_id=chosen.draw_line_id,
            budget_category=chosen.budget_category,
            confidence=confidence,
            candidates=classification.candidates,
            ai_response=ai_response,
            flags=flags,
            reason=reason or classification.reason,
        )

    async def _mark_unmatched(
        self,
        invoice_id: str,
        classification: ClassificationResult,
        status: Optional[MatchStatus] = None,
        flags: Optional[List[str]] = None,
        ai_response: Optional[AISelectionResponse] = None,
        reason: Optional[str] = None,
    ) -> MatchOutcome:
        if status is None:
            status = MatchStatus.NEEDS_REVIEW if classification.candidates else MatchStatus.NO_MATCH
        if flags is None:
            flags = [FLAG_LOW_CONFIDENCE if classification.candidates else FLAG_NO_CANDIDATES]

        invoice = InvoiceRecord.model_validate(await self.store.get(INVOICES, invoice_id))
        if invoice.draw_request_line_id:
            await clear_line(self.store, invoice.draw_request_line_id)

        await self.store.update(
            INVOICES,
            {"id": invoice_id},
            {
                "match_status": status.value,
                "draw_request_line_id": None,
                "matched_to_category": None,
                "matched_to_nahb_code": None,
                "confidence_score": classification.confidence,
                "candidate_count": len(classification.candidates),
                "flags": flags,
            },
        )

        logger.info(f"Invoice left unmatched ({status.value})", extra_fields={"flags": flags})

        return MatchOutcome(
            invoice_id=invoice_id,
            classification=classification.status,
            match_status=status,
            confidence=classification.confidence,
            candidates=classification.candidates,
            ai_response=ai_response,
            flags=flags,
            reason=reason or classification.reason,
        )


# =============================================================================
# Factory
# =============================================================================

def build_engine(settings: Optional[Settings] = None, store: Optional[MatchingStore] = None) -> MatchingEngine:
    """Build an engine from settings (SQLite store, OpenAI gate, webhook)."""
    settings = settings or load_settings()
    store = store or SQLiteMatchingStore(settings.db_path)

    ai_gate = None
    if settings.ai_enabled and settings.openai_api_key:
        ai_gate = AISelectionGate(
            OpenAISelectionModel(api_key=settings.openai_api_key, model=settings.ai_model),
            timeout_seconds=settings.ai_timeout_seconds,
            max_candidates=settings.matching.max_ai_candidates,
        )
    elif settings.ai_enabled:
        logger.warning("OPENAI_API_KEY not set; ambiguous matches will fall back to review")

    webhook = WorkflowWebhook(settings.webhook_base_url, settings.webhook_timeout_seconds)

    return MatchingEngine(
        store,
        config=settings.matching,
        ai_gate=ai_gate,
        webhook=webhook,
        history_timeout_seconds=settings.history_timeout_seconds,
    )
