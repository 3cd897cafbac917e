"""Candidate generation: score every open draw line for one invoice."""

import asyncio
from typing import Awaitable, List, Optional, Sequence, TypeVar

from core.observability.logging import get_logger
from draw_matching.config import MatchingConfig, DEFAULT_MATCHING_CONFIG
from draw_matching.history import HistoryLookup
from draw_matching.models import (
    BudgetLine,
    CandidateFactors,
    CandidateScores,
    ExtractedInvoiceData,
    MatchCandidate,
)
from draw_matching.scoring import (
    HistoryEvidence,
    composite_score,
    score_amount,
    score_keywords,
    score_trade,
    score_training,
)


logger = get_logger(__name__)

T = TypeVar("T")


class CandidateGenerator:
    """Scores draw lines against extracted invoice data.

    History is fetched once per invoice (vendor associations and trade
    patterns) plus one keyword-pattern query per eligible line. Each lookup
    runs under a timeout; a slow or failing lookup contributes no evidence.
    """

    def __init__(
        self,
        history: Optional[HistoryLookup] = None,
        config: MatchingConfig = DEFAULT_MATCHING_CONFIG,
        lookup_timeout_seconds: Optional[float] = 5.0,
    ):
        """Initialize the generator.

        Args:
            history: History lookup; None disables the training dimension
            config: Weights and thresholds
            lookup_timeout_seconds: Per-lookup timeout (None for no timeout)
        """
        self.history = history
        self.config = config
        self.lookup_timeout_seconds = lookup_timeout_seconds

    async def _bounded(self, name: str, awaitable: Awaitable[T], default: T) -> T:
        try:
            if self.lookup_timeout_seconds is None:
                return await awaitable
            return await asyncio.wait_for(awaitable, timeout=self.lookup_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"History lookup timed out: {name}")
            return default
        except Exception as e:
            logger.warning(f"History lookup failed: {name}", extra_fields={"error": str(e)})
            return default

    async def _load_evidence(self, invoice: ExtractedInvoiceData) -> HistoryEvidence:
        if self.history is None:
            return HistoryEvidence()
        vendor_history, trade_patterns = await asyncio.gather(
            self._bounded("vendor_history", self.history.get_vendor_history(invoice.vendor_name), {}),
            self._bounded("trade_patterns", self.history.get_trade_patterns(invoice.trade), {}),
        )
        return HistoryEvidence(vendor_history=vendor_history, trade_patterns=trade_patterns)

    async def generate(
        self,
        invoice: ExtractedInvoiceData,
        lines: Sequence[BudgetLine],
    ) -> List[MatchCandidate]:
        """Generate scored candidates, best first.

        Lines without a budget category or with a non-positive requested
        amount are skipped. Candidates below min_candidate_score are dropped.
        Ties on composite score go to the smallest absolute amount variance.
        """
        eligible = [
            line for line in lines
            if line.budget_category and line.amount_requested > 0
        ]
        if not eligible:
            return []

        evidence = await self._load_evidence(invoice)

        if self.history is not None and invoice.keywords:
            overlaps = await asyncio.gather(*[
                self._bounded(
                    "keyword_patterns",
                    self.history.get_keyword_patterns(invoice.keywords, line.budget_category),
                    0,
                )
                for line in eligible
            ])
        else:
            overlaps = [0] * len(eligible)

        # Dimensions with evidence for this invoice
        active = {"amount"}
        if invoice.trade:
            active.add("trade")
        if invoice.keywords:
            active.add("keywords")
        if not evidence.is_empty or any(overlaps):
            active.add("training")

        candidates = []
        for line, overlap in zip(eligible, overlaps):
            amount = score_amount(invoice.amount, line.amount_requested, self.config)
            trade_score, trade_term = score_trade(invoice.trade, line.budget_category, line.nahb_category)
            keyword_score, keyword_matches = score_keywords(
                invoice.keywords, line.budget_category, line.nahb_category, line.nahb_subcategory
            )
            training = score_training(line.budget_category, evidence, overlap, self.config)

            scores = {
                "amount": amount.score,
                "trade": trade_score,
                "keywords": keyword_score,
                "training": training.score,
            }
            composite = composite_score(scores, active, self.config)
            if composite < self.config.min_candidate_score:
                continue

            candidates.append(MatchCandidate(
                draw_line_id=line.id,
                budget_id=line.budget_id,
                budget_category=line.budget_category,
                nahb_category=line.nahb_category,
                amount_requested=line.amount_requested,
                scores=CandidateScores(composite=round(composite, 4), **scores),
                factors=CandidateFactors(
                    amount_variance=round(amount.variance, 4),
                    amount_variance_absolute=amount.variance_absolute,
                    trade_match=trade_term,
                    keyword_matches=keyword_matches,
                    vendor_previous_match=training.vendor_matched,
                    training_reason=training.reason,
                ),
            ))

        candidates.sort(key=lambda c: (
            -c.scores.composite,
            abs(c.factors.amount_variance_absolute),
            c.draw_line_id,
        ))

        logger.debug(
            "Generated candidates",
            extra_fields={
                "eligible_lines": len(eligible),
                "candidates": len(candidates),
                "active_dimensions": sorted(active),
            },
        )
        return candidates
