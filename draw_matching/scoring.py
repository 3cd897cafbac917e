"""Per-dimension scoring for invoice-to-draw-line candidates.

Four dimensions, each in [0, 1]:
- amount: proximity of the invoice total to the amount requested
- trade: whether the extracted trade fits the budget category
- keywords: overlap of extracted keywords with category tokens
- training: what approved history says about vendor, trade and keywords

The composite is a weighted sum normalized by the weights of the dimensions
that carry evidence for the invoice being scored.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from draw_matching.config import MatchingConfig, DEFAULT_MATCHING_CONFIG
from draw_matching.models import VendorHistoryEntry
from draw_matching.normalize import normalize_keywords, normalize_trade, tokenize


# Trade signal -> terms that identify a matching budget category
TRADE_CATEGORY_TERMS: Dict[str, List[str]] = {
    "electrical": ["electrical", "electric", "low voltage"],
    "plumbing": ["plumbing", "plumber"],
    "hvac": ["hvac", "mechanical", "heating", "air conditioning"],
    "framing": ["framing", "lumber", "carpentry"],
    "roofing": ["roofing", "roof"],
    "flooring": ["flooring", "floor", "carpet", "tile", "hardwood"],
    "foundation": ["foundation", "concrete", "footings"],
    "excavation": ["excavation", "site work", "grading"],
    "landscaping": ["landscaping", "landscape", "irrigation"],
    "painting": ["painting", "paint", "interior paint", "exterior paint"],
    "drywall": ["drywall", "insulation"],
    "insulation": ["insulation", "drywall"],
    "windows_doors": ["windows", "doors", "window", "door"],
    "appliances": ["appliances", "appliance"],
    "fixtures": ["fixtures", "plumbing fixtures", "light fixtures"],
    "general": ["general conditions", "general", "permits", "fees"],
}

# (max relative variance, score), checked in order after the exact band
AMOUNT_SCORE_BANDS: Tuple[Tuple[float, float], ...] = (
    (0.05, 0.95),
    (0.10, 0.80),
    (0.15, 0.65),
    (0.25, 0.45),
)
AMOUNT_SCORE_FLOOR = 0.20

# Keyword score divides by at least this many keywords
MIN_KEYWORD_DENOMINATOR = 3


@dataclass
class AmountScore:
    score: float
    variance: float
    variance_absolute: Decimal


@dataclass
class TrainingSignal:
    score: float = 0.0
    vendor_matched: bool = False
    reason: Optional[str] = None


@dataclass
class HistoryEvidence:
    """History fetched once per invoice, shared by every candidate."""
    vendor_history: Dict[str, VendorHistoryEntry] = field(default_factory=dict)
    trade_patterns: Dict[str, int] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.vendor_history and not self.trade_patterns


# =============================================================================
# Amount
# =============================================================================

def score_amount(
    invoice_amount: Decimal,
    amount_requested: Decimal,
    config: MatchingConfig = DEFAULT_MATCHING_CONFIG,
) -> AmountScore:
    """Score how closely the invoice total matches the amount requested.

    Variance within the absolute tolerance or the exact percentage scores
    1.0; wider variances fall through the bands down to the floor.

    Examples:
        >>> score_amount(Decimal("12400"), Decimal("12400")).score
        1.0
        >>> score_amount(Decimal("10000"), Decimal("9800")).score
        0.95
    """
    delta = Decimal(invoice_amount) - Decimal(amount_requested)
    if amount_requested <= 0:
        return AmountScore(score=0.0, variance=1.0, variance_absolute=delta)

    variance = float(abs(delta) / Decimal(amount_requested))

    if abs(delta) <= config.amount_exact_tolerance or variance <= config.amount_exact_pct:
        return AmountScore(score=1.0, variance=variance, variance_absolute=delta)

    for max_variance, score in AMOUNT_SCORE_BANDS:
        if variance <= max_variance:
            return AmountScore(score=score, variance=variance, variance_absolute=delta)

    return AmountScore(score=AMOUNT_SCORE_FLOOR, variance=variance, variance_absolute=delta)


# =============================================================================
# Trade
# =============================================================================

def score_trade(
    trade: Optional[str],
    budget_category: str,
    nahb_category: Optional[str] = None,
) -> Tuple[float, Optional[str]]:
    """Score the extracted trade against a budget category.

    Returns:
        (score, matched term). 1.0 when a synonym of the trade appears in the
        category or NAHB category; 0.9 when a category word appears in the
        trade itself; otherwise 0.
    """
    trade_key = normalize_trade(trade)
    if not trade_key:
        return 0.0, None

    haystack = f"{budget_category or ''} {nahb_category or ''}".lower()
    terms = TRADE_CATEGORY_TERMS.get(trade_key.replace(" ", "_"), [trade_key])

    for term in terms:
        if term in haystack:
            return 1.0, term

    for token in tokenize(haystack):
        if token in trade_key:
            return 0.9, token

    return 0.0, None


# =============================================================================
# Keywords
# =============================================================================

def score_keywords(
    keywords: Iterable[str],
    budget_category: str,
    nahb_category: Optional[str] = None,
    nahb_subcategory: Optional[str] = None,
) -> Tuple[float, List[str]]:
    """Score extracted keywords against category tokens.

    A keyword matches when it equals a category token, case-insensitively.
    Multi-word keywords match when all of their tokens are present.

    Returns:
        (score, matched keywords) where score = matched / max(len(keywords), 3)
    """
    normalized = normalize_keywords(keywords)
    if not normalized:
        return 0.0, []

    category_tokens = set(tokenize(budget_category))
    category_tokens.update(tokenize(nahb_category))
    category_tokens.update(tokenize(nahb_subcategory))
    if not category_tokens:
        return 0.0, []

    matched = []
    for keyword in normalized:
        keyword_tokens = tokenize(keyword) or [keyword]
        if all(t in category_tokens for t in keyword_tokens):
            matched.append(keyword)

    score = len(matched) / max(len(normalized), MIN_KEYWORD_DENOMINATOR)
    return min(score, 1.0), matched


# =============================================================================
# Training
# =============================================================================

def score_training(
    budget_category: str,
    evidence: HistoryEvidence,
    keyword_overlap: int,
    config: MatchingConfig = DEFAULT_MATCHING_CONFIG,
) -> TrainingSignal:
    """Score a category from approved history.

    Takes the strongest of three signals:
    - vendor history: 0.9 at the strong-match count, else 0.5 + 0.1 per match
    - keyword patterns: 0.6 for 5+ overlapping records, 0.3 for 2+
    - trade patterns: 0.6 when the category holds 3+ records and at least
      half of the trade's history, 0.3 for any record
    """
    best = TrainingSignal()

    entry = evidence.vendor_history.get(budget_category)
    if entry is not None and entry.match_count > 0:
        if entry.match_count >= config.vendor_strong_match_count:
            score = 0.9
        else:
            score = min(0.5 + 0.1 * entry.match_count, 0.9)
        best = TrainingSignal(
            score=score,
            vendor_matched=True,
            reason=f"Vendor matched to {budget_category} {entry.match_count} time(s)",
        )

    if keyword_overlap >= 5:
        keyword_score = 0.6
    elif keyword_overlap >= 2:
        keyword_score = 0.3
    else:
        keyword_score = 0.0
    if keyword_score > best.score:
        best = TrainingSignal(
            score=keyword_score,
            vendor_matched=best.vendor_matched,
            reason=f"Keywords seen on {keyword_overlap} approved {budget_category} invoices",
        )

    trade_count = evidence.trade_patterns.get(budget_category, 0)
    if trade_count:
        total = sum(evidence.trade_patterns.values())
        share = trade_count / total if total else 0.0
        trade_score = 0.6 if trade_count >= 3 and share >= 0.5 else 0.3
        if trade_score > best.score:
            best = TrainingSignal(
                score=trade_score,
                vendor_matched=best.vendor_matched,
                reason=f"Trade previously approved to {budget_category} {trade_count} time(s)",
            )

    return best


# =============================================================================
# Composite
# =============================================================================

def composite_score(
    scores: Mapping[str, float],
    active_dimensions: Iterable[str],
    config: MatchingConfig = DEFAULT_MATCHING_CONFIG,
) -> float:
    """Weighted sum of dimension scores, normalized to [0, 1].

    Only dimensions in `active_dimensions` count toward the sum and the
    normalizing weight. Amount is always active.
    """
    weights = {
        "amount": config.amount_weight,
        "trade": config.trade_weight,
        "keywords": config.keywords_weight,
        "training": config.training_weight,
    }
    active = set(active_dimensions) | {"amount"}

    total_weight = sum(weights[d] for d in active)
    if total_weight <= 0:
        return 0.0

    weighted = sum(weights[d] * scores.get(d, 0.0) for d in active)
    return max(0.0, min(1.0, weighted / total_weight))
