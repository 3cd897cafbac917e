"""Draw-level coverage checks and flag reconciliation.

- validate_coverage: do the matched invoices cover what the draw requests?
- find_exact_amount_matches: greedy pairing of invoices to lines by amount
- reconcile_no_invoice_flags: keep NO_INVOICE flags on draw lines current
"""

from decimal import Decimal
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

from core.observability.logging import get_logger
from draw_matching.models import BudgetLine, DecimalValue, parse_string_list
from draw_matching.store import DRAW_REQUEST_LINES, INVOICES, MatchingStore


logger = get_logger(__name__)

FLAG_NO_INVOICE = "NO_INVOICE"
FLAG_AMOUNT_MISMATCH = "AMOUNT_MISMATCH"

DEFAULT_COVERAGE_VARIANCE = 0.10
DEFAULT_EXACT_TOLERANCE = 0.05


class UncoveredLine(BaseModel):
    line_id: str
    budget_category: Optional[str] = None
    amount_requested: DecimalValue


class CoverageValidation(BaseModel):
    """How well matched invoices cover a draw's requested amounts."""
    total_invoice_amount: DecimalValue = Decimal("0")
    total_draw_amount: DecimalValue = Decimal("0")
    variance: float = 0.0
    variance_absolute: DecimalValue = Decimal("0")
    is_covered: bool = False
    uncovered_lines: List[UncoveredLine] = Field(default_factory=list)
    flags: List[str] = Field(default_factory=list)


def validate_coverage(
    lines: Sequence[BudgetLine],
    matched_amounts: Mapping[str, Decimal],
    max_variance: float = DEFAULT_COVERAGE_VARIANCE,
) -> CoverageValidation:
    """Check matched invoice totals against the draw.

    Args:
        lines: Draw lines
        matched_amounts: draw line id -> matched invoice amount
        max_variance: Allowed relative variance per line and overall

    Returns:
        CoverageValidation; covered when the overall variance is within
        max_variance and every line with a requested amount has an invoice
    """
    flags: List[str] = []
    uncovered: List[UncoveredLine] = []
    total_invoice = Decimal("0")
    total_draw = Decimal("0")

    for line in lines:
        requested = line.amount_requested or Decimal("0")
        if requested <= 0:
            continue
        total_draw += requested

        matched = matched_amounts.get(line.id)
        if matched is None:
            uncovered.append(UncoveredLine(
                line_id=line.id,
                budget_category=line.budget_category,
                amount_requested=requested,
            ))
            flags.append(FLAG_NO_INVOICE)
            continue

        matched = Decimal(matched)
        total_invoice += matched
        if abs(matched - requested) / requested > Decimal(str(max_variance)):
            flags.append(FLAG_AMOUNT_MISMATCH)

    variance_absolute = abs(total_invoice - total_draw)
    variance = float(variance_absolute / total_draw) if total_draw > 0 else 0.0

    return CoverageValidation(
        total_invoice_amount=total_invoice,
        total_draw_amount=total_draw,
        variance=variance,
        variance_absolute=variance_absolute,
        is_covered=variance <= max_variance and not uncovered,
        uncovered_lines=uncovered,
        flags=list(dict.fromkeys(flags)),
    )


def find_exact_amount_matches(
    invoices: Sequence[Tuple[str, Decimal]],
    lines: Sequence[BudgetLine],
    tolerance: float = DEFAULT_EXACT_TOLERANCE,
) -> Dict[str, str]:
    """Pair invoices with lines whose requested amount is within tolerance.

    Larger invoices are paired first; each line is used at most once, and
    each invoice takes the closest remaining line.

    Args:
        invoices: (invoice id, amount) pairs
        lines: Draw lines
        tolerance: Max relative variance for a pairing

    Returns:
        invoice id -> draw line id
    """
    matches: Dict[str, str] = {}
    used = set()

    for invoice_id, amount in sorted(invoices, key=lambda item: Decimal(item[1]), reverse=True):
        amount = Decimal(amount)
        best: Optional[Tuple[Decimal, str]] = None
        for line in lines:
            requested = line.amount_requested or Decimal("0")
            if line.id in used or requested <= 0:
                continue
            variance = abs(amount - requested) / requested
            if variance <= Decimal(str(tolerance)) and (best is None or variance < best[0]):
                best = (variance, line.id)
        if best is not None:
            matches[invoice_id] = best[1]
            used.add(best[1])

    return matches


async def reconcile_no_invoice_flags(store: MatchingStore, draw_id: str) -> int:
    """Add or remove NO_INVOICE on a draw's lines.

    Only applies once the draw has at least one invoice. A line needs an
    invoice when it requests a positive amount and nothing is matched to it.

    Returns:
        Number of lines whose flags changed
    """
    invoices = await store.select(INVOICES, {"draw_request_id": draw_id})
    if not invoices:
        return 0

    changed = 0
    for line in await store.select(DRAW_REQUEST_LINES, {"draw_request_id": draw_id}):
        requested = Decimal(str(line.get("amount_requested") or "0"))
        has_invoice = bool(line.get("invoice_id") or line.get("matched_invoice_amount"))
        needs_invoice = requested > 0 and not has_invoice

        flags = parse_string_list(line.get("flags"))
        has_flag = FLAG_NO_INVOICE in flags

        if needs_invoice and not has_flag:
            flags.append(FLAG_NO_INVOICE)
        elif not needs_invoice and has_flag:
            flags = [f for f in flags if f != FLAG_NO_INVOICE]
        else:
            continue

        await store.update(DRAW_REQUEST_LINES, {"id": line["id"]}, {"flags": flags or None})
        changed += 1

    if changed:
        logger.info("Reconciled NO_INVOICE flags", extra_fields={"draw_id": draw_id, "lines_changed": changed})
    return changed
