"""Draw coverage, exact-amount pairing and NO_INVOICE flags."""

import asyncio
from decimal import Decimal

import pytest

from draw_matching.coverage import (
    FLAG_AMOUNT_MISMATCH,
    FLAG_NO_INVOICE,
    find_exact_amount_matches,
    reconcile_no_invoice_flags,
    validate_coverage,
)
from draw_matching.models import BudgetLine
from draw_matching.store import DRAW_REQUEST_LINES


LINES = [
    BudgetLine(id="L1", budget_category="Electrical", amount_requested="1000"),
    BudgetLine(id="L2", budget_category="Plumbing", amount_requested="500"),
    BudgetLine(id="L3", budget_category="Contingency", amount_requested="0"),
]


class TestValidateCoverage:

    def test_fully_covered(self):
        result = validate_coverage(LINES, {"L1": Decimal("1020"), "L2": Decimal("480")})
        assert result.is_covered
        assert result.total_draw_amount == Decimal("1500")
        assert result.total_invoice_amount == Decimal("1500")
        assert result.uncovered_lines == []
        assert result.flags == []

    def test_missing_invoice(self):
        result = validate_coverage(LINES, {"L1": Decimal("1000")})
        assert not result.is_covered
        assert [u.line_id for u in result.uncovered_lines] == ["L2"]
        assert result.flags == [FLAG_NO_INVOICE]
        assert result.variance == pytest.approx(500 / 1500)

    def test_amount_mismatch(self):
        result = validate_coverage(LINES, {"L1": Decimal("1200"), "L2": Decimal("500")})
        assert FLAG_AMOUNT_MISMATCH in result.flags
        assert not result.is_covered
        assert result.variance_absolute == Decimal("200")

    def test_empty_draw(self):
        result = validate_coverage([], {})
        assert result.is_covered
        assert result.variance == 0.0


class TestFindExactAmountMatches:

    def test_closest_line_wins_and_lines_are_used_once(self):
        lines = [
            BudgetLine(id="L1", budget_category="Framing", amount_requested="1000"),
            BudgetLine(id="L2", budget_category="Roofing", amount_requested="1030"),
        ]
        matches = find_exact_amount_matches([("A", Decimal("1000")), ("B", Decimal("1020"))], lines)
        assert matches == {"B": "L2", "A": "L1"}

    def test_outside_tolerance(self):
        lines = [BudgetLine(id="L1", budget_category="Framing", amount_requested="1000")]
        assert find_exact_amount_matches([("A", Decimal("1100"))], lines) == {}
        assert find_exact_amount_matches([("A", Decimal("1100"))], lines, tolerance=0.10) == {"A": "L1"}


class TestReconcileNoInvoiceFlags:

    def test_flags_follow_line_state(self, store, seed):
        async def run():
            await seed(store, "D1", [
                {"id": "L1", "category": "Electrical", "amount": "1000"},
                {"id": "L2", "category": "Plumbing", "amount": "500"},
                {"id": "L3", "category": "Contingency", "amount": "0"},
            ], [{"id": "INV-1", "amount": "1000"}])
            await store.update(DRAW_REQUEST_LINES, {"id": "L1"}, {"invoice_id": "INV-1"})

            first = await reconcile_no_invoice_flags(store, "D1")
            flagged = {r["id"]: r.get("flags") for r in await store.select(DRAW_REQUEST_LINES)}
            second = await reconcile_no_invoice_flags(store, "D1")

            await store.update(DRAW_REQUEST_LINES, {"id": "L2"}, {"invoice_id": "INV-1"})
            third = await reconcile_no_invoice_flags(store, "D1")
            cleared = await store.get(DRAW_REQUEST_LINES, "L2")
            return first, flagged, second, third, cleared

        first, flagged, second, third, cleared = asyncio.run(run())

        assert first == 1
        assert flagged["L2"] == [FLAG_NO_INVOICE]
        assert flagged["L1"] is None
        assert flagged["L3"] is None
        assert second == 0
        assert third == 1
        assert cleared["flags"] is None

    def test_draw_without_invoices_is_left_alone(self, store, seed):
        async def run():
            await seed(store, "D1", [{"id": "L1", "category": "Electrical", "amount": "1000"}])
            return await reconcile_no_invoice_flags(store, "D1")

        assert asyncio.run(run()) == 0
