"""Training capture, vendor associations and corrections."""

import asyncio
from decimal import Decimal

import pytest

from core.observability.metrics import get_metrics
from draw_matching.config import MatchingConfig
from draw_matching.learning import TrainingCapture, determine_match_method
from draw_matching.models import InvoiceRecord, MatchMethod, MatchStatus
from draw_matching.store import (
    DRAW_REQUEST_LINES,
    INVOICES,
    MATCH_DECISIONS,
    TRAINING_RECORDS,
    VENDOR_ASSOCIATIONS,
    InMemoryMatchingStore,
    StoreError,
)


LINES = [
    {"id": "L1", "category": "Electrical", "amount": "12400", "nahb_category": "Electrical", "nahb_subcategory": "Rough-In"},
    {"id": "L2", "category": "Plumbing", "amount": "8000", "nahb_category": "Plumbing"},
    {"id": "L3", "category": "Framing", "amount": "20000"},
]


def _matched_invoice(invoice_id, line_id, category, amount, vendor, status="auto_matched", trade=None, keywords=None):
    return {
        "id": invoice_id,
        "vendor_name": vendor,
        "amount": amount,
        "match_status": status,
        "matched_to_category": category,
        "draw_request_line_id": line_id,
        "confidence_score": 0.93,
        "extracted_data": {"vendor_name": vendor, "amount": amount, "trade": trade, "keywords": keywords or []},
    }


async def _seed_funded_draw(store, seed):
    await seed(store, "D1", LINES, [
        _matched_invoice("INV-1", "L1", "Electrical", "12400", "Bright Spark Electric LLC",
                         trade="Electrical", keywords=["Wire", "panel"]),
        _matched_invoice("INV-2", "L2", "Plumbing", "8000", "Flow Masters Inc.", status="ai_matched"),
        {"id": "INV-3", "vendor_name": "Unplaced Co", "amount": "500", "match_status": "needs_review"},
    ])
    for invoice_id, line_id in (("INV-1", "L1"), ("INV-2", "L2")):
        await store.update(DRAW_REQUEST_LINES, {"id": line_id}, {"invoice_id": invoice_id})


class TestTrainingCapture:

    def test_captures_matched_invoices(self, store, seed):
        async def run():
            await _seed_funded_draw(store, seed)
            result = await TrainingCapture(store).capture_training_data_for_draw("D1")
            records = {r["invoice_id"]: r for r in await store.select(TRAINING_RECORDS)}
            associations = await store.select(VENDOR_ASSOCIATIONS)
            return result, records, associations

        result, records, associations = asyncio.run(run())

        assert result.success
        assert result.invoices_processed == 2
        assert result.training_records_created == 2
        assert result.vendor_associations_updated == 2
        assert result.errors == []
        assert set(records) == {"INV-1", "INV-2"}

        electrical = records["INV-1"]
        assert electrical["vendor_name_normalized"] == "bright spark electric"
        assert electrical["budget_category"] == "Electrical"
        assert electrical["nahb_subcategory"] == "Rough-In"
        assert electrical["trade"] == "electrical"
        assert electrical["keywords"] == ["wire", "panel"]
        assert electrical["match_method"] == "auto"
        assert electrical["was_corrected"] is False
        assert records["INV-2"]["match_method"] == "ai"

        assert {(a["vendor_name_normalized"], a["budget_category"], a["match_count"]) for a in associations} == {
            ("bright spark electric", "Electrical", 1),
            ("flow masters", "Plumbing", 1),
        }

    def test_recapture_is_idempotent(self, store, seed):
        async def run():
            await _seed_funded_draw(store, seed)
            capture = TrainingCapture(store)
            first = await capture.capture_training_data_for_draw("D1")
            second = await capture.capture_training_data_for_draw("D1")
            return first, second, await store.select(TRAINING_RECORDS), await store.select(VENDOR_ASSOCIATIONS)

        first, second, records, associations = asyncio.run(run())

        assert first.training_records_created == 2
        assert second.success
        assert second.training_records_created == 0
        assert second.vendor_associations_updated == 0
        assert len(records) == 2
        assert all(a["match_count"] == 1 for a in associations)

    def test_vendor_history_accumulates_across_draws(self, store, seed):
        async def run():
            capture = TrainingCapture(store)
            for n in range(3):
                draw_id = f"D{n}"
                await seed(store, draw_id, [{"id": f"{draw_id}-L1", "category": "Electrical", "amount": "1000"}], [
                    _matched_invoice(f"{draw_id}-INV", f"{draw_id}-L1", "Electrical", "1000", "Bright Spark Electric"),
                ])
                await capture.capture_training_data_for_draw(draw_id)
            return await store.select(VENDOR_ASSOCIATIONS)

        associations = asyncio.run(run())
        assert len(associations) == 1
        assert associations[0]["match_count"] == 3
        assert Decimal(associations[0]["total_amount"]) == Decimal("3000")

    def test_records_metrics(self, store, seed):
        async def run():
            await _seed_funded_draw(store, seed)
            await TrainingCapture(store).capture_training_data_for_draw("D1")

        asyncio.run(run())
        summary = get_metrics().get_summary()
        assert summary["learning"]["captures"] == 1
        assert summary["learning"]["training_records_created"] == 2

    def test_association_contention_is_retried_by_recapture(self, store, seed):
        # Two attempts and no backoff, so eight concurrent draws exhaust the CAS budget
        capture = TrainingCapture(store, MatchingConfig(association_max_attempts=2, association_retry_delay_seconds=0))
        draw_ids = [f"D{n}" for n in range(8)]

        async def run():
            for draw_id in draw_ids:
                await seed(store, draw_id, [{"id": f"{draw_id}-L1", "category": "Electrical", "amount": "1000"}], [
                    _matched_invoice(f"{draw_id}-INV", f"{draw_id}-L1", "Electrical", "1000", "Bright Spark Electric"),
                ])
            first = await asyncio.gather(*[capture.capture_training_data_for_draw(d) for d in draw_ids])
            second = [await capture.capture_training_data_for_draw(d) for d in draw_ids]
            third = await asyncio.gather(*[capture.capture_training_data_for_draw(d) for d in draw_ids])
            return first, second, third, await store.select(VENDOR_ASSOCIATIONS), await store.select(TRAINING_RECORDS)

        first, second, third, associations, records = asyncio.run(run())

        assert sum(r.training_records_created for r in first) == 8
        assert sum(r.training_records_created for r in second + third) == 0
        assert sum(r.vendor_associations_updated for r in first + second) == 8
        assert all(r.errors == [] for r in second + third)
        assert sum(r.vendor_associations_updated for r in third) == 0
        assert len(associations) == 1
        assert associations[0]["match_count"] == 8
        assert Decimal(associations[0]["total_amount"]) == Decimal("8000")
        assert all(r["association_applied"] for r in records)

    def test_concurrent_recapture_of_one_draw_counts_once(self, store, seed):
        async def run():
            await _seed_funded_draw(store, seed)
            capture = TrainingCapture(store)
            results = await asyncio.gather(
                capture.capture_training_data_for_draw("D1"),
                capture.capture_training_data_for_draw("D1"),
            )
            return results, await store.select(VENDOR_ASSOCIATIONS)

        results, associations = asyncio.run(run())

        assert sum(r.vendor_associations_updated for r in results) == 2
        assert all(a["match_count"] == 1 for a in associations)

    def test_store_error_leaves_association_pending(self, store, seed):
        class FailOnceStore(InMemoryMatchingStore):
            """The first association read fails."""

            def __init__(self):
                super().__init__()
                self.failed = False

            async def select(self, collection, where=None, order_by=None, descending=False, limit=None):
                if collection == VENDOR_ASSOCIATIONS and not self.failed:
                    self.failed = True
                    raise StoreError("connection reset")
                return await super().select(collection, where, order_by, descending, limit)

        flaky = FailOnceStore()
        capture = TrainingCapture(flaky)

        async def run():
            await seed(flaky, "D1", [{"id": "L1", "category": "Electrical", "amount": "12400"}], [
                _matched_invoice("INV-1", "L1", "Electrical", "12400", "Bright Spark Electric LLC"),
            ])
            first = await capture.capture_training_data_for_draw("D1")
            pending = await flaky.select_one(TRAINING_RECORDS, {"invoice_id": "INV-1"})
            second = await capture.capture_training_data_for_draw("D1")
            return first, pending, second, await flaky.select(VENDOR_ASSOCIATIONS)

        first, pending, second, associations = asyncio.run(run())

        assert first.training_records_created == 1
        assert first.vendor_associations_updated == 0
        assert len(first.errors) == 1
        assert pending["association_applied"] is False

        assert second.training_records_created == 0
        assert second.vendor_associations_updated == 1
        assert second.errors == []
        assert len(associations) == 1
        assert associations[0]["match_count"] == 1
        assert Decimal(associations[0]["total_amount"]) == Decimal("12400")


class TestVendorAssociationUpsert:

    def test_concurrent_increments_are_not_lost(self, store):
        capture = TrainingCapture(store)

        async def run():
            results = await asyncio.gather(*[
                capture.upsert_vendor_association("acme lumber", "Framing", None, Decimal("100"))
                for _ in range(4)
            ])
            return results, await store.select(VENDOR_ASSOCIATIONS)

        results, rows = asyncio.run(run())
        assert all(results)
        assert len(rows) == 1
        assert rows[0]["match_count"] == 4
        assert Decimal(rows[0]["total_amount"]) == Decimal("400")

    def test_gives_up_after_max_attempts(self, store):
        class ContendedStore(InMemoryMatchingStore):
            """Every association update loses the compare-and-swap."""

            def __init__(self):
                super().__init__()
                self.update_attempts = 0

            async def update(self, collection, where, values):
                if collection == VENDOR_ASSOCIATIONS:
                    self.update_attempts += 1
                    return 0
                return await super().update(collection, where, values)

        contended = ContendedStore()
        capture = TrainingCapture(contended, MatchingConfig(association_max_attempts=3))

        async def run():
            await capture.upsert_vendor_association("acme lumber", "Framing", None, Decimal("100"))
            return await capture.upsert_vendor_association("acme lumber", "Framing", None, Decimal("100"))

        assert asyncio.run(run()) is False
        assert contended.update_attempts == 3

    def test_fills_in_missing_nahb_category(self, store):
        capture = TrainingCapture(store)

        async def run():
            await capture.upsert_vendor_association("acme lumber", "Framing", None, Decimal("100"))
            await capture.upsert_vendor_association("acme lumber", "Framing", "Framing", Decimal("50"))
            return await store.select_one(VENDOR_ASSOCIATIONS, {"vendor_name_normalized": "acme lumber"})

        row = asyncio.run(run())
        assert row["nahb_category"] == "Framing"
        assert row["match_count"] == 2


class TestMatchCorrection:

    def test_correction_becomes_manual_training(self, store, seed):
        async def run():
            await _seed_funded_draw(store, seed)
            capture = TrainingCapture(store)
            ok = await capture.record_match_correction(
                "INV-1", previous_line_id="L1", new_line_id="L3", reason="Temporary power for framing crew",
                user_id="reviewer-1",
            )
            invoice = await store.get(INVOICES, "INV-1")
            lines = {r["id"]: r for r in await store.select(DRAW_REQUEST_LINES)}
            decisions = await store.select(MATCH_DECISIONS, {"invoice_id": "INV-1"})
            result = await capture.capture_training_data_for_draw("D1")
            record = await store.select_one(TRAINING_RECORDS, {"invoice_id": "INV-1"})
            return ok, invoice, lines, decisions, result, record

        ok, invoice, lines, decisions, result, record = asyncio.run(run())

        assert ok
        assert invoice["match_status"] == MatchStatus.MANUALLY_MATCHED.value
        assert invoice["was_manually_corrected"] is True
        assert invoice["matched_to_category"] == "Framing"
        assert invoice["draw_request_line_id"] == "L3"
        assert lines["L1"]["invoice_id"] is None
        assert lines["L3"]["invoice_id"] == "INV-1"

        assert len(decisions) == 1
        assert decisions[0]["decision_type"] == "manual_override"
        assert decisions[0]["decision_source"] == "user"
        assert decisions[0]["previous_draw_line_id"] == "L1"
        assert decisions[0]["decided_by"] == "reviewer-1"

        assert result.success
        assert record["match_method"] == "manual"
        assert record["was_corrected"] is True
        assert record["budget_category"] == "Framing"

    def test_first_manual_match_is_not_a_correction(self, store, seed):
        async def run():
            await _seed_funded_draw(store, seed)
            capture = TrainingCapture(store)
            ok = await capture.record_match_correction("INV-3", previous_line_id=None, new_line_id="L3")
            decision = await store.select_one(MATCH_DECISIONS, {"invoice_id": "INV-3"})
            invoice = await store.get(INVOICES, "INV-3")
            return ok, decision, invoice

        ok, decision, invoice = asyncio.run(run())
        assert ok
        assert decision["decision_type"] == "manual_initial"
        assert invoice["was_manually_corrected"] is False
        assert invoice["match_status"] == MatchStatus.MANUALLY_MATCHED.value

    def test_taking_a_held_line_displaces_the_holder(self, store, seed):
        async def run():
            await _seed_funded_draw(store, seed)
            ok = await TrainingCapture(store).record_match_correction("INV-3", None, new_line_id="L2")
            return ok, await store.get(INVOICES, "INV-2"), await store.get(DRAW_REQUEST_LINES, "L2")

        ok, displaced, line = asyncio.run(run())
        assert ok
        assert displaced["match_status"] == MatchStatus.NEEDS_REVIEW.value
        assert displaced["draw_request_line_id"] is None
        assert displaced["flags"] == ["LINE_REASSIGNED"]
        assert line["invoice_id"] == "INV-3"

    @pytest.mark.parametrize("invoice_id, line_id", [("INV-404", "L1"), ("INV-1", "L404")])
    def test_unknown_rows_fail_softly(self, store, seed, invoice_id, line_id):
        async def run():
            await _seed_funded_draw(store, seed)
            return await TrainingCapture(store).record_match_correction(invoice_id, None, line_id)

        assert asyncio.run(run()) is False

    def test_malformed_invoice_row_fails_softly(self, store, seed):
        async def run():
            await _seed_funded_draw(store, seed)
            await store.update(INVOICES, {"id": "INV-1"}, {"confidence_score": "very high"})
            ok = await TrainingCapture(store).record_match_correction("INV-1", None, new_line_id="L3")
            return ok, await store.select(MATCH_DECISIONS)

        ok, decisions = asyncio.run(run())
        assert ok is False
        assert decisions == []


class TestDetermineMatchMethod:

    @pytest.mark.parametrize("status, corrected, expected", [
        ("auto_matched", False, MatchMethod.AUTO),
        ("ai_matched", False, MatchMethod.AI),
        ("manually_matched", False, MatchMethod.MANUAL),
        ("needs_review", True, MatchMethod.MANUAL),
        ("needs_review", False, MatchMethod.AUTO),
    ])
    def test_method(self, status, corrected, expected):
        invoice = InvoiceRecord(id="INV-1", match_status=status, was_manually_corrected=corrected)
        assert determine_match_method(invoice) == expected
