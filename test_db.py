"""SQLite store: schema, encoding, conflicts and compare-and-swap."""

import asyncio
import sqlite3
from decimal import Decimal

import pytest

from draw_matching.db import SQLiteMatchingStore, TABLES, init_matching_db
from draw_matching.engine import MatchingEngine
from draw_matching.learning import TrainingCapture
from draw_matching.models import ExtractedInvoiceData, MatchStatus
from draw_matching.store import (
    INVOICES,
    TRAINING_RECORDS,
    VENDOR_ASSOCIATIONS,
    StoreError,
    UniqueViolation,
)


@pytest.fixture
def sqlite_store(tmp_path):
    return SQLiteMatchingStore(tmp_path / "matching.db")


class TestSchema:

    def test_init_creates_every_table(self, tmp_path):
        db_path = tmp_path / "schema.db"
        init_matching_db(db_path)
        init_matching_db(db_path)

        conn = sqlite3.connect(db_path)
        try:
            names = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
        finally:
            conn.close()
        assert set(TABLES) <= names


class TestSQLiteMatchingStore:

    def test_round_trips_json_and_bool_columns(self, sqlite_store):
        async def run():
            await sqlite_store.insert(INVOICES, {
                "id": "INV-1",
                "draw_request_id": "D1",
                "amount": Decimal("12400.50"),
                "extracted_data": {"vendor_name": "Bright Spark", "keywords": ["wire"]},
                "was_manually_corrected": True,
                "flags": ["AI_FLAGGED"],
                "not_a_column": "ignored",
            })
            return await sqlite_store.get(INVOICES, "INV-1")

        row = asyncio.run(run())
        assert row["amount"] == "12400.50"
        assert row["extracted_data"] == {"vendor_name": "Bright Spark", "keywords": ["wire"]}
        assert row["was_manually_corrected"] is True
        assert row["flags"] == ["AI_FLAGGED"]
        assert "not_a_column" not in row

    def test_none_filter_matches_null(self, sqlite_store):
        async def run():
            await sqlite_store.insert(INVOICES, {"id": "INV-1", "draw_request_id": "D1"})
            await sqlite_store.insert(INVOICES, {"id": "INV-2", "draw_request_id": None})
            return await sqlite_store.select(INVOICES, {"draw_request_id": None})

        assert [r["id"] for r in asyncio.run(run())] == ["INV-2"]

    def test_unique_training_record_per_invoice(self, sqlite_store):
        record = {
            "invoice_id": "INV-1",
            "draw_request_id": "D1",
            "approved_at": "2026-01-09T12:00:00+00:00",
            "vendor_name_normalized": "acme lumber",
            "budget_category": "Framing",
            "match_method": "auto",
        }

        async def run():
            await sqlite_store.insert(TRAINING_RECORDS, dict(record))
            await sqlite_store.insert(TRAINING_RECORDS, dict(record))

        with pytest.raises(UniqueViolation) as exc_info:
            asyncio.run(run())
        assert exc_info.value.key == ("invoice_id",)

    def test_not_null_failure_is_not_a_unique_violation(self, sqlite_store):
        record = {
            "draw_request_id": "D1",
            "approved_at": "2026-01-09T12:00:00+00:00",
            "vendor_name_normalized": "acme lumber",
            "budget_category": "Framing",
            "match_method": "auto",
        }

        with pytest.raises(StoreError) as exc_info:
            asyncio.run(sqlite_store.insert(TRAINING_RECORDS, record))
        assert not isinstance(exc_info.value, UniqueViolation)
        assert "NOT NULL" in str(exc_info.value)

    def test_duplicate_id_is_a_unique_violation(self, sqlite_store):
        async def run():
            await sqlite_store.insert(INVOICES, {"id": "INV-1"})
            await sqlite_store.insert(INVOICES, {"id": "INV-1"})

        with pytest.raises(UniqueViolation):
            asyncio.run(run())

    def test_update_is_compare_and_swap(self, sqlite_store):
        key = {"vendor_name_normalized": "acme lumber", "budget_category": "Framing"}

        async def run():
            await sqlite_store.insert(VENDOR_ASSOCIATIONS, {**key, "match_count": 1, "total_amount": "100"})
            first = await sqlite_store.update(VENDOR_ASSOCIATIONS, {**key, "match_count": 1}, {"match_count": 2})
            stale = await sqlite_store.update(VENDOR_ASSOCIATIONS, {**key, "match_count": 1}, {"match_count": 3})
            return first, stale, await sqlite_store.select_one(VENDOR_ASSOCIATIONS, key)

        first, stale, row = asyncio.run(run())
        assert first == 1
        assert stale == 0
        assert row["match_count"] == 2

    def test_upsert_overwrites_on_conflict_keys(self, sqlite_store):
        key = {"vendor_name_normalized": "acme lumber", "budget_category": "Framing"}

        async def run():
            first = await sqlite_store.upsert(VENDOR_ASSOCIATIONS, {**key, "match_count": 1}, list(key))
            second = await sqlite_store.upsert(VENDOR_ASSOCIATIONS, {**key, "match_count": 5}, list(key))
            return first, second, await sqlite_store.select(VENDOR_ASSOCIATIONS)

        first, second, rows = asyncio.run(run())
        assert first["id"] == second["id"]
        assert len(rows) == 1
        assert rows[0]["match_count"] == 5

    def test_order_and_limit(self, sqlite_store):
        async def run():
            for n in (3, 1, 2):
                await sqlite_store.insert(INVOICES, {"id": f"INV-{n}", "candidate_count": n})
            return await sqlite_store.select(INVOICES, order_by="candidate_count", descending=True, limit=2)

        assert [r["id"] for r in asyncio.run(run())] == ["INV-3", "INV-2"]

    def test_unknown_collection(self, sqlite_store):
        with pytest.raises(StoreError):
            asyncio.run(sqlite_store.select("ledger"))

    def test_unknown_filter_column(self, sqlite_store):
        with pytest.raises(StoreError):
            asyncio.run(sqlite_store.select(INVOICES, {"colour": "red"}))


class TestEngineOnSQLite:

    def test_match_then_capture(self, sqlite_store, seed):
        engine = MatchingEngine(sqlite_store)
        capture = TrainingCapture(sqlite_store)

        async def run():
            await seed(sqlite_store, "D1", [{"id": "L1", "category": "Electrical", "amount": "12400"}], [
                {"id": "INV-1", "vendor_name": "Bright Spark Electric LLC", "amount": "12400"},
            ])
            outcome = await engine.match_invoice_by_id(
                "INV-1",
                ExtractedInvoiceData(vendor_name="Bright Spark Electric LLC", amount="12400", trade="electrical"),
            )
            result = await capture.capture_training_data_for_draw("D1")
            again = await capture.capture_training_data_for_draw("D1")
            history = await engine.history.get_vendor_history("BRIGHT SPARK ELECTRIC, LLC")
            record = await sqlite_store.select_one(TRAINING_RECORDS, {"invoice_id": "INV-1"})
            return outcome, result, again, history, record

        outcome, result, again, history, record = asyncio.run(run())

        assert outcome.match_status == MatchStatus.AUTO_MATCHED
        assert result.training_records_created == 1
        assert result.vendor_associations_updated == 1
        assert again.training_records_created == 0
        assert again.vendor_associations_updated == 0
        assert record["association_applied"] is True
        assert history["Electrical"].match_count == 1
        assert history["Electrical"].total_amount == Decimal("12400")
