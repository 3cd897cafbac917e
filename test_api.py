"""HTTP endpoints, with the engine swapped for one on an in-memory store."""

import asyncio

import pytest
from fastapi.testclient import TestClient

from api.routes.matching import get_engine
from api.server import create_app
from draw_matching.engine import MatchingEngine
from draw_matching.store import (
    DRAW_REQUEST_LINES,
    INVOICES,
    TRAINING_RECORDS,
    VENDOR_ASSOCIATIONS,
    InMemoryMatchingStore,
)


LINES = [
    {"id": "L1", "category": "Electrical", "amount": "12400"},
    {"id": "L2", "category": "Plumbing", "amount": "5000"},
]

INVOICES_ON_DRAW = [
    {"id": "INV-1", "vendor_name": "Bright Spark Electric LLC", "amount": "12400"},
    {"id": "INV-2", "vendor_name": "Flow Masters", "amount": "5000", "extracted_data": {"trade": "plumbing"}},
]


@pytest.fixture
def engine(seed):
    store = InMemoryMatchingStore()
    asyncio.run(seed(store, "D1", LINES, INVOICES_ON_DRAW))
    return MatchingEngine(store)


@pytest.fixture
def client(engine):
    app = create_app()
    app.dependency_overrides[get_engine] = lambda: engine
    return TestClient(app)


EXTRACTED = {"vendor_name": "Bright Spark Electric LLC", "amount": "12,400.00", "trade": "electrical"}


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_metrics(self, client):
        client.post("/invoices/INV-1/match", json={"extracted": EXTRACTED})
        summary = client.get("/metrics").json()
        assert summary["matching"]["invoices_processed"] == 1


class TestMatchingEndpoints:

    def test_match_invoice(self, client, engine):
        response = client.post("/invoices/INV-1/match", json={"extracted": EXTRACTED})

        assert response.status_code == 200
        body = response.json()
        assert body["classification"] == "AUTO_MATCH"
        assert body["match_status"] == "auto_matched"
        assert body["draw_line_id"] == "L1"
        assert body["confidence"] >= 0.9

        invoice = asyncio.run(engine.store.get(INVOICES, "INV-1"))
        assert invoice["matched_to_category"] == "Electrical"

    def test_match_unknown_invoice(self, client):
        response = client.post("/invoices/INV-404/match", json={})
        assert response.status_code == 404

    def test_match_rejects_bad_extraction(self, client):
        response = client.post("/invoices/INV-1/match", json={"extracted": {"amount": "12400", "extraction_confidence": 3}})
        assert response.status_code == 422

    def test_match_draw(self, client):
        response = client.post("/draws/D1/match")
        assert response.status_code == 200
        outcomes = response.json()
        assert {o["invoice_id"] for o in outcomes} == {"INV-1", "INV-2"}

    def test_correction(self, client, engine):
        client.post("/invoices/INV-1/match", json={"extracted": EXTRACTED})
        response = client.post(
            "/invoices/INV-1/correction",
            json={"new_line_id": "L2", "previous_line_id": "L1", "reason": "Wrong line", "user_id": "reviewer-1"},
        )

        assert response.status_code == 200
        assert response.json() == {"success": True, "invoice_id": "INV-1", "draw_line_id": "L2"}
        invoice = asyncio.run(engine.store.get(INVOICES, "INV-1"))
        assert invoice["match_status"] == "manually_matched"
        assert invoice["was_manually_corrected"] is True

    def test_correction_to_unknown_line(self, client):
        response = client.post("/invoices/INV-1/correction", json={"new_line_id": "L404"})
        assert response.status_code == 422

    def test_funded_draw_captures_training_data(self, client, engine):
        client.post("/draws/D1/match")
        response = client.post("/draws/D1/funded")

        assert response.status_code == 202
        assert response.json() == {"draw_id": "D1", "status": "accepted"}
        records = asyncio.run(engine.store.select(TRAINING_RECORDS))
        assert {r["invoice_id"] for r in records} == {"INV-1", "INV-2"}

    def test_coverage(self, client):
        before = client.get("/draws/D1/coverage").json()
        assert before["is_covered"] is False
        assert len(before["uncovered_lines"]) == 2

        client.post("/draws/D1/match")
        after = client.get("/draws/D1/coverage").json()
        assert after["is_covered"] is True
        assert after["uncovered_lines"] == []

    def test_vendor_history(self, client, engine):
        asyncio.run(engine.store.insert(VENDOR_ASSOCIATIONS, {
            "vendor_name_normalized": "bright spark electric",
            "budget_category": "Electrical",
            "match_count": 2,
            "total_amount": "20000",
        }))

        response = client.get("/vendors/history", params={"vendor_name": "Bright Spark Electric, LLC"})

        assert response.status_code == 200
        body = response.json()
        assert body["vendor_name_normalized"] == "bright spark electric"
        assert body["history"]["Electrical"]["match_count"] == 2

    def test_vendor_history_requires_name(self, client):
        assert client.get("/vendors/history").status_code == 422

    def test_lines_are_linked_after_draw_match(self, client, engine):
        client.post("/draws/D1/match")
        lines = asyncio.run(engine.store.select(DRAW_REQUEST_LINES))
        assert {line["id"]: line["invoice_id"] for line in lines} == {"L1": "INV-1", "L2": "INV-2"}
