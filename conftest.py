"""Shared fixtures: seeded stores and a scripted selection model."""

import asyncio
import json
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional

import pytest

from core.observability.metrics import MetricsCollector
from draw_matching.store import (
    BUDGETS,
    DRAW_REQUEST_LINES,
    INVOICES,
    InMemoryMatchingStore,
)


class FakeSelectionModel:
    """SelectionModel returning a scripted response and counting calls."""

    def __init__(self, response: Any = None, delay: float = 0.0, error: Optional[Exception] = None):
        self.response = response
        self.delay = delay
        self.error = error
        self.calls = 0
        self.prompts = []

    async def complete(self, system_prompt: str, user_prompt: str) -> Optional[str]:
        self.calls += 1
        self.prompts.append(user_prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if isinstance(self.response, dict):
            return json.dumps(self.response)
        return self.response


async def seed_draw(
    store,
    draw_id: str,
    lines: Iterable[Dict[str, Any]] = (),
    invoices: Iterable[Dict[str, Any]] = (),
) -> None:
    """Insert the lines of a draw (one budget each) and its invoices.

    Line dicts: id, category, amount, and optionally nahb_category,
    nahb_subcategory. Invoice dicts are stored as given, with defaults for
    draw_request_id and match_status.
    """
    for line in lines:
        budget_id = f"B-{line['id']}"
        await store.insert(BUDGETS, {
            "id": budget_id,
            "category": line["category"],
            "nahb_category": line.get("nahb_category"),
            "nahb_subcategory": line.get("nahb_subcategory"),
        })
        await store.insert(DRAW_REQUEST_LINES, {
            "id": line["id"],
            "draw_request_id": draw_id,
            "budget_id": budget_id,
            "amount_requested": str(Decimal(str(line["amount"]))),
        })

    for invoice in invoices:
        row = {"draw_request_id": draw_id, "match_status": "pending", **invoice}
        if row.get("amount") is not None:
            row["amount"] = str(row["amount"])
        await store.insert(INVOICES, row)


@pytest.fixture(autouse=True)
def fresh_metrics():
    MetricsCollector.reset()
    yield
    MetricsCollector.reset()


@pytest.fixture
def store():
    return InMemoryMatchingStore()


@pytest.fixture
def seed():
    return seed_draw


@pytest.fixture
def make_model():
    return FakeSelectionModel
