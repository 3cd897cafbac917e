"""Storage boundary for matching and learning.

The engine talks to persistence only through MatchingStore: a small async
interface over named collections (tables). Two implementations ship:
- InMemoryMatchingStore: dict-backed, used by tests and local tooling
- SQLiteMatchingStore (draw_matching.db): file-backed relational store

Filters are equality matches; a None filter value matches a NULL column.
Uniqueness conflicts surface as UniqueViolation regardless of backend.
"""

import asyncio
import copy
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Tuple


# =============================================================================
# Collections
# =============================================================================

BUDGETS = "budgets"
DRAW_REQUEST_LINES = "draw_request_lines"
INVOICES = "invoices"
MATCH_DECISIONS = "invoice_match_decisions"
TRAINING_RECORDS = "invoice_match_training"
VENDOR_ASSOCIATIONS = "vendor_category_associations"

# Unique keys beyond the primary "id"
UNIQUE_KEYS: Dict[str, List[Tuple[str, ...]]] = {
    TRAINING_RECORDS: [("invoice_id",)],
    VENDOR_ASSOCIATIONS: [("vendor_name_normalized", "budget_category")],
}


# =============================================================================
# Errors
# =============================================================================

class StoreError(Exception):
    """Base class for storage failures."""


class UniqueViolation(StoreError):
    """Insert conflicted with a unique key."""

    def __init__(self, collection: str, key: Sequence[str]):
        self.collection = collection
        self.key = tuple(key)
        super().__init__(f"Unique constraint violated on {collection}({', '.join(self.key)})")


class RecordNotFound(StoreError):
    """A required row does not exist."""

    def __init__(self, collection: str, record_id: str):
        self.collection = collection
        self.record_id = record_id
        super().__init__(f"{collection} row not found: {record_id}")


def new_id() -> str:
    return uuid.uuid4().hex


# =============================================================================
# Interface
# =============================================================================

class MatchingStore(ABC):
    """Async generic store over named collections."""

    @abstractmethod
    async def select(
        self,
        collection: str,
        where: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Return rows matching every filter in `where`."""

    @abstractmethod
    async def insert(self, collection: str, row: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a row (assigning an id if missing). Raises UniqueViolation."""

    @abstractmethod
    async def update(self, collection: str, where: Dict[str, Any], values: Dict[str, Any]) -> int:
        """Update rows matching `where`; returns the number of rows changed.

        Because filters can include the current value of a counter, this is
        also the compare-and-swap primitive.
        """

    @abstractmethod
    async def upsert(
        self, collection: str, row: Dict[str, Any], conflict_keys: Sequence[str]
    ) -> Dict[str, Any]:
        """Insert a row, or overwrite the row sharing `conflict_keys`."""

    async def select_one(self, collection: str, where: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        rows = await self.select(collection, where=where, limit=1)
        return rows[0] if rows else None

    async def get(self, collection: str, record_id: str) -> Dict[str, Any]:
        """Fetch a row by id. Raises RecordNotFound."""
        row = await self.select_one(collection, {"id": record_id})
        if row is None:
            raise RecordNotFound(collection, record_id)
        return row


# =============================================================================
# In-memory implementation
# =============================================================================

def _matches(row: Dict[str, Any], where: Optional[Dict[str, Any]]) -> bool:
    if not where:
        return True
    return all(row.get(key) == value for key, value in where.items())


def _sort_key(column: str):
    def key(row: Dict[str, Any]):
        value = row.get(column)
        return (value is None, value if value is not None else 0)
    return key


class InMemoryMatchingStore(MatchingStore):
    """Dict-backed store.

    Every operation yields to the event loop first, so concurrent callers
    interleave between operations the way they would against a real database.
    """

    def __init__(self, unique_keys: Optional[Dict[str, List[Tuple[str, ...]]]] = None):
        self._tables: Dict[str, List[Dict[str, Any]]] = {}
        self._unique_keys = UNIQUE_KEYS if unique_keys is None else unique_keys

    def _table(self, collection: str) -> List[Dict[str, Any]]:
        return self._tables.setdefault(collection, [])

    def _check_unique(self, collection: str, row: Dict[str, Any], ignore: Optional[Dict[str, Any]] = None):
        for key in [("id",)] + list(self._unique_keys.get(collection, [])):
            values = tuple(row.get(col) for col in key)
            if any(v is None for v in values):
                continue
            for existing in self._table(collection):
                if existing is ignore:
                    continue
                if tuple(existing.get(col) for col in key) == values:
                    raise UniqueViolation(collection, key)

    async def select(self, collection, where=None, order_by=None, descending=False, limit=None):
        await asyncio.sleep(0)
        rows = [r for r in self._table(collection) if _matches(r, where)]
        if order_by:
            rows.sort(key=_sort_key(order_by), reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        return copy.deepcopy(rows)

    async def insert(self, collection, row):
        await asyncio.sleep(0)
        record = copy.deepcopy(row)
        record.setdefault("id", new_id())
        self._check_unique(collection, record)
        self._table(collection).append(record)
        return copy.deepcopy(record)

    async def update(self, collection, where, values):
        await asyncio.sleep(0)
        changed = 0
        for row in self._table(collection):
            if _matches(row, where):
                candidate = {**row, **copy.deepcopy(values)}
                self._check_unique(collection, candidate, ignore=row)
                row.update(copy.deepcopy(values))
                changed += 1
        return changed

    async def upsert(self, collection, row, conflict_keys):
        await asyncio.sleep(0)
        where = {key: row.get(key) for key in conflict_keys}
        for existing in self._table(collection):
            if _matches(existing, where):
                existing.update(copy.deepcopy(row))
                return copy.deepcopy(existing)
        record = copy.deepcopy(row)
        record.setdefault("id", new_id())
        self._check_unique(collection, record)
        self._table(collection).append(record)
        return copy.deepcopy(record)
