"""SQLite storage for matching and learning.

This module handles the relational side of the MatchingStore interface:
- Schema initialization for every collection the engine uses
- Row encoding (JSON columns, booleans, Decimals as text)
- Translation of sqlite3.IntegrityError into UniqueViolation

Each call opens its own short-lived connection and runs in a worker thread,
so the event loop never blocks on disk I/O.
"""

import asyncio
import json
import sqlite3
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from core.observability.logging import get_logger
from draw_matching.config import DEFAULT_DB_PATH
from draw_matching.store import (
    BUDGETS,
    DRAW_REQUEST_LINES,
    INVOICES,
    MATCH_DECISIONS,
    TRAINING_RECORDS,
    VENDOR_ASSOCIATIONS,
    MatchingStore,
    StoreError,
    UniqueViolation,
    new_id,
)


logger = get_logger(__name__)


# =============================================================================
# Schema
# =============================================================================

@dataclass(frozen=True)
class TableSpec:
    columns: Tuple[Tuple[str, str], ...]
    json_columns: frozenset = frozenset()
    bool_columns: frozenset = frozenset()
    unique: Tuple[Tuple[str, ...], ...] = ()
    indexes: Tuple[Tuple[str, ...], ...] = ()
    column_names: frozenset = field(init=False)

    def __post_init__(self):
        object.__setattr__(self, "column_names", frozenset(name for name, _ in self.columns))


TABLES: Dict[str, TableSpec] = {
    BUDGETS: TableSpec(
        columns=(
            ("id", "TEXT PRIMARY KEY"),
            ("project_id", "TEXT"),
            ("category", "TEXT"),
            ("nahb_category", "TEXT"),
            ("nahb_subcategory", "TEXT"),
            ("cost_code", "TEXT"),
            ("original_amount", "TEXT"),
        ),
    ),
    DRAW_REQUEST_LINES: TableSpec(
        columns=(
            ("id", "TEXT PRIMARY KEY"),
            ("draw_request_id", "TEXT"),
            ("budget_id", "TEXT"),
            ("amount_requested", "TEXT"),
            ("invoice_id", "TEXT"),
            ("matched_invoice_amount", "TEXT"),
            ("invoice_vendor_name", "TEXT"),
            ("confidence_score", "REAL"),
            ("variance", "TEXT"),
            ("flags", "TEXT"),
        ),
        json_columns=frozenset({"flags"}),
        indexes=(("draw_request_id",),),
    ),
    INVOICES: TableSpec(
        columns=(
            ("id", "TEXT PRIMARY KEY"),
            ("draw_request_id", "TEXT"),
            ("vendor_name", "TEXT"),
            ("amount", "TEXT"),
            ("extracted_data", "TEXT"),
            ("match_status", "TEXT"),
            ("matched_to_category", "TEXT"),
            ("matched_to_nahb_code", "TEXT"),
            ("draw_request_line_id", "TEXT"),
            ("confidence_score", "REAL"),
            ("candidate_count", "INTEGER"),
            ("was_manually_corrected", "INTEGER"),
            ("flags", "TEXT"),
        ),
        json_columns=frozenset({"extracted_data", "flags"}),
        bool_columns=frozenset({"was_manually_corrected"}),
        indexes=(("draw_request_id",),),
    ),
    MATCH_DECISIONS: TableSpec(
        columns=(
            ("id", "TEXT PRIMARY KEY"),
            ("invoice_id", "TEXT NOT NULL"),
            ("draw_request_line_id", "TEXT"),
            ("decision_type", "TEXT NOT NULL"),
            ("decision_source", "TEXT NOT NULL"),
            ("decided_by", "TEXT"),
            ("decided_at", "TEXT NOT NULL"),
            ("candidates", "TEXT"),
            ("selected_draw_line_id", "TEXT"),
            ("selected_confidence", "REAL"),
            ("selection_factors", "TEXT"),
            ("ai_reasoning", "TEXT"),
            ("flags", "TEXT"),
            ("previous_draw_line_id", "TEXT"),
            ("correction_reason", "TEXT"),
        ),
        json_columns=frozenset({"candidates", "selection_factors", "flags"}),
        indexes=(("invoice_id", "decided_at"),),
    ),
    TRAINING_RECORDS: TableSpec(
        columns=(
            ("id", "TEXT PRIMARY KEY"),
            ("invoice_id", "TEXT NOT NULL"),
            ("draw_request_id", "TEXT NOT NULL"),
            ("approved_at", "TEXT NOT NULL"),
            ("vendor_name_normalized", "TEXT NOT NULL"),
            ("amount", "TEXT"),
            ("context", "TEXT"),
            ("keywords", "TEXT"),
            ("trade", "TEXT"),
            ("work_type", "TEXT"),
            ("budget_category", "TEXT NOT NULL"),
            ("nahb_category", "TEXT"),
            ("nahb_subcategory", "TEXT"),
            ("match_method", "TEXT NOT NULL"),
            ("confidence_at_match", "REAL"),
            ("was_corrected", "INTEGER"),
            ("association_applied", "INTEGER NOT NULL DEFAULT 0"),
        ),
        json_columns=frozenset({"keywords"}),
        bool_columns=frozenset({"was_corrected", "association_applied"}),
        unique=(("invoice_id",),),
        indexes=(("budget_category", "approved_at"), ("trade",), ("vendor_name_normalized",)),
    ),
    VENDOR_ASSOCIATIONS: TableSpec(
        columns=(
            ("id", "TEXT PRIMARY KEY"),
            ("vendor_name_normalized", "TEXT NOT NULL"),
            ("budget_category", "TEXT NOT NULL"),
            ("nahb_category", "TEXT"),
            ("match_count", "INTEGER NOT NULL DEFAULT 0"),
            ("total_amount", "TEXT"),
            ("last_matched_at", "TEXT"),
        ),
        unique=(("vendor_name_normalized", "budget_category"),),
    ),
}


def init_matching_db(db_path: Path = DEFAULT_DB_PATH) -> None:
    """Initialize every matching table.

    Args:
        db_path: Path to SQLite database file
    """
    conn = sqlite3.connect(db_path)
    try:
        cursor = conn.cursor()
        for name, spec in TABLES.items():
            column_sql = [f"{col} {col_type}" for col, col_type in spec.columns]
            column_sql.extend(f"UNIQUE({', '.join(key)})" for key in spec.unique)
            cursor.execute(f"CREATE TABLE IF NOT EXISTS {name} ({', '.join(column_sql)})")

            for key in spec.indexes:
                index_name = f"idx_{name}_{'_'.join(key)}"
                cursor.execute(f"CREATE INDEX IF NOT EXISTS {index_name} ON {name}({', '.join(key)})")

        conn.commit()
        logger.info("Matching tables initialized", extra_fields={"db_path": str(db_path)})
    finally:
        conn.close()


# =============================================================================
# Row Encoding
# =============================================================================

def _encode_value(spec: TableSpec, column: str, value: Any) -> Any:
    if value is None:
        return None
    if column in spec.json_columns:
        return json.dumps(value, default=str)
    if column in spec.bool_columns:
        return 1 if value else 0
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, bool):
        return 1 if value else 0
    if hasattr(value, "isoformat"):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    return value


def _decode_row(spec: TableSpec, row: sqlite3.Row) -> Dict[str, Any]:
    data = dict(row)
    for column in spec.json_columns:
        if data.get(column) is not None:
            data[column] = json.loads(data[column])
    for column in spec.bool_columns:
        if data.get(column) is not None:
            data[column] = bool(data[column])
    return data


# =============================================================================
# Store
# =============================================================================

class SQLiteMatchingStore(MatchingStore):
    """MatchingStore backed by a SQLite file.

    Usage:
        store = SQLiteMatchingStore(Path("draw_matching.db"))
        rows = await store.select("invoices", {"draw_request_id": "DRAW-7"})
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH, initialize: bool = True):
        self.db_path = Path(db_path)
        if initialize:
            init_matching_db(self.db_path)

    def _spec(self, collection: str) -> TableSpec:
        try:
            return TABLES[collection]
        except KeyError:
            raise StoreError(f"Unknown collection: {collection}") from None

    def _columns(self, spec: TableSpec, collection: str, row: Dict[str, Any]) -> List[str]:
        unknown = set(row) - spec.column_names
        if unknown:
            logger.debug(
                "Ignoring columns not in schema",
                extra_fields={"collection": collection, "columns": sorted(unknown)},
            )
        return [col for col in row if col in spec.column_names]

    def _where_sql(self, spec: TableSpec, where: Optional[Dict[str, Any]]) -> Tuple[str, List[Any]]:
        if not where:
            return "", []
        clauses, params = [], []
        for column, value in where.items():
            if column not in spec.column_names:
                raise StoreError(f"Unknown filter column: {column}")
            if value is None:
                clauses.append(f"{column} IS NULL")
            else:
                clauses.append(f"{column} = ?")
                params.append(_encode_value(spec, column, value))
        return " WHERE " + " AND ".join(clauses), params

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def _raise_conflict(self, collection: str, spec: TableSpec, error: sqlite3.IntegrityError):
        # e.g. "UNIQUE constraint failed: invoice_match_training.invoice_id"
        message = str(error)
        if not message.startswith(("UNIQUE constraint failed", "PRIMARY KEY")):
            raise StoreError(message) from error

        _, _, detail = message.partition(":")
        columns = {part.strip().rsplit(".", 1)[-1] for part in detail.split(",") if part.strip()}
        for key in spec.unique:
            if set(key) == columns:
                raise UniqueViolation(collection, key) from error
        raise UniqueViolation(collection, ("id",)) from error

    # -------------------------------------------------------------------------
    # Synchronous operations (run in a worker thread)
    # -------------------------------------------------------------------------

    def _select_sync(self, collection, where, order_by, descending, limit):
        spec = self._spec(collection)
        where_sql, params = self._where_sql(spec, where)
        sql = f"SELECT * FROM {collection}{where_sql}"
        if order_by:
            if order_by not in spec.column_names:
                raise StoreError(f"Unknown order column: {order_by}")
            sql += f" ORDER BY {order_by} {'DESC' if descending else 'ASC'}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))

        conn = self._connect()
        try:
            return [_decode_row(spec, row) for row in conn.execute(sql, params).fetchall()]
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e
        finally:
            conn.close()

    def _insert_sync(self, collection, row):
        spec = self._spec(collection)
        record = dict(row)
        record.setdefault("id", new_id())
        columns = self._columns(spec, collection, record)
        placeholders = ", ".join("?" for _ in columns)
        sql = f"INSERT INTO {collection} ({', '.join(columns)}) VALUES ({placeholders})"

        conn = self._connect()
        try:
            conn.execute(sql, [_encode_value(spec, col, record[col]) for col in columns])
            conn.commit()
        except sqlite3.IntegrityError as e:
            self._raise_conflict(collection, spec, e)
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e
        finally:
            conn.close()
        return {col: record[col] for col in columns}

    def _update_sync(self, collection, where, values):
        spec = self._spec(collection)
        columns = self._columns(spec, collection, values)
        if not columns:
            return 0
        where_sql, where_params = self._where_sql(spec, where)
        set_sql = ", ".join(f"{col} = ?" for col in columns)
        params = [_encode_value(spec, col, values[col]) for col in columns] + where_params

        conn = self._connect()
        try:
            cursor = conn.execute(f"UPDATE {collection} SET {set_sql}{where_sql}", params)
            conn.commit()
            return cursor.rowcount
        except sqlite3.IntegrityError as e:
            self._raise_conflict(collection, spec, e)
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e
        finally:
            conn.close()

    def _upsert_sync(self, collection, row, conflict_keys):
        spec = self._spec(collection)
        record = dict(row)
        where_sql, where_params = self._where_sql(spec, {k: record.get(k) for k in conflict_keys})

        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            existing = conn.execute(f"SELECT * FROM {collection}{where_sql} LIMIT 1", where_params).fetchone()
            if existing is not None:
                columns = [c for c in self._columns(spec, collection, record) if c != "id"]
                if columns:
                    set_sql = ", ".join(f"{col} = ?" for col in columns)
                    conn.execute(
                        f"UPDATE {collection} SET {set_sql} WHERE id = ?",
                        [_encode_value(spec, col, record[col]) for col in columns] + [existing["id"]],
                    )
                merged = _decode_row(spec, existing)
                merged.update({col: record[col] for col in columns})
            else:
                record.setdefault("id", new_id())
                columns = self._columns(spec, collection, record)
                placeholders = ", ".join("?" for _ in columns)
                conn.execute(
                    f"INSERT INTO {collection} ({', '.join(columns)}) VALUES ({placeholders})",
                    [_encode_value(spec, col, record[col]) for col in columns],
                )
                merged = {col: record[col] for col in columns}
            conn.commit()
            return merged
        except sqlite3.IntegrityError as e:
            conn.rollback()
            self._raise_conflict(collection, spec, e)
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(str(e)) from e
        finally:
            conn.close()

    # -------------------------------------------------------------------------
    # Async interface
    # -------------------------------------------------------------------------

    async def select(self, collection, where=None, order_by=None, descending=False, limit=None):
        return await asyncio.to_thread(self._select_sync, collection, where, order_by, descending, limit)

    async def insert(self, collection, row):
        return await asyncio.to_thread(self._insert_sync, collection, row)

    async def update(self, collection, where, values):
        return await asyncio.to_thread(self._update_sync, collection, where, values)

    async def upsert(self, collection: str, row: Dict[str, Any], conflict_keys: Sequence[str]):
        return await asyncio.to_thread(self._upsert_sync, collection, row, conflict_keys)
