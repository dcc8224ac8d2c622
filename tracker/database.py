"""
SQLite realization of the entity store.

One database file (output/tracker.db) holds the three entity tables plus an
audit log:

  purchase_orders   PO header + items JSON array + attachment reference
  requirements      requirement header + selected_items JSON array
  supply_history    append-only supply ledger (one row per supply event)
  audit_log         one row per insert / update / delete, for traceability

Every public method is a coroutine; the blocking sqlite3 work runs in a
worker thread with its own short-lived connection, so the event loop never
blocks on disk I/O.  sqlite3 errors are re-raised as StoreError.
"""
import asyncio
import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from .errors import StoreError
from .mapping import TABLE_PURCHASE_ORDERS, TABLE_REQUIREMENTS, TABLE_SUPPLY_HISTORY
from .store import EntityStore

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS purchase_orders (
    id                  TEXT PRIMARY KEY,
    user_id             TEXT NOT NULL,
    po_number           TEXT NOT NULL,
    po_date             TEXT,
    area_of_application TEXT,

    -- JSON array: [{material_name, quantity, balance_qty, unit}, …]
    items               TEXT NOT NULL DEFAULT '[]',

    -- Attachment reference (opaque to the store)
    pdf_file_url        TEXT,
    pdf_file_name       TEXT,
    pdf_file_path       TEXT,

    created_at          TEXT NOT NULL,
    updated_at          TEXT
);

CREATE INDEX IF NOT EXISTS idx_po_user      ON purchase_orders (user_id);
CREATE INDEX IF NOT EXISTS idx_po_number    ON purchase_orders (po_number);

CREATE TABLE IF NOT EXISTS requirements (
    id                  TEXT PRIMARY KEY,
    user_id             TEXT NOT NULL,
    po_number           TEXT NOT NULL,
    area_of_application TEXT,
    delivery_date       TEXT NOT NULL,
    priority            TEXT NOT NULL,
    status              TEXT NOT NULL,
    notes               TEXT,

    -- JSON array: [{material_name, quantity_required, quantity_supplied, unit}, …]
    selected_items      TEXT NOT NULL DEFAULT '[]',

    created_at          TEXT NOT NULL,
    updated_at          TEXT
);

CREATE INDEX IF NOT EXISTS idx_req_user     ON requirements (user_id);
CREATE INDEX IF NOT EXISTS idx_req_po       ON requirements (po_number);

CREATE TABLE IF NOT EXISTS supply_history (
    id                  TEXT PRIMARY KEY,
    user_id             TEXT NOT NULL,
    req_id              TEXT NOT NULL,
    po_number           TEXT,
    material_name       TEXT NOT NULL,
    quantity            INTEGER NOT NULL,
    date                TEXT NOT NULL,
    notes               TEXT,
    created_at          TEXT NOT NULL,
    updated_at          TEXT
);

CREATE INDEX IF NOT EXISTS idx_supply_user  ON supply_history (user_id);
CREATE INDEX IF NOT EXISTS idx_supply_req   ON supply_history (req_id);

CREATE TABLE IF NOT EXISTS audit_log (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    table_name  TEXT    NOT NULL,
    record_id   TEXT    NOT NULL,
    timestamp   TEXT    NOT NULL,   -- ISO-8601 UTC
    action      TEXT    NOT NULL,   -- inserted | updated | deleted
    actor       TEXT    NOT NULL DEFAULT 'system',  -- owning user id
    detail      TEXT                -- JSON: changed column names
);

CREATE INDEX IF NOT EXISTS idx_audit_record    ON audit_log (record_id);
CREATE INDEX IF NOT EXISTS idx_audit_actor     ON audit_log (actor);
CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_log (timestamp DESC);
"""

# Writable columns per table (keys of incoming records are checked against these
# before being interpolated into SQL)
_COLUMNS: dict[str, frozenset[str]] = {
    TABLE_PURCHASE_ORDERS: frozenset({
        "id", "user_id", "po_number", "po_date", "area_of_application", "items",
        "pdf_file_url", "pdf_file_name", "pdf_file_path", "created_at", "updated_at",
    }),
    TABLE_REQUIREMENTS: frozenset({
        "id", "user_id", "po_number", "area_of_application", "delivery_date",
        "priority", "status", "notes", "selected_items", "created_at", "updated_at",
    }),
    TABLE_SUPPLY_HISTORY: frozenset({
        "id", "user_id", "req_id", "po_number", "material_name", "quantity",
        "date", "notes", "created_at", "updated_at",
    }),
}

_JSON_COLUMNS = {"items", "selected_items"}


class SqliteEntityStore(EntityStore):
    """Entity store backed by a single SQLite file."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    @contextmanager
    def _conn(self):
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._conn() as conn:
            conn.executescript(_SCHEMA)
        logger.debug("Database schema ready: %s", self.db_path)

    async def _run(self, operation: str, table: str, fn, *args):
        self._check_table(table)
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.Error as exc:
            logger.error("SQLite %s on %s failed: %s", operation, table, exc)
            raise StoreError(
                f"{operation} on {table} failed: {exc}", table=table, operation=operation
            ) from exc

    # ------------------------------------------------------------------
    # EntityStore API
    # ------------------------------------------------------------------

    async def insert(self, table: str, record: dict[str, Any]) -> dict[str, Any]:
        return await self._run("insert", table, self._insert_sync, table, record)

    async def update(self, table: str, record_id: str, patch: dict[str, Any]) -> bool:
        return await self._run("update", table, self._update_sync, table, record_id, patch)

    async def delete(self, table: str, record_id: str) -> bool:
        return await self._run("delete", table, self._delete_sync, table, record_id)

    async def query_by_owner(self, table: str, owner_id: str) -> list[dict[str, Any]]:
        return await self._run("query", table, self._query_sync, table, owner_id)

    # ------------------------------------------------------------------
    # Write operations (worker thread)
    # ------------------------------------------------------------------

    def _insert_sync(self, table: str, record: dict[str, Any]) -> dict[str, Any]:
        if not record.get("id"):
            raise StoreError("Record has no id", table=table, operation="insert")
        row = dict(record)
        row["updated_at"] = _now_iso()
        _check_columns(table, row)

        cols = list(row)
        placeholders = ", ".join(f":{c}" for c in cols)
        with self._conn() as conn:
            try:
                conn.execute(
                    f"INSERT INTO {table} ({', '.join(cols)}) VALUES ({placeholders})",
                    _encode(row),
                )
            except sqlite3.IntegrityError as exc:
                raise StoreError(
                    f"Cannot insert {table}/{row['id']}: {exc}",
                    table=table, operation="insert",
                ) from exc
            self._log_audit(conn, table, row["id"], "inserted", row.get("user_id"), sorted(cols))

        logger.info("DB inserted: %s/%s", table, row["id"])
        return row

    def _update_sync(self, table: str, record_id: str, patch: dict[str, Any]) -> bool:
        fields = {k: v for k, v in patch.items() if k != "id"}
        fields["updated_at"] = _now_iso()
        _check_columns(table, fields)

        assignments = ", ".join(f"{c} = :{c}" for c in fields)
        params = _encode(fields)
        params["__id"] = record_id
        with self._conn() as conn:
            conn.execute(f"UPDATE {table} SET {assignments} WHERE id = :__id", params)
            changed = conn.execute("SELECT changes()").fetchone()[0]
            if changed:
                owner = _owner_of(conn, table, record_id)
                self._log_audit(
                    conn, table, record_id, "updated", owner, sorted(k for k in patch if k != "id")
                )

        if changed:
            logger.info("DB updated: %s/%s  fields=%s", table, record_id, sorted(patch))
        else:
            logger.warning("DB update matched no row: %s/%s", table, record_id)
        return changed > 0

    def _delete_sync(self, table: str, record_id: str) -> bool:
        with self._conn() as conn:
            owner = _owner_of(conn, table, record_id)
            conn.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            changed = conn.execute("SELECT changes()").fetchone()[0]
            if changed:
                self._log_audit(conn, table, record_id, "deleted", owner, None)

        if changed:
            logger.info("DB deleted: %s/%s", table, record_id)
        return changed > 0

    @staticmethod
    def _log_audit(
        conn: sqlite3.Connection,
        table: str,
        record_id: str,
        action: str,
        actor: Optional[str],
        detail: Optional[list],
    ) -> None:
        """Append one entry to the audit log inside the caller's transaction."""
        conn.execute(
            """INSERT INTO audit_log (table_name, record_id, timestamp, action, actor, detail)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                table,
                record_id,
                _now_iso(),
                action,
                actor or "system",
                json.dumps({"fields": detail}) if detail is not None else None,
            ),
        )

    # ------------------------------------------------------------------
    # Read operations (worker thread)
    # ------------------------------------------------------------------

    def _query_sync(self, table: str, owner_id: str) -> list[dict[str, Any]]:
        with self._conn() as conn:
            rows = conn.execute(
                f"SELECT * FROM {table} WHERE user_id = ? ORDER BY created_at ASC, rowid ASC",
                (owner_id,),
            ).fetchall()
        return [_decode(dict(r)) for r in rows]

    def get_audit_log(self, record_id: str) -> list[dict]:
        """Return all audit entries for one record, oldest first."""
        with self._conn() as conn:
            rows = conn.execute(
                """SELECT id, table_name, record_id, timestamp, action, actor, detail
                   FROM audit_log WHERE record_id = ?
                   ORDER BY timestamp ASC, id ASC""",
                (record_id,),
            ).fetchall()
        return [dict(r) for r in rows]

    def get_recent_audit_log(self, owner_id: str, limit: int = 200, offset: int = 0) -> list[dict]:
        """Return recent audit entries for one owner, newest first."""
        with self._conn() as conn:
            rows = conn.execute(
                """SELECT id, table_name, record_id, timestamp, action, actor, detail
                   FROM audit_log WHERE actor = ?
                   ORDER BY timestamp DESC, id DESC
                   LIMIT ? OFFSET ?""",
                (owner_id, limit, offset),
            ).fetchall()
        return [dict(r) for r in rows]

    def get_counts(self) -> dict[str, int]:
        """Row counts per entity table, across all owners."""
        with self._conn() as conn:
            return {
                t: conn.execute(f"SELECT COUNT(*) FROM {t}").fetchone()[0]
                for t in _COLUMNS
            }


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------

def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _check_columns(table: str, row: dict[str, Any]) -> None:
    unknown = set(row) - _COLUMNS[table]
    if unknown:
        raise StoreError(
            f"Unknown columns for {table}: {sorted(unknown)}", table=table
        )


def _owner_of(conn: sqlite3.Connection, table: str, record_id: str) -> Optional[str]:
    row = conn.execute(f"SELECT user_id FROM {table} WHERE id = ?", (record_id,)).fetchone()
    return row["user_id"] if row else None


def _encode(row: dict[str, Any]) -> dict[str, Any]:
    return {
        k: json.dumps(v) if k in _JSON_COLUMNS and v is not None else v
        for k, v in row.items()
    }


def _decode(row: dict[str, Any]) -> dict[str, Any]:
    for col in _JSON_COLUMNS:
        if col in row and isinstance(row[col], str):
            try:
                row[col] = json.loads(row[col])
            except json.JSONDecodeError:
                logger.warning("Corrupt JSON in column %s of %s", col, row.get("id"))
                row[col] = []
    return row
