"""
Entity store contract.

The coordinator persists through this interface only.  Every call is a
coroutine: the caller suspends until the backend answers.  Failures raise
StoreError; a missing record on update/delete is reported as False, not as
an error.

Realizations:
  InMemoryEntityStore   process-local dicts (non-durable; tests, demos)
  SqliteEntityStore     single-file SQLite database (tracker.database)
"""
import copy
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

from .errors import StoreError
from .mapping import ALL_TABLES

logger = logging.getLogger(__name__)


class EntityStore(ABC):
    """CRUD over the three entity tables, always scoped by owner on reads."""

    @abstractmethod
    async def insert(self, table: str, record: dict[str, Any]) -> dict[str, Any]:
        """Persist a new record and return it as stored."""

    @abstractmethod
    async def update(self, table: str, record_id: str, patch: dict[str, Any]) -> bool:
        """Apply *patch* to one record.  Returns False if it does not exist."""

    @abstractmethod
    async def delete(self, table: str, record_id: str) -> bool:
        """Remove one record.  Returns False if it did not exist."""

    @abstractmethod
    async def query_by_owner(self, table: str, owner_id: str) -> list[dict[str, Any]]:
        """Return every record in *table* owned by *owner_id*, oldest first."""

    async def close(self) -> None:
        """Release backend resources.  Default: nothing to release."""

    @staticmethod
    def _check_table(table: str) -> None:
        if table not in ALL_TABLES:
            raise StoreError(f"Unknown table {table!r}", table=table)


class InMemoryEntityStore(EntityStore):
    """
    Dict-backed store.  Records are deep-copied in and out so callers can
    never alias stored state.
    """

    def __init__(self) -> None:
        self._tables: dict[str, dict[str, dict]] = {t: {} for t in ALL_TABLES}

    async def insert(self, table: str, record: dict[str, Any]) -> dict[str, Any]:
        self._check_table(table)
        record_id = record.get("id")
        if not record_id:
            raise StoreError("Record has no id", table=table, operation="insert")
        if record_id in self._tables[table]:
            raise StoreError(
                f"Duplicate id {record_id!r}", table=table, operation="insert"
            )
        stored = copy.deepcopy(record)
        stored["updated_at"] = _now_iso()
        self._tables[table][record_id] = stored
        logger.debug("Inserted %s/%s", table, record_id)
        return copy.deepcopy(stored)

    async def update(self, table: str, record_id: str, patch: dict[str, Any]) -> bool:
        self._check_table(table)
        stored = self._tables[table].get(record_id)
        if stored is None:
            return False
        stored.update(copy.deepcopy(patch))
        stored["updated_at"] = _now_iso()
        logger.debug("Updated %s/%s fields=%s", table, record_id, sorted(patch))
        return True

    async def delete(self, table: str, record_id: str) -> bool:
        self._check_table(table)
        return self._tables[table].pop(record_id, None) is not None

    async def query_by_owner(self, table: str, owner_id: str) -> list[dict[str, Any]]:
        self._check_table(table)
        rows = [r for r in self._tables[table].values() if r.get("user_id") == owner_id]
        rows.sort(key=lambda r: r.get("created_at") or "")
        return copy.deepcopy(rows)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
