"""
Stratum storage backends -- the contract both engines implement.

Two implementations sit behind ``StorageBackend``:

- ``SQLiteBackend`` (sqlite_backend.py): durable, transactional, FTS5 index.
- ``InMemoryBackend`` (below): process-local tables used when the sqlite3
  driver is missing or the database cannot be opened. No durability, no
  transactions, no full-text index.

Call sites describe writes and reads as explicit commands (``Insert``,
``Delete``, ``Select``) instead of SQL text, so the fallback never has to
parse statements back out of strings.

Persistence is write-behind: the manager's in-memory tiers are the system of
record for the running process and the backend is best-effort durability.
Do not turn backend failures into caller-visible exceptions in the manager.
"""

import importlib
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from enum import Enum
from typing import Any, Dict, Iterator, List, NamedTuple, Optional, Sequence, Tuple

from stratum.errors import BackendError, IndexUnavailableError

logger = logging.getLogger("stratum.backend")

MEMORIES_TABLE = "memories"
FTS_TABLE = "memories_fts"
META_TABLE = "memory_meta"
SESSION_DELTAS_TABLE = "session_deltas"
SCHEMA_VERSION = 2

# Key column per logical table; Insert is an upsert on this column.
TABLE_KEYS = {
    MEMORIES_TABLE: "id",
    SESSION_DELTAS_TABLE: "session_id",
    META_TABLE: "key",
}

MEMORY_COLUMNS = (
    "id",
    "tier",
    "content",
    "type",
    "timestamp",
    "metadata",
    "embedding",
    "hash",
    "created_at",
    "updated_at",
)


# ---------------------------------------------------------------------------
# Driver loader -- imported once, remembered as a tri-state
# ---------------------------------------------------------------------------


class DriverState(Enum):
    UNCHECKED = "unchecked"
    FOUND = "found"
    NOT_FOUND = "not_found"


_DRIVER_MODULE = "sqlite3"
_driver_state = DriverState.UNCHECKED
_driver = None


def load_sqlite_driver():
    """Return the sqlite3 module, or None if this interpreter lacks it.

    The import is attempted at most once per process; the outcome is cached
    so a missing driver is not retried on every manager construction.
    """
    global _driver_state, _driver
    if _driver_state is DriverState.FOUND:
        return _driver
    if _driver_state is DriverState.NOT_FOUND:
        return None
    try:
        _driver = importlib.import_module(_DRIVER_MODULE)
        _driver_state = DriverState.FOUND
    except ImportError as e:
        logger.info("sqlite3 driver not available (%s), durable backend disabled", e)
        _driver = None
        _driver_state = DriverState.NOT_FOUND
    return _driver


def driver_state() -> DriverState:
    return _driver_state


def reset_driver_state() -> None:
    """Forget the import result (test isolation)."""
    global _driver_state, _driver
    _driver_state = DriverState.UNCHECKED
    _driver = None


# ---------------------------------------------------------------------------
# Statement commands
# ---------------------------------------------------------------------------


class Insert(NamedTuple):
    """Upsert ``row`` into ``table`` keyed by the table's key column."""
    table: str
    row: Dict[str, Any]


class Delete(NamedTuple):
    """Delete the row with ``key`` from ``table``; all rows when key is None."""
    table: str
    key: Optional[str] = None


class Select(NamedTuple):
    """Read rows from ``table``.

    ``where`` maps column -> value (equality) or column -> tuple/list of
    values (membership).
    """
    table: str
    where: Optional[Dict[str, Any]] = None
    order_by: Optional[str] = None
    descending: bool = False
    limit: Optional[int] = None


def key_column(table: str) -> str:
    try:
        return TABLE_KEYS[table]
    except KeyError:
        raise BackendError(f"Unknown table: {table}") from None


def _matches(row: Dict[str, Any], where: Optional[Dict[str, Any]]) -> bool:
    if not where:
        return True
    for column, expected in where.items():
        value = row.get(column)
        if isinstance(expected, (tuple, list, set, frozenset)):
            if value not in expected:
                return False
        elif value != expected:
            return False
    return True


# ---------------------------------------------------------------------------
# StorageBackend interface
# ---------------------------------------------------------------------------


class StorageBackend(ABC):
    """Minimal statement surface the MemoryManager relies on."""

    name = "abstract"
    durable = False
    supports_transactions = False

    def __init__(self):
        self.fts_available = False
        self.fts_error: Optional[str] = None

    @abstractmethod
    def ensure_schema(self) -> None:
        """Create tables and indexes if missing. Idempotent."""

    @abstractmethod
    def execute(self, command) -> int:
        """Run an Insert or Delete. Returns the number of rows changed."""

    @abstractmethod
    def select(self, command: Select) -> List[Dict[str, Any]]:
        """Run a Select. Rows are plain dicts keyed by column name."""

    @abstractmethod
    def count(self, table: str, where: Optional[Dict[str, Any]] = None) -> int:
        """Count rows in ``table`` matching ``where``."""

    @abstractmethod
    def transaction(self):
        """Context manager grouping writes atomically where supported."""

    def search_fulltext(self, fts_query: str, tiers: Sequence[str], limit: int) -> List[Tuple[str, str, float]]:
        """Return ``[(id, tier, rank)]`` best first. Lower rank is better."""
        raise IndexUnavailableError(f"{self.name} backend has no full-text index")

    def vector_candidates(
        self, query_vector: Sequence[float], tiers: Sequence[str], limit: int
    ) -> Optional[List[Tuple[str, str, float]]]:
        """Native vector ranking ``[(id, tier, similarity)]``, or None if unsupported."""
        return None

    def size_bytes(self) -> int:
        return 0

    @abstractmethod
    def close(self) -> None:
        """Release the underlying handle."""


# ---------------------------------------------------------------------------
# InMemoryBackend
# ---------------------------------------------------------------------------


class InMemoryBackend(StorageBackend):
    """In-process fallback. Same command surface, nothing survives a restart.

    Writes apply immediately; ``transaction()`` groups nothing, so a batch that
    fails half-way leaves its earlier items applied.
    """

    name = "in-memory"
    durable = False
    supports_transactions = False

    def __init__(self):
        super().__init__()
        self._tables: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._closed = False

    def _table(self, name: str) -> Dict[str, Dict[str, Any]]:
        if self._closed:
            raise BackendError("in-memory backend is closed")
        key_column(name)
        return self._tables.setdefault(name, {})

    def ensure_schema(self) -> None:
        for name in TABLE_KEYS:
            self._table(name)
        self.fts_available = False

    def execute(self, command) -> int:
        if isinstance(command, Insert):
            table = self._table(command.table)
            key_col = key_column(command.table)
            key = command.row.get(key_col)
            if key is None:
                raise BackendError(f"Insert into {command.table} is missing key column {key_col!r}")
            table[key] = dict(command.row)
            return 1
        if isinstance(command, Delete):
            table = self._table(command.table)
            if command.key is None:
                removed = len(table)
                table.clear()
                return removed
            return 1 if table.pop(command.key, None) is not None else 0
        raise BackendError(f"Unsupported command: {command!r}")

    def select(self, command: Select) -> List[Dict[str, Any]]:
        table = self._table(command.table)
        rows = [dict(row) for row in table.values() if _matches(row, command.where)]
        if command.order_by:
            rows.sort(key=lambda r: (r.get(command.order_by) is None, r.get(command.order_by)),
                      reverse=command.descending)
        if command.limit is not None:
            rows = rows[: command.limit]
        return rows

    def count(self, table: str, where: Optional[Dict[str, Any]] = None) -> int:
        return sum(1 for row in self._table(table).values() if _matches(row, where))

    @contextmanager
    def transaction(self) -> Iterator[None]:
        yield

    def close(self) -> None:
        self._tables.clear()
        self._closed = True


# ---------------------------------------------------------------------------
# Backend selection
# ---------------------------------------------------------------------------


def open_backend(persistence) -> Tuple[StorageBackend, Optional[str]]:
    """Open the durable backend, falling back to InMemoryBackend.

    Returns ``(backend, error)`` where ``error`` describes why the durable
    engine could not be used, or None.
    """
    driver = load_sqlite_driver()
    if driver is None:
        logger.info("sqlite3 not available, using in-memory fallback")
        return InMemoryBackend(), None

    from stratum.sqlite_backend import SQLiteBackend

    try:
        backend = SQLiteBackend(
            persistence.db_path,
            fts_enabled=persistence.fts_enabled,
            wal_mode=persistence.wal_mode,
            driver=driver,
        )
        logger.info("SQLite database opened: %s", persistence.db_path)
        return backend, None
    except BackendError as e:
        message = f"SQLite open failed: {e}"
        logger.warning("Failed to open SQLite database, using in-memory fallback: %s", e)
        return InMemoryBackend(), message
