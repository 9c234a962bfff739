"""
Stratum SQLite backend -- durable storage for the episodic and semantic tiers.

One connection per backend, opened in autocommit mode so transactions are
explicit (BEGIN IMMEDIATE / COMMIT / ROLLBACK). Every driver exception is
re-raised as ``BackendError`` so the manager never has to know which engine
it is talking to.

Tables:
    memory_meta      key/value pairs, including ``schema_version``
    memories         one row per episodic/semantic entry
    session_deltas   per-session transcript watermark
    memories_fts     FTS5 mirror of memories(content) for keyword search

sqlite-vec is optional. When it loads, ``vector_candidates`` ranks rows with
``vec_distance_cosine`` inside SQL; otherwise the manager scans in Python.
"""

import json
import logging
import re
import time as _time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from stratum.backend import (
    FTS_TABLE,
    MEMORIES_TABLE,
    META_TABLE,
    SCHEMA_VERSION,
    SESSION_DELTAS_TABLE,
    Delete,
    Insert,
    Select,
    StorageBackend,
    key_column,
    load_sqlite_driver,
)
from stratum.config import MEMORY_DB_SENTINEL
from stratum.errors import BackendError, BackendUnavailableError, IndexUnavailableError

logger = logging.getLogger("stratum.sqlite_backend")

_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# ---------------------------------------------------------------------------
# Lock retry -- busy_timeout covers most contention; this covers the rest.
# ---------------------------------------------------------------------------
_DB_RETRY_ATTEMPTS = 3
_DB_RETRY_BASE_DELAY = 0.1  # seconds


def _retry_on_locked(driver, fn, *args, **kwargs):
    """Call fn, retrying with exponential backoff on 'database is locked'."""
    for attempt in range(_DB_RETRY_ATTEMPTS):
        try:
            return fn(*args, **kwargs)
        except driver.OperationalError as e:
            if "database is locked" in str(e) and attempt < _DB_RETRY_ATTEMPTS - 1:
                delay = _DB_RETRY_BASE_DELAY * (2 ** attempt)
                logger.warning("database is locked (attempt %d/%d), retrying in %.1fs",
                               attempt + 1, _DB_RETRY_ATTEMPTS, delay)
                _time.sleep(delay)
            else:
                raise


def _ident(name: str) -> str:
    if not _IDENT_RE.match(name):
        raise BackendError(f"Invalid identifier: {name!r}")
    return name


def _where_clause(where: Optional[Dict[str, Any]]) -> Tuple[str, List[Any], bool]:
    """Build ``WHERE ...`` text and params. Third value is False if nothing can match."""
    if not where:
        return "", [], True
    parts = []
    params: List[Any] = []
    for column, expected in where.items():
        col = _ident(column)
        if isinstance(expected, (tuple, list, set, frozenset)):
            values = list(expected)
            if not values:
                return "", [], False
            parts.append(f"{col} IN ({', '.join('?' for _ in values)})")
            params.extend(values)
        elif expected is None:
            parts.append(f"{col} IS NULL")
        else:
            parts.append(f"{col} = ?")
            params.append(expected)
    return " WHERE " + " AND ".join(parts), params, True


class SQLiteBackend(StorageBackend):
    """Durable, transactional backend on the stdlib sqlite3 driver."""

    name = "sqlite"
    durable = True
    supports_transactions = True

    def __init__(self, db_path=MEMORY_DB_SENTINEL, fts_enabled: bool = True, wal_mode: bool = True, driver=None):
        super().__init__()
        self._driver = driver or load_sqlite_driver()
        if self._driver is None:
            raise BackendUnavailableError("sqlite3 driver is not available")
        self.db_path = str(db_path)
        self.fts_enabled = fts_enabled
        self.wal_mode = wal_mode and self.db_path != MEMORY_DB_SENTINEL
        self.vec_available = False
        self._in_transaction = False
        self._conn = self._connect()

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def _connect(self):
        from stratum.crypto import secure_connect

        try:
            conn = secure_connect(
                self.db_path,
                driver=self._driver,
                timeout=5,
                check_same_thread=False,
                isolation_level=None,
            )
        except (self._driver.Error, OSError) as e:
            raise BackendUnavailableError(f"cannot open {self.db_path}: {e}") from e

        conn.row_factory = self._driver.Row
        try:
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("PRAGMA busy_timeout=5000")
            conn.execute("PRAGMA foreign_keys=ON")
        except self._driver.Error as e:
            conn.close()
            raise BackendUnavailableError(f"cannot configure {self.db_path}: {e}") from e

        try:
            import sqlite_vec

            conn.enable_load_extension(True)
            sqlite_vec.load(conn)
            conn.enable_load_extension(False)
            self.vec_available = True
        except (ImportError, AttributeError, self._driver.Error) as e:
            logger.warning(f"sqlite-vec not available, falling back to brute-force: {e}")
            self.vec_available = False

        return conn

    def _require_conn(self):
        if self._conn is None:
            raise BackendError("SQLite backend is closed")
        return self._conn

    def _run(self, sql: str, params: Sequence[Any] = ()):
        conn = self._require_conn()
        try:
            return _retry_on_locked(self._driver, conn.execute, sql, tuple(params))
        except self._driver.Error as e:
            raise BackendError(str(e)) from e

    @contextmanager
    def _atomic(self) -> Iterator[None]:
        """Group statements unless an outer transaction already does."""
        if self._in_transaction:
            yield
            return
        with self.transaction():
            yield

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def _schema_version(self) -> Optional[int]:
        row = self._run(f"SELECT value FROM {META_TABLE} WHERE key = ?", ("schema_version",)).fetchone()
        if row is None:
            return None
        try:
            return int(row["value"])
        except (TypeError, ValueError):
            return None

    def _memory_columns(self) -> List[str]:
        return [row["name"] for row in self._run(f"PRAGMA table_info({MEMORIES_TABLE})").fetchall()]

    def ensure_schema(self) -> None:
        self._run(f"""
            CREATE TABLE IF NOT EXISTS {META_TABLE} (
                key   TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)
        version = self._schema_version()

        self._run(f"""
            CREATE TABLE IF NOT EXISTS {MEMORIES_TABLE} (
                id         TEXT PRIMARY KEY,
                tier       TEXT NOT NULL CHECK(tier IN ('episodic', 'semantic')),
                content    TEXT NOT NULL,
                type       TEXT NOT NULL,
                timestamp  TEXT NOT NULL,
                metadata   TEXT,
                embedding  TEXT,
                hash       TEXT,
                created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
                updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
            )
        """)

        # Migration v1 -> v2: embedding and hash columns
        if version is None or version < 2:
            columns = self._memory_columns()
            missing = [col for col in ("embedding", "hash") if col not in columns]
            for col in missing:
                self._run(f"ALTER TABLE {MEMORIES_TABLE} ADD COLUMN {col} TEXT")
            if missing:
                logger.info("Schema migrated v1 -> v2: added %s columns", ", ".join(missing))

        self._run(f"CREATE INDEX IF NOT EXISTS idx_memories_tier ON {MEMORIES_TABLE}(tier)")
        self._run(f"CREATE INDEX IF NOT EXISTS idx_memories_timestamp ON {MEMORIES_TABLE}(timestamp DESC)")
        self._run(f"CREATE INDEX IF NOT EXISTS idx_memories_type ON {MEMORIES_TABLE}(tier, type)")
        self._run(f"CREATE INDEX IF NOT EXISTS idx_memories_hash ON {MEMORIES_TABLE}(hash)")

        self._run(f"""
            CREATE TABLE IF NOT EXISTS {SESSION_DELTAS_TABLE} (
                session_id        TEXT PRIMARY KEY,
                last_indexed_turn INTEGER NOT NULL DEFAULT 0,
                last_indexed_at   TEXT,
                pending_turns     INTEGER NOT NULL DEFAULT 0
            )
        """)

        if self.fts_enabled:
            self._ensure_fts()
        else:
            self.fts_available = False

        self._run(
            f"INSERT OR REPLACE INTO {META_TABLE} (key, value) VALUES (?, ?)",
            ("schema_version", str(SCHEMA_VERSION)),
        )

    def _ensure_fts(self) -> None:
        try:
            self._run(f"""
                CREATE VIRTUAL TABLE IF NOT EXISTS {FTS_TABLE}
                USING fts5(content, id UNINDEXED, tier UNINDEXED, type UNINDEXED)
            """)
        except BackendError as e:
            self.fts_available = False
            self.fts_error = str(e)
            logger.warning(f"FTS5 not available: {e}")
            return
        self.fts_available = True
        self.fts_error = None

        fts_count = self._run(f"SELECT COUNT(*) FROM {FTS_TABLE}").fetchone()[0]
        mem_count = self._run(f"SELECT COUNT(*) FROM {MEMORIES_TABLE}").fetchone()[0]
        if fts_count == 0 and mem_count > 0:
            self._run(
                f"INSERT INTO {FTS_TABLE} (content, id, tier, type) "
                f"SELECT content, id, tier, type FROM {MEMORIES_TABLE}"
            )
            logger.info(f"Populated FTS5 index with {mem_count} existing memories")

    # ------------------------------------------------------------------
    # Statements
    # ------------------------------------------------------------------

    def execute(self, command) -> int:
        if isinstance(command, Insert):
            return self._insert(command)
        if isinstance(command, Delete):
            return self._delete(command)
        raise BackendError(f"Unsupported command: {command!r}")

    def _insert(self, command: Insert) -> int:
        table = _ident(command.table)
        key_col = key_column(table)
        if command.row.get(key_col) is None:
            raise BackendError(f"Insert into {table} is missing key column {key_col!r}")
        columns = [_ident(c) for c in command.row]
        sql = (
            f"INSERT OR REPLACE INTO {table} ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)})"
        )
        params = [command.row[c] for c in columns]

        if table != MEMORIES_TABLE or not self.fts_available:
            return self._run(sql, params).rowcount

        row = command.row
        with self._atomic():
            changed = self._run(sql, params).rowcount
            self._run(f"DELETE FROM {FTS_TABLE} WHERE id = ?", (row["id"],))
            self._run(
                f"INSERT INTO {FTS_TABLE} (content, id, tier, type) VALUES (?, ?, ?, ?)",
                (row.get("content", ""), row["id"], row.get("tier"), row.get("type")),
            )
        return changed

    def _delete(self, command: Delete) -> int:
        table = _ident(command.table)
        key_col = key_column(table)
        with_fts = table == MEMORIES_TABLE and self.fts_available

        with self._atomic():
            if command.key is None:
                changed = self._run(f"DELETE FROM {table}").rowcount
                if with_fts:
                    self._run(f"DELETE FROM {FTS_TABLE}")
            else:
                changed = self._run(f"DELETE FROM {table} WHERE {key_col} = ?", (command.key,)).rowcount
                if with_fts:
                    self._run(f"DELETE FROM {FTS_TABLE} WHERE id = ?", (command.key,))
        return changed

    def select(self, command: Select) -> List[Dict[str, Any]]:
        table = _ident(command.table)
        key_column(table)
        where_sql, params, satisfiable = _where_clause(command.where)
        if not satisfiable:
            return []
        sql = f"SELECT * FROM {table}{where_sql}"
        if command.order_by:
            sql += f" ORDER BY {_ident(command.order_by)} {'DESC' if command.descending else 'ASC'}"
        if command.limit is not None:
            sql += " LIMIT ?"
            params.append(int(command.limit))
        return [dict(row) for row in self._run(sql, params).fetchall()]

    def count(self, table: str, where: Optional[Dict[str, Any]] = None) -> int:
        table = _ident(table)
        key_column(table)
        where_sql, params, satisfiable = _where_clause(where)
        if not satisfiable:
            return 0
        return int(self._run(f"SELECT COUNT(*) FROM {table}{where_sql}", params).fetchone()[0])

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """BEGIN IMMEDIATE ... COMMIT, rolled back on any exception.

        Nested use joins the outer transaction.
        """
        if self._in_transaction:
            yield
            return
        self._run("BEGIN IMMEDIATE")
        self._in_transaction = True
        try:
            yield
        except BaseException:
            self._rollback()
            raise
        else:
            try:
                self._run("COMMIT")
            except BackendError:
                self._rollback()
                raise
        finally:
            self._in_transaction = False

    def _rollback(self) -> None:
        if self._conn is None:
            return
        try:
            self._conn.execute("ROLLBACK")
        except self._driver.Error as e:
            # Already rolled back by the engine (e.g. after a constraint abort)
            logger.debug("Rollback failed: %s", e)

    # ------------------------------------------------------------------
    # Search pushdown
    # ------------------------------------------------------------------

    def search_fulltext(self, fts_query: str, tiers: Sequence[str], limit: int) -> List[Tuple[str, str, float]]:
        if not self.fts_available:
            raise IndexUnavailableError(self.fts_error or "FTS5 index is not available")
        tiers = list(tiers)
        if not tiers:
            return []
        placeholders = ", ".join("?" for _ in tiers)
        rows = self._run(
            f"SELECT id, tier, rank FROM {FTS_TABLE} "
            f"WHERE {FTS_TABLE} MATCH ? AND tier IN ({placeholders}) "
            f"ORDER BY rank LIMIT ?",
            [fts_query, *tiers, int(limit)],
        ).fetchall()
        return [(row["id"], row["tier"], float(row["rank"])) for row in rows]

    def vector_candidates(
        self, query_vector: Sequence[float], tiers: Sequence[str], limit: int
    ) -> Optional[List[Tuple[str, str, float]]]:
        if not self.vec_available:
            return None
        tiers = list(tiers)
        if not tiers:
            return []
        placeholders = ", ".join("?" for _ in tiers)
        try:
            rows = self._run(
                f"SELECT id, tier, 1.0 - vec_distance_cosine(embedding, ?) AS similarity "
                f"FROM {MEMORIES_TABLE} "
                f"WHERE embedding IS NOT NULL AND tier IN ({placeholders}) "
                f"ORDER BY similarity DESC LIMIT ?",
                [json.dumps([float(v) for v in query_vector]), *tiers, int(limit)],
            ).fetchall()
        except BackendError as e:
            # Dimension mismatch or malformed stored vector: let the caller scan
            logger.debug(f"Vec query failed: {e}")
            return None
        return [
            (row["id"], row["tier"], float(row["similarity"]))
            for row in rows
            if row["similarity"] is not None
        ]

    # ------------------------------------------------------------------
    # Introspection / lifecycle
    # ------------------------------------------------------------------

    def size_bytes(self) -> int:
        page_count = self._run("PRAGMA page_count").fetchone()[0]
        page_size = self._run("PRAGMA page_size").fetchone()[0]
        return int(page_count) * int(page_size)

    def close(self) -> None:
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        if self.wal_mode:
            try:
                conn.execute("PRAGMA wal_checkpoint(PASSIVE)")
            except self._driver.Error as e:
                logger.debug("WAL checkpoint on close failed: %s", e)
        try:
            conn.close()
        except self._driver.Error as e:
            logger.debug("Database close failed: %s", e)
