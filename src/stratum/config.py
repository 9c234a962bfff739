"""
Stratum configuration -- retrieval/compaction tuning and persistence settings.

Both config classes take keyword arguments; ``from_env()`` layers the
``STRATUM_*`` environment overrides on top of the defaults.
"""

import logging
import os
from pathlib import Path
from typing import Optional

logger = logging.getLogger("stratum.config")

MEMORY_DB_SENTINEL = ":memory:"

_FALSE_VALUES = ("0", "false", "no", "off")


def stratum_home() -> Path:
    """Resolve STRATUM_HOME lazily so tests can override via env var."""
    return Path(os.environ.get("STRATUM_HOME", str(Path.home() / ".stratum")))


def default_db_path() -> Path:
    return stratum_home() / "stratum.db"


def _env_bool(name: str, default: bool) -> bool:
    val = os.environ.get(name, "").strip().lower()
    if not val:
        return default
    return val not in _FALSE_VALUES


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r", name, raw)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r", name, raw)
        return default


class MemoryConfig:
    """Retrieval and compaction tuning for a MemoryManager."""

    def __init__(
        self,
        max_results: int = 10,
        compaction_enabled: bool = True,
        compaction_threshold: float = 0.8,
    ):
        self.max_results = max(1, int(max_results))
        self.compaction_enabled = compaction_enabled
        self.compaction_threshold = float(compaction_threshold)

    @classmethod
    def from_env(cls) -> "MemoryConfig":
        return cls(
            max_results=_env_int("STRATUM_MAX_RESULTS", 10),
            compaction_enabled=_env_bool("STRATUM_COMPACTION", True),
            compaction_threshold=_env_float("STRATUM_COMPACTION_THRESHOLD", 0.8),
        )

    def __repr__(self):
        return (
            f"MemoryConfig(max_results={self.max_results}, "
            f"compaction_enabled={self.compaction_enabled}, "
            f"compaction_threshold={self.compaction_threshold})"
        )


class PersistenceConfig:
    """Storage backend settings.

    ``db_path`` is a filesystem path or the ``":memory:"`` sentinel, which
    keeps the SQLite database in process memory. ``lru_cache_size`` of 0
    disables the entry cache; a negative size means unbounded.
    """

    def __init__(
        self,
        db_path=MEMORY_DB_SENTINEL,
        fts_enabled: bool = True,
        lru_cache_size: int = 500,
        wal_mode: bool = True,
    ):
        self.db_path = str(db_path) if db_path is not None else MEMORY_DB_SENTINEL
        self.fts_enabled = fts_enabled
        self.lru_cache_size = int(lru_cache_size)
        self.wal_mode = wal_mode

    @property
    def in_memory(self) -> bool:
        return self.db_path == MEMORY_DB_SENTINEL

    @classmethod
    def from_env(cls, db_path: Optional[str] = None) -> "PersistenceConfig":
        path = db_path or os.environ.get("STRATUM_DB_PATH") or str(default_db_path())
        return cls(
            db_path=path,
            fts_enabled=_env_bool("STRATUM_FTS", True),
            lru_cache_size=_env_int("STRATUM_LRU_CACHE_SIZE", 500),
            wal_mode=_env_bool("STRATUM_WAL", True),
        )

    def __repr__(self):
        return (
            f"PersistenceConfig(db_path={self.db_path!r}, fts_enabled={self.fts_enabled}, "
            f"lru_cache_size={self.lru_cache_size}, wal_mode={self.wal_mode})"
        )
