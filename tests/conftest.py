"""Stratum test configuration."""
import os
import sqlite3
import sys
from pathlib import Path

import pytest

# Ensure stratum package is importable without installation
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


def _sqlite_has_fts5() -> bool:
    conn = sqlite3.connect(":memory:")
    try:
        conn.execute("CREATE VIRTUAL TABLE fts_check USING fts5(content)")
        return True
    except sqlite3.OperationalError:
        return False
    finally:
        conn.close()


HAS_FTS5 = _sqlite_has_fts5()
requires_fts5 = pytest.mark.skipif(not HAS_FTS5, reason="sqlite3 built without FTS5")

from stratum.errors import BackendError  # noqa: E402
from stratum.sqlite_backend import SQLiteBackend  # noqa: E402


class NoFtsSQLiteBackend(SQLiteBackend):
    """SQLite backend on a build whose FTS5 module is missing."""

    def _run(self, sql, params=()):
        if "CREATE VIRTUAL TABLE" in sql:
            raise BackendError("no such module: fts5")
        return super()._run(sql, params)


@pytest.fixture
def tmp_stratum_dir(tmp_path):
    """Create a temporary STRATUM_HOME for testing."""
    stratum_dir = tmp_path / ".stratum"
    stratum_dir.mkdir()
    os.environ["STRATUM_HOME"] = str(stratum_dir)
    # Default: disable encryption in tests for deterministic output
    old_encrypt = os.environ.get("STRATUM_ENCRYPT")
    os.environ["STRATUM_ENCRYPT"] = "0"
    yield stratum_dir
    os.environ.pop("STRATUM_HOME", None)
    if old_encrypt is not None:
        os.environ["STRATUM_ENCRYPT"] = old_encrypt
    else:
        os.environ.pop("STRATUM_ENCRYPT", None)


@pytest.fixture
def tmp_stratum_dir_encrypted(tmp_path):
    """Create a temporary STRATUM_HOME with snapshot encryption enabled."""
    stratum_dir = tmp_path / ".stratum"
    stratum_dir.mkdir()
    os.environ["STRATUM_HOME"] = str(stratum_dir)
    os.environ["STRATUM_ENCRYPT"] = "1"
    yield stratum_dir
    os.environ.pop("STRATUM_HOME", None)
    os.environ.pop("STRATUM_ENCRYPT", None)


@pytest.fixture(autouse=True)
def _reset_driver_state():
    """Forget the sqlite3 driver import between tests."""
    from stratum.backend import reset_driver_state
    reset_driver_state()
    yield
    reset_driver_state()


@pytest.fixture
def make_manager():
    """Factory for MemoryManagers that are closed at teardown."""
    from stratum.manager import MemoryManager

    created = []

    def _make(**kwargs):
        mm = MemoryManager(**kwargs)
        created.append(mm)
        return mm

    yield _make
    for mm in created:
        mm.close()


@pytest.fixture
def manager(make_manager):
    """MemoryManager on an in-memory SQLite database, max_results=5."""
    from stratum.config import MemoryConfig, PersistenceConfig
    return make_manager(config=MemoryConfig(max_results=5), persistence=PersistenceConfig())


@pytest.fixture
def sqlite_manager(make_manager, tmp_stratum_dir):
    """MemoryManager on a SQLite file under a temporary STRATUM_HOME."""
    from stratum.config import MemoryConfig, PersistenceConfig
    db_path = tmp_stratum_dir / "test.db"
    return make_manager(config=MemoryConfig(max_results=5), persistence=PersistenceConfig(db_path=db_path))


@pytest.fixture
def memory_manager(make_manager):
    """MemoryManager on the in-process fallback backend."""
    from stratum.backend import InMemoryBackend
    from stratum.config import MemoryConfig, PersistenceConfig
    return make_manager(
        config=MemoryConfig(max_results=5),
        persistence=PersistenceConfig(),
        backend=InMemoryBackend(),
    )
