"""Tests for MemoryManager.batch_upsert."""
from datetime import datetime, timezone

from stratum.backend import MEMORIES_TABLE, InMemoryBackend, Insert, Select
from stratum.config import MemoryConfig
from stratum.errors import BackendError
from stratum.sqlite_backend import SQLiteBackend
from stratum.types import MemoryEntry, Tier


class BrokenSQLiteBackend(SQLiteBackend):
    def execute(self, command):
        if isinstance(command, Insert) and command.row.get("content") == "boom":
            raise BackendError("database disk image is malformed")
        return super().execute(command)


class BrokenMemoryBackend(InMemoryBackend):
    def execute(self, command):
        if isinstance(command, Insert) and command.row.get("content") == "boom":
            raise BackendError("write rejected")
        return super().execute(command)


class TestInsertUpdate:
    def test_inserts(self, manager):
        result = manager.batch_upsert([{"content": "one"}, {"content": "two"}], Tier.SEMANTIC)
        assert result == {"inserted": 2, "updated": 0, "failed": 0, "errors": []}
        assert [e.content for e in manager.semantic] == ["one", "two"]
        assert manager.backend.count(MEMORIES_TABLE, {"tier": "semantic"}) == 2

    def test_default_tier_is_episodic(self, manager):
        manager.batch_upsert([{"content": "one"}])
        assert len(manager.episodic) == 1

    def test_update_by_id(self, manager):
        entry = manager.add_semantic("original", metadata={"v": 1})
        result = manager.batch_upsert([{"id": entry.id, "content": "revised"}], Tier.SEMANTIC)
        assert result["updated"] == 1 and result["inserted"] == 0
        got = manager.get_entry_by_id(entry.id)
        assert got.content == "revised"
        # Dict items only touch the fields they carry
        assert got.metadata == {"v": 1}
        assert len(manager.semantic) == 1

    def test_none_keeps_required_fields(self, manager):
        entry = manager.add_semantic("original", type="decision")
        result = manager.batch_upsert(
            [{"id": entry.id, "type": None, "content": None, "timestamp": None, "metadata": {"v": 2}}],
            Tier.SEMANTIC,
        )
        assert result == {"inserted": 0, "updated": 1, "failed": 0, "errors": []}
        got = manager.get_entry_by_id(entry.id)
        assert (got.content, got.type, got.timestamp) == ("original", "decision", entry.timestamp)
        assert got.metadata == {"v": 2}
        row = manager.backend.select(Select(MEMORIES_TABLE, where={"id": entry.id}))[0]
        assert row["type"] == "decision"

    def test_memory_entry_replaces(self, manager):
        entry = manager.add_semantic("original", metadata={"v": 1})
        replacement = MemoryEntry(id=entry.id, content="replaced")
        manager.batch_upsert([replacement], "semantic")
        got = manager.get_entry_by_id(entry.id)
        assert got.content == "replaced"
        assert got.metadata is None

    def test_explicit_id_and_timestamp(self, manager):
        ts = datetime(2023, 5, 1, tzinfo=timezone.utc)
        manager.batch_upsert([{"id": "fixed", "content": "c", "timestamp": ts.isoformat()}])
        assert manager.get_entry_by_id("fixed").timestamp == ts

    def test_duplicate_ids_in_one_batch(self, manager):
        result = manager.batch_upsert(
            [{"id": "dup", "content": "first", "metadata": {"a": 1}}, {"id": "dup", "content": "second"}],
            Tier.EPISODIC,
        )
        assert result["inserted"] == 1 and result["updated"] == 1
        assert [e.content for e in manager.episodic] == ["second"]
        assert manager.episodic[0].metadata == {"a": 1}

    def test_empty_batch(self, manager):
        assert manager.batch_upsert([]) == {"inserted": 0, "updated": 0, "failed": 0, "errors": []}

    def test_bypasses_auto_compaction(self, manager):
        manager.batch_upsert([{"content": f"e{i}"} for i in range(20)])
        assert len(manager.episodic) == 20


class TestRejections:
    def test_scratchpad_rejected(self, manager):
        result = manager.batch_upsert([{"content": "x"}, {"content": "y"}], Tier.SCRATCHPAD)
        assert result["failed"] == 2
        assert result["inserted"] == 0
        assert "scratchpad" in result["errors"][0]

    def test_cross_tier_conflict(self, manager):
        entry = manager.add_episodic("lives in episodic")
        result = manager.batch_upsert([{"id": entry.id, "content": "moved?"}], Tier.SEMANTIC)
        assert result["failed"] == 1
        assert manager.semantic == []
        assert manager.get_entry_by_id(entry.id).content == "lives in episodic"


class TestDurableAtomicity:
    def test_invalid_item_fails_whole_batch(self, manager):
        result = manager.batch_upsert([{"content": "ok"}, {"content": ""}], Tier.SEMANTIC)
        assert result["inserted"] == 0
        assert result["failed"] == 2
        assert result["errors"][0].startswith("Transaction failed:")
        assert manager.semantic == []
        assert manager.backend.count(MEMORIES_TABLE) == 0

    def test_backend_failure_rolls_back(self, make_manager):
        mm = make_manager(config=MemoryConfig(max_results=5), backend=BrokenSQLiteBackend())
        existing = mm.add_semantic("before")
        result = mm.batch_upsert(
            [{"content": "fine"}, {"id": existing.id, "content": "changed"}, {"content": "boom"}],
            Tier.SEMANTIC,
        )
        assert result["failed"] == 3
        assert result["errors"][0].startswith("Transaction failed:")
        assert [e.content for e in mm.semantic] == ["before"]
        assert mm.backend.count(MEMORIES_TABLE) == 1
        report = mm.get_health_report()
        assert report["status"] == "degraded"
        assert any("rolled back" in e for e in report["errors"])


class TestFallbackPerItem:
    def test_partial_success(self, make_manager):
        mm = make_manager(config=MemoryConfig(max_results=5), backend=BrokenMemoryBackend())
        result = mm.batch_upsert([{"content": "a"}, {"content": "boom"}, {"content": "c"}])
        assert result["inserted"] == 2
        assert result["failed"] == 1
        assert len(result["errors"]) == 1
        assert [e.content for e in mm.episodic] == ["a", "c"]

    def test_invalid_item_skipped(self, memory_manager):
        result = memory_manager.batch_upsert([{"content": ""}, {"content": "kept"}])
        assert result["inserted"] == 1 and result["failed"] == 1
        assert [e.content for e in memory_manager.episodic] == ["kept"]
