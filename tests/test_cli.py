"""Tests for the stratum command line."""
import json

import pytest

from stratum.cli import build_parser, main


@pytest.fixture
def db(tmp_stratum_dir):
    return str(tmp_stratum_dir / "cli.db")


def _run(capsys, *argv):
    main(list(argv))
    return capsys.readouterr()


class TestParser:
    def test_commands_registered(self):
        parser = build_parser()
        args = parser.parse_args(["--db", "x.db", "search", "deploy", "notes", "--limit", "3"])
        assert args.command == "search"
        assert args.query_text == ["deploy", "notes"]
        assert args.limit == 3
        assert args.db == "x.db"

    def test_no_command_prints_help(self, capsys):
        out = _run(capsys).out
        assert "usage: stratum" in out


class TestCommands:
    def test_add_then_stats(self, capsys, db):
        out = _run(capsys, "--db", db, "add", "deploy", "went", "fine").out
        assert out.startswith("Stored [episodic/interaction] mem_")

        stats = json.loads(_run(capsys, "--db", db, "stats", "--json").out)
        assert stats == {"scratchpad_size": 0, "episodic_count": 1, "semantic_count": 0}

    def test_add_semantic_type(self, capsys, db):
        out = _run(capsys, "--db", db, "add", "policy", "--tier", "semantic", "--type", "decision").out
        assert "[semantic/decision]" in out

    def test_search_json(self, capsys, db):
        _run(capsys, "--db", db, "add", "deploy", "rollback", "steps")
        _run(capsys, "--db", db, "add", "lunch", "menu")
        payload = json.loads(_run(capsys, "--db", db, "search", "rollback", "--json").out)
        assert payload["count"] == 1
        assert payload["results"][0]["entry"]["content"] == "deploy rollback steps"
        assert payload["results"][0]["tier"] == "episodic"

    def test_search_no_results(self, capsys, db):
        out = _run(capsys, "--db", db, "search", "zebra").out
        assert 'No results for "zebra"' in out

    def test_status_json(self, capsys, db):
        report = json.loads(_run(capsys, "--db", db, "status", "--json").out)
        assert report["backend"] == "sqlite"
        assert report["durable"] is True

    def test_status_text(self, capsys, db):
        out = _run(capsys, "--db", db, "status").out
        assert "Backend:    sqlite (durable)" in out

    def test_compact(self, capsys, db):
        for i in range(4):
            _run(capsys, "--db", db, "add", f"event {i}")
        out = _run(capsys, "--db", db, "compact", "--target", "1").out
        assert "Archived 3 entries into 1 summaries (4 -> 1 episodic)" in out

    def test_export_import(self, capsys, db, tmp_stratum_dir):
        _run(capsys, "--db", db, "add", "exported", "memory")
        snap = str(tmp_stratum_dir / "snap.json")
        assert "(plaintext)" in _run(capsys, "--db", db, "export", snap).out

        other = str(tmp_stratum_dir / "other.db")
        out = _run(capsys, "--db", other, "import", snap).out
        assert out.startswith("Imported 1 episodic, 0 semantic")

    def test_import_missing_file_exits(self, capsys, db, tmp_stratum_dir):
        with pytest.raises(SystemExit) as exc:
            main(["--db", db, "import", str(tmp_stratum_dir / "missing.json")])
        assert exc.value.code == 1
        assert "Import failed" in capsys.readouterr().err
