"""Tests for stratum.crypto -- snapshot envelopes, the snapshot key, file perms."""
import base64
import json
import os
import stat

import pytest

from stratum.crypto import (
    SNAPSHOT_FORMAT,
    encryption_enabled,
    load_snapshot_secret,
    open_snapshot,
    seal_snapshot,
    secure_connect,
    snapshot_key_path,
    write_private_file,
)

SNAPSHOT = {
    "version": "2",
    "exportedAt": "2024-05-01T12:00:00.000000+00:00",
    "scratchpad": {"goal": "ship ✓"},
    "episodic": [{"id": "e1", "content": "deploy notes"}],
    "semantic": [],
    "sessionDeltas": {},
}


def _reopen(envelope):
    """Round-trip through JSON text, the way a file would."""
    return open_snapshot(json.loads(json.dumps(envelope)))


# ============================================================================
# encryption_enabled
# ============================================================================


class TestEncryptionEnabled:
    def test_enabled_by_default(self, monkeypatch):
        monkeypatch.delenv("STRATUM_ENCRYPT", raising=False)
        assert encryption_enabled() is True

    @pytest.mark.parametrize("value", ["1", "true", "yes", ""])
    def test_enabled_values(self, monkeypatch, value):
        monkeypatch.setenv("STRATUM_ENCRYPT", value)
        assert encryption_enabled() is True

    @pytest.mark.parametrize("value", ["0", "false", "no", " NO "])
    def test_disabled_values(self, monkeypatch, value):
        monkeypatch.setenv("STRATUM_ENCRYPT", value)
        assert encryption_enabled() is False


# ============================================================================
# Snapshot key
# ============================================================================


class TestSnapshotKey:
    def test_created_only_on_request(self, tmp_stratum_dir):
        with pytest.raises(ValueError, match="No snapshot key"):
            load_snapshot_secret()
        secret = load_snapshot_secret(create=True)
        assert len(secret) == 32
        assert snapshot_key_path() == tmp_stratum_dir / ".snapshot-key"

    def test_key_file_is_private(self, tmp_stratum_dir):
        load_snapshot_secret(create=True)
        assert stat.S_IMODE(os.stat(snapshot_key_path()).st_mode) == 0o600

    def test_reused(self, tmp_stratum_dir):
        assert load_snapshot_secret(create=True) == load_snapshot_secret()

    def test_raw_secret_accepted(self, tmp_stratum_dir):
        snapshot_key_path().write_bytes(b"k" * 32)
        assert load_snapshot_secret() == b"k" * 32

    def test_wrong_length_rejected(self, tmp_stratum_dir):
        snapshot_key_path().write_bytes(base64.urlsafe_b64encode(b"short"))
        with pytest.raises(ValueError, match="wrong length"):
            load_snapshot_secret()


# ============================================================================
# Envelopes
# ============================================================================


class TestPlaintextEnvelope:
    def test_header_and_payload(self, tmp_stratum_dir):
        envelope = seal_snapshot(SNAPSHOT)
        assert envelope["format"] == SNAPSHOT_FORMAT
        assert envelope["encrypted"] is False
        assert envelope["version"] == "2"
        assert envelope["exportedAt"] == SNAPSHOT["exportedAt"]
        assert envelope["payload"] == SNAPSHOT
        assert not snapshot_key_path().exists()

    def test_reopen(self, tmp_stratum_dir):
        assert _reopen(seal_snapshot(SNAPSHOT)) == SNAPSHOT

    def test_bare_snapshot_passes_through(self):
        assert open_snapshot({"episodic": []}) == {"episodic": []}

    def test_non_object_rejected(self):
        with pytest.raises(ValueError, match="JSON object"):
            open_snapshot(["not", "a", "snapshot"])

    def test_header_mismatch_rejected(self, tmp_stratum_dir):
        envelope = seal_snapshot(SNAPSHOT)
        envelope["exportedAt"] = "2030-01-01T00:00:00+00:00"
        with pytest.raises(ValueError, match="header does not match"):
            _reopen(envelope)


class TestEncryptedEnvelope:
    def test_payload_is_token(self, tmp_stratum_dir_encrypted):
        envelope = seal_snapshot(SNAPSHOT)
        assert envelope["encrypted"] is True
        assert isinstance(envelope["payload"], str)
        assert "deploy notes" not in json.dumps(envelope)
        assert snapshot_key_path().exists()

    def test_reopen(self, tmp_stratum_dir_encrypted):
        assert _reopen(seal_snapshot(SNAPSHOT)) == SNAPSHOT

    def test_key_bound_to_header(self, tmp_stratum_dir_encrypted):
        envelope = seal_snapshot(SNAPSHOT)
        envelope["version"] = "3"
        with pytest.raises(ValueError, match="Decryption failed"):
            _reopen(envelope)

    def test_corrupted_token(self, tmp_stratum_dir_encrypted):
        envelope = seal_snapshot(SNAPSHOT)
        envelope["payload"] = envelope["payload"][:-6] + "AAAAAA"
        with pytest.raises(ValueError, match="Decryption failed"):
            _reopen(envelope)

    def test_missing_token(self, tmp_stratum_dir_encrypted):
        envelope = seal_snapshot(SNAPSHOT)
        envelope["payload"] = {"episodic": []}
        with pytest.raises(ValueError, match="no payload token"):
            _reopen(envelope)

    def test_missing_key(self, tmp_stratum_dir_encrypted):
        envelope = seal_snapshot(SNAPSHOT)
        snapshot_key_path().unlink()
        with pytest.raises(ValueError, match="No snapshot key"):
            _reopen(envelope)

    def test_other_key_cannot_open(self, tmp_stratum_dir_encrypted):
        envelope = seal_snapshot(SNAPSHOT)
        snapshot_key_path().unlink()
        load_snapshot_secret(create=True)
        with pytest.raises(ValueError, match="Decryption failed"):
            _reopen(envelope)


# ============================================================================
# File permissions
# ============================================================================


class TestPrivateFiles:
    def test_write_private_file(self, tmp_path):
        target = tmp_path / "nested" / "snap.json"
        write_private_file(target, b"{}")
        assert target.read_bytes() == b"{}"
        assert stat.S_IMODE(os.stat(target).st_mode) == 0o600

    def test_write_private_file_refuses_symlink(self, tmp_path):
        real = tmp_path / "real.json"
        real.write_text("original")
        link = tmp_path / "link.json"
        link.symlink_to(real)
        with pytest.raises(OSError):
            write_private_file(link, b"hijack")
        assert real.read_text() == "original"

    def test_secure_connect_creates_private_file(self, tmp_path):
        db = tmp_path / "sub" / "fresh.db"
        secure_connect(db).close()
        assert stat.S_IMODE(os.stat(db).st_mode) == 0o600

    def test_secure_connect_tightens_existing_file(self, tmp_path):
        db = tmp_path / "loose.db"
        db.touch()
        os.chmod(db, 0o644)
        secure_connect(db).close()
        assert stat.S_IMODE(os.stat(db).st_mode) == 0o600

    def test_secure_connect_memory(self, tmp_path):
        conn = secure_connect(":memory:")
        try:
            assert conn.execute("SELECT 1").fetchone()[0] == 1
        finally:
            conn.close()
        assert list(tmp_path.iterdir()) == []
