"""
Stratum snapshot files -- private file writes and the snapshot envelope.

A snapshot file is a JSON envelope::

    {"format": "stratum-snapshot", "version": "2", "exportedAt": "...",
     "encrypted": true, "payload": "<fernet token>"}

With ``encrypted`` false the payload is the snapshot object itself. Encrypted
payloads use a Fernet key derived (HKDF-SHA256) from the secret at
$STRATUM_HOME/.snapshot-key and the envelope's version and exportedAt, so a
header edited after export no longer decrypts. The secret is created on first
encrypted export with 0600 permissions.

Set STRATUM_ENCRYPT=0 to write plaintext envelopes.
"""

import base64
import json
import logging
import os
import secrets
import stat
from pathlib import Path
from typing import Any, Dict

from stratum.config import MEMORY_DB_SENTINEL, stratum_home

logger = logging.getLogger("stratum.crypto")

SNAPSHOT_FORMAT = "stratum-snapshot"
_SECRET_BYTES = 32


def snapshot_key_path() -> Path:
    return stratum_home() / ".snapshot-key"


def encryption_enabled() -> bool:
    """True unless STRATUM_ENCRYPT is 0/false/no."""
    flag = os.environ.get("STRATUM_ENCRYPT", "").strip().lower()
    return flag not in ("0", "false", "no")


def _read_secret(path: Path) -> bytes:
    stored = path.read_bytes().strip()
    if len(stored) == _SECRET_BYTES:
        return stored
    try:
        secret = base64.urlsafe_b64decode(stored)
    except ValueError as e:
        raise ValueError(f"Snapshot key at {path} is unreadable") from e
    if len(secret) != _SECRET_BYTES:
        raise ValueError(f"Snapshot key at {path} has the wrong length")
    return secret


def load_snapshot_secret(create: bool = False) -> bytes:
    """Return the snapshot secret, creating it when *create* is set.

    Raises ValueError when the secret is missing and *create* is false.
    """
    path = snapshot_key_path()
    if path.exists():
        return _read_secret(path)
    if not create:
        raise ValueError(f"No snapshot key at {path}; cannot decrypt")

    path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    secret = secrets.token_bytes(_SECRET_BYTES)
    try:
        fd = os.open(str(path), os.O_CREAT | os.O_WRONLY | os.O_EXCL | os.O_NOFOLLOW, 0o600)
    except FileExistsError:
        # Lost a creation race: use the other writer's secret.
        return _read_secret(path)
    try:
        os.write(fd, base64.urlsafe_b64encode(secret))
    finally:
        os.close(fd)
    logger.info("Created snapshot key at %s", path)
    return secret


def _envelope_fernet(version, exported_at, create: bool):
    from cryptography.fernet import Fernet
    from cryptography.hazmat.primitives import hashes
    from cryptography.hazmat.primitives.kdf.hkdf import HKDF

    info = f"{SNAPSHOT_FORMAT}|{version}|{exported_at}".encode("utf-8")
    derived = HKDF(algorithm=hashes.SHA256(), length=32, salt=None, info=info).derive(
        load_snapshot_secret(create=create)
    )
    return Fernet(base64.urlsafe_b64encode(derived))


def seal_snapshot(snapshot: Dict[str, Any]) -> Dict[str, Any]:
    """Wrap *snapshot* in a file envelope, encrypting it when enabled."""
    envelope = {
        "format": SNAPSHOT_FORMAT,
        "version": snapshot.get("version"),
        "exportedAt": snapshot.get("exportedAt"),
        "encrypted": False,
        "payload": snapshot,
    }
    if not encryption_enabled():
        return envelope

    try:
        fernet = _envelope_fernet(envelope["version"], envelope["exportedAt"], create=True)
    except ImportError:
        logger.warning("STRATUM_ENCRYPT is on but 'cryptography' is not installed; writing plaintext snapshot")
        return envelope
    token = fernet.encrypt(json.dumps(snapshot).encode("utf-8"))
    envelope["encrypted"] = True
    envelope["payload"] = token.decode("ascii")
    return envelope


def open_snapshot(document: Any) -> Dict[str, Any]:
    """Unwrap a parsed snapshot file back into the snapshot dict.

    A bare snapshot (no envelope) is returned unchanged. Raises ValueError for
    a malformed envelope, a payload that fails to decrypt, or a header that
    does not match its payload.
    """
    if not isinstance(document, dict):
        raise ValueError("Snapshot file must hold a JSON object")
    if document.get("format") != SNAPSHOT_FORMAT:
        return document

    version = document.get("version")
    exported_at = document.get("exportedAt")
    payload = document.get("payload")

    if document.get("encrypted"):
        if not isinstance(payload, str):
            raise ValueError("Encrypted snapshot has no payload token")
        try:
            from cryptography.fernet import InvalidToken
        except ImportError as e:
            raise ValueError("Cannot decrypt snapshot: install the 'cryptography' package") from e
        fernet = _envelope_fernet(version, exported_at, create=False)
        try:
            snapshot = json.loads(fernet.decrypt(payload.encode("ascii")).decode("utf-8"))
        except (InvalidToken, ValueError) as e:
            raise ValueError(f"Decryption failed: {e!r}") from e
    else:
        snapshot = payload

    if not isinstance(snapshot, dict):
        raise ValueError("Snapshot payload must be an object")
    if snapshot.get("version") != version or snapshot.get("exportedAt") != exported_at:
        raise ValueError("Snapshot header does not match its payload")
    return snapshot


def write_private_file(path, data: bytes) -> None:
    """Write *data* to *path* as 0600, refusing to follow a symlink."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(str(path), os.O_CREAT | os.O_WRONLY | os.O_TRUNC | os.O_NOFOLLOW, 0o600)
    try:
        os.write(fd, data)
    finally:
        os.close(fd)


def _restrict_db_file(path: Path) -> None:
    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        os.close(os.open(str(path), os.O_CREAT | os.O_WRONLY, 0o600))
    elif stat.S_IMODE(path.stat().st_mode) & (stat.S_IRWXG | stat.S_IRWXO):
        os.chmod(path, 0o600)


def secure_connect(db_path, driver=None, **kwargs):
    """Connect *driver* to *db_path*, keeping the database file owner-only.

    ``:memory:`` has no file and is passed straight through.
    """
    if driver is None:
        import sqlite3 as driver

    target = str(db_path)
    if target != MEMORY_DB_SENTINEL:
        _restrict_db_file(Path(target))
    return driver.connect(target, **kwargs)
