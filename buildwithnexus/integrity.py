from __future__ import annotations

import hashlib
import hmac
import os
import secrets
from pathlib import Path

from buildwithnexus.io_utils import atomic_write_text

SEAL_KEY_BYTES = 32


def compute_seal(data: bytes, key: bytes) -> str:
    return hmac.new(key, data, hashlib.sha256).hexdigest()


def read_seal_key(key_path: Path) -> bytes | None:
    try:
        raw = key_path.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    try:
        key = bytes.fromhex(raw)
    except ValueError:
        return None
    return key or None


def load_or_create_seal_key(key_path: Path) -> bytes:
    existing = read_seal_key(key_path)
    if existing is not None:
        return existing
    key = secrets.token_bytes(SEAL_KEY_BYTES)
    key_path.parent.mkdir(parents=True, exist_ok=True)
    key_path.unlink(missing_ok=True)
    fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    try:
        os.write(fd, (key.hex() + "\n").encode("ascii"))
    finally:
        os.close(fd)
    return key


def seal_file(path: Path, seal_path: Path, key: bytes) -> None:
    if not path.exists():
        seal_path.unlink(missing_ok=True)
        return
    atomic_write_text(seal_path, compute_seal(path.read_bytes(), key) + "\n", mode=0o600)


def verify_file(path: Path, seal_path: Path, key: bytes | None) -> bool:
    """Check ``path`` against its detached seal.

    Neither file present is a valid empty store. Exactly one present is
    tampering, as is a seal that cannot be read or does not match.
    """
    has_file = path.exists()
    has_seal = seal_path.exists()
    if not has_file and not has_seal:
        return True
    if has_file != has_seal or key is None:
        return False
    try:
        data = path.read_bytes()
        stored = seal_path.read_text(encoding="ascii").strip()
    except (OSError, UnicodeDecodeError):
        return False
    expected = compute_seal(data, key)
    return hmac.compare_digest(expected.encode("ascii"), stored.encode("ascii", errors="replace"))
