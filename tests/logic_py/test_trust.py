from __future__ import annotations

import stat
from pathlib import Path

import pytest

from buildwithnexus.audit import AuditLog
from buildwithnexus.errors import TrustViolation
from buildwithnexus.trust import PinnedHostKeyPolicy, TrustStore, fingerprint_key


class FakeKey:
    def __init__(self, blob: bytes) -> None:
        self.blob = blob

    def asbytes(self) -> bytes:
        return self.blob


def test_fingerprint_matches_openssh_format() -> None:
    fp = fingerprint_key(b"host-key-blob")
    assert fp.startswith("SHA256:")
    assert "=" not in fp
    assert fp == fingerprint_key(b"host-key-blob")
    assert fp != fingerprint_key(b"other-blob")


def test_first_use_pins_then_accepts_same_key(tmp_path: Path) -> None:
    audit = AuditLog(tmp_path / "audit.log")
    store = TrustStore(tmp_path / "ssh" / "vm_host_key.pin", audit)
    assert store.pinned() is None
    assert store.check("SHA256:aaa") is True
    assert store.check("SHA256:aaa") is True
    assert store.pinned() == "SHA256:aaa"
    assert stat.S_IMODE(store.pin_path.stat().st_mode) == 0o600

    lines = (tmp_path / "audit.log").read_text(encoding="utf-8").splitlines()
    assert len(lines) == 1
    assert "host_key_pinned" in lines[0]


def test_mismatch_rejects_and_never_repins(tmp_path: Path) -> None:
    audit = AuditLog(tmp_path / "audit.log")
    store = TrustStore(tmp_path / "pin", audit)
    store.check("SHA256:aaa")

    assert store.check("SHA256:bbb") is False
    assert store.pinned() == "SHA256:aaa"
    text = (tmp_path / "audit.log").read_text(encoding="utf-8")
    assert "host key mismatch: expected SHA256:aaa, got SHA256:bbb" in text


def test_require_raises_trust_violation(tmp_path: Path) -> None:
    store = TrustStore(tmp_path / "pin")
    store.require("SHA256:aaa")
    with pytest.raises(TrustViolation, match="does not match the pinned fingerprint"):
        store.require("SHA256:bbb")


def test_pinned_host_key_policy_accepts_and_records_key(tmp_path: Path) -> None:
    store = TrustStore(tmp_path / "pin")
    policy = PinnedHostKeyPolicy(store)
    key = FakeKey(b"blob-1")
    policy.missing_host_key(None, "127.0.0.1", key)  # type: ignore[arg-type]
    assert policy.accepted_key is key
    assert store.pinned() == fingerprint_key(b"blob-1")

    other = PinnedHostKeyPolicy(store)
    with pytest.raises(TrustViolation):
        other.missing_host_key(None, "127.0.0.1", FakeKey(b"blob-2"))  # type: ignore[arg-type]
    assert other.accepted_key is None
