from __future__ import annotations

import base64
import hashlib
import os
from pathlib import Path

import paramiko

from buildwithnexus.audit import AuditEvent, AuditLog
from buildwithnexus.errors import TrustViolation


def fingerprint_key(blob: bytes) -> str:
    """OpenSSH-style SHA256 fingerprint of a public host key blob."""
    digest = hashlib.sha256(blob).digest()
    return "SHA256:" + base64.b64encode(digest).decode("ascii").rstrip("=")


def mismatch_message(expected: str, actual: str) -> str:
    return (
        "Error: VM host key does not match the pinned fingerprint.\n"
        f"  pinned: {expected}\n"
        f"  offered: {actual}\n"
        "Refusing to connect. If the VM was rebuilt on purpose, run: buildwithnexus destroy"
    )


class TrustStore:
    """Trust-on-first-use pin for the VM host key.

    The first fingerprint seen is written once with exclusive create; later
    connections must present the same fingerprint. A mismatch never
    replaces the pin.
    """

    def __init__(self, pin_path: Path, audit: AuditLog | None = None) -> None:
        self.pin_path = pin_path
        self.audit = audit

    def _record(self, event: AuditEvent, detail: str) -> None:
        if self.audit is not None:
            self.audit.record(event, detail)

    def pinned(self) -> str | None:
        try:
            value = self.pin_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        return value or None

    def _pin(self, fingerprint: str) -> bool:
        self.pin_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        try:
            fd = os.open(self.pin_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            return False
        try:
            os.write(fd, (fingerprint + "\n").encode("ascii"))
        finally:
            os.close(fd)
        return True

    def check(self, fingerprint: str) -> bool:
        pinned = self.pinned()
        if pinned is None:
            if self._pin(fingerprint):
                self._record(AuditEvent.HOST_KEY_PINNED, f"host key pinned: {fingerprint}")
                return True
            # Lost an exclusive-create race; compare against the winner.
            pinned = self.pinned()
        if pinned == fingerprint:
            return True
        self._record(
            AuditEvent.HOST_KEY_MISMATCH,
            f"host key mismatch: expected {pinned}, got {fingerprint}",
        )
        return False

    def require(self, fingerprint: str) -> None:
        if not self.check(fingerprint):
            raise TrustViolation(mismatch_message(self.pinned() or "<unreadable>", fingerprint))


class PinnedHostKeyPolicy(paramiko.MissingHostKeyPolicy):
    """Host key policy that defers every decision to a TrustStore.

    Used with a client that loads no known_hosts, so paramiko consults it
    on every handshake.
    """

    def __init__(self, trust: TrustStore) -> None:
        self.trust = trust
        self.accepted_key: paramiko.PKey | None = None

    def missing_host_key(self, client: paramiko.SSHClient, hostname: str, key: paramiko.PKey) -> None:
        self.trust.require(fingerprint_key(key.asbytes()))
        self.accepted_key = key
