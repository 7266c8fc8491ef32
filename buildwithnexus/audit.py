from __future__ import annotations

import os
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from buildwithnexus.redaction import redact

DEFAULT_AUDIT_MAX_BYTES = 10 * 1024 * 1024


class AuditEvent(str, Enum):
    KEYS_SAVED = "keys_saved"
    KEYS_LOADED = "keys_loaded"
    KEYS_VALIDATED = "keys_validated"
    KEYS_TAMPERED = "keys_tampered"
    KEYS_RESET = "keys_reset"
    CLOUDINIT_RENDERED = "cloudinit_rendered"
    CLOUDINIT_ISO_CREATED = "cloudinit_iso_created"
    CLOUDINIT_PLAINTEXT_DELETED = "cloudinit_plaintext_deleted"
    SSH_EXEC = "ssh_exec"
    HOST_KEY_PINNED = "host_key_pinned"
    HOST_KEY_MISMATCH = "host_key_mismatch"
    TUNNEL_URL_CAPTURED = "tunnel_url_captured"
    DLP_VIOLATION = "dlp_violation"
    ENV_SCRUBBED = "env_scrubbed"
    PORT_CONFLICT = "port_conflict"
    INIT_STARTED = "init_started"
    INIT_COMPLETED = "init_completed"
    INIT_FAILED = "init_failed"
    VM_ROLLBACK = "vm_rollback"
    VM_STOPPED = "vm_stopped"
    RELEASE_UPDATED = "release_updated"
    INTERRUPTED = "interrupted"


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class AuditLog:
    """Append-only, size-rotated audit trail of security-relevant events.

    Recording is best-effort: a missing directory or an I/O failure drops the
    entry silently instead of failing the command being audited.
    """

    def __init__(self, path: Path, max_bytes: int = DEFAULT_AUDIT_MAX_BYTES) -> None:
        self.path = path
        self.max_bytes = max_bytes if max_bytes > 0 else DEFAULT_AUDIT_MAX_BYTES

    @property
    def rotated_path(self) -> Path:
        return self.path.with_name(self.path.name + ".1")

    def _maybe_rotate(self) -> None:
        if not self.path.exists():
            return
        if self.path.stat().st_size <= self.max_bytes:
            return
        self.rotated_path.unlink(missing_ok=True)
        self.path.replace(self.rotated_path)
        os.chmod(self.rotated_path, 0o600)

    def record(self, event: AuditEvent, detail: str = "") -> None:
        try:
            kind = AuditEvent(event).value
            if not self.path.parent.is_dir():
                return
            self._maybe_rotate()
            flat = " ".join(redact(detail).splitlines())
            encoded = f"{_timestamp()} | {kind} | {flat}\n".encode("utf-8")
            fd = os.open(self.path, os.O_APPEND | os.O_CREAT | os.O_WRONLY, 0o600)
            try:
                os.write(fd, encoded)
            finally:
                os.close(fd)
            os.chmod(self.path, 0o600)
        except (OSError, ValueError):
            return
