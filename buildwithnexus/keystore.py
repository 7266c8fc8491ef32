from __future__ import annotations

import re
import secrets
from pathlib import Path
from typing import Mapping

from buildwithnexus.audit import AuditEvent, AuditLog
from buildwithnexus.errors import IntegrityViolation, ValidationError
from buildwithnexus.integrity import load_or_create_seal_key, read_seal_key, seal_file, verify_file
from buildwithnexus.io_utils import atomic_write_text
from buildwithnexus.redaction import REDACTED
from buildwithnexus.validation import validate_all, validate_secret

KNOWN_SECRET_NAMES = (
    "ANTHROPIC_API_KEY",
    "OPENAI_API_KEY",
    "GOOGLE_API_KEY",
    "NEXUS_MASTER_SECRET",
)
_LINE_RE = re.compile(r"^([A-Z][A-Z0-9_]*)=(.*)$")


def parse_secret_lines(text: str) -> dict[str, str]:
    record: dict[str, str] = {}
    for line in text.splitlines():
        match = _LINE_RE.match(line.strip())
        if match is None:
            continue
        record[match.group(1)] = match.group(2)
    return record


def render_secret_lines(record: Mapping[str, str]) -> str:
    known = [name for name in KNOWN_SECRET_NAMES if record.get(name)]
    extra = sorted(name for name in record if name not in KNOWN_SECRET_NAMES and record[name])
    return "".join(f"{name}={record[name]}\n" for name in [*known, *extra])


def mask_key(value: str) -> str:
    if len(value) <= 8:
        return "***"
    return f"{value[:4]}...{value[-4:]}"


def generate_master_secret() -> str:
    return secrets.token_urlsafe(32)


def tampered_store_message(keys_file: Path) -> str:
    return (
        f"Error: Integrity check failed for {keys_file}.\n"
        "The stored keys were modified outside buildwithnexus or their seal is missing.\n"
        "Re-enter your keys with:\n"
        "  buildwithnexus keys reset && buildwithnexus keys set ANTHROPIC_API_KEY\n"
        "or remove the install completely with:\n"
        "  buildwithnexus destroy"
    )


class SecretStore:
    """Sealed ``NAME=value`` secret file.

    Every read verifies the detached HMAC seal first; every write replaces
    the file atomically and reseals it.
    """

    def __init__(
        self,
        keys_file: Path,
        seal_path: Path,
        seal_key_path: Path,
        audit: AuditLog,
    ) -> None:
        self.keys_file = keys_file
        self.seal_path = seal_path
        self.seal_key_path = seal_key_path
        self.audit = audit

    def exists(self) -> bool:
        return self.keys_file.exists()

    def verify(self) -> bool:
        return verify_file(self.keys_file, self.seal_path, read_seal_key(self.seal_key_path))

    def load(self) -> dict[str, str]:
        if not self.verify():
            self.audit.record(AuditEvent.KEYS_TAMPERED, f"seal mismatch for {self.keys_file.name}")
            raise IntegrityViolation(tampered_store_message(self.keys_file))
        if not self.keys_file.exists():
            return {}
        return parse_secret_lines(self.keys_file.read_text(encoding="utf-8"))

    def save(self, record: Mapping[str, str], *, detail: str) -> None:
        reasons = validate_all(record)
        if reasons:
            raise ValidationError("\n".join(f"Error: {reason}" for reason in reasons))
        atomic_write_text(self.keys_file, render_secret_lines(record), mode=0o600)
        seal_file(self.keys_file, self.seal_path, load_or_create_seal_key(self.seal_key_path))
        self.audit.record(AuditEvent.KEYS_SAVED, detail)

    def set_secret(self, name: str, value: str) -> None:
        validate_secret(name, value)
        record = self.load()
        record[name] = value
        self.save(record, detail=f"{name}={REDACTED} updated via CLI")

    def reset(self) -> None:
        self.keys_file.unlink(missing_ok=True)
        self.seal_path.unlink(missing_ok=True)
        self.audit.record(AuditEvent.KEYS_RESET, "stored keys and seal removed")
