from __future__ import annotations

import re
from typing import TYPE_CHECKING, Mapping

from buildwithnexus.errors import ValidationError
from buildwithnexus.redaction import echo

if TYPE_CHECKING:
    from buildwithnexus.prompts import Prompter

MIN_SECRET_LENGTH = 10
MAX_SECRET_LENGTH = 256

# Shell, YAML and env-file metacharacters plus every control character.
_FORBIDDEN_CHARS_RE = re.compile(r"[\x00-\x1f\x7f'\"\\`${}();&|<>!#%^]")

SECRET_SHAPES: dict[str, re.Pattern[str]] = {
    "ANTHROPIC_API_KEY": re.compile(r"^sk-ant-[A-Za-z0-9_-]{20,}$"),
    "OPENAI_API_KEY": re.compile(r"^sk-[A-Za-z0-9_-]{20,}$"),
    "GOOGLE_API_KEY": re.compile(r"^AIza[A-Za-z0-9_-]{35,}$"),
    "NEXUS_MASTER_SECRET": re.compile(r"^[A-Za-z0-9_-]{20,64}$"),
}


def validate_secret(name: str, value: str) -> None:
    if _FORBIDDEN_CHARS_RE.search(value):
        raise ValidationError(
            f"{name} contains characters that are not permitted in API keys", name=name
        )
    if not MIN_SECRET_LENGTH <= len(value) <= MAX_SECRET_LENGTH:
        raise ValidationError(
            f"{name} length out of expected range "
            f"({MIN_SECRET_LENGTH}-{MAX_SECRET_LENGTH} characters)",
            name=name,
        )
    shape = SECRET_SHAPES.get(name)
    if shape is not None and not shape.match(value):
        raise ValidationError(
            f"{name} does not match the expected format for this key type", name=name
        )


def validate_all(record: Mapping[str, str]) -> list[str]:
    """Return every validation failure in ``record``; empty values are skipped."""
    reasons: list[str] = []
    for name, value in record.items():
        if not value:
            continue
        try:
            validate_secret(name, value)
        except ValidationError as exc:
            reasons.append(str(exc))
    return reasons


def request_valid_secret(
    prompter: "Prompter",
    name: str,
    message: str,
    *,
    required: bool,
    max_attempts: int = 3,
) -> str:
    for _ in range(max_attempts):
        value = prompter.request_secret(message).strip()
        if not value:
            if not required:
                return ""
            echo(f"{name} is required.", err=True)
            continue
        try:
            validate_secret(name, value)
        except ValidationError as exc:
            echo(str(exc), err=True)
            continue
        return value
    raise ValidationError(f"Error: No valid value entered for {name}.", name=name)
