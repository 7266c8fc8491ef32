from __future__ import annotations

import re
import sys
import traceback
from typing import Any

REDACTED = "[REDACTED]"

# Longest shapes first so a specific match is never split by a generic one.
SECRET_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"sk-ant-api03-[A-Za-z0-9_-]{20,}"),
    re.compile(r"sk-ant-[A-Za-z0-9_-]{20,}"),
    re.compile(r"sk-[A-Za-z0-9_-]{20,}"),
    re.compile(r"AIza[A-Za-z0-9_-]{35}"),
)


def contains_secret(text: str) -> bool:
    return any(pattern.search(text) for pattern in SECRET_PATTERNS)


def redact(text: Any) -> str:
    """Replace every secret-shaped substring with the placeholder.

    Accepts anything printable; non-strings are converted with ``str()`` first.
    Idempotent: the placeholder itself never matches a secret shape.
    """
    if text is None:
        return ""
    if not isinstance(text, str):
        try:
            text = str(text)
        except Exception:
            return REDACTED
    for pattern in SECRET_PATTERNS:
        text = pattern.sub(REDACTED, text)
    return text


class RedactedError(Exception):
    """Copy of an exception with secret material removed from message and trace."""

    def __init__(self, kind: str, message: str, trace: str = "") -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.trace = trace

    def __str__(self) -> str:
        return self.message


def redact_error(exc: BaseException) -> RedactedError:
    """Return a new, redacted copy of ``exc``; the original is left untouched."""
    trace = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return RedactedError(
        kind=type(exc).__name__,
        message=redact(str(exc)),
        trace=redact(trace),
    )


def echo(message: Any = "", *, err: bool = False) -> None:
    stream = sys.stderr if err else sys.stdout
    print(redact(message), file=stream)
