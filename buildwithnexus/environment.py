from __future__ import annotations

from typing import Mapping

from buildwithnexus.audit import AuditEvent, AuditLog
from buildwithnexus.redaction import contains_secret

SCRUB_KEYS = frozenset(
    {
        "ANTHROPIC_API_KEY",
        "OPENAI_API_KEY",
        "GOOGLE_API_KEY",
        "NEXUS_MASTER_SECRET",
        "NEXUS_SECRET",
        "AWS_SECRET_ACCESS_KEY",
        "AWS_SESSION_TOKEN",
        "GITHUB_TOKEN",
        "GH_TOKEN",
        "NPM_TOKEN",
        "DOCKER_PASSWORD",
        "CI_JOB_TOKEN",
    }
)


def scrub_env(source: Mapping[str, str], *, audit: AuditLog | None = None) -> dict[str, str]:
    """Copy ``source`` without denylisted names or secret-shaped values."""
    scrubbed: dict[str, str] = {}
    removed: list[str] = []
    for name, value in source.items():
        if name in SCRUB_KEYS or contains_secret(value):
            removed.append(name)
            continue
        scrubbed[name] = value
    if removed and audit is not None:
        audit.record(
            AuditEvent.ENV_SCRUBBED,
            f"removed {len(removed)} variable(s): {', '.join(sorted(removed))}",
        )
    return scrubbed
