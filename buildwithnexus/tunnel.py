from __future__ import annotations

import re
import shlex

from buildwithnexus.audit import AuditEvent, AuditLog
from buildwithnexus.config import Timeouts
from buildwithnexus.polling import wait_until
from buildwithnexus.ssh import RemoteShell

TUNNEL_URL_RE = re.compile(r"^https://[a-z0-9-]+\.trycloudflare\.com$")
TUNNEL_LOG = "/tmp/tunnel.log"
REMOTE_TUNNEL_URL_FILE = "/home/nexus/.nexus/tunnel-url.txt"
_START_CMD = (
    f"nohup cloudflared tunnel --url http://localhost:4200 > {TUNNEL_LOG} 2>&1 < /dev/null &"
)
_GREP_CMD = f"grep -o 'https://[^ ]*\\.trycloudflare\\.com' {TUNNEL_LOG} 2>/dev/null | head -1"


def start_tunnel(remote: RemoteShell, timeouts: Timeouts, *, audit: AuditLog) -> str | None:
    """Start cloudflared in the VM and return its public URL, or None."""
    remote.exec(_START_CMD, check=True)
    found: dict[str, str] = {}

    def url_visible() -> bool:
        result = remote.exec(_GREP_CMD, quiet=True)
        candidate = result.stdout.strip()
        if not candidate.startswith("https://"):
            return False
        found["url"] = candidate
        return True

    if not wait_until(
        url_visible,
        timeout_seconds=timeouts.tunnel_seconds,
        interval_seconds=timeouts.tunnel_interval_seconds,
    ):
        return None

    url = found["url"]
    if not TUNNEL_URL_RE.match(url):
        audit.record(AuditEvent.DLP_VIOLATION, "tunnel URL did not match the expected format")
        return None
    remote.exec(f"printf '%s\\n' {shlex.quote(url)} > {REMOTE_TUNNEL_URL_FILE}", check=True)
    audit.record(AuditEvent.TUNNEL_URL_CAPTURED, url)
    return url


def read_tunnel_url(remote: RemoteShell) -> str | None:
    result = remote.exec(f"cat {REMOTE_TUNNEL_URL_FILE} 2>/dev/null", quiet=True)
    url = result.stdout.strip()
    return url if TUNNEL_URL_RE.match(url) else None


def stop_tunnel(remote: RemoteShell) -> None:
    remote.exec("pkill -f cloudflared || true")
