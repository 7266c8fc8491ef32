from __future__ import annotations

from typing import Callable

import paramiko

from buildwithnexus.config import Timeouts
from buildwithnexus.polling import wait_until
from buildwithnexus.ssh import RemoteShell

BOOT_FINISHED_MARKER = "/var/lib/cloud/instance/boot-finished"
CLOUD_INIT_OUTPUT_LOG = "/var/log/cloud-init-output.log"
SERVER_HEALTH_URL = "http://localhost:4200/health"


def boot_finished(remote: RemoteShell) -> bool:
    result = remote.exec(f"test -f {BOOT_FINISHED_MARKER} && echo done", quiet=True)
    return result.ok and result.stdout.strip() == "done"


def server_healthy(remote: RemoteShell) -> bool:
    result = remote.exec(f"curl -sf {SERVER_HEALTH_URL}", quiet=True)
    return result.ok and "ok" in result.stdout


def _last_line(remote: RemoteShell, command: str) -> str:
    try:
        result = remote.exec(command, quiet=True)
    except (paramiko.SSHException, OSError, EOFError):
        return ""
    return result.stdout.strip().splitlines()[-1] if result.stdout.strip() else ""


def wait_for_ssh(
    remote: RemoteShell, timeouts: Timeouts, *, timeout_seconds: int | None = None
) -> bool:
    return wait_until(
        remote.ping,
        timeout_seconds=timeout_seconds or timeouts.ssh_seconds,
        interval_seconds=timeouts.ssh_interval_seconds,
    )


def wait_for_boot(
    remote: RemoteShell, timeouts: Timeouts, *, emit: Callable[[str], None]
) -> bool:
    def progress(elapsed: float) -> None:
        line = _last_line(remote, f"sudo tail -1 {CLOUD_INIT_OUTPUT_LOG} 2>/dev/null")
        suffix = f": {line}" if line else ""
        emit(f"    still provisioning ({int(elapsed // 60)}m elapsed){suffix}")

    return wait_until(
        lambda: boot_finished(remote),
        timeout_seconds=timeouts.boot_seconds,
        interval_seconds=timeouts.boot_interval_seconds,
        progress_every_seconds=timeouts.boot_progress_seconds,
        on_progress=progress,
    )


def wait_for_server(
    remote: RemoteShell,
    timeouts: Timeouts,
    *,
    emit: Callable[[str], None],
    timeout_seconds: int | None = None,
) -> bool:
    def progress(elapsed: float) -> None:
        state = _last_line(remote, "systemctl is-active nexus 2>/dev/null") or "unknown"
        emit(f"    waiting for server ({int(elapsed)}s elapsed, service: {state})")

    return wait_until(
        lambda: server_healthy(remote),
        timeout_seconds=timeout_seconds or timeouts.server_seconds,
        interval_seconds=timeouts.server_interval_seconds,
        progress_every_seconds=timeouts.server_progress_seconds,
        on_progress=progress,
    )
