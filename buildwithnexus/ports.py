from __future__ import annotations

import dataclasses
import signal
import socket
import subprocess
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Mapping

from buildwithnexus.audit import AuditEvent, AuditLog
from buildwithnexus.environment import scrub_env
from buildwithnexus.errors import ResourceConflict
from buildwithnexus.host import pid_running, signal_pid
from buildwithnexus.polling import wait_until
from buildwithnexus.prompts import Choice, Prompter

BIND_ADDRESSES = ("0.0.0.0", "127.0.0.1")
PORT_ROLES = (("ssh", "SSH"), ("http", "HTTP"), ("https", "HTTPS"))
DEFAULT_SEARCH_ATTEMPTS = 50
DEFAULT_GRACE_SECONDS = 3.0
DEFAULT_RELEASE_SECONDS = 2.0


@dataclass(frozen=True)
class PortSet:
    ssh: int
    http: int
    https: int

    def with_port(self, role: str, port: int) -> "PortSet":
        return dataclasses.replace(self, **{role: port})

    def values(self) -> tuple[int, int, int]:
        return (self.ssh, self.http, self.https)


@dataclass(frozen=True)
class PortOwner:
    pid: int
    command: str


def port_is_free(port: int) -> bool:
    for address in BIND_ADDRESSES:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind((address, port))
            except OSError:
                return False
    return True


def find_free_port(
    start: int,
    *,
    max_attempts: int = DEFAULT_SEARCH_ATTEMPTS,
    exclude: Iterable[int] = (),
) -> int | None:
    skip = set(exclude)
    for port in range(start, min(start + max_attempts, 65536)):
        if port in skip:
            continue
        if port_is_free(port):
            return port
    return None


def _run_quiet(cmd: list[str], env: Mapping[str, str]) -> str:
    try:
        proc = subprocess.run(
            cmd,
            check=False,
            text=True,
            capture_output=True,
            env=dict(env),
            timeout=5,
        )
    except (OSError, subprocess.SubprocessError):
        return ""
    if proc.returncode != 0:
        return ""
    return (proc.stdout or "").strip()


def find_port_owner(port: int, base_env: Mapping[str, str]) -> PortOwner | None:
    env = scrub_env(base_env)
    out = _run_quiet(["lsof", "-nP", f"-iTCP:{port}", "-sTCP:LISTEN", "-t"], env)
    first = out.splitlines()[0].strip() if out else ""
    if not first.isdigit():
        return None
    pid = int(first)
    command = _run_quiet(["ps", "-o", "comm=", "-p", str(pid)], env)
    return PortOwner(pid=pid, command=command or "unknown")


def terminate_process(
    pid: int,
    *,
    grace_seconds: float = DEFAULT_GRACE_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> None:
    try:
        if not signal_pid(pid, signal.SIGTERM):
            return
    except PermissionError as exc:
        raise ResourceConflict(
            f"Error: Not permitted to terminate PID {pid}. Stop it manually or pick another port."
        ) from exc
    deadline = clock() + grace_seconds
    while clock() < deadline:
        if not pid_running(pid):
            return
        sleep(0.2)
    if pid_running(pid):
        signal_pid(pid, signal.SIGKILL)


def _choices_for(port: int, owner: PortOwner | None, alternative: int | None) -> list[Choice]:
    choices: list[Choice] = []
    if owner is not None:
        choices.append(
            Choice("kill", f"Kill {owner.command} (PID {owner.pid}) to free port {port}")
        )
    if alternative is not None:
        choices.append(Choice("reassign", f"Use port {alternative} instead"))
    choices.append(Choice("abort", "Abort"))
    return choices


def resolve_port_conflicts(
    requested: PortSet,
    prompter: Prompter,
    *,
    base_env: Mapping[str, str] | None = None,
    audit: AuditLog | None = None,
    max_attempts: int = DEFAULT_SEARCH_ATTEMPTS,
    grace_seconds: float = DEFAULT_GRACE_SECONDS,
    release_seconds: float = DEFAULT_RELEASE_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> PortSet:
    """Return a port set whose every port is bindable right now.

    Each occupied port is negotiated with the operator: terminate the
    occupant (only offered when its PID is known), move to the next free
    port (only offered when one exists), or abort with ResourceConflict.
    """
    resolved = requested
    for role, label in PORT_ROLES:
        port = getattr(resolved, role)
        if port_is_free(port):
            continue

        owner = find_port_owner(port, base_env or {})
        taken = [getattr(resolved, other) for other, _ in PORT_ROLES if other != role]
        alternative = find_free_port(port + 1, max_attempts=max_attempts, exclude=taken)
        owner_text = f"{owner.command} (PID {owner.pid})" if owner else "an unknown process"
        if audit is not None:
            audit.record(AuditEvent.PORT_CONFLICT, f"{label} port {port} in use by {owner_text}")

        answer = prompter.present_choice(
            f"{label} port {port} is already in use by {owner_text}.",
            _choices_for(port, owner, alternative),
        )
        if answer == "kill" and owner is not None:
            terminate_process(owner.pid, grace_seconds=grace_seconds, sleep=sleep)
            released = wait_until(
                lambda: port_is_free(port),
                timeout_seconds=release_seconds,
                interval_seconds=0.2,
                sleep=sleep,
            )
            if not released:
                raise ResourceConflict(
                    f"Error: {label} port {port} is still in use after stopping PID {owner.pid}."
                )
        elif answer == "reassign" and alternative is not None:
            resolved = resolved.with_port(role, alternative)
        else:
            raise ResourceConflict(f"Error: Aborted: {label} port {port} is in use.")
    return resolved
