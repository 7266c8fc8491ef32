from __future__ import annotations

import signal
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Mapping

from buildwithnexus.audit import AuditLog
from buildwithnexus.environment import scrub_env
from buildwithnexus.host import PID_MAX, HostPlatform, pid_running, signal_pid

if TYPE_CHECKING:
    from buildwithnexus.ports import PortSet

GUEST_SSH_PORT = 22
GUEST_HTTP_PORT = 4200
GUEST_HTTPS_PORT = 443


class QemuError(RuntimeError):
    """Raised when a QEMU command fails in an orchestration-sensitive way."""


@dataclass(frozen=True)
class LaunchSpec:
    disk: Path
    seed_iso: Path
    ram_gb: int
    cpus: int
    ports: "PortSet"


def read_pid(pid_file: Path) -> int | None:
    try:
        raw = pid_file.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    if not raw.isdigit():
        return None
    pid = int(raw)
    if pid <= 1 or pid > PID_MAX:
        return None
    return pid


class QemuClient:
    def __init__(
        self,
        host: HostPlatform,
        pid_file: Path,
        base_env: Mapping[str, str] | None = None,
        audit: AuditLog | None = None,
    ) -> None:
        self.host = host
        self.pid_file = pid_file
        self.base_env = dict(base_env or {})
        self.audit = audit

    def _run(
        self,
        args: list[str],
        *,
        check: bool = True,
        audited: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        try:
            proc = subprocess.run(
                args,
                check=False,
                text=True,
                capture_output=True,
                env=scrub_env(self.base_env, audit=self.audit if audited else None),
            )
        except FileNotFoundError as exc:
            cmd = args[0] if args else "command"
            raise QemuError(f"Error: Command not found: {cmd}") from exc
        except OSError as exc:
            cmd = " ".join(args)
            raise QemuError(f"Error: Could not run command '{cmd}': {exc}") from exc

        if check and proc.returncode != 0:
            cmd = " ".join(args)
            details = (proc.stderr or "").strip() or (proc.stdout or "").strip()
            if details:
                raise QemuError(
                    f"Error: Command failed (exit {proc.returncode}): {cmd}\n{details}"
                )
            raise QemuError(f"Error: Command failed (exit {proc.returncode}): {cmd}")
        return proc

    def version(self) -> str | None:
        try:
            proc = self._run([self.host.qemu_binary, "--version"], check=False)
        except QemuError:
            return None
        if proc.returncode != 0:
            return None
        lines = (proc.stdout or "").strip().splitlines()
        return lines[0] if lines else ""

    def create_disk(self, base_image: Path, disk: Path, size_gb: int) -> bool:
        if disk.exists():
            return False
        disk.parent.mkdir(parents=True, exist_ok=True)
        self._run(
            [
                "qemu-img",
                "create",
                "-f",
                "qcow2",
                "-b",
                str(base_image),
                "-F",
                "qcow2",
                str(disk),
                f"{size_gb}G",
            ],
            audited=True,
        )
        return True

    def launch_args(self, spec: LaunchSpec) -> list[str]:
        forwards = ",".join(
            [
                f"hostfwd=tcp::{spec.ports.ssh}-:{GUEST_SSH_PORT}",
                f"hostfwd=tcp::{spec.ports.http}-:{GUEST_HTTP_PORT}",
                f"hostfwd=tcp::{spec.ports.https}-:{GUEST_HTTPS_PORT}",
            ]
        )
        args = [
            self.host.qemu_binary,
            *self.host.machine_args,
            *self.host.cpu_args,
            "-m",
            f"{spec.ram_gb}G",
            "-smp",
            str(spec.cpus),
            "-drive",
            f"file={spec.disk},if=virtio,cache=writethrough",
            "-drive",
            f"file={spec.seed_iso},if=virtio,cache=writethrough",
            "-display",
            "none",
            "-serial",
            "none",
            "-net",
            "nic,model=virtio",
            "-net",
            f"user,{forwards}",
        ]
        if self.host.bios_path.exists():
            args.extend(["-bios", str(self.host.bios_path)])
        args.extend(["-pidfile", str(self.pid_file), "-daemonize"])
        return args

    def launch(self, spec: LaunchSpec) -> None:
        self.pid_file.parent.mkdir(parents=True, exist_ok=True)
        self._run(self.launch_args(spec), audited=True)

    def pid(self) -> int | None:
        return read_pid(self.pid_file)

    def is_running(self) -> bool:
        pid = self.pid()
        return pid is not None and pid_running(pid)

    def stop(
        self,
        *,
        timeout_seconds: float = 10,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> bool:
        """Terminate the VM process (SIGTERM, then SIGKILL) and drop the pidfile."""
        pid = self.pid()
        stopped = False
        if pid is not None and pid_running(pid):
            signal_pid(pid, signal.SIGTERM)
            deadline = clock() + timeout_seconds
            while clock() < deadline and pid_running(pid):
                sleep(0.2)
            if pid_running(pid):
                signal_pid(pid, signal.SIGKILL)
            stopped = True
        self.pid_file.unlink(missing_ok=True)
        return stopped
