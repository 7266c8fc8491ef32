from __future__ import annotations

import json
import shutil
from dataclasses import dataclass, field

import paramiko

from buildwithnexus.config import NexusConfig
from buildwithnexus.host import qemu_install_hint
from buildwithnexus.ports import port_is_free
from buildwithnexus.redaction import echo
from buildwithnexus.remote_probe import server_healthy
from buildwithnexus.runtime import Runtime
from buildwithnexus.ssh import RemoteShell
from buildwithnexus.state import ProvisionMarker
from buildwithnexus.tunnel import read_tunnel_url

_PROBE_ERRORS = (paramiko.SSHException, OSError, EOFError)


@dataclass
class HealthStatus:
    vm_running: bool = False
    ssh_ready: bool = False
    docker_ready: bool = False
    server_healthy: bool = False
    tunnel_url: str | None = None

    def as_dict(self) -> dict[str, object]:
        return {
            "vm_running": self.vm_running,
            "ssh_ready": self.ssh_ready,
            "docker_ready": self.docker_ready,
            "server_healthy": self.server_healthy,
            "tunnel_url": self.tunnel_url,
        }


def check_health(remote: RemoteShell, vm_running: bool) -> HealthStatus:
    status = HealthStatus(vm_running=vm_running)
    if not vm_running:
        return status
    try:
        status.ssh_ready = remote.ping()
        if not status.ssh_ready:
            return status
        status.docker_ready = remote.exec(
            "docker version --format '{{.Server.Version}}'", quiet=True
        ).ok
        status.server_healthy = server_healthy(remote)
        status.tunnel_url = read_tunnel_url(remote)
    except _PROBE_ERRORS:
        return status
    return status


def _mark(ok: bool) -> str:
    return "ok" if ok else "--"


def status(runtime: Runtime, *, as_json: bool) -> None:
    config = NexusConfig.from_file(runtime.paths.config_file)
    marker = ProvisionMarker.from_file(runtime.paths.marker_file)
    if config is None:
        health = HealthStatus()
    else:
        health = check_health(runtime.remote(config.ssh_port), runtime.qemu().is_running())

    if as_json:
        payload = {
            "home": str(runtime.paths.home),
            "configured": config is not None,
            "provisioned": marker.as_dict() if marker else None,
            "ports": (
                {"ssh": config.ssh_port, "http": config.http_port, "https": config.https_port}
                if config
                else None
            ),
            "health": health.as_dict(),
        }
        echo(json.dumps(payload, indent=2, sort_keys=True))
        return

    if config is None:
        echo("Not configured. Run: buildwithnexus init")
        return
    pid = runtime.qemu().pid()
    echo("NEXUS status")
    echo(f"  provisioned:  {marker.provisioned_at if marker else 'no'}")
    echo(f"  vm:           {'running (PID ' + str(pid) + ')' if health.vm_running else 'stopped'}")
    echo(f"  ssh:          {_mark(health.ssh_ready)} (port {config.ssh_port})")
    echo(f"  docker:       {_mark(health.docker_ready)}")
    echo(f"  server:       {_mark(health.server_healthy)} (http://localhost:{config.http_port})")
    echo(f"  tunnel:       {health.tunnel_url or 'none'}")


@dataclass
class DoctorReport:
    checks: list[tuple[bool, str]] = field(default_factory=list)

    def add(self, ok: bool, label: str) -> None:
        self.checks.append((ok, label))

    @property
    def failures(self) -> int:
        return sum(1 for ok, _ in self.checks if not ok)


def run_checks(runtime: Runtime) -> DoctorReport:
    report = DoctorReport()
    paths = runtime.paths
    search_path = runtime.environ.get("PATH")

    host = runtime.host()
    report.add(True, f"platform: {host.os} {host.arch}")
    qemu_version = runtime.qemu().version()
    report.add(
        qemu_version is not None,
        f"QEMU: {qemu_version}" if qemu_version else f"QEMU missing; {qemu_install_hint(host)}",
    )
    for tool in ("qemu-img", "ssh", "ssh-keygen", "curl"):
        report.add(shutil.which(tool, path=search_path) is not None, f"{tool} on PATH")
    report.add(
        any(shutil.which(tool, path=search_path) for tool in ("mkisofs", "genisoimage")),
        "mkisofs or genisoimage on PATH",
    )

    report.add(paths.home.is_dir(), f"install root: {paths.home}")
    report.add(paths.ssh_key.exists(), "VM SSH key present")
    store = runtime.secret_store()
    report.add(
        store.verify(),
        "stored keys pass integrity check" if store.exists() else "no stored keys yet",
    )
    pinned = runtime.trust_store().pinned()
    report.add(True, f"host key pin: {pinned}" if pinned else "host key pin: not pinned yet")

    config = NexusConfig.from_file(paths.config_file)
    if config is not None and not runtime.qemu().is_running():
        for label, port in (
            ("SSH", config.ssh_port),
            ("HTTP", config.http_port),
            ("HTTPS", config.https_port),
        ):
            report.add(port_is_free(port), f"{label} port {port} available")
    return report


def doctor(runtime: Runtime) -> None:
    report = run_checks(runtime)
    echo("buildwithnexus doctor")
    for ok, label in report.checks:
        echo(f"  [{'ok' if ok else '!!'}] {label}")
    if report.failures:
        echo(f"{report.failures} issue(s) found.")
    else:
        echo("All checks passed.")
