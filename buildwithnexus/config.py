from __future__ import annotations

import dataclasses
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from buildwithnexus.audit import DEFAULT_AUDIT_MAX_BYTES
from buildwithnexus.errors import UserFacingError
from buildwithnexus.io_utils import atomic_write_text, read_text_or_empty
from buildwithnexus.ports import PortSet

DEFAULT_SSH_PORT = 2222
DEFAULT_HTTP_PORT = 4200
DEFAULT_HTTPS_PORT = 8443
MIN_VM_RAM_GB = 2
MIN_VM_CPUS = 1
MIN_VM_DISK_GB = 10


def env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


@dataclass(frozen=True)
class Timeouts:
    ssh_seconds: int = 300
    ssh_interval_seconds: int = 5
    boot_seconds: int = 1800
    boot_interval_seconds: int = 20
    boot_progress_seconds: int = 60
    server_seconds: int = 900
    server_interval_seconds: int = 5
    server_progress_seconds: int = 30
    start_ssh_seconds: int = 120
    start_server_seconds: int = 60
    tunnel_seconds: int = 30
    tunnel_interval_seconds: int = 3
    audit_max_bytes: int = DEFAULT_AUDIT_MAX_BYTES

    @classmethod
    def from_environ(cls, environ: Mapping[str, str]) -> "Timeouts":
        defaults = cls()
        return dataclasses.replace(
            defaults,
            ssh_seconds=env_int(
                environ, "BUILDWITHNEXUS_SSH_TIMEOUT_SECONDS", defaults.ssh_seconds
            ),
            boot_seconds=env_int(
                environ, "BUILDWITHNEXUS_BOOT_TIMEOUT_SECONDS", defaults.boot_seconds
            ),
            server_seconds=env_int(
                environ, "BUILDWITHNEXUS_SERVER_TIMEOUT_SECONDS", defaults.server_seconds
            ),
            tunnel_seconds=env_int(
                environ, "BUILDWITHNEXUS_TUNNEL_TIMEOUT_SECONDS", defaults.tunnel_seconds
            ),
            audit_max_bytes=env_int(
                environ, "BUILDWITHNEXUS_AUDIT_MAX_BYTES", defaults.audit_max_bytes
            ),
        )


@dataclass(frozen=True)
class NexusConfig:
    """VM sizing and networking. Never holds secret material."""

    vm_ram: int = 4
    vm_cpus: int = 2
    vm_disk: int = 20
    enable_tunnel: bool = False
    ssh_port: int = DEFAULT_SSH_PORT
    http_port: int = DEFAULT_HTTP_PORT
    https_port: int = DEFAULT_HTTPS_PORT

    def ports(self) -> PortSet:
        return PortSet(ssh=self.ssh_port, http=self.http_port, https=self.https_port)

    def with_ports(self, ports: PortSet) -> "NexusConfig":
        return dataclasses.replace(
            self, ssh_port=ports.ssh, http_port=ports.http, https_port=ports.https
        )

    def as_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_file(cls, path: Path) -> "NexusConfig | None":
        raw = read_text_or_empty(path)
        if not raw:
            return None
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise UserFacingError(f"Error: Could not parse config file {path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise UserFacingError(f"Error: Unexpected config payload in {path}")

        values: dict[str, Any] = {}
        for field in dataclasses.fields(cls):
            if field.name not in payload:
                continue
            value = payload[field.name]
            expected = bool if field.type in ("bool", bool) else int
            if type(value) is not expected:
                raise UserFacingError(
                    f"Error: Invalid value for '{field.name}' in {path}: {value!r}"
                )
            values[field.name] = value
        return cls(**values)

    def write(self, path: Path) -> None:
        atomic_write_text(path, json.dumps(self.as_dict(), indent=2, sort_keys=True) + "\n")


def load_config(path: Path) -> NexusConfig:
    config = NexusConfig.from_file(path)
    if config is None:
        raise UserFacingError("Error: No configuration found. Run: buildwithnexus init")
    return config
