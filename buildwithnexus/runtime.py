from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping

from buildwithnexus.audit import AuditLog
from buildwithnexus.config import Timeouts
from buildwithnexus.host import HostPlatform, detect_platform
from buildwithnexus.keystore import SecretStore
from buildwithnexus.paths import NexusPaths
from buildwithnexus.prompts import Prompter, TerminalPrompter
from buildwithnexus.qemu import QemuClient
from buildwithnexus.ssh import RemoteShell
from buildwithnexus.trust import TrustStore


@dataclass
class Runtime:
    """Per-invocation wiring: one environment snapshot and one install root."""

    paths: NexusPaths
    environ: dict[str, str]
    audit: AuditLog
    prompter: Prompter
    timeouts: Timeouts
    platform: HostPlatform | None = field(default=None)

    def host(self) -> HostPlatform:
        if self.platform is None:
            self.platform = detect_platform()
        return self.platform

    def secret_store(self) -> SecretStore:
        return SecretStore(
            self.paths.keys_file,
            self.paths.seal_file,
            self.paths.seal_key_file,
            self.audit,
        )

    def trust_store(self) -> TrustStore:
        return TrustStore(self.paths.host_key_pin, self.audit)

    def remote(self, port: int) -> RemoteShell:
        return RemoteShell(
            port,
            key_path=self.paths.ssh_key,
            trust=self.trust_store(),
            audit=self.audit,
            known_hosts_path=self.paths.known_hosts,
            base_env=self.environ,
        )

    def qemu(self) -> QemuClient:
        return QemuClient(self.host(), self.paths.pid_file, self.environ, audit=self.audit)


def build_runtime(environ: Mapping[str, str], prompter: Prompter | None = None) -> Runtime:
    snapshot = dict(environ)
    paths = NexusPaths.from_environ(snapshot)
    timeouts = Timeouts.from_environ(snapshot)
    return Runtime(
        paths=paths,
        environ=snapshot,
        audit=AuditLog(paths.audit_log, timeouts.audit_max_bytes),
        prompter=prompter or TerminalPrompter(),
        timeouts=timeouts,
    )
