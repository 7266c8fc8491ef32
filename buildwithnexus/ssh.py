from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping

import paramiko

from buildwithnexus.audit import AuditEvent, AuditLog
from buildwithnexus.environment import scrub_env
from buildwithnexus.errors import TrustViolation, UserFacingError
from buildwithnexus.io_utils import atomic_write_text, read_text_or_empty
from buildwithnexus.redaction import redact
from buildwithnexus.trust import PinnedHostKeyPolicy, TrustStore

VM_USER = "nexus"
VM_HOST = "127.0.0.1"
SSH_HOST_ALIAS = "nexus-vm"
SSH_CONFIG_BEGIN = f"# BUILDWITHNEXUS BEGIN {SSH_HOST_ALIAS}"
SSH_CONFIG_END = f"# BUILDWITHNEXUS END {SSH_HOST_ALIAS}"
CONNECT_TIMEOUT_SECONDS = 10


@dataclass(frozen=True)
class CommandResult:
    stdout: str
    stderr: str
    code: int

    @property
    def ok(self) -> bool:
        return self.code == 0


class RemoteShell:
    """SSH access to the VM with the host key checked against the TOFU pin.

    No known_hosts is ever loaded into the paramiko client, so the pinned
    policy decides on every connection.
    """

    def __init__(
        self,
        port: int,
        *,
        key_path: Path,
        trust: TrustStore,
        audit: AuditLog | None = None,
        known_hosts_path: Path | None = None,
        base_env: Mapping[str, str] | None = None,
        user: str = VM_USER,
        host: str = VM_HOST,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
    ) -> None:
        self.port = port
        self.key_path = key_path
        self.trust = trust
        self.audit = audit
        self.known_hosts_path = known_hosts_path
        self.base_env = dict(base_env or {})
        self.user = user
        self.host = host
        self._client_factory = client_factory

    def _connect(self) -> tuple[paramiko.SSHClient, PinnedHostKeyPolicy]:
        client = self._client_factory()
        policy = PinnedHostKeyPolicy(self.trust)
        client.set_missing_host_key_policy(policy)
        try:
            client.connect(
                self.host,
                port=self.port,
                username=self.user,
                key_filename=str(self.key_path),
                timeout=CONNECT_TIMEOUT_SECONDS,
                banner_timeout=CONNECT_TIMEOUT_SECONDS,
                auth_timeout=CONNECT_TIMEOUT_SECONDS,
                allow_agent=False,
                look_for_keys=False,
            )
        except BaseException:
            client.close()
            raise
        return client, policy

    def _audit(self, detail: str) -> None:
        if self.audit is not None:
            self.audit.record(AuditEvent.SSH_EXEC, detail)

    def exec(
        self,
        command: str,
        *,
        check: bool = False,
        timeout: float | None = None,
        quiet: bool = False,
    ) -> CommandResult:
        if not quiet:
            self._audit(command)
        client, _ = self._connect()
        try:
            _stdin, stdout, stderr = client.exec_command(command, timeout=timeout)
            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
            code = stdout.channel.recv_exit_status()
        finally:
            client.close()

        result = CommandResult(stdout=out, stderr=err, code=code)
        if check and not result.ok:
            details = (err or out).strip()
            message = f"Error: Remote command failed (exit {code}): {command}"
            if details:
                message = f"{message}\n{details}"
            raise UserFacingError(redact(message))
        return result

    def ping(self) -> bool:
        try:
            result = self.exec("echo ok", timeout=CONNECT_TIMEOUT_SECONDS, quiet=True)
        except (paramiko.SSHException, OSError, EOFError):
            return False
        return result.ok and result.stdout.strip() == "ok"

    def upload(self, local_path: Path, remote_path: str) -> None:
        """Copy a file to the VM; ``remote_path`` only appears once complete."""
        self._audit(f"upload {local_path.name} -> {remote_path}")
        partial = remote_path + ".part"
        client, _ = self._connect()
        try:
            sftp = client.open_sftp()
            try:
                sftp.put(str(local_path), partial)
                sftp.posix_rename(partial, remote_path)
            finally:
                sftp.close()
        finally:
            client.close()

    def stream(self, command: str, sink: Callable[[str], None]) -> int:
        """Run ``command`` and pass each output line to ``sink`` after redaction."""
        self._audit(command)
        client, _ = self._connect()
        try:
            _stdin, stdout, _stderr = client.exec_command(command, get_pty=True)
            for line in stdout:
                sink(redact(line.rstrip("\r\n")))
            return stdout.channel.recv_exit_status()
        finally:
            client.close()

    def _write_known_hosts(self, key: paramiko.PKey) -> Path:
        if self.known_hosts_path is None:
            raise UserFacingError("Error: No known_hosts path configured for interactive SSH.")
        entry = f"[{self.host}]:{self.port}" if self.port != 22 else self.host
        host_keys = paramiko.HostKeys()
        host_keys.add(entry, key.get_name(), key)
        self.known_hosts_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        host_keys.save(str(self.known_hosts_path))
        self.known_hosts_path.chmod(0o600)
        return self.known_hosts_path

    def interactive(self, remote_command: list[str] | None = None) -> int:
        """Open a terminal session through the system ssh client.

        A paramiko handshake verifies the host key against the pin first; the
        verified key is then the only entry OpenSSH is allowed to trust.
        """
        client, policy = self._connect()
        client.close()
        if policy.accepted_key is None:
            raise TrustViolation("Error: VM host key was not verified; refusing to connect.")
        known_hosts = self._write_known_hosts(policy.accepted_key)

        self._audit("interactive session")
        cmd = [
            "ssh",
            "-i",
            str(self.key_path),
            "-p",
            str(self.port),
            "-o",
            "StrictHostKeyChecking=yes",
            "-o",
            f"UserKnownHostsFile={known_hosts}",
            "-o",
            "IdentitiesOnly=yes",
            "-t",
            f"{self.user}@{self.host}",
            *(remote_command or []),
        ]
        proc = subprocess.run(cmd, check=False, env=scrub_env(self.base_env, audit=self.audit))
        return proc.returncode


def generate_ssh_key(key_path: Path, base_env: Mapping[str, str]) -> bool:
    """Create the VM ed25519 keypair; returns False when it already exists."""
    if key_path.exists():
        return False
    key_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    cmd = [
        "ssh-keygen",
        "-t",
        "ed25519",
        "-f",
        str(key_path),
        "-N",
        "",
        "-C",
        "buildwithnexus-vm",
        "-q",
    ]
    try:
        proc = subprocess.run(
            cmd, check=False, text=True, capture_output=True, env=scrub_env(base_env)
        )
    except FileNotFoundError as exc:
        raise UserFacingError("Error: Command not found: ssh-keygen") from exc
    if proc.returncode != 0:
        details = (proc.stderr or proc.stdout or "").strip()
        raise UserFacingError(
            f"Error: ssh-keygen failed (exit {proc.returncode})\n{details}".rstrip()
        )
    key_path.chmod(0o600)
    return True


def read_public_key(public_key_path: Path) -> str:
    value = read_text_or_empty(public_key_path).strip()
    if not value:
        raise UserFacingError(f"Error: SSH public key not found: {public_key_path}")
    return value


def _strip_named_block(text: str, begin_marker: str, end_marker: str) -> list[str]:
    lines = text.splitlines()
    kept: list[str] = []
    i = 0
    while i < len(lines):
        if lines[i].strip() == begin_marker:
            i += 1
            while i < len(lines) and lines[i].strip() != end_marker:
                i += 1
            if i < len(lines):
                i += 1
            continue
        kept.append(lines[i])
        i += 1
    while kept and kept[-1] == "":
        kept.pop()
    return kept


def ssh_config_block(port: int, key_path: Path, known_hosts_path: Path) -> str:
    return "\n".join(
        [
            SSH_CONFIG_BEGIN,
            f"Host {SSH_HOST_ALIAS}",
            f"  HostName {VM_HOST}",
            f"  User {VM_USER}",
            f"  Port {port}",
            f"  IdentityFile {key_path}",
            "  IdentitiesOnly yes",
            "  StrictHostKeyChecking yes",
            f"  UserKnownHostsFile {known_hosts_path}",
            SSH_CONFIG_END,
        ]
    )


def add_ssh_config(config_path: Path, port: int, key_path: Path, known_hosts_path: Path) -> None:
    kept = _strip_named_block(read_text_or_empty(config_path), SSH_CONFIG_BEGIN, SSH_CONFIG_END)
    block = ssh_config_block(port, key_path, known_hosts_path)
    rendered = ("\n".join(kept) + "\n\n" if kept else "") + block + "\n"
    config_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    atomic_write_text(config_path, rendered, mode=0o600)


def remove_ssh_config(config_path: Path) -> None:
    existing = read_text_or_empty(config_path)
    if not existing:
        return
    kept = _strip_named_block(existing, SSH_CONFIG_BEGIN, SSH_CONFIG_END)
    rendered = "\n".join(kept)
    if rendered:
        rendered += "\n"
    atomic_write_text(config_path, rendered, mode=0o600)
