from __future__ import annotations

import base64
import subprocess
from pathlib import Path

import paramiko
import pytest

from buildwithnexus import ssh as ssh_module
from buildwithnexus.audit import AuditLog
from buildwithnexus.errors import TrustViolation, UserFacingError
from buildwithnexus.redaction import REDACTED
from buildwithnexus.ssh import (
    SSH_CONFIG_BEGIN,
    SSH_CONFIG_END,
    RemoteShell,
    add_ssh_config,
    remove_ssh_config,
)
from buildwithnexus.trust import TrustStore, fingerprint_key

SECRET = "sk-ant-api03-" + "R" * 30


class FakeHostKey:
    def __init__(self, blob: bytes) -> None:
        self.blob = blob

    def asbytes(self) -> bytes:
        return self.blob

    def get_name(self) -> str:
        return "ssh-ed25519"

    def get_base64(self) -> str:
        return base64.b64encode(self.blob).decode("ascii")


class FakeChannel:
    def __init__(self, code: int) -> None:
        self.code = code

    def recv_exit_status(self) -> int:
        return self.code


class FakeStream:
    def __init__(self, data: str, code: int = 0) -> None:
        self.data = data
        self.channel = FakeChannel(code)

    def read(self) -> bytes:
        return self.data.encode("utf-8")

    def __iter__(self):
        return iter(self.data.splitlines(keepends=True))


class FakeSftp:
    def __init__(self, ops: list[tuple[str, ...]]) -> None:
        self.ops = ops

    def put(self, local: str, remote: str) -> None:
        self.ops.append(("put", remote))

    def posix_rename(self, old: str, new: str) -> None:
        self.ops.append(("rename", old, new))

    def close(self) -> None:
        self.ops.append(("close",))


class FakeClient:
    """Stands in for paramiko.SSHClient; the handshake consults the policy."""

    host_key = FakeHostKey(b"vm-host-key")
    responses: dict[str, tuple[str, str, int]] = {}
    connect_error: BaseException | None = None
    sftp_ops: list[tuple[str, ...]] = []

    def __init__(self) -> None:
        self.policy = None
        self.closed = False

    def set_missing_host_key_policy(self, policy) -> None:
        self.policy = policy

    def connect(self, hostname, **kwargs) -> None:
        assert kwargs["allow_agent"] is False
        assert kwargs["look_for_keys"] is False
        if self.connect_error is not None:
            raise self.connect_error
        self.policy.missing_host_key(self, hostname, self.host_key)

    def exec_command(self, command, timeout=None, get_pty=False):
        out, err, code = self.responses.get(command, ("", "", 0))
        return None, FakeStream(out, code), FakeStream(err, code)

    def open_sftp(self) -> FakeSftp:
        self.sftp_ops.append(("open",))
        return FakeSftp(self.sftp_ops)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_client(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(FakeClient, "host_key", FakeHostKey(b"vm-host-key"))
    monkeypatch.setattr(FakeClient, "responses", {})
    monkeypatch.setattr(FakeClient, "connect_error", None)
    monkeypatch.setattr(FakeClient, "sftp_ops", [])
    return FakeClient


def _shell(tmp_path: Path, client_factory, base_env: dict[str, str] | None = None) -> RemoteShell:
    return RemoteShell(
        2222,
        key_path=tmp_path / "id_nexus_vm",
        trust=TrustStore(tmp_path / "pin", AuditLog(tmp_path / "audit.log")),
        audit=AuditLog(tmp_path / "audit.log"),
        known_hosts_path=tmp_path / "known_hosts",
        base_env=base_env,
        client_factory=client_factory,
    )


def test_exec_pins_host_key_and_audits(tmp_path: Path, fake_client) -> None:
    fake_client.responses = {"uptime": ("up 1 min\n", "", 0)}
    shell = _shell(tmp_path, fake_client)
    result = shell.exec("uptime")
    assert result.ok
    assert result.stdout == "up 1 min\n"
    assert (tmp_path / "pin").read_text(encoding="utf-8").strip() == fingerprint_key(
        b"vm-host-key"
    )
    audit = (tmp_path / "audit.log").read_text(encoding="utf-8")
    assert "host_key_pinned" in audit
    assert "| ssh_exec | uptime" in audit


def test_exec_rejects_changed_host_key(tmp_path: Path, fake_client) -> None:
    shell = _shell(tmp_path, fake_client)
    shell.exec("true")
    fake_client.host_key = FakeHostKey(b"rebuilt-vm-key")
    with pytest.raises(TrustViolation):
        shell.exec("true")
    assert "host_key_mismatch" in (tmp_path / "audit.log").read_text(encoding="utf-8")


def test_exec_check_failure_is_redacted(tmp_path: Path, fake_client) -> None:
    fake_client.responses = {"boom": ("", f"leaked {SECRET}\n", 3)}
    shell = _shell(tmp_path, fake_client)
    with pytest.raises(UserFacingError) as exc_info:
        shell.exec("boom", check=True)
    assert "exit 3" in str(exc_info.value)
    assert SECRET not in str(exc_info.value)


def test_quiet_exec_is_not_audited(tmp_path: Path, fake_client) -> None:
    fake_client.responses = {"echo ok": ("ok\n", "", 0)}
    shell = _shell(tmp_path, fake_client)
    assert shell.ping() is True
    assert "ssh_exec" not in (tmp_path / "audit.log").read_text(encoding="utf-8")


def test_ping_false_when_unreachable(tmp_path: Path, fake_client) -> None:
    fake_client.connect_error = paramiko.SSHException("Error reading SSH protocol banner")
    assert _shell(tmp_path, fake_client).ping() is False


def test_ping_does_not_swallow_trust_violation(tmp_path: Path, fake_client) -> None:
    shell = _shell(tmp_path, fake_client)
    shell.exec("true")
    fake_client.host_key = FakeHostKey(b"rebuilt-vm-key")
    with pytest.raises(TrustViolation):
        shell.ping()


def test_stream_redacts_each_line(tmp_path: Path, fake_client) -> None:
    fake_client.responses = {"tail": (f"line one\nkey={SECRET}\n", "", 0)}
    seen: list[str] = []
    code = _shell(tmp_path, fake_client).stream("tail", seen.append)
    assert code == 0
    assert seen == ["line one", f"key={REDACTED}"]


def test_ssh_config_block_upsert_and_remove(tmp_path: Path) -> None:
    config = tmp_path / ".ssh" / "config"
    config.parent.mkdir()
    config.write_text("Host other\n  HostName example.com\n", encoding="utf-8")

    add_ssh_config(config, 2222, tmp_path / "key", tmp_path / "known_hosts")
    add_ssh_config(config, 2223, tmp_path / "key", tmp_path / "known_hosts")
    text = config.read_text(encoding="utf-8")
    assert text.count(SSH_CONFIG_BEGIN) == 1
    assert "Port 2223" in text
    assert "Port 2222" not in text
    assert "StrictHostKeyChecking yes" in text
    assert text.startswith("Host other\n")

    remove_ssh_config(config)
    text = config.read_text(encoding="utf-8")
    assert SSH_CONFIG_END not in text
    assert text == "Host other\n  HostName example.com\n"


def test_upload_renames_into_place_after_transfer(tmp_path: Path, fake_client) -> None:
    local = tmp_path / "nexus-release.tar.gz"
    local.write_bytes(b"release")
    _shell(tmp_path, fake_client).upload(local, "/tmp/nexus-release.tar.gz")
    assert fake_client.sftp_ops == [
        ("open",),
        ("put", "/tmp/nexus-release.tar.gz.part"),
        ("rename", "/tmp/nexus-release.tar.gz.part", "/tmp/nexus-release.tar.gz"),
        ("close",),
    ]


def test_upload_refuses_changed_host_key(tmp_path: Path, fake_client) -> None:
    local = tmp_path / "keys.env"
    local.write_text("A=1\n", encoding="utf-8")
    shell = _shell(tmp_path, fake_client)
    shell.exec("true")
    fake_client.host_key = FakeHostKey(b"rebuilt-vm-key")
    with pytest.raises(TrustViolation):
        shell.upload(local, "/tmp/.nexus-env-keys")
    assert fake_client.sftp_ops == []


class RunRecorder:
    def __init__(self) -> None:
        self.calls: list[tuple[list[str], dict[str, str]]] = []

    def __call__(self, cmd, **kwargs):
        self.calls.append((list(cmd), kwargs["env"]))
        return subprocess.CompletedProcess(cmd, 0)


def test_interactive_trusts_only_the_verified_key(
    tmp_path: Path, fake_client, monkeypatch: pytest.MonkeyPatch
) -> None:
    recorder = RunRecorder()
    monkeypatch.setattr(ssh_module.subprocess, "run", recorder)
    shell = _shell(
        tmp_path, fake_client, base_env={"PATH": "/usr/bin", "ANTHROPIC_API_KEY": SECRET}
    )

    assert shell.interactive(["uptime"]) == 0

    blob = base64.b64encode(b"vm-host-key").decode("ascii")
    known_hosts = tmp_path / "known_hosts"
    assert known_hosts.read_text(encoding="utf-8") == f"[127.0.0.1]:2222 ssh-ed25519 {blob}\n"
    assert known_hosts.stat().st_mode & 0o777 == 0o600
    cmd, env = recorder.calls[0]
    assert "StrictHostKeyChecking=yes" in cmd
    assert f"UserKnownHostsFile={known_hosts}" in cmd
    assert cmd[-2:] == ["nexus@127.0.0.1", "uptime"]
    assert env == {"PATH": "/usr/bin"}
    assert "env_scrubbed" in (tmp_path / "audit.log").read_text(encoding="utf-8")


def test_interactive_refuses_changed_host_key(
    tmp_path: Path, fake_client, monkeypatch: pytest.MonkeyPatch
) -> None:
    recorder = RunRecorder()
    monkeypatch.setattr(ssh_module.subprocess, "run", recorder)
    shell = _shell(tmp_path, fake_client)
    shell.exec("true")
    fake_client.host_key = FakeHostKey(b"rebuilt-vm-key")

    with pytest.raises(TrustViolation):
        shell.interactive()

    assert recorder.calls == []
    assert not (tmp_path / "known_hosts").exists()
