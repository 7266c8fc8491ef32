from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Any, Mapping

import yaml

from buildwithnexus.audit import AuditEvent, AuditLog
from buildwithnexus.config import NexusConfig
from buildwithnexus.environment import scrub_env
from buildwithnexus.errors import UserFacingError
from buildwithnexus.io_utils import atomic_write_text, shred_file

ISO_TOOLS = ("mkisofs", "genisoimage")
INSTANCE_ID = "nexus-vm-1"
LOCAL_HOSTNAME = "nexus-vm"
REMOTE_RELEASE_TARBALL = "/tmp/nexus-release.tar.gz"
NEXUS_APP_DIR = "/home/nexus/nexus"
NEXUS_STATE_DIR = "/home/nexus/.nexus"
CLOUDFLARED_DEB_URL = (
    "https://github.com/cloudflare/cloudflared/releases/latest/download/"
    "cloudflared-linux-$(dpkg --print-architecture).deb"
)

_SERVICE_UNIT = f"""[Unit]
Description=NEXUS server
After=docker.service network-online.target
Wants=network-online.target

[Service]
User=nexus
WorkingDirectory={NEXUS_APP_DIR}
EnvironmentFile=-{NEXUS_STATE_DIR}/.env.keys
ExecStart={NEXUS_APP_DIR}/bin/nexus-server
StandardOutput=append:{NEXUS_STATE_DIR}/logs/server.log
StandardError=append:{NEXUS_STATE_DIR}/logs/server.log
Restart=on-failure

[Install]
WantedBy=multi-user.target
"""


def build_user_data(public_key: str, config: NexusConfig) -> dict[str, Any]:
    """Cloud-config for the guest.

    Carries the SSH public key only. API keys reach the VM later over the
    pinned SSH channel.
    """
    runcmd: list[Any] = [
        ["mkdir", "-p", f"{NEXUS_STATE_DIR}/logs", NEXUS_APP_DIR],
        [
            "sh",
            "-c",
            f"while [ ! -f {REMOTE_RELEASE_TARBALL} ]; do sleep 5; done; "
            f"tar -xzf {REMOTE_RELEASE_TARBALL} -C {NEXUS_APP_DIR}",
        ],
        ["chown", "-R", "nexus:nexus", "/home/nexus"],
        ["sh", "-c", f"cd {NEXUS_APP_DIR} && ./install.sh"],
    ]
    if config.enable_tunnel:
        runcmd.append(
            [
                "sh",
                "-c",
                f'curl -fsSL -o /tmp/cloudflared.deb "{CLOUDFLARED_DEB_URL}" '
                "&& dpkg -i /tmp/cloudflared.deb && rm -f /tmp/cloudflared.deb",
            ]
        )
    runcmd.extend(
        [
            ["systemctl", "daemon-reload"],
            ["systemctl", "enable", "nexus"],
        ]
    )
    return {
        "hostname": LOCAL_HOSTNAME,
        "users": [
            {
                "name": "nexus",
                "groups": ["sudo", "docker"],
                "shell": "/bin/bash",
                "sudo": "ALL=(ALL) NOPASSWD:ALL",
                "lock_passwd": True,
                "ssh_authorized_keys": [public_key],
            }
        ],
        "ssh_pwauth": False,
        "disable_root": True,
        "package_update": True,
        "packages": ["docker.io", "curl", "ca-certificates", "git"],
        "write_files": [
            {
                "path": "/etc/systemd/system/nexus.service",
                "permissions": "0644",
                "content": _SERVICE_UNIT,
            }
        ],
        "runcmd": runcmd,
    }


def render_user_data(public_key: str, config: NexusConfig) -> str:
    body = yaml.safe_dump(
        build_user_data(public_key, config), sort_keys=False, default_flow_style=False
    )
    return "#cloud-config\n" + body


def render_meta_data() -> str:
    return yaml.safe_dump(
        {"instance-id": INSTANCE_ID, "local-hostname": LOCAL_HOSTNAME}, sort_keys=False
    )


def _build_iso(iso_path: Path, sources: list[Path], base_env: Mapping[str, str]) -> None:
    env = scrub_env(base_env)
    last_error = ""
    for tool in ISO_TOOLS:
        cmd = [
            tool,
            "-output",
            str(iso_path),
            "-volid",
            "cidata",
            "-joliet",
            "-rock",
            *[str(path) for path in sources],
        ]
        try:
            proc = subprocess.run(cmd, check=False, text=True, capture_output=True, env=env)
        except FileNotFoundError:
            continue
        if proc.returncode == 0:
            return
        last_error = (proc.stderr or proc.stdout or "").strip()
    if last_error:
        raise UserFacingError(f"Error: Could not build cloud-init seed ISO:\n{last_error}")
    raise UserFacingError(
        "Error: Command not found: mkisofs or genisoimage (install cdrtools or genisoimage)"
    )


def write_seed_iso(
    configs_dir: Path,
    iso_path: Path,
    public_key: str,
    config: NexusConfig,
    *,
    base_env: Mapping[str, str],
    audit: AuditLog,
) -> Path:
    user_data = configs_dir / "user-data"
    meta_data = configs_dir / "meta-data"
    atomic_write_text(user_data, render_user_data(public_key, config), mode=0o600)
    audit.record(AuditEvent.CLOUDINIT_RENDERED, str(user_data))
    try:
        atomic_write_text(meta_data, render_meta_data(), mode=0o600)
        iso_path.parent.mkdir(parents=True, exist_ok=True)
        _build_iso(iso_path, [user_data, meta_data], base_env)
        iso_path.chmod(0o600)
        audit.record(AuditEvent.CLOUDINIT_ISO_CREATED, str(iso_path))
    finally:
        shred_file(user_data)
        audit.record(AuditEvent.CLOUDINIT_PLAINTEXT_DELETED, str(user_data))
    return iso_path
