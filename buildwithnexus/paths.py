from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

PACKAGE_ROOT = Path(__file__).resolve().parents[1]
HOME_ENV = "BUILDWITHNEXUS_HOME"
RELEASE_TARBALL_ENV = "BUILDWITHNEXUS_RELEASE_TARBALL"
RELEASE_TARBALL_NAME = "nexus-release.tar.gz"
DEFAULT_HOME_DIRNAME = ".buildwithnexus"


def _user_home(environ: Mapping[str, str]) -> Path:
    home = environ.get("HOME")
    return Path(home) if home else Path.home()


@dataclass(frozen=True)
class NexusPaths:
    """Every on-disk location of one install, rooted at ``home``."""

    home: Path
    user_ssh_dir: Path

    @classmethod
    def from_environ(cls, environ: Mapping[str, str]) -> "NexusPaths":
        user_home = _user_home(environ)
        override = environ.get(HOME_ENV)
        home = Path(override).expanduser() if override else user_home / DEFAULT_HOME_DIRNAME
        return cls(home=home, user_ssh_dir=user_home / ".ssh")

    @property
    def config_file(self) -> Path:
        return self.home / "config.json"

    @property
    def keys_file(self) -> Path:
        return self.home / ".env.keys"

    @property
    def seal_file(self) -> Path:
        return self.home / ".keys.hmac"

    @property
    def seal_key_file(self) -> Path:
        return self.home / ".keys.seal-key"

    @property
    def audit_log(self) -> Path:
        return self.home / "audit.log"

    @property
    def marker_file(self) -> Path:
        return self.home / "provisioned"

    @property
    def locks_dir(self) -> Path:
        return self.home / "locks"

    @property
    def vm_dir(self) -> Path:
        return self.home / "vm"

    @property
    def images_dir(self) -> Path:
        return self.vm_dir / "images"

    @property
    def configs_dir(self) -> Path:
        return self.vm_dir / "configs"

    @property
    def logs_dir(self) -> Path:
        return self.vm_dir / "logs"

    @property
    def pid_file(self) -> Path:
        return self.vm_dir / "qemu.pid"

    @property
    def disk_image(self) -> Path:
        return self.images_dir / "nexus-vm-disk.qcow2"

    @property
    def seed_iso(self) -> Path:
        return self.images_dir / "init.iso"

    @property
    def ssh_dir(self) -> Path:
        return self.home / "ssh"

    @property
    def ssh_key(self) -> Path:
        return self.ssh_dir / "id_nexus_vm"

    @property
    def ssh_public_key(self) -> Path:
        return self.ssh_dir / "id_nexus_vm.pub"

    @property
    def known_hosts(self) -> Path:
        return self.ssh_dir / "known_hosts_nexus_vm"

    @property
    def host_key_pin(self) -> Path:
        return self.ssh_dir / "vm_host_key.pin"

    @property
    def user_ssh_config(self) -> Path:
        return self.user_ssh_dir / "config"

    def ensure_home(self) -> None:
        for directory in (
            self.home,
            self.vm_dir,
            self.images_dir,
            self.configs_dir,
            self.logs_dir,
            self.ssh_dir,
        ):
            directory.mkdir(mode=0o700, parents=True, exist_ok=True)
            os.chmod(directory, 0o700)


def _is_file(path: Path) -> bool:
    try:
        return path.is_file()
    except OSError:
        return False


def resolve_release_tarball(environ: Mapping[str, str]) -> Path | None:
    override = environ.get(RELEASE_TARBALL_ENV)
    if override:
        candidate = Path(override).expanduser()
        return candidate if _is_file(candidate) else None

    for candidate in (
        PACKAGE_ROOT / "dist" / RELEASE_TARBALL_NAME,
        Path(sys.prefix) / "share" / "buildwithnexus" / RELEASE_TARBALL_NAME,
    ):
        if _is_file(candidate):
            return candidate
    return None
