from __future__ import annotations

import os
import platform as platform_mod
import signal
from dataclasses import dataclass
from pathlib import Path

PID_MAX = 4194304


class UnsupportedPlatformError(RuntimeError):
    """Raised when no QEMU profile exists for the host OS/architecture."""


@dataclass(frozen=True)
class HostPlatform:
    os: str
    arch: str
    qemu_binary: str
    machine_args: tuple[str, ...]
    cpu_args: tuple[str, ...]
    ubuntu_image: str
    bios_path: Path


def _normalize_arch(machine: str) -> str:
    return "arm64" if machine.lower() in {"arm64", "aarch64"} else "x64"


def detect_platform(system: str | None = None, machine: str | None = None) -> HostPlatform:
    system = system or platform_mod.system()
    arch = _normalize_arch(machine or platform_mod.machine())

    if system == "Darwin":
        return HostPlatform(
            os="mac",
            arch=arch,
            qemu_binary="qemu-system-aarch64",
            machine_args=("-machine", "virt,gic-version=3"),
            cpu_args=("-cpu", "host", "-accel", "hvf"),
            ubuntu_image="jammy-server-cloudimg-arm64.img",
            bios_path=Path("/opt/homebrew/share/qemu/edk2-aarch64-code.fd"),
        )
    if system == "Linux":
        arm = arch == "arm64"
        return HostPlatform(
            os="linux",
            arch=arch,
            qemu_binary="qemu-system-aarch64" if arm else "qemu-system-x86_64",
            machine_args=("-machine", "virt") if arm else ("-machine", "pc"),
            cpu_args=("-cpu", "host", "-enable-kvm"),
            ubuntu_image=(
                "jammy-server-cloudimg-arm64.img" if arm else "jammy-server-cloudimg-amd64.img"
            ),
            bios_path=Path(
                "/usr/share/qemu-efi-aarch64/QEMU_EFI.fd" if arm else "/usr/share/OVMF/OVMF_CODE.fd"
            ),
        )
    if system == "Windows":
        return HostPlatform(
            os="windows",
            arch="x64",
            qemu_binary="qemu-system-x86_64",
            machine_args=("-machine", "pc"),
            cpu_args=("-cpu", "qemu64"),
            ubuntu_image="jammy-server-cloudimg-amd64.img",
            bios_path=Path("C:/Program Files/qemu/share/edk2-x86_64-code.fd"),
        )
    raise UnsupportedPlatformError(f"Error: Unsupported platform: {system} {arch}")


def qemu_install_hint(host: HostPlatform) -> str:
    if host.os == "mac":
        return "brew install qemu cdrtools"
    if host.os == "linux":
        return "sudo apt-get install -y qemu-system qemu-utils genisoimage"
    return "Download QEMU from https://www.qemu.org/download/#windows"


def pid_running(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def signal_pid(pid: int, sig: signal.Signals) -> bool:
    if pid <= 1 or pid > PID_MAX:
        return False
    try:
        os.kill(pid, sig)
    except ProcessLookupError:
        return False
    return True
