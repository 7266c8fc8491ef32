from __future__ import annotations

import os
import shutil
import socket
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from buildwithnexus.host import pid_running
from buildwithnexus.io_utils import atomic_write_text

INSTALL_LOCK_NAME = "install"
MAX_ATTEMPTS = 12


class LockError(RuntimeError):
    """Raised when the install lock cannot be acquired."""


def _host_name() -> str:
    name = socket.gethostname()
    return name.split(".")[0] if name else "unknown-host"


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return ""


def _write_metadata(lock_dir: Path, command: str, pid: int) -> None:
    now = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    atomic_write_text(lock_dir / "owner_command", f"{command}\n")
    atomic_write_text(lock_dir / "owner_host", f"{_host_name()}\n")
    atomic_write_text(lock_dir / "updated_at", f"{now}\n")
    # Written last: a lock with an owner_pid has complete metadata.
    atomic_write_text(lock_dir / "owner_pid", f"{pid}\n")


def _reclaim_lock_dir(lock_dir: Path) -> None:
    shutil.rmtree(lock_dir, ignore_errors=True)


def acquire_install_lock(lock_root: Path, command: str, *, pid: int | None = None) -> Path:
    pid = os.getpid() if pid is None else pid
    lock_root.mkdir(mode=0o700, parents=True, exist_ok=True)
    lock_dir = lock_root / INSTALL_LOCK_NAME

    for attempt in range(1, MAX_ATTEMPTS + 1):
        try:
            lock_dir.mkdir()
            _write_metadata(lock_dir, command, pid)
            return lock_dir
        except FileExistsError:
            pass
        except OSError:
            if attempt == MAX_ATTEMPTS:
                break
            time.sleep(0.1)
            continue

        owner_pid_raw = _read_text(lock_dir / "owner_pid")
        owner_host = _read_text(lock_dir / "owner_host")
        owner_command = _read_text(lock_dir / "owner_command")
        owner_since = _read_text(lock_dir / "updated_at")

        if not owner_pid_raw.isdigit():
            # Another process may still be writing metadata; wait briefly before reclaim.
            if attempt <= 3:
                time.sleep(0.1)
                continue
            _reclaim_lock_dir(lock_dir)
            continue

        owner_pid = int(owner_pid_raw)
        if owner_host != _host_name() or pid_running(owner_pid):
            raise LockError(
                "Error: Another buildwithnexus command is already running.\n"
                f"  command: {owner_command or 'unknown'}\n"
                f"  pid: {owner_pid} on {owner_host or 'unknown host'}\n"
                f"  since: {owner_since or 'unknown'}\n"
                f"Wait for it to finish, or remove {lock_dir} if that process is gone."
            )

        _reclaim_lock_dir(lock_dir)
        time.sleep(0.05)

    raise LockError(
        "Error: Could not acquire the install lock.\n"
        "The lock directory was contended by concurrent operations. Retry the command."
    )


def release_install_lock(lock_dir: Path, *, pid: int | None = None) -> None:
    pid = os.getpid() if pid is None else pid
    if _read_text(lock_dir / "owner_pid") == str(pid):
        shutil.rmtree(lock_dir, ignore_errors=True)


@contextmanager
def install_lock(lock_root: Path, command: str) -> Iterator[Path]:
    lock_dir = acquire_install_lock(lock_root, command)
    try:
        yield lock_dir
    finally:
        release_install_lock(lock_dir)
