from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Mapping

from buildwithnexus.audit import AuditLog
from buildwithnexus.environment import scrub_env
from buildwithnexus.errors import UserFacingError
from buildwithnexus.host import HostPlatform
from buildwithnexus.redaction import echo

UBUNTU_BASE_URL = "https://cloud-images.ubuntu.com/jammy/current"


def _run_process(cmd: list[str], env: Mapping[str, str]) -> None:
    try:
        proc = subprocess.run(cmd, check=False, env=dict(env))
    except FileNotFoundError as exc:
        raise UserFacingError(f"Error: Command not found: {cmd[0]}") from exc
    if proc.returncode != 0:
        raise UserFacingError(
            f"Error: Command failed with exit code {proc.returncode}: {' '.join(cmd)}"
        )


def image_url(host: HostPlatform) -> str:
    return f"{UBUNTU_BASE_URL}/{host.ubuntu_image}"


def download_image(
    host: HostPlatform,
    images_dir: Path,
    base_env: Mapping[str, str],
    *,
    audit: AuditLog | None = None,
) -> Path:
    """Fetch the base cloud image once; an existing image is reused as is."""
    image_path = images_dir / host.ubuntu_image
    if image_path.exists():
        echo(f"  base image already present: {image_path.name}")
        return image_path

    images_dir.mkdir(parents=True, exist_ok=True)
    partial = image_path.with_name(image_path.name + ".part")
    url = image_url(host)
    echo(f"  downloading {url}")
    try:
        _run_process(
            ["curl", "-fL", "--progress-bar", "-o", str(partial), url],
            scrub_env(base_env, audit=audit),
        )
        partial.replace(image_path)
    finally:
        partial.unlink(missing_ok=True)
    return image_path
