from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from buildwithnexus.io_utils import atomic_write_text


@dataclass
class ProvisionMarker:
    ssh_port: int
    http_port: int
    https_port: int
    tunnel: bool
    provisioned_at: str

    @classmethod
    def from_file(cls, marker_file: Path) -> "ProvisionMarker | None":
        if not marker_file.exists():
            return None
        data: dict[str, str] = {}
        for line in marker_file.read_text(encoding="utf-8").splitlines():
            if ":" not in line:
                continue
            key, value = line.split(":", 1)
            data[key.strip()] = value.strip()
        if not data:
            return None

        def port(name: str) -> int:
            raw = data.get(name, "")
            return int(raw) if raw.isdigit() else 0

        return cls(
            ssh_port=port("ssh_port"),
            http_port=port("http_port"),
            https_port=port("https_port"),
            tunnel=data.get("tunnel", "false") == "true",
            provisioned_at=data.get("provisioned_at", ""),
        )

    def write(self, marker_file: Path) -> None:
        atomic_write_text(
            marker_file,
            "\n".join(
                [
                    f"ssh_port: {self.ssh_port}",
                    f"http_port: {self.http_port}",
                    f"https_port: {self.https_port}",
                    f"tunnel: {'true' if self.tunnel else 'false'}",
                    f"provisioned_at: {self.provisioned_at}",
                ]
            )
            + "\n",
        )

    def as_dict(self) -> dict[str, object]:
        return {
            "ssh_port": self.ssh_port,
            "http_port": self.http_port,
            "https_port": self.https_port,
            "tunnel": self.tunnel,
            "provisioned_at": self.provisioned_at,
        }


def current_utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
