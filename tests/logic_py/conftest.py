from __future__ import annotations

from pathlib import Path
from typing import Sequence

import pytest

from buildwithnexus.host import detect_platform
from buildwithnexus.prompts import Choice
from buildwithnexus.runtime import Runtime, build_runtime

ANTHROPIC_KEY = "sk-ant-api03-" + "A" * 40
OPENAI_KEY = "sk-" + "B" * 40
GOOGLE_KEY = "AIza" + "C" * 35


class FakePrompter:
    """Scripted answers; every prompt is recorded for later assertions."""

    def __init__(
        self,
        *,
        choices: Sequence[str] = (),
        secrets: Sequence[str] = (),
        texts: Sequence[str] = (),
        confirms: Sequence[bool] = (),
    ) -> None:
        self.choices = list(choices)
        self.secrets = list(secrets)
        self.texts = list(texts)
        self.confirms = list(confirms)
        self.offered: list[list[str]] = []
        self.messages: list[str] = []

    def present_choice(self, message: str, choices: Sequence[Choice]) -> str:
        self.messages.append(message)
        self.offered.append([choice.value for choice in choices])
        return self.choices.pop(0)

    def request_secret(self, message: str) -> str:
        self.messages.append(message)
        return self.secrets.pop(0)

    def request_text(self, message: str, default: str = "") -> str:
        self.messages.append(message)
        return self.texts.pop(0) if self.texts else default

    def confirm(self, message: str, default: bool = False) -> bool:
        self.messages.append(message)
        return self.confirms.pop(0) if self.confirms else default


def audit_lines(runtime: Runtime) -> list[str]:
    path = runtime.paths.audit_log
    if not path.exists():
        return []
    return path.read_text(encoding="utf-8").splitlines()


@pytest.fixture
def prompter() -> FakePrompter:
    return FakePrompter()


@pytest.fixture
def runtime(tmp_path: Path, prompter: FakePrompter) -> Runtime:
    rt = build_runtime(
        {"HOME": str(tmp_path / "home"), "PATH": "/usr/bin:/bin"},
        prompter=prompter,
    )
    rt.platform = detect_platform("Linux", "x86_64")
    rt.paths.ensure_home()
    return rt
