from __future__ import annotations

import getpass
from dataclasses import dataclass
from typing import Callable, Protocol, Sequence

from buildwithnexus.errors import UserFacingError
from buildwithnexus.redaction import echo


@dataclass(frozen=True)
class Choice:
    value: str
    label: str


class Prompter(Protocol):
    def present_choice(self, message: str, choices: Sequence[Choice]) -> str: ...

    def request_secret(self, message: str) -> str: ...

    def request_text(self, message: str, default: str = "") -> str: ...

    def confirm(self, message: str, default: bool = False) -> bool: ...


class TerminalPrompter:
    """Prompter backed by the controlling terminal."""

    def __init__(
        self,
        input_fn: Callable[[str], str] = input,
        secret_fn: Callable[[str], str] = getpass.getpass,
    ) -> None:
        self._input = input_fn
        self._secret = secret_fn

    def _read(self, reader: Callable[[str], str], prompt: str) -> str:
        try:
            return reader(prompt)
        except EOFError as exc:
            raise UserFacingError("Error: No input available (stdin closed).") from exc

    def present_choice(self, message: str, choices: Sequence[Choice]) -> str:
        if not choices:
            raise ValueError("present_choice requires at least one choice")
        echo(message)
        for index, choice in enumerate(choices, start=1):
            echo(f"  {index}) {choice.label}")
        while True:
            raw = self._read(self._input, f"Select [1-{len(choices)}]: ").strip()
            if raw.isdigit() and 1 <= int(raw) <= len(choices):
                return choices[int(raw) - 1].value
            echo(f"Please enter a number between 1 and {len(choices)}.", err=True)

    def request_secret(self, message: str) -> str:
        return self._read(self._secret, f"{message}: ")

    def request_text(self, message: str, default: str = "") -> str:
        suffix = f" [{default}]" if default else ""
        value = self._read(self._input, f"{message}{suffix}: ").strip()
        return value or default

    def confirm(self, message: str, default: bool = False) -> bool:
        hint = "Y/n" if default else "y/N"
        raw = self._read(self._input, f"{message} [{hint}]: ").strip().lower()
        if not raw:
            return default
        return raw in {"y", "yes"}
