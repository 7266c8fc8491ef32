from __future__ import annotations

import argparse

from buildwithnexus.orchestrator import MAX_LOG_LINES


def log_lines(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid int value: '{value}'") from exc
    if parsed < 1 or parsed > MAX_LOG_LINES:
        raise argparse.ArgumentTypeError(f"line count must be between 1 and {MAX_LOG_LINES}")
    return parsed


def add_force_arg(parser: argparse.ArgumentParser, help_text: str) -> None:
    parser.add_argument("--force", "-f", action="store_true", help=help_text)
