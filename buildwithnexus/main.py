from __future__ import annotations

import argparse
import os
from typing import Sequence

from buildwithnexus import __version__
from buildwithnexus.cli import add_force_arg, log_lines
from buildwithnexus.errors import main_guard
from buildwithnexus.keys import list_keys, reset_keys, set_key
from buildwithnexus.orchestrator import (
    destroy,
    init,
    open_ssh,
    show_logs,
    start,
    stop,
    update,
)
from buildwithnexus.runtime import Runtime, build_runtime
from buildwithnexus.status import doctor, status


def _handle_init(_: argparse.Namespace, runtime: Runtime) -> None:
    init(runtime)


def _handle_start(_: argparse.Namespace, runtime: Runtime) -> None:
    start(runtime)


def _handle_stop(_: argparse.Namespace, runtime: Runtime) -> None:
    stop(runtime)


def _handle_update(_: argparse.Namespace, runtime: Runtime) -> None:
    update(runtime)


def _handle_status(args: argparse.Namespace, runtime: Runtime) -> None:
    status(runtime, as_json=args.json)


def _handle_doctor(_: argparse.Namespace, runtime: Runtime) -> None:
    doctor(runtime)


def _handle_ssh(_: argparse.Namespace, runtime: Runtime) -> None:
    open_ssh(runtime)


def _handle_logs(args: argparse.Namespace, runtime: Runtime) -> None:
    show_logs(runtime, follow=args.follow, lines=args.lines)


def _handle_destroy(args: argparse.Namespace, runtime: Runtime) -> None:
    destroy(runtime, force=args.force)


def _handle_keys_list(_: argparse.Namespace, runtime: Runtime) -> None:
    list_keys(runtime)


def _handle_keys_set(args: argparse.Namespace, runtime: Runtime) -> None:
    set_key(runtime, args.name)


def _handle_keys_reset(args: argparse.Namespace, runtime: Runtime) -> None:
    reset_keys(runtime, force=args.force)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="buildwithnexus",
        description="Provision and manage the NEXUS runtime VM",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser(
        "init",
        help="Configure keys, build the VM and provision the NEXUS server",
    )
    init_parser.set_defaults(handler=_handle_init)

    start_parser = subparsers.add_parser("start", help="Start a provisioned VM")
    start_parser.set_defaults(handler=_handle_start)

    stop_parser = subparsers.add_parser("stop", help="Stop the running VM")
    stop_parser.set_defaults(handler=_handle_stop)

    update_parser = subparsers.add_parser(
        "update", help="Install the bundled NEXUS release in the running VM and restart"
    )
    update_parser.set_defaults(handler=_handle_update)

    status_parser = subparsers.add_parser("status", help="Show VM and server health")
    status_parser.add_argument("--json", action="store_true")
    status_parser.set_defaults(handler=_handle_status)

    doctor_parser = subparsers.add_parser("doctor", help="Check host prerequisites")
    doctor_parser.set_defaults(handler=_handle_doctor)

    ssh_parser = subparsers.add_parser("ssh", help="Open an interactive shell in the VM")
    ssh_parser.set_defaults(handler=_handle_ssh)

    logs_parser = subparsers.add_parser("logs", help="Show NEXUS server logs")
    logs_parser.add_argument("--follow", "-f", action="store_true")
    logs_parser.add_argument(
        "--lines",
        "-n",
        type=log_lines,
        default=50,
        help="Number of lines to show (default: 50)",
    )
    logs_parser.set_defaults(handler=_handle_logs)

    destroy_parser = subparsers.add_parser(
        "destroy",
        help="Stop the VM and delete all local NEXUS state",
    )
    add_force_arg(destroy_parser, "Skip the confirmation prompt")
    destroy_parser.set_defaults(handler=_handle_destroy)

    keys_parser = subparsers.add_parser("keys", help="Manage stored API keys")
    keys_subparsers = keys_parser.add_subparsers(dest="keys_command", required=True)

    keys_list_parser = keys_subparsers.add_parser("list", help="List stored keys (masked)")
    keys_list_parser.set_defaults(handler=_handle_keys_list)

    keys_set_parser = keys_subparsers.add_parser("set", help="Replace one stored key")
    keys_set_parser.add_argument("name", help="Key name, e.g. ANTHROPIC_API_KEY")
    keys_set_parser.set_defaults(handler=_handle_keys_set)

    keys_reset_parser = keys_subparsers.add_parser("reset", help="Remove all stored keys")
    add_force_arg(keys_reset_parser, "Skip the confirmation prompt")
    keys_reset_parser.set_defaults(handler=_handle_keys_reset)

    return parser


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    return build_parser().parse_args(argv)


def main() -> None:
    args = parse_args()
    runtime = build_runtime(os.environ)

    def run(rt: Runtime) -> None:
        handler = getattr(args, "handler", None)
        if handler is None:
            raise RuntimeError(f"Unhandled command: {getattr(args, 'command', '<missing>')}")
        handler(args, rt)

    main_guard(run, runtime)


if __name__ == "__main__":
    main()
