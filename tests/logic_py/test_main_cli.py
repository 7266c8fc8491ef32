from __future__ import annotations

import sys

import pytest

from buildwithnexus import main as main_cli


def test_parse_status_json() -> None:
    args = main_cli.parse_args(["status", "--json"])
    assert args.command == "status"
    assert args.json is True
    assert args.handler is main_cli._handle_status


def test_parse_logs_defaults_and_bounds() -> None:
    args = main_cli.parse_args(["logs"])
    assert args.lines == 50
    assert args.follow is False
    assert main_cli.parse_args(["logs", "-f", "-n", "10000"]).lines == 10000
    with pytest.raises(SystemExit):
        main_cli.parse_args(["logs", "-n", "0"])
    with pytest.raises(SystemExit):
        main_cli.parse_args(["logs", "-n", "10001"])
    with pytest.raises(SystemExit):
        main_cli.parse_args(["logs", "-n", "many"])


def test_parse_keys_subcommands() -> None:
    args = main_cli.parse_args(["keys", "set", "OPENAI_API_KEY"])
    assert args.name == "OPENAI_API_KEY"
    assert args.handler is main_cli._handle_keys_set
    assert main_cli.parse_args(["keys", "reset", "--force"]).force is True
    with pytest.raises(SystemExit):
        main_cli.parse_args(["keys"])


def test_parse_destroy_force() -> None:
    assert main_cli.parse_args(["destroy"]).force is False
    assert main_cli.parse_args(["destroy", "-f"]).force is True


def test_command_is_required() -> None:
    with pytest.raises(SystemExit):
        main_cli.parse_args([])


def test_main_dispatches_to_handler(
    monkeypatch: pytest.MonkeyPatch, tmp_path, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setattr(sys, "argv", ["buildwithnexus", "stop"])
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.delenv("BUILDWITHNEXUS_HOME", raising=False)
    seen = {}
    monkeypatch.setattr(main_cli, "stop", lambda runtime: seen.update(home=runtime.paths.home))
    main_cli.main()
    assert seen["home"] == tmp_path / ".buildwithnexus"


def test_main_reports_missing_config(
    monkeypatch: pytest.MonkeyPatch, tmp_path, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setattr(sys, "argv", ["buildwithnexus", "start"])
    monkeypatch.setenv("BUILDWITHNEXUS_HOME", str(tmp_path / "nexus"))
    with pytest.raises(SystemExit) as exc_info:
        main_cli.main()
    assert exc_info.value.code == 1
    assert "No configuration found" in capsys.readouterr().err


def test_parse_update() -> None:
    args = main_cli.parse_args(["update"])
    assert args.command == "update"
    assert args.handler is main_cli._handle_update
