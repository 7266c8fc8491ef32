from __future__ import annotations

import subprocess

import paramiko
import pytest

from buildwithnexus import errors
from buildwithnexus.errors import PipelinePhaseFailure, UserFacingError
from buildwithnexus.locks import LockError
from buildwithnexus.qemu import QemuError

from conftest import audit_lines

SECRET = "sk-ant-api03-" + "E" * 30


def _exit_code(runtime, exc: BaseException, capsys) -> tuple[int, str]:
    def run(_runtime):
        raise exc

    with pytest.raises(SystemExit) as exc_info:
        errors.main_guard(run, runtime)
    return exc_info.value.code, capsys.readouterr().err


def test_main_guard_handles_user_facing_error(runtime, capsys) -> None:
    code, err = _exit_code(runtime, UserFacingError("bad input"), capsys)
    assert code == 1
    assert "bad input" in err


@pytest.mark.parametrize(
    "exc",
    [QemuError("qemu exploded"), LockError("qemu exploded")],
)
def test_main_guard_handles_domain_errors(runtime, capsys, exc) -> None:
    code, err = _exit_code(runtime, exc, capsys)
    assert code == 1
    assert "qemu exploded" in err


def test_main_guard_handles_file_not_found(runtime, capsys) -> None:
    missing = FileNotFoundError(2, "No such file", "qemu-img")
    code, err = _exit_code(runtime, missing, capsys)
    assert code == 1
    assert "Error: Command not found: qemu-img" in err


def test_main_guard_handles_subprocess_error(runtime, capsys) -> None:
    code, err = _exit_code(runtime, subprocess.TimeoutExpired(["curl"], 5), capsys)
    assert code == 1
    assert "Command execution failed" in err


def test_main_guard_handles_ssh_error(runtime, capsys) -> None:
    code, err = _exit_code(runtime, paramiko.SSHException("banner timeout"), capsys)
    assert code == 1
    assert "Error: SSH failure: banner timeout" in err


def test_main_guard_redacts_output(runtime, capsys) -> None:
    code, err = _exit_code(runtime, UserFacingError(f"leaked {SECRET}"), capsys)
    assert code == 1
    assert SECRET not in err


def test_main_guard_interrupt_exits_130_and_audits(runtime, capsys) -> None:
    code, err = _exit_code(runtime, KeyboardInterrupt(), capsys)
    assert code == 130
    assert "Interrupted." in err
    assert "interrupted" in audit_lines(runtime)[-1]


def test_unexpected_errors_propagate(runtime) -> None:
    def run(_runtime):
        raise ValueError("programming error")

    with pytest.raises(ValueError):
        errors.main_guard(run, runtime)


def test_pipeline_phase_failure_strips_prefix() -> None:
    failure = PipelinePhaseFailure("VM Launch", "Error: Command not found: qemu-img")
    assert str(failure) == "Error: VM Launch failed: Command not found: qemu-img"
    assert failure.detail == "Command not found: qemu-img"
