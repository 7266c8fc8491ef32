from __future__ import annotations

import subprocess
import sys
from typing import TYPE_CHECKING, Callable

import paramiko

from buildwithnexus.audit import AuditEvent
from buildwithnexus.host import UnsupportedPlatformError
from buildwithnexus.locks import LockError
from buildwithnexus.qemu import QemuError
from buildwithnexus.redaction import redact

if TYPE_CHECKING:
    from buildwithnexus.runtime import Runtime


class UserFacingError(RuntimeError):
    """Error with user-facing text; caller should print and return non-zero."""


class ValidationError(UserFacingError):
    """A secret value failed validation. The message never contains the value."""

    def __init__(self, message: str, *, name: str = "") -> None:
        super().__init__(message)
        self.name = name


class ResourceConflict(UserFacingError):
    """A host resource (usually a port) is held by something else."""


class SecurityViolation(UserFacingError):
    """Integrity or trust failure. Never retried and never downgraded."""


class IntegrityViolation(SecurityViolation):
    pass


class TrustViolation(SecurityViolation):
    pass


class TransientUnavailable(RuntimeError):
    """A readiness probe is not satisfied yet."""


class PipelinePhaseFailure(UserFacingError):
    def __init__(self, phase: str, message: str) -> None:
        detail = message[len("Error: ") :] if message.startswith("Error: ") else message
        super().__init__(f"Error: {phase} failed: {detail}")
        self.phase = phase
        self.detail = detail


def _fail(message: str, exc: BaseException) -> None:
    print(redact(message), file=sys.stderr)
    raise SystemExit(1) from exc


def main_guard(fn: Callable[["Runtime"], None], runtime: "Runtime") -> None:
    """Run fn and convert known errors to CLI output/exit code."""
    try:
        fn(runtime)
    except KeyboardInterrupt:
        runtime.audit.record(AuditEvent.INTERRUPTED, "command interrupted by user")
        print("\nInterrupted.", file=sys.stderr)
        raise SystemExit(130) from None
    except (UserFacingError, QemuError, LockError, UnsupportedPlatformError) as exc:
        _fail(str(exc), exc)
    except paramiko.SSHException as exc:
        _fail(f"Error: SSH failure: {exc}", exc)
    except FileNotFoundError as exc:
        _fail(f"Error: Command not found: {exc.filename or 'unknown'}", exc)
    except subprocess.SubprocessError as exc:
        _fail(f"Error: Command execution failed: {exc}", exc)
    except OSError as exc:
        _fail(f"Error: OS command failure: {exc}", exc)
