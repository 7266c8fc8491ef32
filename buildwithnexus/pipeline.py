from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Sequence

from buildwithnexus.audit import AuditEvent, AuditLog
from buildwithnexus.config import NexusConfig
from buildwithnexus.errors import PipelinePhaseFailure, ResourceConflict, SecurityViolation
from buildwithnexus.host import HostPlatform
from buildwithnexus.ports import PortSet
from buildwithnexus.redaction import echo, redact_error


@dataclass
class ProvisioningContext:
    platform: HostPlatform | None = None
    config: NexusConfig | None = None
    secrets: dict[str, str] = field(default_factory=dict)
    tarball_path: Path | None = None
    image_path: Path | None = None
    disk_path: Path | None = None
    iso_path: Path | None = None
    ports: PortSet | None = None
    tunnel_url: str | None = None
    vm_launched: bool = False


@dataclass(frozen=True)
class Phase:
    name: str
    run: Callable[[ProvisioningContext], None]
    skip: Callable[[ProvisioningContext], bool] | None = None


def _rollback(
    rollback: Callable[[ProvisioningContext], None] | None,
    ctx: ProvisioningContext,
    emit: Callable[[str], None],
) -> None:
    if rollback is None or not ctx.vm_launched:
        return
    emit("  Stopping VM due to init failure...")
    try:
        rollback(ctx)
    except Exception as exc:
        echo(f"  warning: VM cleanup failed: {exc}", err=True)


def run_pipeline(
    phases: Sequence[Phase],
    ctx: ProvisioningContext,
    *,
    emit: Callable[[str], None] = echo,
    rollback: Callable[[ProvisioningContext], None] | None = None,
    audit: AuditLog | None = None,
) -> ProvisioningContext:
    """Run ``phases`` strictly in order over a shared context.

    The first failure stops the run. If the VM was already launched it is
    torn down through ``rollback`` before the error propagates. Security
    violations and port conflicts keep their own type; anything else becomes
    a PipelinePhaseFailure carrying only redacted text.
    """
    total = len(phases)
    for index, phase in enumerate(phases, start=1):
        emit(f"[{index}/{total}] {phase.name}")
        if phase.skip is not None and phase.skip(ctx):
            emit("  skipped")
            continue
        try:
            phase.run(ctx)
        except KeyboardInterrupt:
            _rollback(rollback, ctx, emit)
            raise
        except (SecurityViolation, ResourceConflict) as exc:
            _rollback(rollback, ctx, emit)
            if audit is not None:
                audit.record(AuditEvent.INIT_FAILED, f"{phase.name}: {exc}")
            raise
        except Exception as exc:
            _rollback(rollback, ctx, emit)
            redacted = redact_error(exc)
            if audit is not None:
                audit.record(AuditEvent.INIT_FAILED, f"{phase.name}: {redacted.message}")
            raise PipelinePhaseFailure(phase.name, redacted.message) from redacted
    return ctx
