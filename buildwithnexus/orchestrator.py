from __future__ import annotations

import os
import shutil
import tempfile
from pathlib import Path
from typing import TypeVar

import paramiko

from buildwithnexus.audit import AuditEvent
from buildwithnexus.cloudinit import NEXUS_APP_DIR, REMOTE_RELEASE_TARBALL, write_seed_iso
from buildwithnexus.config import (
    MIN_VM_CPUS,
    MIN_VM_DISK_GB,
    MIN_VM_RAM_GB,
    NexusConfig,
    load_config,
)
from buildwithnexus.errors import UserFacingError, ValidationError
from buildwithnexus.host import qemu_install_hint
from buildwithnexus.image import download_image
from buildwithnexus.io_utils import shred_file
from buildwithnexus.keystore import generate_master_secret, render_secret_lines
from buildwithnexus.locks import install_lock
from buildwithnexus.paths import RELEASE_TARBALL_ENV, RELEASE_TARBALL_NAME, resolve_release_tarball
from buildwithnexus.pipeline import Phase, ProvisioningContext, run_pipeline
from buildwithnexus.ports import resolve_port_conflicts
from buildwithnexus.prompts import Prompter
from buildwithnexus.qemu import LaunchSpec
from buildwithnexus.redaction import echo
from buildwithnexus.remote_probe import wait_for_boot, wait_for_server, wait_for_ssh
from buildwithnexus.runtime import Runtime
from buildwithnexus.ssh import (
    RemoteShell,
    add_ssh_config,
    generate_ssh_key,
    read_public_key,
    remove_ssh_config,
)
from buildwithnexus.state import ProvisionMarker, current_utc_timestamp
from buildwithnexus.tunnel import start_tunnel, stop_tunnel
from buildwithnexus.validation import request_valid_secret, validate_all

REMOTE_STAGED_KEYS = "/tmp/.nexus-env-keys"
REMOTE_KEYS_FILE = "/home/nexus/.nexus/.env.keys"
REMOTE_SERVER_LOG = "/home/nexus/.nexus/logs/server.log"
MAX_LOG_LINES = 10000
OPTIONAL_SECRETS = (
    ("OPENAI_API_KEY", "OpenAI API key (optional, press Enter to skip)"),
    ("GOOGLE_API_KEY", "Google AI API key (optional, press Enter to skip)"),
)

T = TypeVar("T")


def _require(value: T | None, what: str) -> T:
    if value is None:
        raise UserFacingError(f"Error: Internal state missing: {what}")
    return value


def _prompt_int(prompter: Prompter, message: str, default: int, minimum: int) -> int:
    for _ in range(5):
        raw = prompter.request_text(message, default=str(default))
        if raw.isdigit() and int(raw) >= minimum:
            return int(raw)
        echo(f"Please enter a whole number >= {minimum}.", err=True)
    raise UserFacingError(f"Error: No valid value entered for '{message}'.")


def _phase_configuration(runtime: Runtime, ctx: ProvisioningContext) -> None:
    host = runtime.host()
    echo(f"  platform: {host.os} {host.arch}")
    echo(f"  qemu: {host.qemu_binary}")
    prompter = runtime.prompter

    config = NexusConfig(
        vm_ram=_prompt_int(prompter, "VM RAM in GB", 4, MIN_VM_RAM_GB),
        vm_cpus=_prompt_int(prompter, "VM CPUs", 2, MIN_VM_CPUS),
        vm_disk=_prompt_int(prompter, "VM disk in GB", 20, MIN_VM_DISK_GB),
        enable_tunnel=prompter.confirm("Enable a Cloudflare tunnel for remote access?"),
    )

    secrets = {
        "ANTHROPIC_API_KEY": request_valid_secret(
            prompter, "ANTHROPIC_API_KEY", "Anthropic API key (required)", required=True
        )
    }
    for name, message in OPTIONAL_SECRETS:
        value = request_valid_secret(prompter, name, message, required=False)
        if value:
            secrets[name] = value
    secrets["NEXUS_MASTER_SECRET"] = generate_master_secret()

    reasons = validate_all(secrets)
    if reasons:
        raise ValidationError("\n".join(reasons))
    runtime.audit.record(AuditEvent.KEYS_VALIDATED, f"{len(secrets)} key(s) validated")

    config.write(runtime.paths.config_file)
    runtime.secret_store().save(secrets, detail="keys saved during init")
    echo("  configuration saved")
    ctx.platform = host
    ctx.config = config
    ctx.secrets = secrets


def _phase_hypervisor(runtime: Runtime, ctx: ProvisioningContext) -> None:
    host = _require(ctx.platform, "platform")
    qemu = runtime.qemu()
    version = qemu.version()
    if version is None:
        raise UserFacingError(
            f"Error: QEMU not found ({host.qemu_binary}).\n"
            f"Install it with: {qemu_install_hint(host)}"
        )
    if qemu.is_running():
        raise UserFacingError(
            "Error: A buildwithnexus VM is already running.\n"
            "Stop it with: buildwithnexus stop (or remove everything with: buildwithnexus destroy)"
        )
    echo(f"  {version}")


def _phase_ssh_key(runtime: Runtime, ctx: ProvisioningContext) -> None:
    created = generate_ssh_key(runtime.paths.ssh_key, runtime.environ)
    echo("  generated VM SSH key" if created else "  VM SSH key already present")


def _phase_image(runtime: Runtime, ctx: ProvisioningContext) -> None:
    host = _require(ctx.platform, "platform")
    ctx.image_path = download_image(
        host, runtime.paths.images_dir, runtime.environ, audit=runtime.audit
    )


def _release_tarball(runtime: Runtime) -> Path:
    tarball = resolve_release_tarball(runtime.environ)
    if tarball is None:
        raise UserFacingError(
            f"Error: Release tarball not found: {RELEASE_TARBALL_NAME}\n"
            f"Set {RELEASE_TARBALL_ENV} to its path."
        )
    return tarball


def _phase_cloud_init(runtime: Runtime, ctx: ProvisioningContext) -> None:
    config = _require(ctx.config, "config")
    tarball = _release_tarball(runtime)
    ctx.tarball_path = tarball
    echo(f"  release tarball: {tarball}")
    ctx.iso_path = write_seed_iso(
        runtime.paths.configs_dir,
        runtime.paths.seed_iso,
        read_public_key(runtime.paths.ssh_public_key),
        config,
        base_env=runtime.environ,
        audit=runtime.audit,
    )
    echo("  cloud-init seed ISO created")


def _phase_launch(runtime: Runtime, ctx: ProvisioningContext) -> None:
    config = _require(ctx.config, "config")
    echo("  checking port availability...")
    ports = resolve_port_conflicts(
        config.ports(), runtime.prompter, base_env=runtime.environ, audit=runtime.audit
    )
    config = config.with_ports(ports)
    config.write(runtime.paths.config_file)
    ctx.config = config
    ctx.ports = ports
    add_ssh_config(
        runtime.paths.user_ssh_config, ports.ssh, runtime.paths.ssh_key, runtime.paths.known_hosts
    )

    qemu = runtime.qemu()
    qemu.create_disk(
        _require(ctx.image_path, "image path"), runtime.paths.disk_image, config.vm_disk
    )
    ctx.disk_path = runtime.paths.disk_image
    ctx.vm_launched = True
    qemu.launch(
        LaunchSpec(
            disk=runtime.paths.disk_image,
            seed_iso=_require(ctx.iso_path, "seed ISO"),
            ram_gb=config.vm_ram,
            cpus=config.vm_cpus,
            ports=ports,
        )
    )
    echo(f"  VM launched (ports: SSH={ports.ssh}, HTTP={ports.http}, HTTPS={ports.https})")


def _stage_secrets(remote: RemoteShell, secrets: dict[str, str], staging_dir: Path) -> None:
    staging_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=".nexus-keys-", dir=str(staging_dir))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(render_secret_lines(secrets))
        remote.upload(tmp_path, REMOTE_STAGED_KEYS)
        remote.exec(f"chmod 600 {REMOTE_STAGED_KEYS}", check=True)
    finally:
        shred_file(tmp_path)


def _phase_provision(runtime: Runtime, ctx: ProvisioningContext) -> None:
    ports = _require(ctx.ports, "ports")
    remote = runtime.remote(ports.ssh)
    timeouts = runtime.timeouts

    echo(f"  waiting for SSH on port {ports.ssh} (timeout: {timeouts.ssh_seconds}s)...")
    if not wait_for_ssh(remote, timeouts):
        raise UserFacingError(f"Error: SSH connection timed out after {timeouts.ssh_seconds}s")
    echo("  SSH connected (host key verified)")

    echo("  uploading release tarball...")
    remote.upload(_require(ctx.tarball_path, "release tarball"), REMOTE_RELEASE_TARBALL)

    echo("  staging API keys...")
    _stage_secrets(remote, ctx.secrets, runtime.paths.configs_dir)

    echo(f"  waiting for cloud-init (timeout: {timeouts.boot_seconds}s, usually 10-20 min)...")
    if not wait_for_boot(remote, timeouts, emit=echo):
        raise UserFacingError(
            f"Error: Cloud-init did not finish within {timeouts.boot_seconds}s.\n"
            "Inspect it with: buildwithnexus ssh, then tail -f /var/log/cloud-init-output.log"
        )

    echo("  delivering API keys...")
    remote.exec(
        f"sudo mkdir -p /home/nexus/.nexus && sudo mv {REMOTE_STAGED_KEYS} {REMOTE_KEYS_FILE}"
        f" && sudo chown -R nexus:nexus /home/nexus/.nexus && sudo chmod 600 {REMOTE_KEYS_FILE}"
        " && sudo systemctl restart nexus",
        check=True,
    )


def _phase_server(runtime: Runtime, ctx: ProvisioningContext) -> None:
    ports = _require(ctx.ports, "ports")
    timeouts = runtime.timeouts
    echo(f"  waiting for NEXUS server (timeout: {timeouts.server_seconds}s)...")
    if not wait_for_server(runtime.remote(ports.ssh), timeouts, emit=echo):
        raise UserFacingError(
            "Error: NEXUS server failed to start. Check: buildwithnexus logs"
        )
    echo(f"  NEXUS server healthy (http://localhost:{ports.http})")


def _phase_tunnel(runtime: Runtime, ctx: ProvisioningContext) -> None:
    ports = _require(ctx.ports, "ports")
    url = start_tunnel(runtime.remote(ports.ssh), runtime.timeouts, audit=runtime.audit)
    if url is None:
        echo("  tunnel did not come up (server is still reachable locally)", err=True)
        return
    ctx.tunnel_url = url
    echo(f"  tunnel active: {url}")


def _phase_complete(runtime: Runtime, ctx: ProvisioningContext) -> None:
    config = _require(ctx.config, "config")
    ProvisionMarker(
        ssh_port=config.ssh_port,
        http_port=config.http_port,
        https_port=config.https_port,
        tunnel=ctx.tunnel_url is not None,
        provisioned_at=current_utc_timestamp(),
    ).write(runtime.paths.marker_file)
    runtime.audit.record(AuditEvent.INIT_COMPLETED, f"ssh port {config.ssh_port}")
    echo("")
    echo("NEXUS is ready.")
    echo(f"  dashboard: http://localhost:{config.http_port}/dashboard")
    if ctx.tunnel_url:
        echo(f"  remote:    {ctx.tunnel_url}")
    echo("  shell:     buildwithnexus ssh")


def build_init_phases(runtime: Runtime) -> list[Phase]:
    def bind(fn):
        return lambda ctx: fn(runtime, ctx)

    return [
        Phase("Configuration", bind(_phase_configuration)),
        Phase("QEMU Check", bind(_phase_hypervisor)),
        Phase("SSH Key Setup", bind(_phase_ssh_key)),
        Phase("VM Image Download", bind(_phase_image)),
        Phase("Cloud-Init Generation", bind(_phase_cloud_init)),
        Phase("VM Launch", bind(_phase_launch)),
        Phase("VM Provisioning", bind(_phase_provision)),
        Phase("NEXUS Server Startup", bind(_phase_server)),
        Phase(
            "Cloudflare Tunnel",
            bind(_phase_tunnel),
            skip=lambda ctx: ctx.config is None or not ctx.config.enable_tunnel,
        ),
        Phase("Complete", bind(_phase_complete)),
    ]


def _rollback_vm(runtime: Runtime, ctx: ProvisioningContext) -> None:
    stopped = runtime.qemu().stop()
    runtime.audit.record(
        AuditEvent.VM_ROLLBACK, "VM stopped after failed init" if stopped else "no VM process found"
    )


def init(runtime: Runtime) -> None:
    runtime.paths.ensure_home()
    with install_lock(runtime.paths.locks_dir, "init"):
        runtime.audit.record(AuditEvent.INIT_STARTED, "init started")
        run_pipeline(
            build_init_phases(runtime),
            ProvisioningContext(),
            emit=echo,
            rollback=lambda ctx: _rollback_vm(runtime, ctx),
            audit=runtime.audit,
        )


def _require_provisioned(runtime: Runtime) -> NexusConfig:
    config = load_config(runtime.paths.config_file)
    if ProvisionMarker.from_file(runtime.paths.marker_file) is None:
        raise UserFacingError("Error: The VM has not been provisioned yet. Run: buildwithnexus init")
    return config


def _require_running(runtime: Runtime) -> NexusConfig:
    config = load_config(runtime.paths.config_file)
    if not runtime.qemu().is_running():
        raise UserFacingError("Error: VM is not running. Start it with: buildwithnexus start")
    return config


def start(runtime: Runtime) -> None:
    config = _require_provisioned(runtime)
    runtime.secret_store().load()
    qemu = runtime.qemu()
    if qemu.is_running():
        echo("VM is already running.")
        return
    for artifact in (runtime.paths.disk_image, runtime.paths.seed_iso):
        if not artifact.exists():
            raise UserFacingError(
                f"Error: VM artifact missing: {artifact}\nRe-create the VM with: buildwithnexus init"
            )

    ports = resolve_port_conflicts(
        config.ports(), runtime.prompter, base_env=runtime.environ, audit=runtime.audit
    )
    if ports != config.ports():
        config = config.with_ports(ports)
        config.write(runtime.paths.config_file)
        add_ssh_config(
            runtime.paths.user_ssh_config,
            ports.ssh,
            runtime.paths.ssh_key,
            runtime.paths.known_hosts,
        )

    echo("Starting VM...")
    qemu.launch(
        LaunchSpec(
            disk=runtime.paths.disk_image,
            seed_iso=runtime.paths.seed_iso,
            ram_gb=config.vm_ram,
            cpus=config.vm_cpus,
            ports=ports,
        )
    )
    remote = runtime.remote(ports.ssh)
    timeouts = runtime.timeouts
    echo(f"  waiting for SSH (timeout: {timeouts.start_ssh_seconds}s)...")
    if not wait_for_ssh(remote, timeouts, timeout_seconds=timeouts.start_ssh_seconds):
        raise UserFacingError(
            f"Error: SSH did not come up within {timeouts.start_ssh_seconds}s. "
            "The VM is still running; check: buildwithnexus status"
        )
    echo("  SSH connected (host key verified)")

    remote.exec("sudo systemctl start nexus", check=True)
    if wait_for_server(remote, timeouts, emit=echo, timeout_seconds=timeouts.start_server_seconds):
        echo("  NEXUS server running")
    else:
        echo("  server did not report healthy yet; check: buildwithnexus logs", err=True)

    if config.enable_tunnel:
        url = start_tunnel(remote, timeouts, audit=runtime.audit)
        echo(f"  tunnel: {url}" if url else "  tunnel failed to start")
    echo(f"Dashboard: http://localhost:{config.http_port}/dashboard")


def stop(runtime: Runtime) -> None:
    config = load_config(runtime.paths.config_file)
    qemu = runtime.qemu()
    if not qemu.is_running():
        echo("VM is not running.")
        return

    remote = runtime.remote(config.ssh_port)
    echo("Shutting down...")
    try:
        if config.enable_tunnel:
            echo("  stopping tunnel...")
            stop_tunnel(remote)
        echo("  stopping NEXUS server...")
        remote.exec("sudo systemctl stop nexus")
    except (paramiko.SSHException, OSError, EOFError) as exc:
        echo(f"  graceful shutdown skipped: {exc}", err=True)
    qemu.stop()
    runtime.audit.record(AuditEvent.VM_STOPPED, "VM stopped via CLI")
    echo("NEXUS runtime stopped.")


def update(runtime: Runtime) -> None:
    """Replace the server release inside a running VM and restart it."""
    config = _require_running(runtime)
    tarball = _release_tarball(runtime)
    remote = runtime.remote(config.ssh_port)

    with install_lock(runtime.paths.locks_dir, "update"):
        echo(f"Uploading {tarball.name}...")
        remote.upload(tarball, REMOTE_RELEASE_TARBALL)
        echo("  stopping NEXUS server...")
        remote.exec("sudo systemctl stop nexus", check=True)
        echo("  extracting release...")
        remote.exec(
            f"rm -rf {NEXUS_APP_DIR}/src {NEXUS_APP_DIR}/docker"
            f" && tar -xzf {REMOTE_RELEASE_TARBALL} -C {NEXUS_APP_DIR}"
            f" && rm -f {REMOTE_RELEASE_TARBALL}",
            check=True,
        )
        echo("  installing dependencies...")
        remote.exec(f"cd {NEXUS_APP_DIR} && ./install.sh", check=True)
        echo("  restarting NEXUS server...")
        remote.exec("sudo systemctl start nexus", check=True)
        runtime.audit.record(AuditEvent.RELEASE_UPDATED, f"release updated from {tarball.name}")

    timeouts = runtime.timeouts
    if wait_for_server(remote, timeouts, emit=echo, timeout_seconds=timeouts.start_server_seconds):
        echo("NEXUS server restarted and healthy.")
    else:
        echo("Server restarted but is not healthy yet; check: buildwithnexus logs", err=True)


def destroy(runtime: Runtime, *, force: bool) -> None:
    paths = runtime.paths
    if not force:
        echo(f"This removes the VM, its disk, stored keys and all state under {paths.home}.")
        answer = runtime.prompter.request_text('Type "destroy" to confirm')
        if answer != "destroy":
            echo("Aborted.")
            return

    paths.ensure_home()
    with install_lock(paths.locks_dir, "destroy"):
        qemu = runtime.qemu()
        if qemu.is_running():
            echo("Stopping VM...")
            qemu.stop()
        remove_ssh_config(paths.user_ssh_config)
        shutil.rmtree(paths.home, ignore_errors=True)
    echo(f"Removed {paths.home}")


def open_ssh(runtime: Runtime) -> None:
    config = _require_running(runtime)
    code = runtime.remote(config.ssh_port).interactive()
    if code not in (0, 130):
        raise UserFacingError(f"Error: SSH session exited with code {code}")


def show_logs(runtime: Runtime, *, follow: bool, lines: int) -> None:
    if not 1 <= lines <= MAX_LOG_LINES:
        raise UserFacingError(f"Error: --lines must be between 1 and {MAX_LOG_LINES}")
    config = _require_running(runtime)
    remote = runtime.remote(config.ssh_port)
    if follow:
        remote.stream(f"tail -n {lines} -f {REMOTE_SERVER_LOG}", echo)
        return
    result = remote.exec(f'tail -n {lines} {REMOTE_SERVER_LOG} 2>/dev/null || echo "No logs yet"')
    echo(result.stdout.rstrip("\n"))
