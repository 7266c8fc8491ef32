from __future__ import annotations

from buildwithnexus.audit import AuditEvent
from buildwithnexus.errors import UserFacingError
from buildwithnexus.keystore import KNOWN_SECRET_NAMES, mask_key
from buildwithnexus.locks import install_lock
from buildwithnexus.redaction import echo
from buildwithnexus.runtime import Runtime
from buildwithnexus.validation import request_valid_secret


def _no_keys_error() -> UserFacingError:
    return UserFacingError("Error: No keys configured. Run: buildwithnexus init")


def list_keys(runtime: Runtime) -> None:
    store = runtime.secret_store()
    record = store.load()
    if not record:
        raise _no_keys_error()
    runtime.audit.record(AuditEvent.KEYS_LOADED, f"{len(record)} key(s) listed")
    echo("Configured keys:")
    for name, value in record.items():
        if value:
            echo(f"  {name:<24} {mask_key(value)}")


def normalize_key_name(raw: str) -> str:
    name = raw.strip().upper()
    if name not in KNOWN_SECRET_NAMES:
        raise UserFacingError(
            f"Error: Unknown key: {raw}\nValid keys: {', '.join(KNOWN_SECRET_NAMES)}"
        )
    return name


def set_key(runtime: Runtime, raw_name: str) -> None:
    name = normalize_key_name(raw_name)
    store = runtime.secret_store()
    runtime.paths.ensure_home()
    with install_lock(runtime.paths.locks_dir, f"keys set {name}"):
        store.load()
        if not runtime.paths.config_file.exists():
            raise UserFacingError("Error: No configuration found. Run: buildwithnexus init")
        value = request_valid_secret(
            runtime.prompter, name, f"Enter value for {name}", required=False
        )
        if not value:
            echo("Empty value; key not changed.")
            return
        store.set_secret(name, value)
    echo(f"{name} updated.")
    echo("Restart the runtime to apply it: buildwithnexus stop && buildwithnexus start")


def reset_keys(runtime: Runtime, *, force: bool) -> None:
    if not force and not runtime.prompter.confirm(
        "Remove all stored keys? You will need to set them again.", default=False
    ):
        echo("Aborted.")
        return
    runtime.paths.ensure_home()
    with install_lock(runtime.paths.locks_dir, "keys reset"):
        runtime.secret_store().reset()
    echo("Stored keys removed. Set them again with: buildwithnexus keys set ANTHROPIC_API_KEY")
