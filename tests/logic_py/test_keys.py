from __future__ import annotations

import pytest

from buildwithnexus.config import NexusConfig
from buildwithnexus.errors import IntegrityViolation, UserFacingError
from buildwithnexus.keys import list_keys, normalize_key_name, reset_keys, set_key
from buildwithnexus.redaction import REDACTED

from conftest import ANTHROPIC_KEY, OPENAI_KEY, audit_lines


def _initialised(runtime) -> None:
    NexusConfig().write(runtime.paths.config_file)
    runtime.secret_store().save({"ANTHROPIC_API_KEY": ANTHROPIC_KEY}, detail="saved")
    runtime.paths.audit_log.unlink()


def test_normalize_key_name() -> None:
    assert normalize_key_name(" openai_api_key ") == "OPENAI_API_KEY"
    with pytest.raises(UserFacingError, match="Unknown key: NOPE"):
        normalize_key_name("NOPE")


def test_keys_set_writes_one_redacted_audit_line(runtime, prompter, capsys) -> None:
    _initialised(runtime)
    prompter.secrets = [OPENAI_KEY]

    set_key(runtime, "OPENAI_API_KEY")

    lines = audit_lines(runtime)
    assert len(lines) == 1
    assert f"| keys_saved | OPENAI_API_KEY={REDACTED} updated via CLI" in lines[0]
    assert OPENAI_KEY not in runtime.paths.audit_log.read_text(encoding="utf-8")
    assert OPENAI_KEY not in capsys.readouterr().out
    store = runtime.secret_store()
    assert store.verify() is True
    assert store.load()["OPENAI_API_KEY"] == OPENAI_KEY


def test_keys_set_empty_value_leaves_store_untouched(runtime, prompter) -> None:
    _initialised(runtime)
    before = runtime.paths.keys_file.read_bytes()
    prompter.secrets = [""]
    set_key(runtime, "GOOGLE_API_KEY")
    assert runtime.paths.keys_file.read_bytes() == before
    assert audit_lines(runtime) == []


def test_keys_set_refuses_tampered_store(runtime, prompter) -> None:
    _initialised(runtime)
    runtime.paths.keys_file.write_text("ANTHROPIC_API_KEY=changed-by-hand\n", encoding="utf-8")
    prompter.secrets = [OPENAI_KEY]
    with pytest.raises(IntegrityViolation):
        set_key(runtime, "OPENAI_API_KEY")
    assert prompter.secrets == [OPENAI_KEY]


def test_keys_set_after_reset_recovers_store(runtime, prompter) -> None:
    _initialised(runtime)
    runtime.paths.keys_file.write_text("tampered\n", encoding="utf-8")
    reset_keys(runtime, force=True)
    prompter.secrets = [ANTHROPIC_KEY]
    set_key(runtime, "ANTHROPIC_API_KEY")
    assert runtime.secret_store().load() == {"ANTHROPIC_API_KEY": ANTHROPIC_KEY}


def test_keys_set_requires_init(runtime, prompter) -> None:
    with pytest.raises(UserFacingError, match="No configuration found"):
        set_key(runtime, "OPENAI_API_KEY")


def test_keys_list_masks_values(runtime, capsys) -> None:
    _initialised(runtime)
    list_keys(runtime)
    out = capsys.readouterr().out
    assert ANTHROPIC_KEY not in out
    assert f"{ANTHROPIC_KEY[:4]}...{ANTHROPIC_KEY[-4:]}" in out
    assert "keys_loaded" in audit_lines(runtime)[-1]


def test_keys_list_without_store_errors(runtime) -> None:
    with pytest.raises(UserFacingError, match="No keys configured"):
        list_keys(runtime)


def test_keys_reset_declined_keeps_store(runtime, prompter, capsys) -> None:
    _initialised(runtime)
    prompter.confirms = [False]
    reset_keys(runtime, force=False)
    assert runtime.paths.keys_file.exists()
    assert "Aborted." in capsys.readouterr().out
