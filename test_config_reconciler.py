"""Test settings parsing and live reconciliation"""
import asyncio
import json
from pathlib import Path

import pytest

from powerbi_auth import AuthConfig, AuthManager, AuthMethod, DEFAULT_CLIENT_ID
from powerbi_config import (
    ConfigReconciler,
    ConnectionConfig,
    env_flag,
    load_server_config,
    parse_server_config,
)
from powerbi_errors import ConfigError
from powerbi_tools import build_registry
from security.permissions import PermissionGate

ENV_VARS = (
    "POWERBI_TENANT_ID", "POWERBI_CLIENT_ID", "POWERBI_CLIENT_SECRET", "POWERBI_AUTH_METHOD",
    "POWERBI_XMLA_ENDPOINT", "POWERBI_READ_ONLY", "POWERBI_PERMISSION_PROFILE",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class RecordingAudit:
    def __init__(self):
        self.reloads = []
        self.rejections = []

    def log_config_reload(self, source, summary, auth_changed=False):
        self.reloads.append((source, summary, auth_changed))

    def log_config_rejected(self, source, error_message):
        self.rejections.append((source, error_message))


@pytest.fixture
def parts(tmp_path):
    registry = build_registry()
    gate = PermissionGate(registry)
    auth = AuthManager(AuthConfig())
    audit = RecordingAudit()
    path = tmp_path / "powerbi-mcp.yaml"
    reconciler = ConfigReconciler(path, registry, gate, auth=auth, audit=audit)
    return reconciler, path, gate, auth, audit


def write(path, text):
    path.write_text(text, encoding="utf-8")


def reload(reconciler):
    reconciler.notify_changed()
    return reconciler.check_once()


# ==================== PARSING ====================

def test_env_flag(monkeypatch):
    monkeypatch.setenv("SOME_FLAG", "Yes")
    assert env_flag("SOME_FLAG")
    monkeypatch.setenv("SOME_FLAG", "0")
    assert not env_flag("SOME_FLAG", True)
    monkeypatch.setenv("SOME_FLAG", " ")
    assert env_flag("SOME_FLAG", True)


def test_empty_document_uses_environment(monkeypatch):
    monkeypatch.setenv("POWERBI_READ_ONLY", "true")
    monkeypatch.setenv("POWERBI_XMLA_ENDPOINT", "powerbi://api/ws")
    config = parse_server_config(None)

    assert config.read_only is True
    assert config.require_confirmation is True
    assert config.auth.client_id == DEFAULT_CLIENT_ID
    assert config.auth.method is AuthMethod.INTERACTIVE
    assert config.connection.xmla_endpoint == "powerbi://api/ws"


def test_full_document():
    config = parse_server_config({
        "tools": {"execute_query": False},
        "auth": {"tenantId": "contoso", "method": "deviceCode"},
        "connection": {"defaultSemanticModelIds": "a, b,", "xmlaEndpoint": " powerbi://x "},
        "readOnly": True,
        "requireConfirmation": False,
        "profile": "DAX only",
    })
    assert dict(config.tools) == {"execute_query": False}
    assert config.auth.method is AuthMethod.DEVICE_CODE
    assert config.connection == ConnectionConfig(default_semantic_model_ids=("a", "b"), xmla_endpoint="powerbi://x")
    assert config.profile == "dax_only"
    assert config.to_dict()["profile"] == "dax_only"


@pytest.mark.parametrize("raw, message", [
    (["not", "a", "mapping"], "must be a mapping"),
    ({"tools": {"execute_query": "yes"}}, "tools.execute_query"),
    ({"tools": ["execute_query"]}, "'tools' must be a mapping"),
    ({"readOnly": "true"}, "readOnly"),
    ({"auth": {"method": "kerberos"}}, "Unknown authentication method"),
    ({"profile": "superuser"}, "Unknown permission profile"),
    ({"connection": {"defaultSemanticModelIds": [1, 2]}}, "defaultSemanticModelIds"),
])
def test_malformed_documents(raw, message):
    with pytest.raises(ConfigError) as excinfo:
        parse_server_config(raw, source="settings.yaml")
    assert message in excinfo.value.message
    assert excinfo.value.source == "settings.yaml"


def test_client_credentials_without_secret_is_accepted():
    config = parse_server_config({"auth": {"tenantId": "contoso", "method": "clientCredentials"}})
    assert config.auth.method is AuthMethod.CLIENT_CREDENTIALS
    assert config.auth.client_secret is None


def test_json_files_are_accepted(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"readOnly": True, "tools": {"trace_operations": True}}), encoding="utf-8")
    config = load_server_config(path)
    assert config.read_only is True
    assert config.tools["trace_operations"] is True


def test_unreadable_and_invalid_files(tmp_path):
    with pytest.raises(ConfigError, match="Cannot read"):
        load_server_config(tmp_path / "missing.yaml")

    path = tmp_path / "broken.yaml"
    path.write_text("tools: [unclosed", encoding="utf-8")
    with pytest.raises(ConfigError, match="Invalid configuration syntax"):
        load_server_config(path)


def test_bad_environment_auth_method_only_matters_without_auth_section(tmp_path, monkeypatch):
    monkeypatch.setenv("POWERBI_AUTH_METHOD", "bogus")
    path = tmp_path / "settings.yaml"
    path.write_text("auth:\n  method: deviceCode\n", encoding="utf-8")
    assert load_server_config(path).auth.method is AuthMethod.DEVICE_CODE

    with pytest.raises(ConfigError, match="POWERBI_AUTH_METHOD") as excinfo:
        parse_server_config({"readOnly": True})
    assert excinfo.value.source == "environment"


def test_bad_environment_profile_only_matters_without_profile(monkeypatch):
    monkeypatch.setenv("POWERBI_PERMISSION_PROFILE", "nonexistent")
    assert parse_server_config({"profile": "developer"}).profile == "developer"
    assert parse_server_config({"profile": None}).profile is None

    with pytest.raises(ConfigError, match="POWERBI_PERMISSION_PROFILE"):
        parse_server_config({})


# ==================== RECONCILER ====================

def test_missing_file_uses_defaults(parts):
    reconciler, path, gate, _, audit = parts
    state = reconciler.load_initial()

    assert state.config.read_only is False
    assert gate.is_allowed("table_operations")
    assert not gate.is_allowed("trace_operations")
    assert len(audit.reloads) == 1


def test_read_only_flip_is_published(parts):
    reconciler, path, gate, _, _ = parts
    write(path, "readOnly: false\n")
    reconciler.load_initial()
    assert gate.is_allowed("measure_operations")

    write(path, "readOnly: true\n")
    assert reload(reconciler) is True
    assert gate.read_only
    assert not gate.is_allowed("measure_operations")
    assert gate.is_allowed("execute_query")

    write(path, "readOnly: false\n")
    assert reload(reconciler) is True
    assert gate.is_allowed("measure_operations")


def test_read_only_overrides_explicit_enable(parts):
    reconciler, path, gate, _, _ = parts
    write(path, "readOnly: true\ntools:\n  table_operations: true\n")
    reconciler.load_initial()
    assert not gate.is_allowed("table_operations")


def test_malformed_file_keeps_last_good_state(parts):
    reconciler, path, gate, _, audit = parts
    write(path, "tools:\n  execute_query: false\n")
    reconciler.load_initial()
    good = reconciler.snapshot

    write(path, "tools: {execute_query: maybe}\n")
    assert reload(reconciler) is False
    assert reconciler.snapshot is good
    assert not gate.is_allowed("execute_query")
    assert len(audit.rejections) == 1
    assert audit.rejections[0][0] == str(path)


def test_malformed_file_at_startup_falls_back_to_defaults(parts):
    reconciler, path, gate, _, audit = parts
    write(path, "readOnly: [")
    state = reconciler.load_initial()

    assert state.config.read_only is False
    assert gate.is_allowed("execute_query")
    assert len(audit.rejections) == 1


def test_bad_environment_profile_falls_back_to_builtin_defaults(parts, monkeypatch):
    monkeypatch.setenv("POWERBI_PERMISSION_PROFILE", "nonexistent")
    reconciler, _, gate, _, audit = parts
    state = reconciler.load_initial()

    assert state.config.profile is None
    assert gate.is_allowed("table_operations")
    assert audit.rejections[0][0] == "environment"
    assert "nonexistent" in audit.rejections[0][1]


def test_bad_environment_auth_method_falls_back_to_builtin_defaults(parts, monkeypatch):
    monkeypatch.setenv("POWERBI_AUTH_METHOD", "bogus")
    reconciler, path, _, auth, audit = parts
    state = reconciler.load_initial()
    assert state.config.auth.method is AuthMethod.INTERACTIVE
    assert len(audit.rejections) == 1

    # A file with its own auth section is unaffected
    write(path, "auth:\n  method: deviceCode\n")
    assert reload(reconciler) is True
    assert auth.config.method is AuthMethod.DEVICE_CODE


def fail_stat_for(monkeypatch, target):
    """Make Path.stat raise PermissionError for one file while failing is set"""
    real_stat = Path.stat
    failing = {"on": True}

    def stat(self, *args, **kwargs):
        if failing["on"] and self == target:
            raise PermissionError("denied")
        return real_stat(self, *args, **kwargs)

    monkeypatch.setattr(Path, "stat", stat)
    return failing


def test_stat_failure_keeps_state_and_retries(parts, monkeypatch):
    reconciler, path, gate, _, _ = parts
    write(path, "readOnly: false\n")
    reconciler.load_initial()

    write(path, "readOnly: true\n")
    failing = fail_stat_for(monkeypatch, path)
    assert reconciler.check_once() is False
    assert not gate.read_only

    failing["on"] = False
    assert reconciler.check_once() is True
    assert gate.read_only


def test_stat_failure_at_startup_uses_defaults(parts, monkeypatch):
    reconciler, path, gate, _, audit = parts
    write(path, "readOnly: true\n")
    fail_stat_for(monkeypatch, path)

    state = reconciler.load_initial()
    assert state.config.read_only is False
    assert "denied" in audit.rejections[0][1]


def test_deleted_file_keeps_state(parts):
    reconciler, path, gate, _, _ = parts
    write(path, "readOnly: true\n")
    reconciler.load_initial()

    path.unlink()
    assert reconciler.check_once() is False
    assert gate.read_only


def test_unchanged_file_is_not_reapplied(parts):
    reconciler, path, _, _, audit = parts
    write(path, "readOnly: true\n")
    reconciler.load_initial()

    assert reconciler.check_once() is False
    # Touched with identical content
    write(path, "readOnly: true\n")
    assert reload(reconciler) is False
    assert len(audit.reloads) == 1


def test_profile_overrides_tools(parts):
    reconciler, path, gate, _, _ = parts
    write(path, "profile: read_only\ntools:\n  table_operations: true\n")
    reconciler.load_initial()

    assert not gate.is_allowed("table_operations")
    assert gate.is_allowed("execute_query")
    assert not gate.is_allowed("trace_operations")


def test_auth_change_clears_token(parts):
    reconciler, path, _, auth, audit = parts
    write(path, "auth:\n  method: interactive\n")
    reconciler.load_initial()
    old_epoch_config = auth.config

    write(path, "auth:\n  method: deviceCode\n  tenantId: contoso\n")
    assert reload(reconciler) is True
    assert auth.config.method is AuthMethod.DEVICE_CODE
    assert auth.config is not old_epoch_config
    assert audit.reloads[-1][2] is True

    # Non-auth changes leave the auth manager alone
    current = auth.config
    write(path, "auth:\n  method: deviceCode\n  tenantId: contoso\nreadOnly: true\n")
    assert reload(reconciler) is True
    assert auth.config is current
    assert audit.reloads[-1][2] is False


def test_listeners_receive_new_state(parts):
    reconciler, path, _, _, _ = parts
    seen = []

    def broken_listener(state):
        raise RuntimeError("listener bug")

    reconciler.add_listener(broken_listener)
    reconciler.add_listener(lambda state: seen.append(state.config.connection.xmla_endpoint))

    write(path, "connection:\n  xmlaEndpoint: powerbi://one\n")
    reconciler.load_initial()
    write(path, "connection:\n  xmlaEndpoint: powerbi://two\n")
    reload(reconciler)

    assert seen == ["powerbi://one", "powerbi://two"]


def test_poll_loop_picks_up_changes(tmp_path):
    registry = build_registry()
    gate = PermissionGate(registry)
    path = tmp_path / "settings.yaml"
    path.write_text("readOnly: false\n", encoding="utf-8")
    reconciler = ConfigReconciler(path, registry, gate, poll_interval=0.01)
    reconciler.load_initial()

    async def scenario():
        reconciler.start()
        path.write_text("readOnly: true\ntools: {}\n", encoding="utf-8")
        for _ in range(200):
            await asyncio.sleep(0.01)
            if gate.read_only:
                break
        await reconciler.stop()

    asyncio.run(scenario())
    assert gate.read_only


def test_poll_loop_survives_stat_errors(tmp_path, monkeypatch):
    registry = build_registry()
    gate = PermissionGate(registry)
    path = tmp_path / "settings.yaml"
    path.write_text("readOnly: false\n", encoding="utf-8")
    reconciler = ConfigReconciler(path, registry, gate, poll_interval=0.01)
    reconciler.load_initial()
    failing = fail_stat_for(monkeypatch, path)

    async def scenario():
        task = reconciler.start()
        await asyncio.sleep(0.05)
        assert not task.done()

        failing["on"] = False
        path.write_text("readOnly: true\ntools: {}\n", encoding="utf-8")
        for _ in range(200):
            await asyncio.sleep(0.01)
            if gate.read_only:
                break
        alive = not task.done()
        await reconciler.stop()
        return alive

    assert asyncio.run(scenario()) is True
    assert gate.read_only
