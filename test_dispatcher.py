"""Test tool dispatch - gate checks, snapshots, error propagation and auditing"""
import asyncio

import pytest

from powerbi_errors import AuthError, ToolArgumentError, ToolDisabled, UnknownTool, UpstreamFailure
from powerbi_tools import Dispatcher, ToolContext, ToolDescriptor, ToolHandler, ToolRegistry
from security.permissions import PermissionGate, compute_effective_state


class EchoHandler(ToolHandler):
    def __init__(self):
        self.calls = []

    async def execute(self, args, context):
        self.calls.append(args)
        return {"echo": args, "endpoint": context.default_xmla_endpoint}


class FailingHandler(ToolHandler):
    def __init__(self, error):
        self.error = error

    async def execute(self, args, context):
        raise self.error


class RecordingAudit:
    def __init__(self):
        self.events = []

    def __getattr__(self, name):
        if not name.startswith("log_"):
            raise AttributeError(name)
        return lambda *args: self.events.append((name, args))

    def names(self):
        return [name for name, _ in self.events]


def descriptor(tool_id, handler, **flags):
    return ToolDescriptor(
        id=tool_id,
        name=tool_id,
        description=f"{tool_id} tool",
        category="modeling",
        input_schema={"type": "object"},
        handler=handler,
        **flags,
    )


@pytest.fixture
def setup():
    echo = EchoHandler()
    registry = ToolRegistry([
        descriptor("read_tool", echo),
        descriptor("write_tool", echo, is_destructive=True),
        descriptor("hidden_tool", echo, default_enabled=False),
        descriptor("auth_tool", FailingHandler(AuthError("deviceCode", "expired", hint="retry"))),
        descriptor("broken_tool", FailingHandler(RuntimeError("boom"))),
    ])
    gate = PermissionGate(registry)
    audit = RecordingAudit()
    context = ToolContext(connection=type("Conn", (), {"xmla_endpoint": "powerbi://api/ws"})())
    return Dispatcher(registry, gate, context, audit=audit), registry, gate, echo, audit


def test_duplicate_ids_rejected():
    handler = EchoHandler()
    with pytest.raises(ValueError):
        ToolRegistry([descriptor("a", handler), descriptor("a", handler)])


def test_enabled_tool_runs(setup):
    dispatcher, _, _, echo, audit = setup
    result = asyncio.run(dispatcher.dispatch("read_tool", {"x": 1}))

    assert result == {"echo": {"x": 1}, "endpoint": "powerbi://api/ws"}
    assert echo.calls == [{"x": 1}]
    assert audit.names() == ["log_tool_call", "log_tool_result"]
    assert audit.events[-1][1][1] is True


def test_unknown_tool(setup):
    dispatcher, _, _, echo, audit = setup
    with pytest.raises(UnknownTool) as excinfo:
        asyncio.run(dispatcher.dispatch("nope"))
    assert excinfo.value.to_dict() == {"error": {"code": "UnknownTool", "message": "Unknown tool: nope", "tool": "nope"}}
    assert audit.events == [("log_tool_denied", ("nope", "unknown tool"))]


def test_disabled_tool_never_reaches_handler(setup):
    dispatcher, _, _, echo, audit = setup
    with pytest.raises(ToolDisabled) as excinfo:
        asyncio.run(dispatcher.dispatch("hidden_tool"))
    assert excinfo.value.read_only is False
    assert echo.calls == []
    assert audit.events == [("log_tool_denied", ("hidden_tool", "disabled"))]


def test_read_only_reason_reported(setup):
    dispatcher, registry, gate, echo, audit = setup
    gate.publish(compute_effective_state(registry, {}, read_only=True), read_only=True)

    with pytest.raises(ToolDisabled) as excinfo:
        asyncio.run(dispatcher.dispatch("write_tool"))
    assert excinfo.value.read_only is True
    assert excinfo.value.to_dict()["error"]["readOnly"] is True
    assert echo.calls == []

    # Non-destructive tools keep working
    asyncio.run(dispatcher.dispatch("read_tool"))
    assert len(echo.calls) == 1


def test_explicit_snapshot_wins(setup):
    dispatcher, registry, gate, echo, _ = setup
    old_snapshot = gate.snapshot()
    gate.publish(compute_effective_state(registry, {"read_tool": False}, read_only=False))

    asyncio.run(dispatcher.dispatch("read_tool", {}, state=old_snapshot))
    assert len(echo.calls) == 1
    with pytest.raises(ToolDisabled):
        asyncio.run(dispatcher.dispatch("read_tool", {}))


def test_handler_errors_propagate_unchanged(setup):
    dispatcher, _, _, _, audit = setup
    with pytest.raises(RuntimeError, match="boom"):
        asyncio.run(dispatcher.dispatch("broken_tool"))

    name, args = audit.events[-1]
    assert name == "log_tool_result"
    assert args[0] == "broken_tool"
    assert args[1] is False
    assert args[3] == "RuntimeError"


def test_auth_errors_are_audited(setup):
    dispatcher, _, _, _, audit = setup
    with pytest.raises(AuthError):
        asyncio.run(dispatcher.dispatch("auth_tool"))
    assert audit.names() == ["log_tool_call", "log_auth_failure", "log_tool_result"]
    assert audit.events[1][1] == ("deviceCode", "expired")


def test_dispatch_without_audit():
    handler = EchoHandler()
    registry = ToolRegistry([descriptor("read_tool", handler)])
    dispatcher = Dispatcher(registry, PermissionGate(registry), ToolContext())
    assert asyncio.run(dispatcher.dispatch("read_tool"))["endpoint"] == ""


def test_error_codes():
    assert ToolArgumentError("x").code == "InvalidArguments"
    assert UpstreamFailure("bad", status_code=404).to_dict() == {
        "error": {"code": "UpstreamFailure", "message": "bad", "statusCode": 404}
    }
