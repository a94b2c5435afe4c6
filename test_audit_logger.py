"""Test audit logging of tool calls, denials and configuration changes"""
import json

from security import AuditEventType, AuditLogger


def test_tool_call_never_logs_argument_values(tmp_path):
    audit = AuditLogger(log_dir=str(tmp_path), log_file="test_audit.log")
    event = audit.log_tool_call("execute_query", {"semanticModelId": "ds-1", "daxQuery": "EVALUATE Salaries"})

    assert event["event_type"] == AuditEventType.TOOL_CALL.value
    assert event["details"]["argument_keys"] == ["daxQuery", "semanticModelId"]
    assert "Salaries" not in (tmp_path / "test_audit.log").read_text(encoding="utf-8")


def test_fingerprint_is_order_independent():
    first = AuditLogger.fingerprint_arguments({"a": 1, "b": [1, 2]})
    second = AuditLogger.fingerprint_arguments({"b": [1, 2], "a": 1})
    assert first == second
    assert first != AuditLogger.fingerprint_arguments({"a": 2, "b": [1, 2]})


def test_events_are_json_lines(tmp_path):
    audit = AuditLogger(log_dir=str(tmp_path))
    audit.log_tool_call("table_operations", {"operation": "list"})
    audit.log_tool_result("table_operations", success=False, duration_ms=12.5,
                          error_code="UpstreamFailure", error_message="HTTP 403")
    audit.log_tool_denied("table_operations", "read-only mode")
    audit.log_auth_failure("clientCredentials", "invalid secret")
    audit.log_config_reload("settings.yaml", {"enabled_count": 12}, auth_changed=True)
    audit.log_config_rejected("settings.yaml", "tools.x must be true or false")

    lines = (tmp_path / "audit.log").read_text(encoding="utf-8").splitlines()
    assert [json.loads(line)["event_type"] for line in lines] == [
        "tool_call", "tool_failure", "tool_denied", "auth_failure", "config_reload", "config_rejected",
    ]

    recent = audit.get_recent_events(count=2)
    assert recent[0]["details"]["auth_changed"] is True
    assert recent[1]["severity"] == "warning"


def test_session_summary_counts_calls(tmp_path):
    audit = AuditLogger(log_dir=str(tmp_path))
    audit.log_tool_call("execute_query")
    audit.log_tool_call("execute_query")

    summary = audit.get_session_summary()
    assert summary["call_count"] == 2
    assert summary["log_file"].endswith("audit.log")


def test_rotation(tmp_path):
    audit = AuditLogger(log_dir=str(tmp_path), max_file_size_mb=0, backup_count=2)
    audit.log_tool_denied("a", "disabled")
    audit.log_tool_denied("b", "disabled")
    audit.log_tool_denied("c", "disabled")

    assert (tmp_path / "audit.1.log").exists()
    assert (tmp_path / "audit.2.log").exists()
    assert len((tmp_path / "audit.log").read_text(encoding="utf-8").splitlines()) == 1
