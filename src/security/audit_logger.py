"""
Tool Call Audit Logging Module
Logs tool dispatches, permission denials, auth failures and config reloads
"""
import json
import logging
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from enum import Enum
import hashlib

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    """Types of auditable events"""
    TOOL_CALL = "tool_call"
    TOOL_SUCCESS = "tool_success"
    TOOL_FAILURE = "tool_failure"
    TOOL_DENIED = "tool_denied"
    AUTH_FAILURE = "auth_failure"
    CONFIG_RELOAD = "config_reload"
    CONFIG_REJECTED = "config_rejected"


class AuditSeverity(Enum):
    """Severity levels for audit events"""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditLogger:
    """
    Audit trail for Power BI MCP tool calls

    Features:
    - JSON-formatted logs for easy parsing
    - Rotation support
    - Thread-safe logging
    - Argument fingerprinting, argument values are never written

    Usage:
        audit = AuditLogger(log_dir="./logs")
        audit.log_tool_call("execute_query", {"daxQuery": "EVALUATE Sales"})
        audit.log_tool_result("execute_query", success=True, duration_ms=250)
    """

    def __init__(
        self,
        log_dir: Optional[str] = None,
        log_file: str = "audit.log",
        max_file_size_mb: int = 10,
        backup_count: int = 5
    ):
        """
        Initialize the audit logger

        Args:
            log_dir: Directory for log files (default: ./logs)
            log_file: Name of the log file
            max_file_size_mb: Max size before rotation
            backup_count: Number of backup files to keep
        """
        self.log_dir = Path(log_dir) if log_dir else Path.cwd() / "logs"
        self.log_file = self.log_dir / log_file
        self.max_file_size = max_file_size_mb * 1024 * 1024
        self.backup_count = backup_count

        self._lock = threading.Lock()
        self._session_id = self._generate_session_id()
        self._call_count = 0

        self.log_dir.mkdir(parents=True, exist_ok=True)

        logger.info(f"Audit logger initialized: {self.log_file}")

    def _generate_session_id(self) -> str:
        """Generate a unique session ID"""
        timestamp = datetime.now(timezone.utc).isoformat()
        return hashlib.sha256(f"{timestamp}{os.getpid()}".encode()).hexdigest()[:16]

    @staticmethod
    def fingerprint_arguments(arguments: Optional[Dict[str, Any]]) -> str:
        """Stable fingerprint of tool arguments for correlating calls"""
        normalized = json.dumps(arguments or {}, sort_keys=True, default=str)
        return hashlib.sha256(normalized.encode()).hexdigest()[:12]

    def _rotate_if_needed(self):
        """Rotate log file if it exceeds max size"""
        if self.log_file.exists() and self.log_file.stat().st_size > self.max_file_size:
            for i in range(self.backup_count - 1, 0, -1):
                old_backup = self.log_dir / f"{self.log_file.stem}.{i}{self.log_file.suffix}"
                new_backup = self.log_dir / f"{self.log_file.stem}.{i + 1}{self.log_file.suffix}"
                if old_backup.exists():
                    old_backup.replace(new_backup)

            backup_1 = self.log_dir / f"{self.log_file.stem}.1{self.log_file.suffix}"
            self.log_file.replace(backup_1)

            logger.info(f"Rotated audit log: {self.log_file}")

    def _write_log(self, event: Dict[str, Any]):
        """Thread-safe log writing"""
        with self._lock:
            try:
                self._rotate_if_needed()
                with open(self.log_file, 'a', encoding='utf-8') as f:
                    f.write(json.dumps(event, default=str) + '\n')
            except OSError as e:
                logger.error(f"Failed to write audit log: {e}")

    def log_event(
        self,
        event_type: AuditEventType,
        severity: AuditSeverity = AuditSeverity.INFO,
        message: str = "",
        details: Optional[Dict[str, Any]] = None,
        **kwargs
    ) -> Dict[str, Any]:
        """
        Log a generic audit event

        Args:
            event_type: Type of event
            severity: Severity level
            message: Human-readable message
            details: Additional details
            **kwargs: Extra fields to include

        Returns:
            The logged event record
        """
        event = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'session_id': self._session_id,
            'event_type': event_type.value,
            'severity': severity.value,
            'message': message,
            'details': details or {},
            **kwargs
        }

        self._write_log(event)
        return event

    def log_tool_call(self, tool_id: str, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Log an inbound tool call that passed the permission gate"""
        self._call_count += 1
        return self.log_event(
            event_type=AuditEventType.TOOL_CALL,
            message=f"Tool called: {tool_id}",
            details={
                'tool': tool_id,
                'call_number': self._call_count,
                'argument_keys': sorted((arguments or {}).keys()),
                'argument_fingerprint': self.fingerprint_arguments(arguments),
            }
        )

    def log_tool_result(
        self,
        tool_id: str,
        success: bool = True,
        duration_ms: Optional[float] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None
    ) -> Dict[str, Any]:
        """Log the outcome of a dispatched tool call"""
        if success:
            event_type, severity = AuditEventType.TOOL_SUCCESS, AuditSeverity.INFO
            message = f"Tool succeeded: {tool_id}"
        else:
            event_type, severity = AuditEventType.TOOL_FAILURE, AuditSeverity.ERROR
            message = f"Tool failed: {tool_id}: {error_message}"

        event = self.log_event(
            event_type=event_type,
            severity=severity,
            message=message,
            details={
                'tool': tool_id,
                'success': success,
                'duration_ms': duration_ms,
                'error_code': error_code,
                'error': error_message,
            }
        )

        status = "SUCCESS" if success else f"FAILED ({error_code}): {error_message}"
        logger.info(f"Tool [{tool_id}]: {duration_ms or 0:.0f}ms, {status}")
        return event

    def log_tool_denied(self, tool_id: str, reason: str) -> Dict[str, Any]:
        """Log a call rejected before the handler ran"""
        return self.log_event(
            event_type=AuditEventType.TOOL_DENIED,
            severity=AuditSeverity.WARNING,
            message=f"Tool denied: {tool_id} - {reason}",
            details={'tool': tool_id, 'reason': reason}
        )

    def log_auth_failure(self, method: str, message: str) -> Dict[str, Any]:
        """Log a failed token acquisition"""
        return self.log_event(
            event_type=AuditEventType.AUTH_FAILURE,
            severity=AuditSeverity.ERROR,
            message=f"Authentication failed ({method}): {message}",
            details={'method': method}
        )

    def log_config_reload(self, source: str, summary: Dict[str, Any], auth_changed: bool = False) -> Dict[str, Any]:
        """Log a successfully applied configuration"""
        return self.log_event(
            event_type=AuditEventType.CONFIG_RELOAD,
            message=f"Configuration applied from {source}",
            details={'source': source, 'permissions': summary, 'auth_changed': auth_changed}
        )

    def log_config_rejected(self, source: str, error_message: str) -> Dict[str, Any]:
        """Log a configuration snapshot that was rejected, keeping the last good one"""
        return self.log_event(
            event_type=AuditEventType.CONFIG_REJECTED,
            severity=AuditSeverity.WARNING,
            message=f"Configuration rejected from {source}: {error_message}",
            details={'source': source, 'error': error_message}
        )

    def get_session_summary(self) -> Dict[str, Any]:
        """Get a summary of the current session"""
        return {
            'session_id': self._session_id,
            'call_count': self._call_count,
            'log_file': str(self.log_file)
        }

    def get_recent_events(self, count: int = 100) -> List[Dict[str, Any]]:
        """Read recent events from the log file"""
        events = []

        if not self.log_file.exists():
            return events

        try:
            with open(self.log_file, 'r', encoding='utf-8') as f:
                lines = f.readlines()
                for line in lines[-count:]:
                    try:
                        events.append(json.loads(line.strip()))
                    except json.JSONDecodeError:
                        continue
        except OSError as e:
            logger.error(f"Failed to read audit log: {e}")

        return events
