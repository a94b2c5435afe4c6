"""
Power BI MCP Security Module
Provides tool permission gating, permission profiles and audit logging
"""

from .permissions import (
    ToolsState,
    PermissionGate,
    PermissionProfile,
    PERMISSION_PROFILES,
    compute_effective_state,
    is_tool_allowed,
    list_enabled,
    get_profile,
    apply_profile,
    get_permissions_summary
)

from .audit_logger import (
    AuditLogger,
    AuditEventType,
    AuditSeverity
)

__all__ = [
    # Permissions
    'ToolsState',
    'PermissionGate',
    'PermissionProfile',
    'PERMISSION_PROFILES',
    'compute_effective_state',
    'is_tool_allowed',
    'list_enabled',
    'get_profile',
    'apply_profile',
    'get_permissions_summary',
    # Audit Logging
    'AuditLogger',
    'AuditEventType',
    'AuditSeverity',
]
