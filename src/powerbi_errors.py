"""
Power BI MCP Error Types
Structured errors surfaced at the tool-call boundary
"""
from typing import Any, Dict, Optional


class PowerBIMCPError(Exception):
    """Base class for errors that carry a stable error code"""

    code = "InternalError"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def details(self) -> Dict[str, Any]:
        """Extra fields included in the error payload"""
        return {}

    def to_dict(self) -> Dict[str, Any]:
        error = {'code': self.code, 'message': self.message}
        error.update(self.details())
        return {'error': error}


class UnknownTool(PowerBIMCPError):
    """The requested tool id is not in the registry"""

    code = "UnknownTool"

    def __init__(self, tool_id: str):
        super().__init__(f"Unknown tool: {tool_id}")
        self.tool_id = tool_id

    def details(self) -> Dict[str, Any]:
        return {'tool': self.tool_id}


class ToolDisabled(PowerBIMCPError):
    """The tool exists but the current permission state does not allow it"""

    code = "ToolDisabled"

    def __init__(self, tool_id: str, read_only: bool = False):
        reason = " (read-only mode blocks destructive tools)" if read_only else ""
        super().__init__(
            f"Tool '{tool_id}' is disabled{reason}. Enable it in the Power BI MCP configuration."
        )
        self.tool_id = tool_id
        self.read_only = read_only

    def details(self) -> Dict[str, Any]:
        return {'tool': self.tool_id, 'readOnly': self.read_only}


class AuthError(PowerBIMCPError):
    """Token acquisition failed for the configured method"""

    code = "AuthFailure"

    def __init__(self, method: str, message: str, hint: Optional[str] = None):
        super().__init__(message)
        self.method = method
        self.hint = hint

    def details(self) -> Dict[str, Any]:
        return {'method': self.method, 'hint': self.hint}

    def __str__(self) -> str:
        if self.hint:
            return f"{self.message} (hint: {self.hint})"
        return self.message


class UpstreamFailure(PowerBIMCPError):
    """A remote Power BI / XMLA call failed after passing the permission gate"""

    code = "UpstreamFailure"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    def details(self) -> Dict[str, Any]:
        if self.status_code is None:
            return {}
        return {'statusCode': self.status_code}


class ToolArgumentError(PowerBIMCPError):
    """A tool was called with missing or invalid arguments"""

    code = "InvalidArguments"


class ConfigError(PowerBIMCPError):
    """The persisted configuration is malformed or unreadable"""

    code = "ConfigError"

    def __init__(self, message: str, source: Optional[str] = None):
        super().__init__(message)
        self.source = source

    def details(self) -> Dict[str, Any]:
        return {'source': self.source}
