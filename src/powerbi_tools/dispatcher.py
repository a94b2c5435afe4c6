"""
Tool Dispatcher
Routes a tool call through the permission gate to its handler
"""
import logging
import time
from typing import Any, Dict, Optional

from powerbi_errors import AuthError, PowerBIMCPError, ToolDisabled, UnknownTool
from security.permissions import ToolsState

logger = logging.getLogger(__name__)


class Dispatcher:
    """
    Resolves a tool id, checks it against one permission snapshot and runs it

    Usage:
        dispatcher = Dispatcher(registry, gate, context, audit=audit_logger)
        result = await dispatcher.dispatch("execute_query", {"semanticModelId": ..., "daxQuery": ...})
    """

    def __init__(self, registry, gate, context, audit=None):
        self.registry = registry
        self.gate = gate
        self.context = context
        self.audit = audit

    async def dispatch(self, tool_id: str, args: Optional[Dict[str, Any]] = None, state: Optional[ToolsState] = None) -> Any:
        """
        Execute a tool call

        Args:
            tool_id: Registered tool id
            args: Tool arguments
            state: Permission snapshot to check against (default: the gate's current one)

        Returns:
            The handler result

        Raises:
            UnknownTool: if the id is not registered
            ToolDisabled: if the snapshot does not allow the tool
            Exception: whatever the handler raises, unchanged
        """
        args = args or {}
        # One snapshot for the whole call, even if a reload publishes meanwhile
        read_only = self.gate.read_only
        snapshot = self.gate.snapshot() if state is None else state

        descriptor = self.registry.get(tool_id)
        if descriptor is None:
            logger.warning(f"Rejected call to unknown tool: {tool_id}")
            self._audit('log_tool_denied', tool_id, 'unknown tool')
            raise UnknownTool(tool_id)

        if not self.gate.is_allowed(tool_id, snapshot):
            blocked_by_read_only = read_only and descriptor.is_destructive
            logger.warning(f"Rejected call to disabled tool: {tool_id}")
            self._audit('log_tool_denied', tool_id, 'read-only mode' if blocked_by_read_only else 'disabled')
            raise ToolDisabled(tool_id, read_only=blocked_by_read_only)

        self._audit('log_tool_call', tool_id, args)
        start = time.time()
        try:
            result = await descriptor.handler.execute(args, self.context)
        except Exception as e:
            duration_ms = (time.time() - start) * 1000
            code = e.code if isinstance(e, PowerBIMCPError) else type(e).__name__
            logger.error(f"Tool {tool_id} failed: {e}")
            if isinstance(e, AuthError):
                self._audit('log_auth_failure', e.method, e.message)
            self._audit('log_tool_result', tool_id, False, duration_ms, code, str(e))
            raise

        self._audit('log_tool_result', tool_id, True, (time.time() - start) * 1000)
        return result

    def _audit(self, method: str, *args):
        if self.audit is not None:
            getattr(self.audit, method)(*args)
