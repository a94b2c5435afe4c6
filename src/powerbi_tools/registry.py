"""
Tool Registry
Immutable table of tool descriptors, each bound to its handler
"""
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Optional, Tuple

from mcp.types import Tool

from powerbi_errors import ToolArgumentError
from security.permissions import ToolsState, freeze_state, is_tool_allowed

logger = logging.getLogger(__name__)


@dataclass
class ToolContext:
    """Collaborators available to tool handlers; connection is replaced on config reload"""
    client: Any = None
    desktop: Any = None
    connection: Any = None

    @property
    def default_xmla_endpoint(self) -> str:
        return getattr(self.connection, 'xmla_endpoint', '') or ''


class ToolHandler:
    """Capability implemented once per tool"""

    async def execute(self, args: Dict[str, Any], context: ToolContext) -> Any:
        raise NotImplementedError

    @staticmethod
    def require(args: Dict[str, Any], *names: str, operation: Optional[str] = None):
        """Raise ToolArgumentError listing every missing required argument"""
        missing = [name for name in names if args.get(name) in (None, '')]
        if missing:
            suffix = f" for {operation}" if operation else ""
            raise ToolArgumentError(f"{', '.join(missing)} {'is' if len(missing) == 1 else 'are'} required{suffix}")


class OperationHandler(ToolHandler):
    """
    Handler for tools taking an 'operation' argument

    Each operation name maps to an op_<name> coroutine method.
    """

    operations: Tuple[str, ...] = ()

    async def execute(self, args: Dict[str, Any], context: ToolContext) -> Any:
        operation = args.get('operation')
        if operation not in self.operations:
            raise ToolArgumentError(
                f"Unknown operation: {operation}. Expected one of: {', '.join(self.operations)}"
            )
        return await getattr(self, f"op_{operation}")(args, context)

    @classmethod
    def operation_property(cls) -> Dict[str, Any]:
        """JSON schema fragment for the operation argument"""
        return {"type": "string", "enum": list(cls.operations), "description": "Operation to run"}


@dataclass(frozen=True)
class ToolDescriptor:
    """Static description of one tool; ids are stable because persisted settings key by them"""
    id: str
    name: str
    description: str
    category: str
    input_schema: Dict[str, Any] = field(repr=False)
    handler: ToolHandler = field(repr=False, compare=False)
    is_destructive: bool = False
    is_advanced: bool = False
    default_enabled: bool = True

    @property
    def config_key(self) -> str:
        """Settings key, e.g. tools.modeling.measureOperations"""
        head, *rest = self.id.split('_')
        return f"tools.{self.category}.{head}{''.join(part.title() for part in rest)}"

    def to_mcp_tool(self) -> Tool:
        return Tool(name=self.id, description=self.description, inputSchema=self.input_schema)


class ToolRegistry:
    """
    Read-only mapping from tool id to descriptor

    Usage:
        registry = ToolRegistry(descriptors)
        tool = registry.get("execute_query")
        enabled = registry.list_enabled(state)
    """

    def __init__(self, descriptors: Iterable[ToolDescriptor]):
        table: Dict[str, ToolDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.id in table:
                raise ValueError(f"Duplicate tool id: {descriptor.id}")
            table[descriptor.id] = descriptor
        self._tools = MappingProxyType(table)
        logger.debug(f"Tool registry built with {len(table)} tools")

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, tool_id: str) -> bool:
        return tool_id in self._tools

    def get(self, tool_id: str) -> Optional[ToolDescriptor]:
        return self._tools.get(tool_id)

    def ids(self) -> List[str]:
        return list(self._tools)

    def descriptors(self) -> List[ToolDescriptor]:
        return list(self._tools.values())

    def default_state(self) -> ToolsState:
        return freeze_state({tool.id: tool.default_enabled for tool in self._tools.values()})

    def list_enabled(self, state: ToolsState) -> List[ToolDescriptor]:
        return [tool for tool in self._tools.values() if is_tool_allowed(tool.id, state)]

    def to_mcp_tools(self, state: ToolsState) -> List[Tool]:
        return [tool.to_mcp_tool() for tool in self.list_enabled(state)]
