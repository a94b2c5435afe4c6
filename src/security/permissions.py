"""
Tool Permission Gate
Derives the effective enabled tool set from persisted settings and read-only mode
"""
import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional

logger = logging.getLogger(__name__)

# tool id -> enabled; always a read-only mapping once published
ToolsState = Mapping[str, bool]


def freeze_state(state: Mapping[str, bool]) -> ToolsState:
    """Copy a state into an immutable mapping"""
    return MappingProxyType(dict(state))


def compute_effective_state(
    registry,
    persisted: Optional[Mapping[str, Any]],
    read_only: bool
) -> ToolsState:
    """
    Merge persisted per-tool settings with the tool defaults and the read-only flag

    Args:
        registry: ToolRegistry to evaluate
        persisted: Persisted tool id -> bool settings (missing ids use the default)
        read_only: When set, every destructive tool is disabled regardless of its setting

    Returns:
        A new read-only ToolsState covering every registered tool
    """
    persisted = persisted or {}
    state: Dict[str, bool] = {}

    for tool in registry.descriptors():
        value = persisted.get(tool.id)
        state[tool.id] = tool.default_enabled if value is None else bool(value)

    if read_only:
        for tool in registry.descriptors():
            if tool.is_destructive:
                state[tool.id] = False

    unknown = set(persisted) - set(state)
    if unknown:
        logger.debug(f"Ignoring settings for unknown tools: {sorted(unknown)}")

    return freeze_state(state)


def is_tool_allowed(tool_id: str, state: ToolsState) -> bool:
    """A tool is allowed only when explicitly enabled"""
    return state.get(tool_id) is True


def list_enabled(registry, state: ToolsState) -> List[Any]:
    """Descriptors of all enabled tools, in registry order"""
    return [tool for tool in registry.descriptors() if is_tool_allowed(tool.id, state)]


class PermissionGate:
    """
    Holds the current effective ToolsState

    Publishing replaces the whole snapshot in one assignment, so readers see
    either the old or the new state, never a mix.
    """

    def __init__(self, registry, state: Optional[ToolsState] = None, read_only: bool = False):
        self.registry = registry
        self._snapshot = freeze_state(state) if state is not None else registry.default_state()
        self._read_only = read_only

    def publish(self, state: ToolsState, read_only: bool = False):
        self._snapshot, self._read_only = freeze_state(state), read_only

    def snapshot(self) -> ToolsState:
        return self._snapshot

    @property
    def read_only(self) -> bool:
        return self._read_only

    def is_allowed(self, tool_id: str, state: Optional[ToolsState] = None) -> bool:
        return is_tool_allowed(tool_id, self._snapshot if state is None else state)

    def enabled_tools(self) -> List[Any]:
        return list_enabled(self.registry, self._snapshot)


# ==================== PROFILES ====================

@dataclass(frozen=True)
class PermissionProfile:
    """A named template that bulk-overwrites the tool settings"""
    name: str
    description: str
    predicate: Callable[[Any], bool]


DAX_TOOLS = frozenset([
    'get_semantic_model_schema',
    'generate_query',
    'execute_query',
    'dax_query_operations',
    'measure_operations',
])

PERMISSION_PROFILES: List[PermissionProfile] = [
    PermissionProfile(
        name='read_only',
        description='Queries and schema reads only - no modifications',
        predicate=lambda tool: not tool.is_destructive and not tool.is_advanced,
    ),
    PermissionProfile(
        name='developer',
        description='All basic modeling tools',
        predicate=lambda tool: not tool.is_advanced,
    ),
    PermissionProfile(
        name='advanced',
        description='Every tool, including advanced modeling',
        predicate=lambda tool: True,
    ),
    PermissionProfile(
        name='dax_only',
        description='DAX related operations only',
        predicate=lambda tool: tool.id in DAX_TOOLS,
    ),
]


def get_profile(name: str) -> PermissionProfile:
    """
    Look up a built-in profile by name (case-insensitive, spaces/dashes allowed)

    Raises:
        KeyError: if no profile has that name
    """
    key = name.strip().lower().replace(' ', '_').replace('-', '_')
    for profile in PERMISSION_PROFILES:
        if profile.name == key:
            return profile
    raise KeyError(f"Unknown permission profile: {name}")


def apply_profile(profile: PermissionProfile, registry) -> ToolsState:
    """Evaluate the profile predicate over the full registry"""
    return freeze_state({tool.id: bool(profile.predicate(tool)) for tool in registry.descriptors()})


def get_permissions_summary(registry, state: ToolsState, read_only: bool) -> Dict[str, Any]:
    """Counts and names of enabled tools, for status logging"""
    enabled = list_enabled(registry, state)
    return {
        'enabled_count': len(enabled),
        'total_count': len(registry),
        'destructive_enabled': [t.name for t in enabled if t.is_destructive],
        'advanced_enabled': [t.name for t in enabled if t.is_advanced],
        'read_only_mode': read_only,
    }
