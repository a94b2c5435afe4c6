"""
Power BI tools: registry, handlers and dispatcher
"""
from .registry import OperationHandler, ToolContext, ToolDescriptor, ToolHandler, ToolRegistry
from .dispatcher import Dispatcher
from .catalog import build_registry

__all__ = [
    'OperationHandler',
    'ToolContext',
    'ToolDescriptor',
    'ToolHandler',
    'ToolRegistry',
    'Dispatcher',
    'build_registry',
]
