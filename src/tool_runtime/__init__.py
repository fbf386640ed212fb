"""Tool runtime: catalog, executor, result cache and execution recording."""

from tool_runtime.cache import ToolResultCache
from tool_runtime.catalog import ToolCatalog
from tool_runtime.executor import ToolExecutor
from tool_runtime.recorder import ExecutionRecorder

__all__ = [
    "ToolCatalog",
    "ToolExecutor",
    "ToolResultCache",
    "ExecutionRecorder",
]
