"""Tool registry, builtin tools and execution tracking."""

from vibex.tools.registry import ToolDescriptor, ToolRegistry
from vibex.tools.tracker import ExecutionEntry, ExecutionState, ExecutionTracker

__all__ = [
    "ExecutionEntry",
    "ExecutionState",
    "ExecutionTracker",
    "ToolDescriptor",
    "ToolRegistry",
]
