"""vibex - streaming turns, tool calls and task workflows."""

from vibex.retry import RetryConfiguration, RetryPolicy
from vibex.tools.tracker import ExecutionTracker
from vibex.turn.manager import TurnManager
from vibex.turn.session import TurnSession
from vibex.workflow.engine import WorkflowEngine

__version__ = "0.1.0"

__all__ = [
    "ExecutionTracker",
    "RetryConfiguration",
    "RetryPolicy",
    "TurnManager",
    "TurnSession",
    "WorkflowEngine",
]
