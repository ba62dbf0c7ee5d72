"""Dependency-ordered task workflows."""

from vibex.workflow.engine import WorkflowEngine
from vibex.workflow.models import (
    DebugBreakpoint,
    TaskDefinition,
    TaskExecutionContext,
    TaskSnapshot,
    TaskStatus,
    WorkflowDefinition,
    WorkflowEngineConfig,
    WorkflowEvent,
    WorkflowEventKind,
    WorkflowRunReport,
    WorkflowSnapshot,
    WorkflowStatus,
)
from vibex.workflow.validation import find_cycles, validate_workflow

__all__ = [
    "DebugBreakpoint",
    "TaskDefinition",
    "TaskExecutionContext",
    "TaskSnapshot",
    "TaskStatus",
    "WorkflowDefinition",
    "WorkflowEngine",
    "WorkflowEngineConfig",
    "WorkflowEvent",
    "WorkflowEventKind",
    "WorkflowRunReport",
    "WorkflowSnapshot",
    "WorkflowStatus",
    "find_cycles",
    "validate_workflow",
]
