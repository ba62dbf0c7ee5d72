"""Workflow data model: tasks, breakpoints, snapshots and reports."""

from __future__ import annotations

import secrets
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

import loguru

from vibex.retry import RetryConfiguration

DEFAULT_TASK_TIMEOUT_SECONDS = 30.0
DEFAULT_HISTORY_LIMIT = 10


class TaskStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    WAITING_DEPENDENCIES = "waiting_dependencies"
    PAUSED = "paused"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


class WorkflowStatus(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


type TaskHandler = Callable[[TaskExecutionContext], Awaitable[Any]]
type RollbackHandler = Callable[[TaskExecutionContext], Awaitable[Any]]
type CancelHook = Callable[[], Any]
type BreakpointCondition = Callable[[TaskSnapshot, Mapping[str, Any]], bool]


@dataclass(eq=False)
class TaskDefinition:
    """One unit of work. The engine owns and mutates it for the duration of a run."""

    id: str
    execute: TaskHandler
    name: str = ""
    dependencies: Iterable[str] = frozenset()
    description: str = ""
    status: TaskStatus = TaskStatus.PENDING
    retry_count: int = 0
    max_retries: int | None = None
    retryable: bool = True
    cancellable: bool = True
    timeout: float | None = None
    rollback: RollbackHandler | None = None
    on_cancel: CancelHook | None = None
    result: Any = None
    error: str | None = None
    started_at: float | None = None
    finished_at: float | None = None

    def __post_init__(self) -> None:
        self.dependencies = frozenset(self.dependencies)
        if not self.name:
            self.name = self.id

    def snapshot(self) -> TaskSnapshot:
        return TaskSnapshot(
            id=self.id,
            name=self.name,
            status=self.status,
            dependencies=frozenset(self.dependencies),
            retry_count=self.retry_count,
            max_retries=self.max_retries,
            retryable=self.retryable,
            cancellable=self.cancellable,
            result=self.result,
            error=self.error,
            started_at=self.started_at,
            finished_at=self.finished_at,
        )


@dataclass(frozen=True)
class TaskSnapshot:
    id: str
    name: str
    status: TaskStatus
    dependencies: frozenset[str]
    retry_count: int
    max_retries: int | None
    retryable: bool
    cancellable: bool
    result: Any = None
    error: str | None = None
    started_at: float | None = None
    finished_at: float | None = None


@dataclass(eq=False)
class WorkflowDefinition:
    id: str
    tasks: list[TaskDefinition]
    name: str = ""
    status: WorkflowStatus = WorkflowStatus.IDLE
    progress: float = 0.0
    cancelled: bool = False
    error: str | None = None

    def __post_init__(self) -> None:
        self.tasks = list(self.tasks)
        if not self.name:
            self.name = self.id

    def task(self, task_id: str) -> TaskDefinition | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def snapshot(self) -> WorkflowSnapshot:
        return WorkflowSnapshot(
            id=self.id,
            name=self.name,
            status=self.status,
            progress=self.progress,
            cancelled=self.cancelled,
            error=self.error,
            tasks=tuple(task.snapshot() for task in self.tasks),
        )


@dataclass(frozen=True)
class WorkflowSnapshot:
    id: str
    name: str
    status: WorkflowStatus
    progress: float
    cancelled: bool
    error: str | None
    tasks: tuple[TaskSnapshot, ...]


@dataclass
class DebugBreakpoint:
    """Pauses the engine before ``task_id`` runs, when enabled and ``condition`` holds."""

    task_id: str
    condition: BreakpointCondition | None = None
    enabled: bool = True
    description: str = ""
    hit_count: int = 0
    id: str = field(default_factory=lambda: f"bp-{secrets.token_hex(4)}")


@dataclass(frozen=True)
class WorkflowEngineConfig:
    default_timeout: float = DEFAULT_TASK_TIMEOUT_SECONDS
    retry: RetryConfiguration = field(default_factory=RetryConfiguration)
    pause_on_failure: bool = False
    history_limit: int = DEFAULT_HISTORY_LIMIT
    working_directory: Path = field(default_factory=Path.cwd)
    environment: Mapping[str, str] = field(default_factory=dict)


class WorkflowEventKind(StrEnum):
    TASK_PROGRESS = "task_progress"
    TASK_STATUS = "task_status"
    WORKFLOW_STATUS = "workflow_status"
    METRICS = "metrics"
    ERROR = "error"


@dataclass(frozen=True)
class WorkflowEvent:
    kind: WorkflowEventKind
    workflow_id: str
    task_id: str | None = None
    status: str | None = None
    progress: float | None = None
    message: str = ""
    data: Mapping[str, Any] = field(default_factory=dict)
    error: BaseException | None = None


@dataclass(frozen=True)
class WorkflowRunReport:
    """What happened during one ``run()``; kept in the engine's bounded history."""

    workflow_id: str
    status: WorkflowStatus
    cancelled: bool
    completed_steps: tuple[str, ...]
    failed_steps: tuple[str, ...]
    cancelled_steps: tuple[str, ...]
    blocked_steps: tuple[str, ...]
    rolled_back: tuple[str, ...]
    errors: Mapping[str, str]
    retried: Mapping[str, int]
    started_at: float
    finished_at: float

    @property
    def duration(self) -> float:
        return self.finished_at - self.started_at

    @property
    def succeeded(self) -> bool:
        return self.status == WorkflowStatus.COMPLETED


@dataclass
class TaskExecutionContext:
    """Everything a task handler may use while it runs."""

    workflow_id: str
    task_id: str
    attempt: int
    working_directory: Path
    environment: Mapping[str, str]
    shared_state: dict[str, Any]
    logger: loguru.Logger
    _on_progress: Callable[[float, str], None] = field(repr=False, default=lambda _percent, _message: None)
    _on_output: Callable[[str], None] = field(repr=False, default=lambda _chunk: None)
    _is_cancelled: Callable[[], bool] = field(repr=False, default=lambda: False)

    def report_progress(self, percent: float, message: str = "") -> None:
        self._on_progress(max(0.0, min(100.0, percent)), message)

    def emit_output(self, chunk: str) -> None:
        self._on_output(chunk)

    def is_cancelled(self) -> bool:
        return self._is_cancelled()
