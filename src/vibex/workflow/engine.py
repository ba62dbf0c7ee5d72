"""Single-flight workflow engine: dependency ordering, retries, breakpoints and rollback."""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Callable
from typing import Any

from loguru import logger

from vibex.errors import InvalidStateError, TaskNotFoundError, TaskTimeoutError
from vibex.events import EventStream
from vibex.retry import RetryPolicy
from vibex.tools.tracker import ExecutionTracker
from vibex.types import Failure, Outcome, Success
from vibex.workflow.models import (
    DebugBreakpoint,
    TaskDefinition,
    TaskExecutionContext,
    TaskStatus,
    WorkflowDefinition,
    WorkflowEngineConfig,
    WorkflowEvent,
    WorkflowEventKind,
    WorkflowRunReport,
    WorkflowSnapshot,
    WorkflowStatus,
)
from vibex.workflow.validation import validate_workflow

_NOT_STARTED = (TaskStatus.PENDING, TaskStatus.WAITING_DEPENDENCIES, TaskStatus.PAUSED)


class WorkflowEngine:
    """Runs one workflow at a time, one task at a time.

    Eligible tasks are pending tasks whose dependencies all completed; ties go
    to declaration order. Failed attempts are retried with backoff while the
    task allows it. When nothing is eligible and the workflow is not complete,
    the run fails and completed tasks are rolled back in reverse order.
    """

    def __init__(
        self,
        config: WorkflowEngineConfig | None = None,
        *,
        retry_policy: RetryPolicy | None = None,
        tracker: ExecutionTracker | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or WorkflowEngineConfig()
        self._retry = retry_policy or RetryPolicy(self.config.retry)
        self._tracker = tracker or ExecutionTracker()
        self._clock = clock
        self._breakpoints: dict[str, DebugBreakpoint] = {}
        self._history: deque[WorkflowRunReport] = deque(maxlen=self.config.history_limit)
        self.events: EventStream[WorkflowEvent] = EventStream("workflow")

        self._workflow: WorkflowDefinition | None = None
        self._shared_state: dict[str, Any] = {}
        self._completion_order: list[str] = []
        self._retried: dict[str, int] = {}
        self._resume = asyncio.Event()
        self._cancelled = asyncio.Event()
        self._step_pending = False
        self._failure_pause_used = False
        self._current: tuple[TaskDefinition, str] | None = None
        self._last_finished: tuple[WorkflowDefinition, WorkflowRunReport] | None = None

    @property
    def tracker(self) -> ExecutionTracker:
        return self._tracker

    @property
    def is_running(self) -> bool:
        return self._workflow is not None

    @property
    def history(self) -> tuple[WorkflowRunReport, ...]:
        return tuple(self._history)

    @property
    def breakpoints(self) -> tuple[DebugBreakpoint, ...]:
        return tuple(self._breakpoints.values())

    def snapshot(self) -> WorkflowSnapshot | None:
        return self._workflow.snapshot() if self._workflow is not None else None

    async def run(self, workflow: WorkflowDefinition, *, shared_state: dict[str, Any] | None = None) -> WorkflowRunReport:
        if self._workflow is not None:
            raise InvalidStateError(f"Workflow '{self._workflow.id}' is already running")
        validate_workflow(workflow)

        for task in workflow.tasks:
            _reset_task(task)
        self._begin(workflow, shared_state if shared_state is not None else {}, completed=[])
        return await self._execute(workflow)

    def pause(self) -> None:
        """Stop starting new tasks. A task already running finishes normally."""
        workflow = self._require_active()
        if workflow.status != WorkflowStatus.RUNNING:
            return
        self._enter_pause(workflow, "paused")

    def resume(self) -> None:
        workflow = self._require_active()
        if workflow.status != WorkflowStatus.PAUSED:
            return
        self._step_pending = False
        self._leave_pause(workflow, "resumed")

    def step(self) -> None:
        """Run exactly one more task, then pause again."""
        workflow = self._require_active()
        if workflow.status != WorkflowStatus.PAUSED:
            raise InvalidStateError(f"Cannot step while workflow is {workflow.status}")
        self._step_pending = True
        self._leave_pause(workflow, "step")

    def cancel(self) -> None:
        """Stop the run. Not-started tasks become cancelled; the running task may finish."""
        workflow = self._require_active()
        if workflow.cancelled:
            return
        workflow.cancelled = True
        workflow.error = "cancelled"
        self._cancelled.set()
        self._resume.set()
        logger.info("workflow.cancel id={}", workflow.id)

        for task in workflow.tasks:
            if task.status == TaskStatus.IN_PROGRESS and task.cancellable and task.on_cancel is not None:
                try:
                    task.on_cancel()
                except Exception:
                    logger.exception("workflow.task.on_cancel.error task={}", task.id)
        self._cancel_not_started(workflow)
        self._set_workflow_status(workflow, WorkflowStatus.FAILED, message="cancelled")

    def retry(self, task_id: str) -> asyncio.Task[WorkflowRunReport] | None:
        """Re-admit a failed task with a fresh retry budget.

        During a run the task simply rejoins scheduling and ``None`` is returned.
        After a failed run the same workflow is continued instead: tasks that
        completed and were not rolled back keep their results, the task and
        everything that never ran go back to pending, and the returned asyncio
        task resolves to the report of the continued run.
        """
        if self._workflow is not None:
            workflow = self._workflow
            task = self._retryable_task(workflow, task_id, cancelled=workflow.cancelled)
            task.retry_count = 0
            task.error = None
            task.finished_at = None
            self._failure_pause_used = False
            logger.info("workflow.task.manual_retry task={}", task_id)
            self._set_task_status(workflow, task, TaskStatus.PENDING, message="manual retry")
            return None

        if self._last_finished is None:
            raise InvalidStateError("No workflow has run")
        workflow, report = self._last_finished
        task = self._retryable_task(workflow, task_id, cancelled=report.cancelled)
        loop = asyncio.get_running_loop()

        kept = [item for item in report.completed_steps if item not in report.rolled_back]
        for item in workflow.tasks:
            if item is task or (item.id not in kept and item.status != TaskStatus.FAILED):
                _reset_task(item)
        self._begin(workflow, self._shared_state, completed=kept)
        logger.info("workflow.task.manual_retry task={} continue={}", task_id, workflow.id)
        self._emit(WorkflowEventKind.TASK_STATUS, workflow, task_id=task.id, status=str(task.status), message="manual retry")
        return loop.create_task(self._execute(workflow))

    @staticmethod
    def _retryable_task(workflow: WorkflowDefinition, task_id: str, *, cancelled: bool) -> TaskDefinition:
        if cancelled:
            raise InvalidStateError(f"Workflow '{workflow.id}' was cancelled")
        task = workflow.task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        if task.status != TaskStatus.FAILED:
            raise InvalidStateError(f"Task '{task_id}' is {task.status}, only failed tasks can be retried")
        return task

    def add_breakpoint(self, breakpoint: DebugBreakpoint) -> str:
        self._breakpoints[breakpoint.id] = breakpoint
        return breakpoint.id

    def remove_breakpoint(self, breakpoint_id: str) -> bool:
        return self._breakpoints.pop(breakpoint_id, None) is not None

    def toggle_breakpoint(self, breakpoint_id: str) -> bool:
        breakpoint = self._breakpoints[breakpoint_id]
        breakpoint.enabled = not breakpoint.enabled
        return breakpoint.enabled

    def _begin(self, workflow: WorkflowDefinition, shared_state: dict[str, Any], *, completed: list[str]) -> None:
        self._workflow = workflow
        self._shared_state = shared_state
        self._completion_order = completed
        self._retried = {}
        self._current = None
        self._resume.set()
        self._cancelled.clear()
        self._step_pending = False
        self._failure_pause_used = False
        workflow.cancelled = False
        workflow.error = None
        self._update_progress(workflow)

    async def _execute(self, workflow: WorkflowDefinition) -> WorkflowRunReport:
        started_at = self._clock()
        rolled_back: list[str] = []
        logger.info("workflow.start id={} tasks={} resumed={}", workflow.id, len(workflow.tasks), len(self._completion_order))
        self._set_workflow_status(workflow, WorkflowStatus.RUNNING)
        try:
            rolled_back = await self._drive(workflow)
        finally:
            self._abandon_current(workflow)
            if workflow.status in (WorkflowStatus.RUNNING, WorkflowStatus.PAUSED):
                # Interrupted from outside, e.g. the awaiting task was cancelled.
                workflow.cancelled = True
                workflow.error = "interrupted"
                self._cancel_not_started(workflow)
                self._set_workflow_status(workflow, WorkflowStatus.FAILED)
            report = self._build_report(workflow, started_at, rolled_back)
            self._history.append(report)
            self._last_finished = (workflow, report)
            self._workflow = None
            self._emit_metrics(report)
            logger.info(
                "workflow.finish id={} status={} cancelled={} duration={:.3f}s",
                workflow.id,
                report.status,
                report.cancelled,
                report.duration,
            )
        return report

    async def _drive(self, workflow: WorkflowDefinition) -> list[str]:
        while True:
            await self._resume.wait()
            if self._cancelled.is_set():
                return []

            self._refresh_waiting(workflow)
            task = self._next_eligible(workflow)
            if task is None:
                if all(item.status == TaskStatus.COMPLETED for item in workflow.tasks):
                    self._set_workflow_status(workflow, WorkflowStatus.COMPLETED)
                    return []
                failed = [item.id for item in workflow.tasks if item.status == TaskStatus.FAILED]
                if failed and self.config.pause_on_failure and not self._failure_pause_used:
                    self._failure_pause_used = True
                    self._enter_pause(workflow, f"paused on failure: {', '.join(failed)}")
                    continue
                return await self._fail(workflow, failed)

            if (hit := self._breakpoint_for(task)) is not None:
                hit.hit_count += 1
                logger.info("workflow.breakpoint.hit id={} task={} hits={}", hit.id, task.id, hit.hit_count)
                self._set_task_status(workflow, task, TaskStatus.PAUSED, message=f"breakpoint {hit.id}")
                self._enter_pause(workflow, f"breakpoint {hit.id}")
                await self._resume.wait()
                if self._cancelled.is_set():
                    return []

            await self._run_task(workflow, task)

            if self._step_pending and not self._cancelled.is_set():
                self._step_pending = False
                self._enter_pause(workflow, "step complete")

    async def _run_task(self, workflow: WorkflowDefinition, task: TaskDefinition) -> None:
        max_retries = task.max_retries if task.max_retries is not None else self.config.retry.max_attempts
        timeout = task.timeout if task.timeout is not None else self.config.default_timeout
        entry_id = self._tracker.add(task.name, {"workflow_id": workflow.id, "task_id": task.id})
        self._current = (task, entry_id)
        task.started_at = self._clock()
        task.error = None
        self._set_task_status(workflow, task, TaskStatus.IN_PROGRESS)
        self._tracker.start(entry_id)
        logger.info("workflow.task.start task={} attempt={}", task.id, task.retry_count + 1)

        while True:
            context = self._context(workflow, task, entry_id)
            scope = asyncio.timeout(timeout)
            try:
                async with scope:
                    result = await task.execute(context)
            except Exception as exc:
                error: Exception = exc
                if isinstance(exc, TimeoutError) and scope.expired():
                    error = TaskTimeoutError(task.id, timeout)
            else:
                if self._cancelled.is_set() and task.cancellable:
                    self._finish_cancelled(workflow, task, entry_id)
                else:
                    self._finish(workflow, task, entry_id, TaskStatus.COMPLETED, Success(result), result=result)
                return

            task.error = str(error) or type(error).__name__
            if self._cancelled.is_set():
                self._finish_after_cancel(workflow, task, entry_id, error)
                return
            if not task.retryable or task.retry_count >= max_retries:
                self._finish(workflow, task, entry_id, TaskStatus.FAILED, Failure.from_exception(error), error=error)
                return

            task.retry_count += 1
            self._retried[task.id] = task.retry_count
            delay_ms = self._retry.next_delay_ms(task.retry_count, self.config.retry)
            logger.warning(
                "workflow.task.retry task={} attempt={}/{} delay_ms={:.0f} error={}",
                task.id,
                task.retry_count,
                max_retries,
                delay_ms,
                task.error,
            )
            self._emit(
                WorkflowEventKind.TASK_STATUS,
                workflow,
                task_id=task.id,
                status=str(task.status),
                message=f"retry {task.retry_count}/{max_retries}",
                data={"retry_count": task.retry_count, "delay_ms": delay_ms},
                error=error,
            )
            if await self._backoff(delay_ms):
                self._finish_after_cancel(workflow, task, entry_id, error)
                return

    async def _backoff(self, delay_ms: float) -> bool:
        """Sleep for ``delay_ms``; return True when a cancel interrupted the wait."""
        try:
            await asyncio.wait_for(self._cancelled.wait(), timeout=delay_ms / 1000)
        except TimeoutError:
            return False
        return True

    def _finish_after_cancel(
        self, workflow: WorkflowDefinition, task: TaskDefinition, entry_id: str, error: Exception
    ) -> None:
        if task.cancellable:
            self._finish_cancelled(workflow, task, entry_id)
        else:
            self._finish(workflow, task, entry_id, TaskStatus.FAILED, Failure.from_exception(error), error=error)

    def _finish_cancelled(self, workflow: WorkflowDefinition, task: TaskDefinition, entry_id: str) -> None:
        self._finish(
            workflow,
            task,
            entry_id,
            TaskStatus.CANCELLED,
            Failure(error_kind="cancelled", message="task cancelled"),
        )

    def _finish(
        self,
        workflow: WorkflowDefinition,
        task: TaskDefinition,
        entry_id: str,
        status: TaskStatus,
        outcome: Outcome,
        *,
        result: Any = None,
        error: Exception | None = None,
    ) -> None:
        task.finished_at = self._clock()
        self._tracker.complete(entry_id, outcome)
        self._current = None
        if status == TaskStatus.COMPLETED:
            task.result = result
            task.error = None
            self._completion_order.append(task.id)
            logger.info("workflow.task.complete task={} attempts={}", task.id, task.retry_count + 1)
        elif status == TaskStatus.FAILED:
            logger.warning("workflow.task.failed task={} attempts={} error={}", task.id, task.retry_count + 1, task.error)
        self._set_task_status(workflow, task, status, message=task.error or "")
        if error is not None:
            self._emit(WorkflowEventKind.ERROR, workflow, task_id=task.id, message=task.error or "", error=error)

    def _abandon_current(self, workflow: WorkflowDefinition) -> None:
        if self._current is None:
            return
        task, entry_id = self._current
        self._current = None
        if task.status != TaskStatus.IN_PROGRESS:
            return
        task.finished_at = self._clock()
        self._tracker.complete(entry_id, Failure(error_kind="cancelled", message="task interrupted"))
        logger.warning("workflow.task.interrupted task={}", task.id)
        self._set_task_status(workflow, task, TaskStatus.CANCELLED, message="workflow interrupted")

    async def _fail(self, workflow: WorkflowDefinition, failed: list[str]) -> list[str]:
        blocked = [task.id for task in workflow.tasks if task.status in _NOT_STARTED]
        if failed:
            workflow.error = f"Tasks failed: {', '.join(failed)}"
        else:
            workflow.error = f"Tasks cannot run: {', '.join(blocked)}"
        self._set_workflow_status(workflow, WorkflowStatus.FAILED, message=workflow.error)
        self._emit(WorkflowEventKind.ERROR, workflow, message=workflow.error, data={"blocked": tuple(blocked)})
        return await self._rollback(workflow)

    async def _rollback(self, workflow: WorkflowDefinition) -> list[str]:
        rolled_back: list[str] = []
        for task_id in reversed(self._completion_order):
            task = workflow.task(task_id)
            if task is None or task.rollback is None:
                continue
            logger.info("workflow.rollback.start task={}", task_id)
            context = self._context(workflow, task, None)
            timeout = task.timeout if task.timeout is not None else self.config.default_timeout
            try:
                async with asyncio.timeout(timeout):
                    await task.rollback(context)
            except Exception:
                logger.exception("workflow.rollback.error task={}", task_id)
                continue
            rolled_back.append(task_id)
        return rolled_back

    def _breakpoint_for(self, task: TaskDefinition) -> DebugBreakpoint | None:
        snapshot = None
        for breakpoint in self._breakpoints.values():
            if not breakpoint.enabled or breakpoint.task_id != task.id:
                continue
            if breakpoint.condition is None:
                return breakpoint
            snapshot = snapshot or task.snapshot()
            try:
                if breakpoint.condition(snapshot, self._shared_state):
                    return breakpoint
            except Exception:
                logger.exception("workflow.breakpoint.condition_error id={}", breakpoint.id)
        return None

    def _refresh_waiting(self, workflow: WorkflowDefinition) -> None:
        for task in workflow.tasks:
            ready = self._dependencies_met(workflow, task)
            if task.status == TaskStatus.PENDING and not ready:
                self._set_task_status(workflow, task, TaskStatus.WAITING_DEPENDENCIES)
            elif task.status == TaskStatus.WAITING_DEPENDENCIES and ready:
                self._set_task_status(workflow, task, TaskStatus.PENDING)

    def _next_eligible(self, workflow: WorkflowDefinition) -> TaskDefinition | None:
        for task in workflow.tasks:
            if task.status == TaskStatus.PENDING and self._dependencies_met(workflow, task):
                return task
        return None

    @staticmethod
    def _dependencies_met(workflow: WorkflowDefinition, task: TaskDefinition) -> bool:
        for dependency_id in task.dependencies:
            dependency = workflow.task(dependency_id)
            if dependency is None or dependency.status != TaskStatus.COMPLETED:
                return False
        return True

    def _cancel_not_started(self, workflow: WorkflowDefinition) -> None:
        for task in workflow.tasks:
            if task.status in _NOT_STARTED:
                self._set_task_status(workflow, task, TaskStatus.CANCELLED, message="workflow cancelled")

    def _context(self, workflow: WorkflowDefinition, task: TaskDefinition, entry_id: str | None) -> TaskExecutionContext:
        def _on_progress(percent: float, message: str) -> None:
            self._emit(WorkflowEventKind.TASK_PROGRESS, workflow, task_id=task.id, progress=percent, message=message)

        def _on_output(chunk: str) -> None:
            if entry_id is not None:
                self._tracker.append_streaming_output(entry_id, chunk)

        return TaskExecutionContext(
            workflow_id=workflow.id,
            task_id=task.id,
            attempt=task.retry_count + 1,
            working_directory=self.config.working_directory,
            environment=self.config.environment,
            shared_state=self._shared_state,
            logger=logger.bind(workflow=workflow.id, task=task.id),
            _on_progress=_on_progress,
            _on_output=_on_output,
            _is_cancelled=self._cancelled.is_set,
        )

    def _enter_pause(self, workflow: WorkflowDefinition, reason: str) -> None:
        self._resume.clear()
        logger.info("workflow.pause id={} reason={}", workflow.id, reason)
        self._set_workflow_status(workflow, WorkflowStatus.PAUSED, message=reason)

    def _leave_pause(self, workflow: WorkflowDefinition, reason: str) -> None:
        for task in workflow.tasks:
            if task.status == TaskStatus.PAUSED:
                self._set_task_status(workflow, task, TaskStatus.PENDING)
        logger.info("workflow.resume id={} reason={}", workflow.id, reason)
        self._set_workflow_status(workflow, WorkflowStatus.RUNNING, message=reason)
        self._resume.set()

    def _require_active(self) -> WorkflowDefinition:
        if self._workflow is None:
            raise InvalidStateError("No workflow is running")
        return self._workflow

    def _set_task_status(
        self, workflow: WorkflowDefinition, task: TaskDefinition, status: TaskStatus, *, message: str = ""
    ) -> None:
        task.status = status
        self._update_progress(workflow)
        self._emit(
            WorkflowEventKind.TASK_STATUS,
            workflow,
            task_id=task.id,
            status=str(status),
            progress=workflow.progress,
            message=message,
        )

    def _set_workflow_status(self, workflow: WorkflowDefinition, status: WorkflowStatus, *, message: str = "") -> None:
        workflow.status = status
        self._emit(
            WorkflowEventKind.WORKFLOW_STATUS,
            workflow,
            status=str(status),
            progress=workflow.progress,
            message=message,
        )

    @staticmethod
    def _update_progress(workflow: WorkflowDefinition) -> None:
        total = len(workflow.tasks)
        completed = sum(1 for task in workflow.tasks if task.status == TaskStatus.COMPLETED)
        workflow.progress = completed / total * 100 if total else 0.0

    def _build_report(self, workflow: WorkflowDefinition, started_at: float, rolled_back: list[str]) -> WorkflowRunReport:
        def _ids(*statuses: TaskStatus) -> tuple[str, ...]:
            return tuple(task.id for task in workflow.tasks if task.status in statuses)

        completed = tuple(
            task_id
            for task_id in self._completion_order
            if (task := workflow.task(task_id)) is not None and task.status == TaskStatus.COMPLETED
        )
        return WorkflowRunReport(
            workflow_id=workflow.id,
            status=workflow.status,
            cancelled=workflow.cancelled,
            completed_steps=completed,
            failed_steps=_ids(TaskStatus.FAILED),
            cancelled_steps=_ids(TaskStatus.CANCELLED),
            blocked_steps=_ids(*_NOT_STARTED),
            rolled_back=tuple(rolled_back),
            errors={task.id: task.error for task in workflow.tasks if task.error is not None},
            retried=dict(self._retried),
            started_at=started_at,
            finished_at=self._clock(),
        )

    def _emit_metrics(self, report: WorkflowRunReport) -> None:
        self._emit_raw(
            WorkflowEvent(
                kind=WorkflowEventKind.METRICS,
                workflow_id=report.workflow_id,
                status=str(report.status),
                data={
                    "total": len(report.completed_steps)
                    + len(report.failed_steps)
                    + len(report.cancelled_steps)
                    + len(report.blocked_steps),
                    "completed": len(report.completed_steps),
                    "failed": len(report.failed_steps),
                    "cancelled": len(report.cancelled_steps),
                    "retried": sum(report.retried.values()),
                    "duration": report.duration,
                },
            )
        )

    def _emit(self, kind: WorkflowEventKind, workflow: WorkflowDefinition, **fields: Any) -> None:
        self._emit_raw(WorkflowEvent(kind=kind, workflow_id=workflow.id, **fields))

    def _emit_raw(self, event: WorkflowEvent) -> None:
        self.events.emit(event)


def _reset_task(task: TaskDefinition) -> None:
    task.status = TaskStatus.PENDING
    task.retry_count = 0
    task.result = None
    task.error = None
    task.started_at = None
    task.finished_at = None
