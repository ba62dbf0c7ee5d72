"""Static checks run before a workflow starts."""

from __future__ import annotations

from collections import Counter

from vibex.errors import CircularDependencyError, WorkflowValidationError
from vibex.workflow.models import WorkflowDefinition


def validate_workflow(workflow: WorkflowDefinition) -> None:
    """Reject workflows the engine could never finish.

    Raises ``WorkflowValidationError`` for an empty task list, duplicate ids or
    unknown dependencies, and ``CircularDependencyError`` for dependency cycles.
    """
    if not workflow.tasks:
        raise WorkflowValidationError(f"Workflow '{workflow.id}' has no tasks")

    duplicates = sorted(task_id for task_id, count in Counter(task.id for task in workflow.tasks).items() if count > 1)
    if duplicates:
        raise WorkflowValidationError(f"Duplicate task ids: {', '.join(duplicates)}")

    known = {task.id for task in workflow.tasks}
    for task in workflow.tasks:
        if task.id in task.dependencies:
            raise CircularDependencyError([[task.id, task.id]])
        missing = sorted(set(task.dependencies) - known)
        if missing:
            raise WorkflowValidationError(f"Task '{task.id}' depends on unknown tasks: {', '.join(missing)}")

    cycles = find_cycles(workflow)
    if cycles:
        raise CircularDependencyError(cycles)


def find_cycles(workflow: WorkflowDefinition) -> list[list[str]]:
    """Return each dependency cycle once, as a closed path of task ids."""
    graph = {task.id: sorted(task.dependencies) for task in workflow.tasks}
    visiting: list[str] = []
    on_path: set[str] = set()
    done: set[str] = set()
    cycles: list[list[str]] = []

    def visit(node: str) -> None:
        visiting.append(node)
        on_path.add(node)
        for dependency in graph.get(node, ()):
            if dependency in on_path:
                start = visiting.index(dependency)
                cycles.append([*visiting[start:], dependency])
            elif dependency not in done:
                visit(dependency)
        on_path.discard(node)
        visiting.pop()
        done.add(node)

    for task in workflow.tasks:
        if task.id not in done:
            visit(task.id)
    return cycles
