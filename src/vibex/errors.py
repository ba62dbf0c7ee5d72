"""Application-level exception types for vibex."""

from __future__ import annotations


class VibexError(Exception):
    """Base exception for vibex."""


class ConfigurationError(VibexError):
    """Base exception for configuration and startup validation errors."""


class ModelNotConfiguredError(ConfigurationError):
    """Raised when model configuration is missing."""


class InvalidModelFormatError(ConfigurationError):
    """Raised when model format is not provider:model."""


class ApiKeyNotConfiguredError(ConfigurationError):
    """Raised when an API key is required but missing."""


class StateViolationError(VibexError):
    """Raised when a component is used in a state that does not allow the call."""


class InvalidStateError(StateViolationError):
    """Raised when an operation is not allowed in the current status."""


class UnknownToolCallError(StateViolationError):
    """Raised when a tool result does not match any pending tool call."""

    def __init__(self, tool_call_id: str) -> None:
        super().__init__(f"No pending tool call found with id: {tool_call_id}")
        self.tool_call_id = tool_call_id


class TaskNotFoundError(StateViolationError):
    """Raised when a task id is not part of the active workflow."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task '{task_id}' not found in current workflow")
        self.task_id = task_id


class TransportError(VibexError):
    """Base exception for failures talking to the model service."""


class NetworkError(TransportError):
    """Raised when the connection to the model service fails."""


class RateLimitError(TransportError):
    """Raised when the model service rejects a call for rate limiting."""


class ServerError(TransportError):
    """Raised for 5xx-class failures of the model service."""

    def __init__(self, message: str, *, status_code: int = 500) -> None:
        super().__init__(message)
        self.status_code = status_code


class GenerationTimeoutError(TransportError, TimeoutError):
    """Raised when the model service does not answer in time."""


class TaskTimeoutError(VibexError, TimeoutError):
    """Raised when a workflow task exceeds its timeout."""

    def __init__(self, task_id: str, timeout: float) -> None:
        super().__init__(f"Task '{task_id}' timed out after {timeout:g}s")
        self.task_id = task_id
        self.timeout = timeout


class WorkflowValidationError(VibexError):
    """Raised when a workflow definition cannot be executed."""


class CircularDependencyError(WorkflowValidationError):
    """Raised when task dependencies form a cycle."""

    def __init__(self, cycles: list[list[str]]) -> None:
        rendered = ", ".join(" -> ".join(cycle) for cycle in cycles)
        super().__init__(f"Circular dependencies detected: {rendered}")
        self.cycles = cycles
