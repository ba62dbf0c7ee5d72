"""Framework-neutral result types."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal


@dataclass(frozen=True)
class Success:
    """A tool call or task that produced a value."""

    value: Any = None

    @property
    def ok(self) -> Literal[True]:
        return True


@dataclass(frozen=True)
class Failure:
    """A tool call or task that failed, with the failure category."""

    error_kind: str
    message: str

    @property
    def ok(self) -> Literal[False]:
        return False

    @classmethod
    def from_exception(cls, exc: BaseException) -> Failure:
        return cls(error_kind=type(exc).__name__, message=str(exc) or type(exc).__name__)


type Outcome = Success | Failure
