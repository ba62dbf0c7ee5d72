"""Lifecycle ledger for tool and task invocations."""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any

from vibex.events import EventStream
from vibex.types import Failure, Outcome

DEFAULT_MAX_ENTRIES = 500

type ExecutionListener = Callable[[tuple[ExecutionEntry, ...]], Any]


class ExecutionState(StrEnum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_finished(self) -> bool:
        return self in (ExecutionState.COMPLETED, ExecutionState.FAILED)


@dataclass(frozen=True)
class ExecutionEntry:
    id: str
    name: str
    input: Mapping[str, Any] = field(default_factory=dict)
    state: ExecutionState = ExecutionState.PENDING
    created_at: float = 0.0
    started_at: float | None = None
    finished_at: float | None = None
    output: str = ""
    outcome: Outcome | None = None

    @property
    def duration(self) -> float | None:
        if self.finished_at is None:
            return None
        return self.finished_at - (self.started_at if self.started_at is not None else self.created_at)


class ExecutionTracker:
    """Records pending, executing and finished invocations and publishes snapshots.

    The tracker has no policy of its own. Unknown ids are ignored so that late
    callbacks after ``clear()`` are harmless. Every mutation notifies subscribers
    with the full, immutable tuple of entries in insertion order.

    Once more than ``max_entries`` are held, the oldest finished entries are
    dropped. Pending and executing entries are never dropped.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time, max_entries: int | None = DEFAULT_MAX_ENTRIES) -> None:
        if max_entries is not None and max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self._clock = clock
        self._max_entries = max_entries
        self._entries: dict[str, ExecutionEntry] = {}
        self._counter = 0
        self._updates: EventStream[tuple[ExecutionEntry, ...]] = EventStream("execution-tracker")

    def add(self, name: str, input: Mapping[str, Any] | None = None, *, entry_id: str | None = None) -> str:
        if entry_id is None:
            self._counter += 1
            entry_id = f"exec-{self._counter}-{secrets.token_hex(4)}"
        self._entries[entry_id] = ExecutionEntry(
            id=entry_id,
            name=name,
            input=dict(input or {}),
            created_at=self._clock(),
        )
        self._evict()
        self._notify()
        return entry_id

    def start(self, entry_id: str) -> None:
        entry = self._entries.get(entry_id)
        if entry is None or entry.state.is_finished:
            return
        self._entries[entry_id] = replace(entry, state=ExecutionState.EXECUTING, started_at=self._clock())
        self._notify()

    def complete(self, entry_id: str, outcome: Outcome) -> None:
        entry = self._entries.get(entry_id)
        if entry is None:
            return
        state = ExecutionState.FAILED if isinstance(outcome, Failure) else ExecutionState.COMPLETED
        self._entries[entry_id] = replace(entry, state=state, outcome=outcome, finished_at=self._clock())
        self._notify()

    def append_streaming_output(self, entry_id: str, chunk: str) -> None:
        entry = self._entries.get(entry_id)
        if entry is None or not chunk:
            return
        self._entries[entry_id] = replace(entry, output=entry.output + chunk)
        self._notify()

    def clear(self) -> None:
        self._entries.clear()
        self._notify()

    def get(self, entry_id: str) -> ExecutionEntry | None:
        return self._entries.get(entry_id)

    @property
    def entries(self) -> tuple[ExecutionEntry, ...]:
        return tuple(self._entries.values())

    def subscribe(self, listener: ExecutionListener) -> Callable[[], None]:
        return self._updates.subscribe(listener)

    def _evict(self) -> None:
        if self._max_entries is None:
            return
        overflow = len(self._entries) - self._max_entries
        if overflow <= 0:
            return
        stale = [entry.id for entry in self._entries.values() if entry.state.is_finished][:overflow]
        for entry_id in stale:
            del self._entries[entry_id]

    def _notify(self) -> None:
        self._updates.emit(self.entries)
