"""Per-instance outbound event streams backed by blinker signals."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable
from typing import Any, Generic, TypeVar

from blinker import Signal
from loguru import logger

E = TypeVar("E")

EventHandler = Callable[[E], Any]


class EventStream(Generic[E]):
    """One outbound event channel owned by a single component instance.

    Handlers run inline in emission order. A handler that raises is logged and
    skipped; a coroutine handler is scheduled on the running loop so a slow
    subscriber never stalls the emitter.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._signal = Signal(name)
        self._pending: set[asyncio.Task[Any]] = set()

    def subscribe(self, handler: EventHandler[E]) -> Callable[[], None]:
        def _receiver(sender: Any, *, event: E) -> None:
            try:
                outcome = handler(event)
            except Exception:
                logger.exception("events.handler.error stream={}", self.name)
                return
            if inspect.isawaitable(outcome):
                self._schedule(outcome)

        self._signal.connect(_receiver, weak=False)
        return lambda: self._signal.disconnect(_receiver)

    def emit(self, event: E) -> None:
        if not self._signal.receivers:
            return
        self._signal.send(self, event=event)

    @property
    def subscriber_count(self) -> int:
        return len(self._signal.receivers)

    def _schedule(self, awaitable: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
            task = asyncio.ensure_future(awaitable, loop=loop)
        except RuntimeError:
            logger.warning("events.handler.no_loop stream={}", self.name)
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        self._pending.add(task)
        task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        if (exc := task.exception()) is not None:
            logger.opt(exception=exc).error("events.handler.error stream={}", self.name)
