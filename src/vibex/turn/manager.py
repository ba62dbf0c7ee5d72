"""Per-exchange turn state machine."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any

from loguru import logger

from vibex.errors import GenerationTimeoutError, InvalidStateError, UnknownToolCallError
from vibex.events import EventStream
from vibex.generation.base import ContentGenerator, GenerationConfig, StreamEvent, StreamEventKind
from vibex.retry import RetryPolicy
from vibex.tools.tracker import ExecutionTracker
from vibex.turn.models import (
    Message,
    Role,
    ToolCallRequest,
    ToolResult,
    TurnEvent,
    TurnEventKind,
    TurnResult,
    TurnStatus,
    Usage,
)
from vibex.types import Failure

type _OpenedStream = tuple[AsyncIterator[StreamEvent], StreamEvent | None]


class TurnManager:
    """Drives one logical exchange with the model, including tool round-trips.

    ``execute`` opens a generation stream and consumes it until it ends. When the
    model asked for tools the turn parks in ``WAITING_FOR_TOOL`` and the caller
    answers each call with ``submit_tool_result``; the last answer re-opens the
    stream on the same turn. Content from every stream of the turn is merged into
    a single assistant message.
    """

    def __init__(
        self,
        generator: ContentGenerator,
        config: GenerationConfig,
        *,
        retry_policy: RetryPolicy | None = None,
        tracker: ExecutionTracker | None = None,
        first_event_timeout: float | None = None,
    ) -> None:
        self._generator = generator
        self._config = config
        self._retry = retry_policy or RetryPolicy()
        self._tracker = tracker or ExecutionTracker()
        self._first_event_timeout = first_event_timeout
        self._status = TurnStatus.IDLE
        self._messages: list[Message] = []
        self._pending: dict[str, ToolCallRequest] = {}
        self._content_parts: list[str] = []
        self._usage: Usage | None = None
        self._cancel_requested = False
        self._epoch = 0
        self.events: EventStream[TurnEvent] = EventStream("turn")

    @property
    def status(self) -> TurnStatus:
        return self._status

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def pending_tool_calls(self) -> tuple[ToolCallRequest, ...]:
        return tuple(self._pending.values())

    def has_pending_tool_calls(self) -> bool:
        return bool(self._pending)

    @property
    def content(self) -> str:
        """Assistant text of the current turn so far, including partial output of a failed turn."""
        return "".join(self._content_parts)

    @property
    def usage(self) -> Usage | None:
        return self._usage

    @property
    def config(self) -> GenerationConfig:
        return self._config

    @property
    def tracker(self) -> ExecutionTracker:
        return self._tracker

    async def execute(self, user_input: str) -> TurnResult:
        if self._status.is_active:
            raise InvalidStateError(f"Cannot execute while turn is {self._status}")

        self._messages.append(Message.user(user_input))
        self._content_parts = []
        self._usage = None
        self._cancel_requested = False
        self._status = TurnStatus.IN_PROGRESS
        logger.debug("turn.start messages={} model={}", len(self._messages), self._config.model)
        self.events.emit(TurnEvent(TurnEventKind.START, text=user_input))
        return await self._run_stream()

    async def submit_tool_result(self, result: ToolResult) -> TurnResult:
        if self._status != TurnStatus.WAITING_FOR_TOOL:
            raise InvalidStateError(f"Cannot submit tool result while turn is {self._status}")
        call = self._pending.pop(result.tool_call_id, None)
        if call is None:
            raise UnknownToolCallError(result.tool_call_id)

        self._messages.append(Message.tool_result(call, result))
        self._tracker.complete(call.id, result.to_outcome())
        logger.debug("turn.tool_result name={} call_id={} ok={}", call.name, call.id, result.ok)
        self.events.emit(TurnEvent(TurnEventKind.TOOL_RESULT, tool_call=call, tool_result=result))

        if self._pending:
            return self._snapshot()
        self._status = TurnStatus.IN_PROGRESS
        return await self._run_stream()

    def start_tool_call(self, tool_call_id: str) -> None:
        if tool_call_id in self._pending:
            self._tracker.start(tool_call_id)

    def append_tool_output(self, tool_call_id: str, chunk: str) -> None:
        if tool_call_id in self._pending:
            self._tracker.append_streaming_output(tool_call_id, chunk)

    def cancel(self) -> None:
        """Stop the turn before the next chunk is processed. Idle or finished turns are left as-is."""
        if not self._status.is_active:
            return
        self._cancel_requested = True
        if self._status == TurnStatus.WAITING_FOR_TOOL:
            self._finish_cancelled()

    def reset(self) -> None:
        self._epoch += 1
        self._abandon_pending("reset")
        self._messages.clear()
        self._content_parts = []
        self._usage = None
        self._cancel_requested = False
        self._status = TurnStatus.IDLE

    def truncate_history(self, max_messages: int) -> int:
        """Keep only the newest ``max_messages`` messages. Returns how many were dropped."""
        if max_messages < 1:
            raise ValueError("max_messages must be >= 1")
        if self._status.is_active:
            raise InvalidStateError(f"Cannot truncate history while turn is {self._status}")

        start = max(0, len(self._messages) - max_messages)
        # A tool result must not lead the transcript without its request.
        while start < len(self._messages) and self._messages[start].role == Role.TOOL:
            start += 1
        dropped = start
        if dropped:
            del self._messages[:start]
            logger.debug("turn.history.truncated dropped={} kept={}", dropped, len(self._messages))
        return dropped

    async def _run_stream(self) -> TurnResult:
        epoch = self._epoch
        iterator: AsyncIterator[StreamEvent] | None = None
        try:
            iterator, first = await self._retry.run(self._open_stream, label="turn.stream")
            event = first
            while event is not None and epoch == self._epoch and not self._cancel_requested:
                if event.kind == StreamEventKind.END:
                    if event.usage is not None:
                        self._usage = event.usage if self._usage is None else self._usage + event.usage
                    break
                self._apply(event)
                event = await anext(iterator, None)
        except asyncio.CancelledError:
            if epoch == self._epoch:
                self._finish_cancelled()
            raise
        except Exception as exc:
            if epoch == self._epoch:
                self._abandon_pending("failed")
                self._status = TurnStatus.FAILED
                logger.warning("turn.failed error={}: {}", type(exc).__name__, exc)
                self.events.emit(TurnEvent(TurnEventKind.ERROR, text=self.content, error=exc))
            raise
        finally:
            if iterator is not None:
                await _close(iterator)

        if epoch != self._epoch:
            return TurnResult(status=self._status, content="")
        if self._cancel_requested:
            return self._finish_cancelled()
        if self._pending:
            self._status = TurnStatus.WAITING_FOR_TOOL
            logger.debug("turn.waiting_for_tool pending={}", len(self._pending))
            return self._snapshot()

        content = self.content
        self._messages.append(Message.assistant(content))
        self._status = TurnStatus.COMPLETED
        result = self._snapshot()
        logger.debug("turn.complete chars={}", len(content))
        self.events.emit(TurnEvent(TurnEventKind.COMPLETE, text=content, result=result))
        return result

    async def _open_stream(self) -> _OpenedStream:
        iterator = aiter(self._generator.generate_stream(self.messages, self._config))
        try:
            async with asyncio.timeout(self._first_event_timeout):
                first = await anext(iterator, None)
        except TimeoutError as exc:
            await _close(iterator)
            raise GenerationTimeoutError(
                f"No response from model within {self._first_event_timeout:g}s"
            ) from exc
        except BaseException:
            await _close(iterator)
            raise
        return iterator, first

    def _apply(self, event: StreamEvent) -> None:
        if event.kind == StreamEventKind.CONTENT:
            if not event.text:
                return
            self._content_parts.append(event.text)
            self.events.emit(TurnEvent(TurnEventKind.CONTENT, text=event.text))
        elif event.kind == StreamEventKind.TOOL_CALL and event.tool_call is not None:
            call = event.tool_call
            self._pending[call.id] = call
            self._tracker.add(call.name, call.input, entry_id=call.id)
            logger.debug("turn.tool_call name={} call_id={}", call.name, call.id)
            self.events.emit(TurnEvent(TurnEventKind.TOOL_CALL, tool_call=call))

    def _finish_cancelled(self) -> TurnResult:
        self._abandon_pending("cancelled")
        self._status = TurnStatus.CANCELLED
        result = self._snapshot()
        logger.debug("turn.cancelled chars={}", len(result.content))
        self.events.emit(TurnEvent(TurnEventKind.COMPLETE, text=result.content, result=result))
        return result

    def _abandon_pending(self, reason: str) -> None:
        for call in self._pending.values():
            self._tracker.complete(call.id, Failure(error_kind=reason, message=f"tool call {reason}"))
        self._pending.clear()

    def _snapshot(self) -> TurnResult:
        return TurnResult(
            status=self._status,
            content=self.content,
            tool_calls=self.pending_tool_calls,
            usage=self._usage,
        )


async def _close(iterator: Any) -> None:
    aclose = getattr(iterator, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception:
        logger.opt(exception=True).debug("turn.stream.close_error")
