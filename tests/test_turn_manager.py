from __future__ import annotations

import asyncio

import pytest
from support import RecordingSleep, ScriptedGenerator, text, tool_call

from vibex.errors import InvalidStateError, NetworkError, ServerError, UnknownToolCallError
from vibex.generation.base import GenerationConfig, StreamEvent
from vibex.retry import RetryPolicy
from vibex.tools.tracker import ExecutionState, ExecutionTracker
from vibex.turn.manager import TurnManager
from vibex.turn.models import Role, ToolResult, TurnEvent, TurnEventKind, TurnStatus, Usage


def _manager(
    generator: ScriptedGenerator,
    config: GenerationConfig,
    retry: RetryPolicy,
    tracker: ExecutionTracker | None = None,
) -> TurnManager:
    return TurnManager(generator, config, retry_policy=retry, tracker=tracker)


@pytest.mark.asyncio
async def test_content_chunks_are_concatenated_in_order(
    generation_config: GenerationConfig, fast_retry: RetryPolicy
) -> None:
    manager = _manager(ScriptedGenerator([text("Hello", " world", "!")]), generation_config, fast_retry)
    events: list[TurnEvent] = []
    manager.events.subscribe(events.append)

    result = await manager.execute("greet me")

    assert result.status == TurnStatus.COMPLETED
    assert result.content == "Hello world!"
    assert result.tool_calls == ()
    assert manager.status == TurnStatus.COMPLETED
    assert [(m.role, m.content) for m in manager.messages] == [
        (Role.USER, "greet me"),
        (Role.ASSISTANT, "Hello world!"),
    ]
    assert [event.kind for event in events] == [
        TurnEventKind.START,
        TurnEventKind.CONTENT,
        TurnEventKind.CONTENT,
        TurnEventKind.CONTENT,
        TurnEventKind.COMPLETE,
    ]
    assert events[-1].result == result


@pytest.mark.asyncio
async def test_single_tool_call_round_trip_adds_three_messages(
    generation_config: GenerationConfig, fast_retry: RetryPolicy
) -> None:
    generator = ScriptedGenerator(
        [
            [StreamEvent.content("Let me check. "), tool_call("call-1", "fs_read", path="a.txt"), StreamEvent.end()],
            text("The file says hi."),
        ]
    )
    tracker = ExecutionTracker()
    manager = _manager(generator, generation_config, fast_retry, tracker)
    before = len(manager.messages)

    waiting = await manager.execute("read a.txt")

    assert waiting.status == TurnStatus.WAITING_FOR_TOOL
    assert manager.has_pending_tool_calls() is True
    assert [call.id for call in waiting.tool_calls] == ["call-1"]
    assert tracker.get("call-1").state == ExecutionState.PENDING  # type: ignore[union-attr]

    manager.start_tool_call("call-1")
    manager.append_tool_output("call-1", "hi")
    assert tracker.get("call-1").state == ExecutionState.EXECUTING  # type: ignore[union-attr]
    assert tracker.get("call-1").output == "hi"  # type: ignore[union-attr]

    done = await manager.submit_tool_result(ToolResult(tool_call_id="call-1", result="hi"))

    assert done.status == TurnStatus.COMPLETED
    assert done.content == "Let me check. The file says hi."
    assert manager.has_pending_tool_calls() is False
    assert len(manager.messages) - before == 3
    assert [m.role for m in manager.messages] == [Role.USER, Role.TOOL, Role.ASSISTANT]
    tool_message = manager.messages[1]
    assert tool_message.content == "hi"
    assert tool_message.tool_call is not None and tool_message.tool_call.id == "call-1"
    assert tracker.get("call-1").state == ExecutionState.COMPLETED  # type: ignore[union-attr]
    # The continuation stream sees the tool result.
    assert generator.calls[1][-1].role == Role.TOOL


@pytest.mark.asyncio
async def test_multiple_tool_calls_resume_after_last_result(
    generation_config: GenerationConfig, fast_retry: RetryPolicy
) -> None:
    generator = ScriptedGenerator(
        [
            [tool_call("a", "fs_read", path="1"), tool_call("b", "fs_read", path="2"), StreamEvent.end()],
            text("both read"),
        ]
    )
    manager = _manager(generator, generation_config, fast_retry)

    await manager.execute("read both")
    partial = await manager.submit_tool_result(ToolResult(tool_call_id="b", result="two"))

    assert partial.status == TurnStatus.WAITING_FOR_TOOL
    assert [call.id for call in partial.tool_calls] == ["a"]
    assert len(generator.calls) == 1

    final = await manager.submit_tool_result(ToolResult(tool_call_id="a", error="missing"))

    assert final.status == TurnStatus.COMPLETED
    assert [m.content for m in manager.messages if m.role == Role.TOOL] == ["two", "error: missing"]


@pytest.mark.asyncio
async def test_execute_while_in_progress_fails_without_opening_a_stream(
    generation_config: GenerationConfig, fast_retry: RetryPolicy
) -> None:
    gate = asyncio.Event()
    generator = ScriptedGenerator([text("slow"), text("never")], gate=gate)
    manager = _manager(generator, generation_config, fast_retry)

    first = asyncio.create_task(manager.execute("one"))
    await asyncio.sleep(0)
    assert manager.status == TurnStatus.IN_PROGRESS

    with pytest.raises(InvalidStateError):
        await manager.execute("two")

    gate.set()
    result = await first
    assert result.content == "slow"
    assert len(generator.calls) == 1
    assert [m.content for m in manager.messages] == ["one", "slow"]


@pytest.mark.asyncio
async def test_execute_while_waiting_for_tool_fails(generation_config: GenerationConfig, fast_retry: RetryPolicy) -> None:
    manager = _manager(
        ScriptedGenerator([[tool_call("c1", "fs_read"), StreamEvent.end()]]), generation_config, fast_retry
    )
    await manager.execute("go")

    with pytest.raises(InvalidStateError):
        await manager.execute("again")


@pytest.mark.asyncio
async def test_submit_tool_result_state_violations(generation_config: GenerationConfig, fast_retry: RetryPolicy) -> None:
    manager = _manager(
        ScriptedGenerator([[tool_call("c1", "fs_read"), StreamEvent.end()]]), generation_config, fast_retry
    )

    with pytest.raises(InvalidStateError):
        await manager.submit_tool_result(ToolResult(tool_call_id="c1"))

    await manager.execute("go")
    with pytest.raises(UnknownToolCallError) as exc_info:
        await manager.submit_tool_result(ToolResult(tool_call_id="nope"))
    assert exc_info.value.tool_call_id == "nope"
    assert manager.status == TurnStatus.WAITING_FOR_TOOL


@pytest.mark.asyncio
async def test_stream_open_failures_are_retried(
    generation_config: GenerationConfig, fast_retry: RetryPolicy, recording_sleep: RecordingSleep
) -> None:
    generator = ScriptedGenerator([NetworkError("ECONNRESET"), ServerError("busy", status_code=503), text("ok")])
    manager = _manager(generator, generation_config, fast_retry)
    events: list[TurnEvent] = []
    manager.events.subscribe(events.append)

    result = await manager.execute("hello")

    assert result.status == TurnStatus.COMPLETED
    assert result.content == "ok"
    assert len(generator.calls) == 3
    assert recording_sleep.delays == [1.0, 2.0]
    assert TurnEventKind.ERROR not in [event.kind for event in events]


@pytest.mark.asyncio
async def test_non_retryable_failure_marks_turn_failed(
    generation_config: GenerationConfig, fast_retry: RetryPolicy, recording_sleep: RecordingSleep
) -> None:
    generator = ScriptedGenerator([ValueError("invalid request body")])
    manager = _manager(generator, generation_config, fast_retry)
    events: list[TurnEvent] = []
    manager.events.subscribe(events.append)

    with pytest.raises(ValueError, match="invalid request body"):
        await manager.execute("hello")

    assert manager.status == TurnStatus.FAILED
    assert recording_sleep.delays == []
    assert events[-1].kind == TurnEventKind.ERROR
    assert isinstance(events[-1].error, ValueError)


@pytest.mark.asyncio
async def test_failure_after_first_chunk_keeps_partial_content(
    generation_config: GenerationConfig, fast_retry: RetryPolicy
) -> None:
    generator = ScriptedGenerator([[StreamEvent.content("partial "), ServerError("stream reset", status_code=502)]])
    manager = _manager(generator, generation_config, fast_retry)

    with pytest.raises(ServerError):
        await manager.execute("hello")

    assert manager.status == TurnStatus.FAILED
    assert manager.content == "partial "
    assert len(generator.calls) == 1
    assert [m.role for m in manager.messages] == [Role.USER]


@pytest.mark.asyncio
async def test_failed_turn_can_be_executed_again(generation_config: GenerationConfig, fast_retry: RetryPolicy) -> None:
    generator = ScriptedGenerator([ValueError("bad"), text("recovered")])
    manager = _manager(generator, generation_config, fast_retry)

    with pytest.raises(ValueError):
        await manager.execute("first")
    result = await manager.execute("second")

    assert result.status == TurnStatus.COMPLETED
    assert result.content == "recovered"


@pytest.mark.asyncio
async def test_reset_then_execute_has_no_residue(generation_config: GenerationConfig, fast_retry: RetryPolicy) -> None:
    generator = ScriptedGenerator([[tool_call("c1", "fs_read"), StreamEvent.end()], text("fresh")])
    manager = _manager(generator, generation_config, fast_retry)
    await manager.execute("old prompt")
    assert manager.has_pending_tool_calls()

    manager.reset()
    assert manager.status == TurnStatus.IDLE
    assert manager.messages == ()
    assert manager.content == ""

    result = await manager.execute("new prompt")

    assert result.content == "fresh"
    assert [m.content for m in manager.messages] == ["new prompt", "fresh"]
    assert manager.pending_tool_calls == ()
    assert generator.calls[-1] == manager.messages[:1]


@pytest.mark.asyncio
async def test_cancel_mid_stream_stops_processing_chunks(
    generation_config: GenerationConfig, fast_retry: RetryPolicy
) -> None:
    manager = _manager(ScriptedGenerator([text("one", "two", "three")]), generation_config, fast_retry)

    def _cancel_after_first_chunk(event: TurnEvent) -> None:
        if event.kind == TurnEventKind.CONTENT:
            manager.cancel()

    manager.events.subscribe(_cancel_after_first_chunk)

    result = await manager.execute("count")

    assert result.status == TurnStatus.CANCELLED
    assert result.content == "one"
    assert manager.status == TurnStatus.CANCELLED


@pytest.mark.asyncio
async def test_cancel_while_waiting_for_tool_abandons_pending_calls(
    generation_config: GenerationConfig, fast_retry: RetryPolicy
) -> None:
    tracker = ExecutionTracker()
    manager = _manager(
        ScriptedGenerator([[tool_call("c1", "fs_read"), StreamEvent.end()]]), generation_config, fast_retry, tracker
    )
    await manager.execute("go")

    manager.cancel()

    assert manager.status == TurnStatus.CANCELLED
    assert manager.has_pending_tool_calls() is False
    assert tracker.get("c1").state == ExecutionState.FAILED  # type: ignore[union-attr]
    with pytest.raises(InvalidStateError):
        await manager.submit_tool_result(ToolResult(tool_call_id="c1"))


@pytest.mark.asyncio
async def test_usage_is_accumulated_across_streams(generation_config: GenerationConfig, fast_retry: RetryPolicy) -> None:
    generator = ScriptedGenerator(
        [
            [tool_call("c1", "fs_read"), StreamEvent.end(Usage(10, 2))],
            [StreamEvent.content("done"), StreamEvent.end(Usage(15, 3))],
        ]
    )
    manager = _manager(generator, generation_config, fast_retry)

    await manager.execute("go")
    result = await manager.submit_tool_result(ToolResult(tool_call_id="c1", result={"ok": True}))

    assert result.usage == Usage(25, 5)
    assert manager.messages[1].content == '{"ok": true}'


@pytest.mark.asyncio
async def test_truncate_history_keeps_newest_messages(generation_config: GenerationConfig, fast_retry: RetryPolicy) -> None:
    generator = ScriptedGenerator(
        [
            [tool_call("c1", "fs_read"), StreamEvent.end()],
            text("first answer"),
            text("second answer"),
        ]
    )
    manager = _manager(generator, generation_config, fast_retry)
    await manager.execute("first")
    await manager.submit_tool_result(ToolResult(tool_call_id="c1", result="x"))
    await manager.execute("second")
    # user, tool, assistant, user, assistant

    dropped = manager.truncate_history(4)

    # The tool message would lead the transcript, so it is dropped too.
    assert dropped == 2
    assert [m.content for m in manager.messages] == ["first answer", "second", "second answer"]

    with pytest.raises(ValueError):
        manager.truncate_history(0)
