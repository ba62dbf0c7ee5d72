"""Multi-turn conversation that runs tool calls on the model's behalf."""

from __future__ import annotations

from dataclasses import dataclass, replace

from loguru import logger

from vibex.errors import StateViolationError
from vibex.events import EventStream
from vibex.generation.base import ContentGenerator, GenerationConfig, TokenCount
from vibex.retry import RetryPolicy
from vibex.tools.registry import ToolRegistry
from vibex.tools.runner import ToolRunner
from vibex.tools.tracker import ExecutionTracker
from vibex.turn.manager import TurnManager
from vibex.turn.models import TurnEvent, TurnResult, TurnStatus

DEFAULT_MAX_TOOL_ROUNDS = 16
DEFAULT_KEEP_MESSAGES = 40


@dataclass(frozen=True)
class SessionReply:
    """Result of one user prompt, after every tool round-trip."""

    text: str
    status: TurnStatus
    steps: int
    tool_calls: int = 0
    error: str | None = None


class TurnSession:
    def __init__(
        self,
        generator: ContentGenerator,
        config: GenerationConfig,
        *,
        registry: ToolRegistry | None = None,
        tracker: ExecutionTracker | None = None,
        retry_policy: RetryPolicy | None = None,
        max_tool_rounds: int = DEFAULT_MAX_TOOL_ROUNDS,
        max_turns: int | None = None,
        keep_messages: int = DEFAULT_KEEP_MESSAGES,
        first_event_timeout: float | None = None,
    ) -> None:
        self._generator = generator
        self._registry = registry or ToolRegistry()
        if not config.tools and self._registry.descriptors():
            config = replace(config, tools=self._registry.model_schemas())
        self._runner = ToolRunner(self._registry)
        self._manager = TurnManager(
            generator,
            config,
            retry_policy=retry_policy,
            tracker=tracker,
            first_event_timeout=first_event_timeout,
        )
        self._max_tool_rounds = max_tool_rounds
        self._max_turns = max_turns
        self._keep_messages = keep_messages
        self._turns = 0

    @property
    def manager(self) -> TurnManager:
        return self._manager

    @property
    def events(self) -> EventStream[TurnEvent]:
        return self._manager.events

    @property
    def turns(self) -> int:
        return self._turns

    async def ask(self, prompt: str) -> SessionReply:
        if self._max_turns is not None and self._turns >= self._max_turns:
            return SessionReply(
                text="",
                status=self._manager.status,
                steps=0,
                error=f"max_turns_reached={self._max_turns}",
            )

        self._turns += 1
        steps = 0
        tool_calls = 0
        error: str | None = None
        result: TurnResult | None = None
        try:
            steps += 1
            logger.info("session.step turn={} step={}", self._turns, steps)
            result = await self._manager.execute(prompt)
            while result.status == TurnStatus.WAITING_FOR_TOOL:
                if steps >= self._max_tool_rounds:
                    error = f"max_tool_rounds_reached={self._max_tool_rounds}"
                    self._manager.cancel()
                    break
                steps += 1
                logger.info("session.step turn={} step={} tools={}", self._turns, steps, len(result.tool_calls))
                for call in result.tool_calls:
                    self._manager.start_tool_call(call.id)
                    tool_result = await self._runner.run(call)
                    tool_calls += 1
                    result = await self._manager.submit_tool_result(tool_result)
        except StateViolationError:
            raise
        except Exception as exc:
            logger.exception("model.call.error")
            error = f"model_call_error: {exc!s}"

        await self._enforce_context_limit()
        return SessionReply(
            text=self._manager.content.strip(),
            status=self._manager.status,
            steps=steps,
            tool_calls=tool_calls,
            error=error,
        )

    def cancel(self) -> None:
        self._manager.cancel()

    def reset(self) -> None:
        self._manager.reset()
        self._turns = 0

    async def memory_stats(self) -> TokenCount:
        return await self._generator.count_tokens(self._manager.messages)

    async def _enforce_context_limit(self) -> None:
        if self._manager.status.is_active:
            return
        stats = await self.memory_stats()
        if not stats.compression_recommended:
            return
        dropped = self._manager.truncate_history(self._keep_messages)
        logger.info(
            "session.context.truncated tokens={} limit={} dropped={}",
            stats.token_count,
            stats.context_limit,
            dropped,
        )
