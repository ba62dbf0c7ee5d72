"""Retry eligibility and exponential backoff with jitter."""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, TypeVar

from loguru import logger

from vibex.errors import NetworkError, RateLimitError, ServerError, StateViolationError

T = TypeVar("T")

JITTER_RATIO = 0.3

_NETWORK_MARKERS = ("econnreset", "etimedout", "econnrefused", "enotfound", "network", "connection error")
_RATE_LIMIT_MARKERS = ("429", "rate limit", "too many requests")
_TEMPORARY_MARKERS = ("server error", "502", "503", "504")
_TIMEOUT_MARKERS = ("timed out", "timeout")


class RetryCondition(StrEnum):
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    TEMPORARY_FAILURE = "temporary_failure"


@dataclass(frozen=True)
class RetryConfiguration:
    """Retry settings for one run. Replace it between runs, never during one."""

    max_attempts: int = 3
    initial_delay_ms: float = 1000
    max_delay_ms: float = 30_000
    backoff_multiplier: float = 2.0
    retry_conditions: frozenset[RetryCondition] = field(default_factory=lambda: frozenset(RetryCondition))

    def __post_init__(self) -> None:
        if self.max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")
        if self.initial_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("delays must be >= 0")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")
        object.__setattr__(self, "retry_conditions", frozenset(RetryCondition(c) for c in self.retry_conditions))


def _status_code(error: BaseException) -> int | None:
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    return None


def classify_error(error: BaseException) -> RetryCondition | None:
    """Map an exception to the retry category it belongs to, if any."""
    if isinstance(error, StateViolationError):
        return None
    if isinstance(error, RateLimitError):
        return RetryCondition.RATE_LIMIT
    if isinstance(error, ServerError):
        return RetryCondition.TEMPORARY_FAILURE
    if isinstance(error, TimeoutError):
        return RetryCondition.TIMEOUT
    if isinstance(error, (NetworkError, ConnectionError)):
        return RetryCondition.NETWORK_ERROR

    status = _status_code(error)
    if status is not None:
        if status == 429:
            return RetryCondition.RATE_LIMIT
        if 500 <= status < 600:
            return RetryCondition.TEMPORARY_FAILURE
        # Any other status (401, 403, 400, ...) is a caller problem.
        return None

    message = str(error).casefold()
    if any(marker in message for marker in _RATE_LIMIT_MARKERS):
        return RetryCondition.RATE_LIMIT
    if any(marker in message for marker in _TEMPORARY_MARKERS):
        return RetryCondition.TEMPORARY_FAILURE
    if any(marker in message for marker in _NETWORK_MARKERS):
        return RetryCondition.NETWORK_ERROR
    if any(marker in message for marker in _TIMEOUT_MARKERS):
        return RetryCondition.TIMEOUT
    return None


class RetryPolicy:
    """Computes retry eligibility and jittered exponential backoff delays."""

    def __init__(
        self,
        config: RetryConfiguration | None = None,
        *,
        random_source: Callable[[], float] = random.random,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config or RetryConfiguration()
        self._random = random_source
        self._sleep = sleep

    def should_retry(self, error: BaseException, attempt: int, config: RetryConfiguration | None = None) -> bool:
        config = config or self.config
        if attempt >= config.max_attempts:
            return False
        category = classify_error(error)
        return category is not None and category in config.retry_conditions

    def base_delay_ms(self, attempt: int, config: RetryConfiguration | None = None) -> float:
        config = config or self.config
        return min(config.initial_delay_ms * config.backoff_multiplier**attempt, config.max_delay_ms)

    def next_delay_ms(self, attempt: int, config: RetryConfiguration | None = None) -> float:
        config = config or self.config
        delay = self.base_delay_ms(attempt, config)
        jitter = delay * JITTER_RATIO * (self._random() * 2 - 1)
        return max(0.0, min(delay + jitter, config.max_delay_ms))

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        config: RetryConfiguration | None = None,
        on_retry: Callable[[int, float, BaseException], None] | None = None,
        label: str = "operation",
    ) -> T:
        """Await ``operation`` until it succeeds or the error is not retryable."""
        config = config or self.config
        attempt = 0
        while True:
            try:
                return await operation()
            except Exception as exc:
                if not self.should_retry(exc, attempt, config):
                    raise
                delay_ms = self.next_delay_ms(attempt, config)
                attempt += 1
                logger.debug(
                    "retry.scheduled label={} attempt={}/{} delay_ms={:.0f} error={}",
                    label,
                    attempt,
                    config.max_attempts,
                    delay_ms,
                    exc,
                )
                if on_retry is not None:
                    try:
                        on_retry(attempt, delay_ms, exc)
                    except Exception:
                        logger.warning("retry.callback.error label={}", label)
                await self._sleep(delay_ms / 1000)
