from __future__ import annotations

import pytest
from support import RecordingSleep

from vibex.generation.base import GenerationConfig
from vibex.retry import RetryConfiguration, RetryPolicy


@pytest.fixture
def generation_config() -> GenerationConfig:
    return GenerationConfig(model="openai:test-model")


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def fast_retry(recording_sleep: RecordingSleep) -> RetryPolicy:
    return RetryPolicy(RetryConfiguration(max_attempts=3), random_source=lambda: 0.5, sleep=recording_sleep)
