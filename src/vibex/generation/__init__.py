"""Model-facing content generation."""

from vibex.generation.base import (
    ContentGenerator,
    GenerationConfig,
    GenerationResult,
    StreamEvent,
    StreamEventKind,
    TokenCount,
)

__all__ = [
    "ContentGenerator",
    "GenerationConfig",
    "GenerationResult",
    "StreamEvent",
    "StreamEventKind",
    "TokenCount",
]
