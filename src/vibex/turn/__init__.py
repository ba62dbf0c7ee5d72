"""Turn engine: streaming model exchanges with tool round-trips.

The manager and session live in ``vibex.turn.manager`` and ``vibex.turn.session``;
only the data model is re-exported here so generation adapters can import it
without pulling in the engine.
"""

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

__all__ = [
    "Message",
    "Role",
    "ToolCallRequest",
    "ToolResult",
    "TurnEvent",
    "TurnEventKind",
    "TurnResult",
    "TurnStatus",
    "Usage",
]
