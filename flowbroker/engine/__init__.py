"""Agent query engine layer: engine interface, Claude backend and the executor."""
from .base import QueryEngine
from .cancellation import CancellationToken
from .events import (
    EngineEvent,
    QueryResult,
    SessionAssigned,
    TextDelta,
    ToolFinished,
    ToolStarted,
)

__all__ = [
    "QueryEngine",
    "CancellationToken",
    "EngineEvent",
    "QueryResult",
    "SessionAssigned",
    "TextDelta",
    "ToolFinished",
    "ToolStarted",
    # Lazy: flowbroker.engine.executor, flowbroker.engine.claude_engine
]
