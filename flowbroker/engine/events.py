"""Event types yielded by a query engine.

Each engine translates its runtime's messages into these dataclasses so the
executor never touches SDK types directly.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class EngineEvent:
    """Base event from a query engine."""
    event_type: str = ""


@dataclass
class SessionAssigned(EngineEvent):
    """The engine reported the resumable session id for this conversation."""
    event_type: str = "session_assigned"
    session_id: str = ""


@dataclass
class TextDelta(EngineEvent):
    event_type: str = "text_delta"
    text: str = ""


@dataclass
class ToolStarted(EngineEvent):
    event_type: str = "tool_started"
    tool_id: str = ""
    tool_name: str = ""
    input: Any = None


@dataclass
class ToolFinished(EngineEvent):
    event_type: str = "tool_finished"
    tool_id: str = ""
    tool_name: str = ""
    output: Any = None
    is_error: bool = False


@dataclass
class QueryResult(EngineEvent):
    """Terminal event: the engine finished the query."""
    event_type: str = "query_result"
    success: bool = True
    result: str | None = None
    errors: list[str] = field(default_factory=list)
    cost_usd: float | None = None
    duration_ms: int | None = None

    @property
    def error_text(self) -> str:
        return ", ".join(self.errors) if self.errors else "Unknown error"
