"""Conversation history models.

Entries serialize to role-tagged JSON objects so the persisted file and
the ``history`` event share one representation:

    {"role": "user", "content": ..., "timestamp": ..., "imagePaths": [...]}
    {"role": "assistant", "content": ..., "timestamp": ...}
    {"role": "tool", "toolName": ..., "status": "completed", "input": ..., "output": ..., "timestamp": ...}
    {"role": "system", "type": "error", "content": ..., "timestamp": ...}
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


class ToolStatus(Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class SystemKind(Enum):
    ERROR = "error"
    STOPPED = "stopped"


@dataclass
class UserEntry:
    content: str
    timestamp: int = field(default_factory=now_ms)
    image_paths: list[str] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "role": "user",
            "content": self.content,
            "timestamp": self.timestamp,
        }
        if self.image_paths:
            data["imagePaths"] = list(self.image_paths)
        return data


@dataclass
class AssistantEntry:
    content: str
    timestamp: int = field(default_factory=now_ms)

    def to_dict(self) -> dict[str, Any]:
        return {"role": "assistant", "content": self.content, "timestamp": self.timestamp}


@dataclass
class ToolEntry:
    tool_name: str
    status: ToolStatus
    input: Any = None
    output: Any = None
    timestamp: int = field(default_factory=now_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": "tool",
            "toolName": self.tool_name,
            "status": self.status.value,
            "input": self.input,
            "output": self.output,
            "timestamp": self.timestamp,
        }


@dataclass
class SystemEntry:
    kind: SystemKind
    content: str
    timestamp: int = field(default_factory=now_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": "system",
            "type": self.kind.value,
            "content": self.content,
            "timestamp": self.timestamp,
        }


ConversationEntry = Union[UserEntry, AssistantEntry, ToolEntry, SystemEntry]


def entry_from_dict(data: Any) -> ConversationEntry | None:
    """Parse one persisted entry. Returns None for unrecognized shapes."""
    if not isinstance(data, dict):
        return None
    role = data.get("role")
    timestamp = data.get("timestamp")
    if not isinstance(timestamp, (int, float)):
        timestamp = now_ms()
    timestamp = int(timestamp)
    try:
        if role == "user":
            image_paths = data.get("imagePaths")
            return UserEntry(
                content=str(data.get("content", "")),
                timestamp=timestamp,
                image_paths=[str(p) for p in image_paths] if isinstance(image_paths, list) else None,
            )
        if role == "assistant":
            return AssistantEntry(content=str(data.get("content", "")), timestamp=timestamp)
        if role == "tool":
            return ToolEntry(
                tool_name=str(data.get("toolName", "")),
                status=ToolStatus(data.get("status")),
                input=data.get("input"),
                output=data.get("output"),
                timestamp=timestamp,
            )
        if role == "system":
            return SystemEntry(
                kind=SystemKind(data.get("type")),
                content=str(data.get("content", "")),
                timestamp=timestamp,
            )
    except ValueError:
        pass
    return None


def history_from_list(raw: Any) -> list[ConversationEntry]:
    if not isinstance(raw, list):
        return []
    entries: list[ConversationEntry] = []
    skipped = 0
    for item in raw:
        entry = entry_from_dict(item)
        if entry is None:
            skipped += 1
            continue
        entries.append(entry)
    if skipped:
        logger.warning("Skipped %d unrecognized history entries", skipped)
    return entries


@dataclass
class Session:
    """Conversation continuity id plus ordered history."""

    session_id: str | None = None
    history: list[ConversationEntry] = field(default_factory=list)

    def append(self, entry: ConversationEntry) -> None:
        self.history.append(entry)

    def reset(self) -> None:
        self.session_id = None
        self.history = []

    def history_dicts(self) -> list[dict[str, Any]]:
        return [entry.to_dict() for entry in self.history]
