"""Wire protocol for broker WebSocket clients.

Inbound frames are JSON objects tagged by ``type``. They are validated once
here and turned into one of the message dataclasses below; handlers never
look at raw dicts. Outbound events are plain dicts built by the ``*_event``
helpers, each stamped with a server ``timestamp`` (epoch milliseconds).
"""
from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Union

from flowbroker.errors import InvalidMessageError
from flowbroker.shared.models.conversation import now_ms
from flowbroker.shared.models.git import GitSnapshot

# ── Inbound ──


@dataclass
class ClientMessage:
    """Base inbound message."""
    message_type: str = ""


@dataclass
class PromptMessage(ClientMessage):
    message_type: str = "prompt"
    content: str = ""
    id: str = ""
    image_paths: list[str] = field(default_factory=list)


@dataclass
class NewSessionMessage(ClientMessage):
    message_type: str = "new_session"


@dataclass
class StopMessage(ClientMessage):
    message_type: str = "stop"


@dataclass
class DiscardChangesMessage(ClientMessage):
    message_type: str = "discard_changes"


@dataclass
class ListBranchesMessage(ClientMessage):
    message_type: str = "list_branches"


@dataclass
class SwitchBranchMessage(ClientMessage):
    message_type: str = "switch_branch"
    branch_name: str = ""


@dataclass
class CreateBranchMessage(ClientMessage):
    message_type: str = "create_branch"
    branch_name: str = ""


InboundMessage = Union[
    PromptMessage,
    NewSessionMessage,
    StopMessage,
    DiscardChangesMessage,
    ListBranchesMessage,
    SwitchBranchMessage,
    CreateBranchMessage,
]

VALID_MESSAGE_TYPES = (
    "prompt",
    "new_session",
    "stop",
    "discard_changes",
    "list_branches",
    "switch_branch",
    "create_branch",
)


def _require_str(data: dict[str, Any], key: str, message_type: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise InvalidMessageError(f"'{message_type}' requires a non-empty string '{key}'", message_type)
    return value


def decode_frame(text: str) -> InboundMessage:
    """Parse one text frame. Raises InvalidMessageError."""
    try:
        data = json.loads(text)
    except (TypeError, ValueError):
        raise InvalidMessageError("Invalid JSON message")
    return parse_message(data)


def parse_message(data: Any) -> InboundMessage:
    """Validate a decoded JSON value into an inbound message."""
    if not isinstance(data, dict):
        raise InvalidMessageError("Message must be a JSON object")
    message_type = data.get("type")
    if message_type not in VALID_MESSAGE_TYPES:
        raise InvalidMessageError(
            f"Unknown message type: {message_type}. "
            f"Valid types: {', '.join(VALID_MESSAGE_TYPES)}",
            message_type if isinstance(message_type, str) else None,
        )

    if message_type == "prompt":
        content = _require_str(data, "content", message_type)
        prompt_id = data.get("id")
        image_paths = data.get("imagePaths") or []
        if not isinstance(image_paths, list) or not all(isinstance(p, str) for p in image_paths):
            raise InvalidMessageError("'imagePaths' must be a list of strings", message_type)
        return PromptMessage(
            content=content,
            id=prompt_id if isinstance(prompt_id, str) and prompt_id else uuid.uuid4().hex,
            image_paths=list(image_paths),
        )
    if message_type == "switch_branch":
        return SwitchBranchMessage(branch_name=_require_str(data, "branchName", message_type))
    if message_type == "create_branch":
        return CreateBranchMessage(branch_name=_require_str(data, "branchName", message_type))
    if message_type == "new_session":
        return NewSessionMessage()
    if message_type == "stop":
        return StopMessage()
    if message_type == "discard_changes":
        return DiscardChangesMessage()
    return ListBranchesMessage()


# ── Outbound ──


def _event(event_type: str, **fields: Any) -> dict[str, Any]:
    event = {"type": event_type}
    event.update({k: v for k, v in fields.items() if v is not None})
    event["timestamp"] = now_ms()
    return event


def status_event(status: str) -> dict[str, Any]:
    return _event("status", status=status)


def stream_event(prompt_id: str | None, chunk: str, done: bool) -> dict[str, Any]:
    return _event("stream", promptId=prompt_id, chunk=chunk, done=done)


def tool_event(
    prompt_id: str | None,
    tool_name: str,
    status: str,
    *,
    input: Any = None,
    output: Any = None,
) -> dict[str, Any]:
    return _event("tool", promptId=prompt_id, toolName=tool_name, status=status, input=input, output=output)


def result_event(
    prompt_id: str | None,
    success: bool,
    *,
    result: str | None = None,
    error: str | None = None,
    cost_usd: float | None = None,
    duration_ms: int | None = None,
) -> dict[str, Any]:
    return _event(
        "result",
        promptId=prompt_id,
        success=success,
        result=result,
        error=error,
        costUsd=cost_usd,
        durationMs=duration_ms,
    )


def error_event(message: str, prompt_id: str | None = None) -> dict[str, Any]:
    return _event("error", promptId=prompt_id, message=message)


def history_event(entries: list[dict[str, Any]]) -> dict[str, Any]:
    return _event("history", entries=entries)


def git_status_event(snapshot: GitSnapshot) -> dict[str, Any]:
    return _event("git_status", **snapshot.to_event_fields())


def branches_list_event(branches: list[str], current: str | None = None) -> dict[str, Any]:
    return _event("branches_list", branches=branches, currentBranch=current or None)


def branch_switched_event(
    branch_name: str,
    success: bool,
    *,
    error: str | None = None,
    warning: str | None = None,
) -> dict[str, Any]:
    return _event("branch_switched", branchName=branch_name, success=success, error=error, warning=warning)


def branch_created_event(
    branch_name: str,
    success: bool,
    *,
    error: str | None = None,
    warning: str | None = None,
) -> dict[str, Any]:
    return _event("branch_created", branchName=branch_name, success=success, error=error, warning=warning)


def stash_conflict_event(branch_name: str, stash_ref: str | None, message: str) -> dict[str, Any]:
    return _event("stash_conflict", branchName=branch_name, stashRef=stash_ref, message=message)


def session_cleared_event() -> dict[str, Any]:
    return _event("session_cleared")


def stopped_event() -> dict[str, Any]:
    return _event("stopped")
