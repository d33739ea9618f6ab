"""Claude Agent SDK engine.

Runs one query through ``claude_agent_sdk.ClaudeSDKClient`` with partial
messages enabled, and translates SDK messages into EngineEvent objects:

- stream events carrying ``text_delta`` become TextDelta
- tool-use blocks on assistant messages become ToolStarted
- tool-result blocks on user messages become ToolFinished
- the result message becomes QueryResult

Full assistant text blocks are ignored because their text has already
arrived as deltas.
"""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
from typing import Any, AsyncIterator

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

logger = logging.getLogger(__name__)


def extract_tool_result_text(result: Any) -> Any:
    """Best-effort plain text from structured tool result payloads."""
    if result is None or isinstance(result, str):
        return result
    if isinstance(result, list):
        chunks: list[str] = []
        for item in result:
            if isinstance(item, dict) and isinstance(item.get("text"), str):
                chunks.append(item["text"])
        if chunks:
            return "\n".join(chunks)
    return result


class ClaudeEngine(QueryEngine):
    """Engine backed by the Claude Agent SDK.

    Auth follows the SDK defaults (OAuth via the claude CLI, or an API key
    from the environment).
    """

    def __init__(
        self,
        *,
        model: str | None = None,
        system_prompt_append: str | None = None,
        permission_mode: str = "bypassPermissions",
    ) -> None:
        self._model = model
        self._system_prompt_append = system_prompt_append
        self._permission_mode = permission_mode

    @property
    def name(self) -> str:
        return "claude"

    def is_available(self) -> bool:
        return shutil.which("claude") is not None

    def _build_options(self, cwd: str, session_id: str | None, stderr_lines: list[str]):
        # Import SDK lazily so the broker and its tests load without it
        from claude_agent_sdk import ClaudeAgentOptions

        def _capture_stderr(line: str) -> None:
            stderr_lines.append(line)
            logger.debug("claude stderr: %s", line.rstrip())

        system_prompt: Any = {"type": "preset", "preset": "claude_code"}
        if self._system_prompt_append:
            system_prompt["append"] = self._system_prompt_append

        options_kwargs: dict[str, Any] = dict(
            cwd=cwd,
            system_prompt=system_prompt,
            permission_mode=self._permission_mode,
            setting_sources=["project"],
            include_partial_messages=True,
            stderr=_capture_stderr,
        )
        if session_id:
            options_kwargs["resume"] = session_id
        if self._model:
            options_kwargs["model"] = self._model
        # A nested-session guard in the CLI refuses to start when this is set.
        os.environ.pop("CLAUDECODE", None)
        return ClaudeAgentOptions(**options_kwargs)

    async def run(
        self,
        prompt: str,
        *,
        cwd: str,
        session_id: str | None,
        cancel_token: CancellationToken,
    ) -> AsyncIterator[EngineEvent]:
        from claude_agent_sdk import ClaudeSDKClient

        stderr_lines: list[str] = []
        options = self._build_options(cwd, session_id, stderr_lines)
        tool_names: dict[str, str] = {}
        reported_session: str | None = None

        logger.info(
            "ClaudeEngine starting query model=%s resume=%s cwd=%s",
            self._model or "<default>", session_id or "-", cwd,
        )

        async with ClaudeSDKClient(options=options) as client:
            loop = asyncio.get_running_loop()
            interrupts: list[asyncio.Task] = []

            def _request_interrupt() -> None:
                logger.info("ClaudeEngine: interrupt requested")
                interrupts.append(loop.create_task(self._interrupt(client)))

            unregister = cancel_token.on_cancel(_request_interrupt)
            try:
                await client.query(prompt)
                async for message in client.receive_response():
                    sid = getattr(message, "session_id", None)
                    if sid is None:
                        data = getattr(message, "data", None)
                        if isinstance(data, dict):
                            sid = data.get("session_id")
                    if sid and sid != reported_session:
                        reported_session = sid
                        yield SessionAssigned(session_id=sid)

                    event = getattr(message, "event", None)
                    if isinstance(event, dict):
                        delta = self._text_delta(event)
                        if delta:
                            yield TextDelta(text=delta)
                        continue

                    if hasattr(message, "subtype") and hasattr(message, "total_cost_usd"):
                        yield self._to_result(message, stderr_lines)
                        continue

                    content = getattr(message, "content", None)
                    if not isinstance(content, list):
                        continue
                    for block in content:
                        if hasattr(block, "name") and hasattr(block, "input"):
                            tool_id = str(getattr(block, "id", ""))
                            tool_names[tool_id] = block.name
                            yield ToolStarted(tool_id=tool_id, tool_name=block.name, input=block.input)
                        elif hasattr(block, "tool_use_id"):
                            tool_id = str(block.tool_use_id)
                            yield ToolFinished(
                                tool_id=tool_id,
                                tool_name=tool_names.pop(tool_id, ""),
                                output=extract_tool_result_text(getattr(block, "content", None)),
                                is_error=bool(getattr(block, "is_error", False)),
                            )
            finally:
                unregister()
                # Interrupts must land before the client disconnects.
                if interrupts:
                    await asyncio.gather(*interrupts)

    @staticmethod
    async def _interrupt(client: Any) -> None:
        try:
            await client.interrupt()
        except Exception as exc:
            logger.warning("ClaudeEngine: interrupt failed: %s", exc)

    @staticmethod
    def _text_delta(event: dict[str, Any]) -> str:
        if event.get("type") != "content_block_delta":
            return ""
        delta = event.get("delta") or {}
        if delta.get("type") != "text_delta":
            return ""
        return delta.get("text") or ""

    @staticmethod
    def _to_result(message: Any, stderr_lines: list[str]) -> QueryResult:
        success = message.subtype == "success" and not getattr(message, "is_error", False)
        errors: list[str] = []
        if not success:
            raw_errors = getattr(message, "errors", None)
            if isinstance(raw_errors, list):
                errors = [str(e) for e in raw_errors if e]
            if not errors and getattr(message, "result", None):
                errors = [str(message.result)]
            if not errors:
                errors = [f"Query ended with {message.subtype}"]
            if stderr_lines:
                logger.warning("ClaudeEngine failure stderr tail:\n%s", "\n".join(stderr_lines[-10:]))
        return QueryResult(
            success=success,
            result=getattr(message, "result", None) if success else None,
            errors=errors,
            cost_usd=getattr(message, "total_cost_usd", None),
            duration_ms=getattr(message, "duration_ms", None),
        )
