"""Agent query executor.

Owns the one in-flight query of a broker. ``start()`` moves the machine from
Idle to Executing synchronously (user entry appended, prompt id claimed)
and schedules the stream loop as a task; the loop's ``finally`` always
brings it back to Idle and broadcasts ``status:idle``.

Callers must check ``is_active`` before starting. A second start while a
query runs raises RuntimeError.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from flowbroker.server import protocol
from flowbroker.shared.models.conversation import (
    AssistantEntry,
    Session,
    SystemEntry,
    SystemKind,
    ToolEntry,
    ToolStatus,
    UserEntry,
)
from flowbroker.shared.services.session_store import SessionStore
from flowbroker.shared.services.uploads import persist_images

from .base import QueryEngine
from .cancellation import CancellationToken
from .events import (
    QueryResult,
    SessionAssigned,
    TextDelta,
    ToolFinished,
    ToolStarted,
)

logger = logging.getLogger(__name__)

Broadcast = Callable[[dict[str, Any]], Awaitable[None]]

STOPPED_MESSAGE = "Stopped by user"
IMAGE_PROMPT_HEADER = "[Attached images — please view them first]"


def build_engine_prompt(content: str, image_paths: list[str]) -> str:
    """Append Read-tool instructions for attached images to the prompt."""
    if not image_paths:
        return content
    lines = [f"Use the Read tool to view the image at: {path}" for path in image_paths]
    return f"{content}\n\n{IMAGE_PROMPT_HEADER}\n" + "\n".join(lines)


@dataclass
class QueryExecutionState:
    """Process-wide record of the in-flight query.

    ``active_prompt_id`` is set exactly while a query is executing.
    """

    cancel_token: CancellationToken | None = None
    active_prompt_id: str | None = None
    accumulated_text: str = ""
    pending_tool_inputs: dict[str, Any] = field(default_factory=dict)
    # Set once the query has been stopped; later output is streamed only.
    stopped: bool = False
    # Set once the terminal result has been written to history.
    committed: bool = False

    @property
    def is_active(self) -> bool:
        return self.active_prompt_id is not None

    def reset(self) -> None:
        self.cancel_token = None
        self.active_prompt_id = None
        self.accumulated_text = ""
        self.pending_tool_inputs = {}
        self.stopped = False
        self.committed = False


class QueryExecutor:
    """Single-flight runner for agent queries."""

    def __init__(
        self,
        engine: QueryEngine,
        session: Session,
        store: SessionStore,
        broadcast: Broadcast,
        *,
        cwd: Path,
        image_dir: Path,
        on_success: Callable[[], Awaitable[Any]] | None = None,
    ) -> None:
        self._engine = engine
        self._session = session
        self._store = store
        self._broadcast = broadcast
        self._cwd = Path(cwd)
        self._image_dir = Path(image_dir)
        self._on_success = on_success
        self._state = QueryExecutionState()
        self._task: asyncio.Task | None = None

    @property
    def state(self) -> QueryExecutionState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state.is_active

    @property
    def task(self) -> asyncio.Task | None:
        return self._task

    def start(self, prompt_id: str, content: str, image_paths: list[str] | None = None) -> asyncio.Task:
        """Claim the executor and schedule the query. Must be called while Idle."""
        if self._state.is_active:
            raise RuntimeError(f"query {self._state.active_prompt_id} is already in progress")

        persisted = persist_images(image_paths, self._image_dir) if image_paths else []
        self._state.reset()
        self._state.active_prompt_id = prompt_id
        self._state.cancel_token = CancellationToken()
        self._session.append(UserEntry(content=content, image_paths=persisted or None))
        logger.info(
            "Query %s starting (%d chars, %d images, resume=%s)",
            prompt_id, len(content), len(persisted), self._session.session_id or "-",
        )
        prompt = build_engine_prompt(content, persisted)
        self._task = asyncio.get_running_loop().create_task(self._run(prompt_id, prompt))
        return self._task

    async def execute(self, prompt_id: str, content: str, image_paths: list[str] | None = None) -> None:
        """Start a query and wait for it to finish."""
        await self.start(prompt_id, content, image_paths)

    async def _run(self, prompt_id: str, prompt: str) -> None:
        state = self._state
        token = state.cancel_token
        assert token is not None
        try:
            await self._broadcast(protocol.status_event("processing"))
            async for event in self._engine.run(
                prompt,
                cwd=str(self._cwd),
                session_id=self._session.session_id,
                cancel_token=token,
            ):
                if isinstance(event, SessionAssigned):
                    self._capture_session_id(event.session_id)
                elif isinstance(event, TextDelta):
                    state.accumulated_text += event.text
                    await self._broadcast(protocol.stream_event(prompt_id, event.text, False))
                elif isinstance(event, ToolStarted):
                    state.pending_tool_inputs[event.tool_id] = event.input
                    await self._broadcast(
                        protocol.tool_event(prompt_id, event.tool_name, "started", input=event.input)
                    )
                elif isinstance(event, ToolFinished):
                    await self._handle_tool_finished(prompt_id, event)
                elif isinstance(event, QueryResult):
                    await self._handle_result(prompt_id, event)
        except asyncio.CancelledError:
            logger.info("Query %s task cancelled", prompt_id)
            raise
        except Exception as exc:
            if token.cancelled:
                logger.info("Query %s ended after cancellation: %s", prompt_id, exc)
            else:
                logger.exception("Query %s failed", prompt_id)
                message = str(exc) or exc.__class__.__name__
                self._session.append(SystemEntry(kind=SystemKind.ERROR, content=message))
                self._store.save(self._session)
                await self._broadcast(protocol.error_event(message, prompt_id))
        finally:
            state.reset()
            logger.info("Query %s finished; executor idle", prompt_id)
            await self._broadcast(protocol.status_event("idle"))

    def _capture_session_id(self, session_id: str) -> None:
        if self._session.session_id or not session_id:
            return
        self._session.session_id = session_id
        logger.info("Captured session id %s", session_id)
        self._store.save(self._session)

    async def _handle_tool_finished(self, prompt_id: str, event: ToolFinished) -> None:
        tool_input = self._state.pending_tool_inputs.pop(event.tool_id, None)
        status = ToolStatus.FAILED if event.is_error else ToolStatus.COMPLETED
        await self._broadcast(
            protocol.tool_event(
                prompt_id, event.tool_name, status.value, input=tool_input, output=event.output,
            )
        )
        if self._state.stopped:
            return
        self._session.append(
            ToolEntry(tool_name=event.tool_name, status=status, input=tool_input, output=event.output)
        )

    async def _handle_result(self, prompt_id: str, event: QueryResult) -> None:
        state = self._state
        await self._broadcast(protocol.stream_event(prompt_id, "", True))
        if event.success:
            await self._broadcast(
                protocol.result_event(
                    prompt_id, True,
                    result=event.result,
                    cost_usd=event.cost_usd,
                    duration_ms=event.duration_ms,
                )
            )
        else:
            await self._broadcast(
                protocol.result_event(
                    prompt_id, False,
                    error=event.error_text,
                    cost_usd=event.cost_usd,
                    duration_ms=event.duration_ms,
                )
            )
        if state.stopped:
            logger.info("Query %s result arrived after stop; not recorded", prompt_id)
            return

        if event.success:
            content = state.accumulated_text or event.result or ""
            if content:
                self._session.append(AssistantEntry(content=content))
        else:
            self._session.append(SystemEntry(kind=SystemKind.ERROR, content=event.error_text))
        state.committed = True
        self._store.save(self._session)
        logger.info(
            "Query %s result success=%s cost=%s duration_ms=%s",
            prompt_id, event.success, event.cost_usd, event.duration_ms,
        )

        if event.success and self._on_success is not None:
            try:
                await self._on_success()
            except Exception:
                logger.exception("Post-query hook failed for %s", prompt_id)

    async def stop(self) -> bool:
        """Request the running query to stop.

        Returns False when there is nothing left to stop: no query is
        running, it was already stopped, or its result has been recorded.
        """
        state = self._state
        if state.cancel_token is None or state.stopped or state.committed:
            self._store.save(self._session)
            return False
        state.stopped = True
        if state.accumulated_text:
            self._session.append(AssistantEntry(content=state.accumulated_text))
        self._session.append(SystemEntry(kind=SystemKind.STOPPED, content=STOPPED_MESSAGE))
        logger.info("Stopping query %s", state.active_prompt_id)
        state.cancel_token.cancel()
        self._store.save(self._session)
        return True

    async def cancel_and_wait(self, timeout: float) -> None:
        """Cancel without recording anything and wait for the loop to drain.

        The task is cancelled outright if it has not finished within
        `timeout` seconds.
        """
        task = self._task
        if self._state.cancel_token is not None:
            self._state.stopped = True
            self._state.cancel_token.cancel()
        if task is None or task.done():
            return
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Query did not finish within %.1fs of cancel; cancelling task", timeout)
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        except Exception:
            logger.exception("Query task raised while draining")
