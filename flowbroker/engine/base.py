"""Abstract base for query engines.

An engine runs one agent query against the working tree and yields
EngineEvent objects until a terminal QueryResult (or an exception).
"""
from __future__ import annotations

import abc
from typing import AsyncIterator

from .cancellation import CancellationToken
from .events import EngineEvent


class QueryEngine(abc.ABC):
    """Abstract engine interface."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short engine name (e.g. 'claude')."""

    @abc.abstractmethod
    def run(
        self,
        prompt: str,
        *,
        cwd: str,
        session_id: str | None,
        cancel_token: CancellationToken,
    ) -> AsyncIterator[EngineEvent]:
        """Run a query, resuming `session_id` when given.

        Cancellation is cooperative: once `cancel_token` fires the engine
        should wind down and end the stream on its own.
        """

    def is_available(self) -> bool:
        return True
