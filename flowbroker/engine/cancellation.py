"""Cooperative cancellation token passed into long-running engine calls."""
from __future__ import annotations

import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)


class CancellationToken:
    """Request-only cancellation.

    ``cancel()`` flips the flag and runs registered callbacks once. The
    engine decides how to wind down; callers keep draining its stream.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register a callback; runs immediately if already cancelled.

        Returns a function that unregisters the callback.
        """
        if self._cancelled:
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def _remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _remove

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Cancellation callback failed")
