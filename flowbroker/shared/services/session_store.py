"""Session store — persist the session id and conversation history.

The state file is shared with other tooling (tunnel URLs and the like), so
every write is read-merge-write: only ``sessionId`` and ``history`` belong
to this module and every other top-level key is carried through untouched.
Read and write failures are logged and never raised.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from flowbroker.shared.models.conversation import Session, history_from_list

logger = logging.getLogger(__name__)

SESSION_ID_KEY = "sessionId"
HISTORY_KEY = "history"


def _atomic_write_text(path: Path, content: str) -> None:
    """Write via a sibling temp file and rename so readers never see a torn file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            try:
                tmp_path.unlink()
            except OSError:
                pass


class SessionStore:
    """Load, save and clear the session keys of one JSON state file."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> Session:
        """Return the persisted session, or an empty one if missing/unreadable."""
        session = Session()
        document = self._read_document()
        if document is None:
            return session

        session_id = document.get(SESSION_ID_KEY)
        if isinstance(session_id, str) and session_id:
            session.session_id = session_id
            logger.info("Loaded session: %s", session_id)
        session.history = history_from_list(document.get(HISTORY_KEY))
        if session.history:
            logger.info("Loaded %d history entries", len(session.history))
        return session

    def save(self, session: Session) -> bool:
        """Merge the session keys into the state file. Returns False on failure."""
        try:
            document = self._read_document(strict=True)
        except (OSError, ValueError) as exc:
            logger.error("Failed to read %s before save, not overwriting: %s", self._path, exc)
            return False
        if document is None:
            document = {}
        document[SESSION_ID_KEY] = session.session_id
        document[HISTORY_KEY] = session.history_dicts()
        try:
            _atomic_write_text(self._path, json.dumps(document, indent=2) + "\n")
        except (OSError, TypeError, ValueError) as exc:
            logger.error("Failed to save session to %s: %s", self._path, exc)
            return False
        logger.info("Saved session with %d history entries", len(session.history))
        return True

    def clear(self) -> bool:
        """Drop only the session keys, leaving the rest of the document intact."""
        try:
            document = self._read_document(strict=True)
        except (OSError, ValueError) as exc:
            logger.error("Failed to clear session from %s: %s", self._path, exc)
            return False
        if document is None:
            return True
        document.pop(SESSION_ID_KEY, None)
        document.pop(HISTORY_KEY, None)
        try:
            _atomic_write_text(self._path, json.dumps(document, indent=2) + "\n")
        except OSError as exc:
            logger.error("Failed to clear session from %s: %s", self._path, exc)
            return False
        return True

    def _read_document(self, *, strict: bool = False) -> dict[str, Any] | None:
        """Parse the state file.

        Lenient mode (used by load) swallows every failure and returns None.
        Strict mode (used by writers) raises on unreadable or non-object
        content so a corrupt file shared with other tools is never clobbered.
        """
        if not self._path.exists():
            return None
        try:
            document = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            if strict:
                raise
            logger.error("Failed to load session from %s: %s", self._path, exc)
            return None
        if not isinstance(document, dict):
            if strict:
                raise ValueError(f"{self._path} does not contain a JSON object")
            logger.error("Ignoring %s: top level is not a JSON object", self._path)
            return None
        return document
