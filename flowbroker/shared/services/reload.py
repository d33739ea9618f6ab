"""Live-reload retrigger.

Bundlers watching the tree only notice files whose contents are written,
so after an agent run every changed (non-deleted) file is rewritten with
its own bytes. Per-file failures are logged and skipped.
"""
from __future__ import annotations

import logging
from pathlib import Path

from flowbroker.shared.models.git import ChangeStatus
from flowbroker.shared.services.git_ops import GitOperations

logger = logging.getLogger(__name__)


async def retrigger_reload(git: GitOperations, project_root: Path) -> int:
    """Re-touch uncommitted files. Returns how many were rewritten."""
    changes = await git.get_changes()
    if not changes:
        logger.info("HMR retrigger: no uncommitted files to re-touch")
        return 0

    git_root = await git.get_git_root()
    project_root = Path(project_root).resolve()
    logger.info("HMR retrigger: re-touching %d uncommitted files (root: %s)", len(changes), git_root)

    touched = 0
    for change in changes:
        if change.status is ChangeStatus.DELETED:
            logger.debug("HMR retrigger: skipped %s (deleted)", change.file)
            continue
        path = git_root / change.file
        if not path.exists() and project_root != git_root:
            path = project_root / change.file
        if not path.is_file():
            logger.info("HMR retrigger: skipped %s (not found at %s)", change.file, path)
            continue
        try:
            path.write_bytes(path.read_bytes())
            touched += 1
        except OSError as exc:
            logger.error("HMR retrigger: failed to re-touch %s: %s", change.file, exc)
    logger.info("HMR retrigger: done, re-touched %d files", touched)
    return touched
