"""Git branch coordinator.

Wraps branch switch/create in the stash-protect protocol:

1. auto-stash uncommitted work (abort if the stash fails)
2. run the mutation
3. on failure, pop the stash back onto the original branch
4. on success, pop the stash onto the new branch; a conflict keeps the
   stash, resets the tree and is reported as a warning plus a
   ``stash_conflict`` broadcast

Mutations hold one lock. The watcher tick skips while it is held, and
every successful mutation refreshes the watcher baseline so the same
change is not broadcast twice.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from flowbroker.errors import GitCommandError
from flowbroker.shared.models.git import GitSnapshot
from flowbroker.shared.services.git_ops import GitOperations, is_valid_branch_name

from . import protocol

logger = logging.getLogger(__name__)

Broadcast = Callable[[dict[str, Any]], Awaitable[None]]
EventBuilder = Callable[..., dict[str, Any]]


def _describe(exc: Exception) -> str:
    if isinstance(exc, GitCommandError) and exc.stderr:
        return exc.stderr
    return str(exc)


class GitCoordinator:
    """Branch queries and stash-protected branch mutations."""

    def __init__(
        self,
        git: GitOperations,
        broadcast: Broadcast,
        *,
        base_branch: str = "main",
        recent_branch_limit: int = 10,
    ) -> None:
        self._git = git
        self._broadcast = broadcast
        self._base_branch = base_branch
        self._recent_branch_limit = recent_branch_limit
        self._lock = asyncio.Lock()
        self._last_key: tuple[str, str] | None = None

    @property
    def git(self) -> GitOperations:
        return self._git

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @property
    def last_key(self) -> tuple[str, str] | None:
        return self._last_key

    # ── Status ──

    async def snapshot(self) -> GitSnapshot:
        return await self._git.snapshot(include_pr=True)

    async def status_event(self) -> dict[str, Any]:
        """Current git_status event for a single client; does not move the baseline."""
        return protocol.git_status_event(await self.snapshot())

    async def broadcast_status(self) -> GitSnapshot:
        snap = await self.snapshot()
        self._last_key = snap.key
        await self._broadcast(protocol.git_status_event(snap))
        return snap

    async def poll(self) -> bool:
        """One watcher tick. Returns True if a git_status was broadcast."""
        if self.busy:
            logger.debug("Git watcher: mutation in progress, skipping tick")
            return False
        snap = await self._git.snapshot(include_pr=False)
        if snap.key == self._last_key:
            return False
        if self.busy:
            return False
        pr = await self._git.get_pr_status()
        snap.has_pr = pr.has_pr
        snap.pr_url = pr.pr_url
        previous, self._last_key = self._last_key, snap.key
        if previous is not None:
            logger.info(
                "Git state changed: branch=%s changes=%d", snap.branch_name, len(snap.changes),
            )
        await self._broadcast(protocol.git_status_event(snap))
        return True

    async def list_branches(self) -> dict[str, Any]:
        branches = await self._git.get_recent_branches(self._recent_branch_limit)
        current = await self._git.get_branch_name()
        return protocol.branches_list_event(branches, current)

    # ── Mutations ──

    async def switch_branch(self, target: str) -> dict[str, Any]:
        if not is_valid_branch_name(target):
            return protocol.branch_switched_event(target, False, error=f"Invalid branch name: {target}")
        async with self._lock:
            current = await self._git.get_branch_name()
            if current == target:
                logger.info("Already on branch %s", target)
                await self.broadcast_status()
                return protocol.branch_switched_event(target, True)
            return await self._stash_protected(
                target,
                current,
                lambda: self._git.checkout_branch(target),
                protocol.branch_switched_event,
            )

    async def create_branch(self, name: str) -> dict[str, Any]:
        if not is_valid_branch_name(name):
            return protocol.branch_created_event(name, False, error=f"Invalid branch name: {name}")
        async with self._lock:
            if await self._git.branch_exists(name):
                return protocol.branch_created_event(name, False, error=f"Branch {name} already exists")
            current = await self._git.get_branch_name()
            return await self._stash_protected(
                name,
                current,
                lambda: self._git.create_branch_from_base(name, self._base_branch),
                protocol.branch_created_event,
            )

    async def _stash_protected(
        self,
        target: str,
        current: str,
        mutation: Callable[[], Awaitable[Any]],
        make_event: EventBuilder,
    ) -> dict[str, Any]:
        stash = await self._git.auto_stash(current)
        if stash.error:
            logger.error("Auto-stash on %s failed, aborting: %s", current, stash.error)
            return make_event(target, False, error=f"Could not stash uncommitted changes: {stash.error}")
        if stash.did_stash:
            logger.info("Auto-stashed changes on %s (%s)", current, stash.stash_ref)

        try:
            await mutation()
        except (GitCommandError, OSError) as exc:
            error = _describe(exc)
            logger.error("Branch operation %s -> %s failed: %s", current, target, error)
            if stash.did_stash and not await self._git.restore_stash_after_failure(stash):
                error = f"{error} (uncommitted changes are kept in stash {stash.stash_ref})"
            return make_event(target, False, error=error)

        warning = None
        pop = await self._git.auto_pop_stash(target, stash)
        if pop.conflict:
            warning = (
                f"Uncommitted changes from {current} conflict with {target}; "
                f"they were kept in {pop.stash_ref}. Run 'git stash pop' to resolve."
            )
            logger.warning("Stash conflict on %s: %s", target, pop.message)
            await self._broadcast(protocol.stash_conflict_event(target, pop.stash_ref, warning))

        await self.broadcast_status()
        logger.info("Branch operation %s -> %s succeeded", current, target)
        return make_event(target, True, warning=warning)

    async def discard_changes(self) -> dict[str, Any] | None:
        """Discard all uncommitted work. Returns an error event on failure."""
        async with self._lock:
            try:
                await self._git.discard_all_changes()
            except (GitCommandError, OSError) as exc:
                logger.error("Discard changes failed: %s", exc)
                return protocol.error_event(f"Failed to discard changes: {_describe(exc)}")
            logger.info("Discarded all uncommitted changes")
            await self.broadcast_status()
        return None
