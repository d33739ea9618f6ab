"""Git command wrappers for the working tree the broker serves.

Read-only queries (branch, changes, PR status, recent branches) degrade to
empty values when git is unavailable. Mutations raise GitCommandError so
the coordinator can run its recovery steps.

Broker-owned paths (the state file and the image directory) are excluded
from change listings, stashes and cleans so that branch operations never
sweep up the broker's own bookkeeping.
"""
from __future__ import annotations

import asyncio
import logging
import os
import re
from pathlib import Path

from flowbroker.errors import GitCommandError
from flowbroker.shared.models.git import (
    ChangeStatus,
    GitChange,
    GitSnapshot,
    PopResult,
    PRStatus,
    StashOperation,
)

logger = logging.getLogger(__name__)

AUTOSTASH_PREFIX = "flowbroker-autostash"
DEFAULT_TIMEOUT_SECONDS = 30.0

_INVALID_BRANCH_CHARS = re.compile(r"[\s~^:?*\[\\\x00-\x1f\x7f]")


def is_valid_branch_name(name: str) -> bool:
    """Pure check of git's ref-name rules for a branch name."""
    if not isinstance(name, str) or not name or len(name) > 250:
        return False
    if name == "@" or name.startswith("-") or name.startswith("/"):
        return False
    if name.endswith("/") or name.endswith(".") or name.endswith(".lock"):
        return False
    if ".." in name or "@{" in name or "//" in name:
        return False
    if _INVALID_BRANCH_CHARS.search(name):
        return False
    for component in name.split("/"):
        if component.startswith(".") or component.endswith(".lock"):
            return False
    return True


def _status_from_code(code: str) -> ChangeStatus:
    if code == "??":
        return ChangeStatus.UNTRACKED
    if "R" in code:
        return ChangeStatus.RENAMED
    if "A" in code:
        return ChangeStatus.ADDED
    if "D" in code:
        return ChangeStatus.DELETED
    return ChangeStatus.MODIFIED


def parse_porcelain_z(output: str) -> list[GitChange]:
    """Parse ``git status --porcelain -z`` output.

    Rename/copy records carry a second NUL-separated field holding the
    original path; the change is reported under the new path.
    """
    changes: list[GitChange] = []
    fields = output.split("\0")
    i = 0
    while i < len(fields):
        record = fields[i]
        i += 1
        if len(record) < 4:
            continue
        code, path = record[:2], record[3:]
        if code[0] in "RC" or code[1] in "RC":
            i += 1  # skip the original path
        changes.append(GitChange(file=path, status=_status_from_code(code)))
    return changes


class GitOperations:
    """Asynchronous git/gh invocations rooted at one working directory."""

    def __init__(
        self,
        cwd: Path,
        *,
        excluded_paths: list[Path] | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._cwd = Path(cwd).resolve()
        self._excluded = [Path(p).resolve() for p in (excluded_paths or [])]
        self._timeout = timeout
        self._git_root: Path | None = None

    @property
    def cwd(self) -> Path:
        return self._cwd

    async def _run(
        self,
        *args: str,
        program: str = "git",
        check: bool = True,
    ) -> tuple[int, str, str]:
        cmd = [program, *args]
        env = dict(os.environ, GIT_TERMINAL_PROMPT="0", LC_ALL="C")
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(self._cwd),
            env=env,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise GitCommandError(cmd, -1, f"timed out after {self._timeout:.0f}s")
        out = stdout.decode("utf-8", errors="replace")
        err = stderr.decode("utf-8", errors="replace")
        if check and proc.returncode != 0:
            raise GitCommandError(cmd, proc.returncode, err or out)
        return proc.returncode, out, err

    def _exclude_pathspecs(self) -> list[str]:
        specs = []
        for path in self._excluded:
            try:
                rel = path.relative_to(self._cwd)
            except ValueError:
                continue
            specs.append(f":(exclude){rel.as_posix()}")
        return specs

    def _is_excluded(self, root: Path, rel_file: str) -> bool:
        candidate = (root / rel_file.rstrip("/")).resolve()
        for path in self._excluded:
            if candidate == path or path in candidate.parents:
                return True
        return False

    # ── Queries ──

    async def get_git_root(self) -> Path:
        if self._git_root is None:
            try:
                _, out, _ = await self._run("rev-parse", "--show-toplevel")
                self._git_root = Path(out.strip()).resolve()
            except (GitCommandError, OSError):
                return self._cwd
        return self._git_root

    async def get_branch_name(self) -> str:
        try:
            _, out, _ = await self._run("rev-parse", "--abbrev-ref", "HEAD")
        except (GitCommandError, OSError):
            return ""
        return out.strip()

    async def get_changes(self) -> list[GitChange]:
        try:
            _, out, _ = await self._run("status", "--porcelain", "-z", "--untracked-files=all")
        except (GitCommandError, OSError):
            return []
        root = await self.get_git_root()
        return [c for c in parse_porcelain_z(out) if not self._is_excluded(root, c.file)]

    async def get_pr_status(self) -> PRStatus:
        try:
            code, out, _ = await self._run(
                "pr", "view", "--json", "url", "--jq", ".url",
                program="gh", check=False,
            )
        except (GitCommandError, OSError):
            return PRStatus()
        url = out.strip()
        if code != 0 or not url:
            return PRStatus()
        return PRStatus(has_pr=True, pr_url=url)

    async def get_recent_branches(self, limit: int = 10) -> list[str]:
        try:
            _, out, _ = await self._run(
                "for-each-ref",
                "--sort=-committerdate",
                f"--count={max(1, limit)}",
                "--format=%(refname:short)",
                "refs/heads/",
            )
        except (GitCommandError, OSError):
            return []
        return [line.strip() for line in out.splitlines() if line.strip()]

    async def snapshot(self, *, include_pr: bool = True) -> GitSnapshot:
        snap = GitSnapshot(
            branch_name=await self.get_branch_name(),
            changes=await self.get_changes(),
        )
        if include_pr:
            pr = await self.get_pr_status()
            snap.has_pr = pr.has_pr
            snap.pr_url = pr.pr_url
        return snap

    async def branch_exists(self, name: str) -> bool:
        try:
            code, _, _ = await self._run(
                "rev-parse", "--verify", "--quiet", f"refs/heads/{name}", check=False,
            )
        except OSError:
            return False
        return code == 0

    # ── Stash primitives ──

    async def _stash_head(self) -> str | None:
        code, out, _ = await self._run("rev-parse", "-q", "--verify", "refs/stash", check=False)
        return out.strip() if code == 0 and out.strip() else None

    async def _stash_selector(self, stash_sha: str) -> str | None:
        """Map a stash commit to its current stash@{n} selector."""
        _, out, _ = await self._run("stash", "list", "--format=%H", check=False)
        for index, line in enumerate(out.splitlines()):
            if line.strip() == stash_sha:
                return f"stash@{{{index}}}"
        return None

    async def auto_stash(self, branch: str) -> StashOperation:
        """Stash all uncommitted work (untracked included) before a branch mutation."""
        if not await self.get_changes():
            return StashOperation(did_stash=False)
        try:
            before = await self._stash_head()
            await self._run(
                "stash", "push", "--include-untracked",
                "-m", f"{AUTOSTASH_PREFIX}:{branch}",
                "--", ":/", *self._exclude_pathspecs(),
            )
            after = await self._stash_head()
        except (GitCommandError, OSError) as exc:
            return StashOperation(did_stash=False, error=str(exc))
        if after is None or after == before:
            # git reported success but nothing was stashed; changes that
            # remain would be carried or clobbered by the checkout.
            if await self.get_changes():
                return StashOperation(
                    did_stash=False,
                    error="stash reported success but uncommitted changes remain",
                )
            return StashOperation(did_stash=False)
        return StashOperation(did_stash=True, stash_ref=after)

    async def auto_pop_stash(self, branch: str, stash: StashOperation) -> PopResult:
        """Re-apply an auto-stash after a successful mutation.

        On conflict the stash entry is kept and the working tree is reset
        to a clean state, so the changes stay recoverable from the stash.
        """
        if not stash.did_stash or not stash.stash_ref:
            return PopResult()
        selector = await self._stash_selector(stash.stash_ref)
        if selector is None:
            return PopResult(conflict=True, stash_ref=stash.stash_ref, message="auto-stash entry not found")
        try:
            await self._run("stash", "pop", selector)
            return PopResult(popped=True, stash_ref=stash.stash_ref)
        except GitCommandError as exc:
            logger.warning("Auto-stash pop on %s failed: %s", branch, exc)
            error = exc.stderr

        await self._reset_after_conflict()
        selector = await self._stash_selector(stash.stash_ref)
        return PopResult(
            conflict=True,
            stash_ref=selector or stash.stash_ref,
            message=error or "stash pop failed",
        )

    async def _reset_after_conflict(self) -> None:
        try:
            await self._run("reset", "--hard", "HEAD")
            await self._run("clean", "-fd", "--", ":/", *self._exclude_pathspecs())
        except GitCommandError as exc:
            logger.error("Failed to reset working tree after stash conflict: %s", exc)

    async def restore_stash_after_failure(self, stash: StashOperation) -> bool:
        """Pop the auto-stash back onto the branch it was taken from."""
        if not stash.did_stash or not stash.stash_ref:
            return True
        selector = await self._stash_selector(stash.stash_ref)
        if selector is None:
            return False
        try:
            await self._run("stash", "pop", selector)
        except GitCommandError as exc:
            logger.error("Failed to restore auto-stash %s: %s", selector, exc)
            return False
        return True

    # ── Mutations ──

    async def checkout_branch(self, name: str) -> None:
        await self._run("checkout", name)

    async def create_branch_from_base(self, name: str, base: str = "main") -> str:
        """Create and check out `name` from `base`, falling back to master/HEAD."""
        start_point = "HEAD"
        for candidate in (base, "master"):
            if candidate and await self.branch_exists(candidate):
                start_point = candidate
                break
        else:
            logger.warning("Base branch %s not found; creating %s from HEAD", base, name)
        await self._run("checkout", "-b", name, start_point)
        return start_point

    async def discard_all_changes(self) -> None:
        """Reset tracked files and delete untracked files and directories."""
        await self._run("reset", "--hard", "HEAD")
        await self._run("clean", "-fd", "--", ":/", *self._exclude_pathspecs())
