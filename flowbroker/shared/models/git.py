"""Git state models shared by the coordinator and the server."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ChangeStatus(Enum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"
    RENAMED = "renamed"
    UNTRACKED = "untracked"


@dataclass(frozen=True)
class GitChange:
    file: str
    status: ChangeStatus

    def to_dict(self) -> dict[str, str]:
        return {"file": self.file, "status": self.status.value}


@dataclass
class PRStatus:
    has_pr: bool = False
    pr_url: str | None = None


@dataclass
class GitSnapshot:
    """Point-in-time summary of the working tree."""

    branch_name: str
    changes: list[GitChange] = field(default_factory=list)
    has_pr: bool = False
    pr_url: str | None = None

    @property
    def changes_hash(self) -> str:
        return changes_hash(self.changes)

    @property
    def key(self) -> tuple[str, str]:
        """Identity the watcher compares between ticks."""
        return (self.branch_name, self.changes_hash)

    def to_event_fields(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "branchName": self.branch_name,
            "changes": [c.to_dict() for c in self.changes],
            "hasPR": self.has_pr,
        }
        if self.pr_url:
            data["prUrl"] = self.pr_url
        return data


def changes_hash(changes: list[GitChange]) -> str:
    return json.dumps([c.to_dict() for c in changes], separators=(",", ":"))


@dataclass
class StashOperation:
    """Outcome of an auto-stash attempt. Never persisted."""

    did_stash: bool = False
    error: str | None = None
    stash_ref: str | None = None


@dataclass
class PopResult:
    """Outcome of re-applying an auto-stash after a successful mutation."""

    popped: bool = False
    conflict: bool = False
    stash_ref: str | None = None
    message: str | None = None
