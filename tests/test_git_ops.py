from __future__ import annotations

from pathlib import Path

import pytest

from flowbroker.shared.models.git import ChangeStatus, GitChange, StashOperation
from flowbroker.shared.services.git_ops import (
    GitOperations,
    is_valid_branch_name,
    parse_porcelain_z,
)
from flowbroker.shared.services.reload import retrigger_reload

from conftest import run_git


@pytest.mark.parametrize(
    "name",
    ["main", "feature/login", "fix-123", "user.name/topic", "release_2"],
)
def test_valid_branch_names(name: str) -> None:
    assert is_valid_branch_name(name)


@pytest.mark.parametrize(
    "name",
    [
        "", "has space", "-leading", "trailing/", "ends.", "topic.lock",
        "a..b", "at@{brace", "tilde~1", "caret^", "colon:x", "q?", "star*",
        "bracket[", "back\\slash", "double//slash", ".hidden", "dir/.hidden", "@",
    ],
)
def test_invalid_branch_names(name: str) -> None:
    assert not is_valid_branch_name(name)


def test_parse_porcelain_z_maps_codes_and_reports_rename_target() -> None:
    output = " M src/app.js\0?? new file.txt\0A  added.py\0 D gone.md\0R  renamed.ts\0old.ts\0MM both.js\0"
    assert parse_porcelain_z(output) == [
        GitChange("src/app.js", ChangeStatus.MODIFIED),
        GitChange("new file.txt", ChangeStatus.UNTRACKED),
        GitChange("added.py", ChangeStatus.ADDED),
        GitChange("gone.md", ChangeStatus.DELETED),
        GitChange("renamed.ts", ChangeStatus.RENAMED),
        GitChange("both.js", ChangeStatus.MODIFIED),
    ]


@pytest.mark.asyncio
async def test_queries_against_real_repository(git_repo: Path) -> None:
    git = GitOperations(git_repo)
    assert await git.get_branch_name() == "main"
    assert await git.get_changes() == []

    (git_repo / "app.js").write_text("export const version = 2;\n", encoding="utf-8")
    (git_repo / "notes").mkdir()
    (git_repo / "notes" / "todo.txt").write_text("x\n", encoding="utf-8")
    (git_repo / "README.md").unlink()

    changes = {c.file: c.status for c in await git.get_changes()}
    assert changes == {
        "app.js": ChangeStatus.MODIFIED,
        "notes/todo.txt": ChangeStatus.UNTRACKED,
        "README.md": ChangeStatus.DELETED,
    }
    assert await git.get_git_root() == git_repo.resolve()


@pytest.mark.asyncio
async def test_excluded_paths_are_hidden_from_changes(git_repo: Path) -> None:
    state = git_repo / ".flowbroker.local.json"
    state.write_text("{}", encoding="utf-8")
    (git_repo / ".flowbroker-images").mkdir()
    (git_repo / ".flowbroker-images" / "a.png").write_bytes(b"x")

    git = GitOperations(git_repo, excluded_paths=[state, git_repo / ".flowbroker-images"])
    assert await git.get_changes() == []


@pytest.mark.asyncio
async def test_recent_branches_and_branch_exists(git_repo: Path) -> None:
    run_git(git_repo, "branch", "feature/a")
    git = GitOperations(git_repo)
    branches = await git.get_recent_branches(limit=10)
    assert set(branches) == {"main", "feature/a"}
    assert await git.get_recent_branches(limit=1) == branches[:1]
    assert await git.branch_exists("feature/a")
    assert not await git.branch_exists("nope")


@pytest.mark.asyncio
async def test_queries_degrade_outside_a_repository(tmp_path: Path) -> None:
    git = GitOperations(tmp_path)
    assert await git.get_branch_name() == ""
    assert await git.get_changes() == []
    assert await git.get_recent_branches() == []
    pr = await git.get_pr_status()
    assert pr.has_pr is False


@pytest.mark.asyncio
async def test_auto_stash_noop_on_clean_tree(git_repo: Path) -> None:
    result = await GitOperations(git_repo).auto_stash("main")
    assert result == StashOperation(did_stash=False)


@pytest.mark.asyncio
async def test_auto_stash_and_restore_round_trip(git_repo: Path) -> None:
    git = GitOperations(git_repo)
    (git_repo / "app.js").write_text("changed\n", encoding="utf-8")
    (git_repo / "untracked.txt").write_text("u\n", encoding="utf-8")

    stash = await git.auto_stash("main")
    assert stash.did_stash and stash.error is None
    assert await git.get_changes() == []

    assert await git.restore_stash_after_failure(stash)
    assert (git_repo / "app.js").read_text(encoding="utf-8") == "changed\n"
    assert (git_repo / "untracked.txt").exists()
    assert run_git(git_repo, "stash", "list").strip() == ""


@pytest.mark.asyncio
async def test_create_branch_from_base_falls_back_to_head(git_repo: Path) -> None:
    git = GitOperations(git_repo)
    start = await git.create_branch_from_base("topic", base="does-not-exist")
    assert start == "HEAD"
    assert await git.get_branch_name() == "topic"


@pytest.mark.asyncio
async def test_discard_all_changes_keeps_excluded_files(git_repo: Path) -> None:
    state = git_repo / ".flowbroker.local.json"
    state.write_text('{"tunnelUrl": "x"}', encoding="utf-8")
    git = GitOperations(git_repo, excluded_paths=[state])
    (git_repo / "app.js").write_text("broken\n", encoding="utf-8")
    (git_repo / "scratch").mkdir()
    (git_repo / "scratch" / "tmp.txt").write_text("t\n", encoding="utf-8")

    await git.discard_all_changes()

    assert await git.get_changes() == []
    assert (git_repo / "app.js").read_text(encoding="utf-8") == "export const version = 1;\n"
    assert not (git_repo / "scratch").exists()
    assert state.exists()


@pytest.mark.asyncio
async def test_retrigger_reload_rewrites_changed_files(git_repo: Path) -> None:
    git = GitOperations(git_repo)
    (git_repo / "app.js").write_text("export const version = 3;\n", encoding="utf-8")
    (git_repo / "new.js").write_text("new\n", encoding="utf-8")
    (git_repo / "README.md").unlink()

    touched = await retrigger_reload(git, git_repo)

    assert touched == 2
    assert (git_repo / "app.js").read_text(encoding="utf-8") == "export const version = 3;\n"
    assert not (git_repo / "README.md").exists()
