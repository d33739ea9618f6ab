from __future__ import annotations

import json
from pathlib import Path
from tempfile import TemporaryDirectory

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


def test_load_missing_file_returns_empty_session() -> None:
    with TemporaryDirectory() as tmpdir:
        store = SessionStore(Path(tmpdir) / "state.json")
        session = store.load()
        assert session.session_id is None
        assert session.history == []


def test_load_unparsable_file_returns_empty_session() -> None:
    with TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "state.json"
        path.write_text("{not json", encoding="utf-8")
        session = SessionStore(path).load()
        assert session.session_id is None
        assert session.history == []


def test_save_preserves_unrelated_keys_across_saves() -> None:
    with TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "state.json"
        path.write_text(json.dumps({"tunnelUrl": "x"}), encoding="utf-8")
        store = SessionStore(path)

        assert store.save(Session(session_id="first"))
        assert store.save(Session(session_id="second"))

        payload = json.loads(path.read_text(encoding="utf-8"))
        assert payload["tunnelUrl"] == "x"
        assert payload["sessionId"] == "second"


def test_round_trip_of_every_entry_kind() -> None:
    with TemporaryDirectory() as tmpdir:
        store = SessionStore(Path(tmpdir) / "state.json")
        session = Session(session_id="sess-1")
        session.append(UserEntry(content="add a button", timestamp=1, image_paths=["/tmp/a.png"]))
        session.append(ToolEntry(
            tool_name="Edit",
            status=ToolStatus.COMPLETED,
            input={"file_path": "app.js"},
            output="ok",
            timestamp=2,
        ))
        session.append(AssistantEntry(content="Done.", timestamp=3))
        session.append(SystemEntry(kind=SystemKind.STOPPED, content="Stopped by user", timestamp=4))
        store.save(session)

        loaded = store.load()
        assert loaded.session_id == "sess-1"
        assert loaded.history == session.history


def test_persisted_entries_use_role_tagged_camel_case() -> None:
    with TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "state.json"
        session = Session()
        session.append(ToolEntry(tool_name="Read", status=ToolStatus.FAILED, timestamp=5))
        SessionStore(path).save(session)

        entry = json.loads(path.read_text(encoding="utf-8"))["history"][0]
        assert entry == {
            "role": "tool",
            "toolName": "Read",
            "status": "failed",
            "input": None,
            "output": None,
            "timestamp": 5,
        }


def test_clear_removes_only_session_keys() -> None:
    with TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "state.json"
        path.write_text(
            json.dumps({"tunnelUrl": "x", "sessionId": "s", "history": []}),
            encoding="utf-8",
        )
        assert SessionStore(path).clear()
        assert json.loads(path.read_text(encoding="utf-8")) == {"tunnelUrl": "x"}


def test_save_does_not_clobber_corrupt_file() -> None:
    with TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "state.json"
        path.write_text("[1, 2", encoding="utf-8")
        assert SessionStore(path).save(Session(session_id="s")) is False
        assert path.read_text(encoding="utf-8") == "[1, 2"


def test_unknown_history_entries_are_skipped_on_load() -> None:
    with TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "state.json"
        path.write_text(
            json.dumps({
                "history": [
                    {"role": "user", "content": "hi", "timestamp": 1},
                    {"role": "narrator", "content": "??"},
                    "garbage",
                ]
            }),
            encoding="utf-8",
        )
        session = SessionStore(path).load()
        assert session.history == [UserEntry(content="hi", timestamp=1)]
