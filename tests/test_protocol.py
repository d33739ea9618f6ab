from __future__ import annotations

import pytest

from flowbroker.errors import InvalidMessageError
from flowbroker.server import protocol
from flowbroker.shared.models.git import ChangeStatus, GitChange, GitSnapshot


def test_decode_prompt_with_id_and_images() -> None:
    message = protocol.decode_frame(
        '{"type": "prompt", "content": "add a button", "id": "p-7", "imagePaths": ["/tmp/a.png"]}'
    )
    assert message == protocol.PromptMessage(content="add a button", id="p-7", image_paths=["/tmp/a.png"])


def test_prompt_without_id_gets_generated_one() -> None:
    first = protocol.parse_message({"type": "prompt", "content": "hi"})
    second = protocol.parse_message({"type": "prompt", "content": "hi"})
    assert first.id and second.id and first.id != second.id
    assert first.image_paths == []


@pytest.mark.parametrize(
    "payload, fragment",
    [
        ({"type": "prompt"}, "'content'"),
        ({"type": "prompt", "content": "x", "imagePaths": "a.png"}, "imagePaths"),
        ({"type": "switch_branch"}, "'branchName'"),
        ({"type": "create_branch", "branchName": ""}, "'branchName'"),
        (["prompt"], "JSON object"),
    ],
)
def test_malformed_messages_are_rejected(payload, fragment: str) -> None:
    with pytest.raises(InvalidMessageError) as excinfo:
        protocol.parse_message(payload)
    assert fragment in excinfo.value.reason


def test_unknown_type_lists_valid_types() -> None:
    with pytest.raises(InvalidMessageError) as excinfo:
        protocol.parse_message({"type": "reboot"})
    reason = excinfo.value.reason
    assert reason.startswith("Unknown message type: reboot")
    for tag in protocol.VALID_MESSAGE_TYPES:
        assert tag in reason
    assert excinfo.value.message_type == "reboot"


def test_invalid_json_frame() -> None:
    with pytest.raises(InvalidMessageError) as excinfo:
        protocol.decode_frame("{nope")
    assert excinfo.value.reason == "Invalid JSON message"


def test_tag_only_messages() -> None:
    assert isinstance(protocol.parse_message({"type": "new_session"}), protocol.NewSessionMessage)
    assert isinstance(protocol.parse_message({"type": "stop"}), protocol.StopMessage)
    assert isinstance(protocol.parse_message({"type": "discard_changes"}), protocol.DiscardChangesMessage)
    assert isinstance(protocol.parse_message({"type": "list_branches"}), protocol.ListBranchesMessage)
    assert protocol.parse_message({"type": "switch_branch", "branchName": "dev"}).branch_name == "dev"


def test_outbound_events_omit_unset_fields_and_carry_timestamp() -> None:
    event = protocol.result_event("p1", True, result="ok")
    assert set(event) == {"type", "promptId", "success", "result", "timestamp"}
    assert isinstance(event["timestamp"], int)

    error = protocol.error_event("boom")
    assert "promptId" not in error

    stream = protocol.stream_event("p1", "", True)
    assert stream["chunk"] == "" and stream["done"] is True


def test_git_status_event_shape() -> None:
    snap = GitSnapshot(
        branch_name="main",
        changes=[GitChange("app.js", ChangeStatus.MODIFIED)],
        has_pr=True,
        pr_url="https://github.com/acme/app/pull/3",
    )
    event = protocol.git_status_event(snap)
    assert event["type"] == "git_status"
    assert event["changes"] == [{"file": "app.js", "status": "modified"}]
    assert event["hasPR"] is True
    assert event["prUrl"].endswith("/pull/3")

    bare = protocol.git_status_event(GitSnapshot(branch_name="main"))
    assert bare["hasPR"] is False
    assert "prUrl" not in bare
