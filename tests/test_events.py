from __future__ import annotations

import pytest

from companion.adapters.events import (
    ContentBlockEvent,
    MessageAppended,
    MessageStart,
    PermissionResolved,
    Relaunch,
    SessionInfo,
    StatusChange,
    TextDelta,
    dict_to_event,
    event_to_dict,
)
from companion.engine.errors import MalformedEventError
from companion.engine.models import PermissionDecision, RunStatus
from companion.shared.models.message import MessageRole, ThinkingBlock, ToolResultBlock


def test_decodes_stream_events() -> None:
    start = dict_to_event({
        "type": "message_start", "session_id": "s1", "parent_tool_use_id": "t1",
    })
    delta = dict_to_event({
        "type": "text_delta", "session_id": "s1", "text": "hi", "output_tokens": 4,
    })

    assert isinstance(start, MessageStart)
    assert start.message_id is None
    assert start.parent_tool_use_id == "t1"
    assert isinstance(delta, TextDelta)
    assert delta.output_tokens == 4


def test_decodes_blocks_and_status() -> None:
    thinking = dict_to_event({
        "type": "content_block", "session_id": "s1",
        "block": {"type": "thinking", "thinking": "plan"},
    })
    result = dict_to_event({
        "type": "content_block", "session_id": "s1",
        "block": {"type": "tool_result", "tool_use_id": "r1", "content": "ok", "is_error": True},
    })
    status = dict_to_event({"type": "status_change", "session_id": "s1", "status": "compacting"})

    assert isinstance(thinking, ContentBlockEvent)
    assert thinking.block == ThinkingBlock(thinking="plan")
    assert result.block == ToolResultBlock(tool_use_id="r1", content="ok", is_error=True)
    assert isinstance(status, StatusChange)
    assert status.status is RunStatus.COMPACTING


def test_decodes_full_message_with_epoch_timestamp() -> None:
    event = dict_to_event({
        "type": "message",
        "session_id": "s1",
        "message": {
            "id": "a1",
            "role": "assistant",
            "content_blocks": [{"type": "text", "text": "from blocks"}],
            "timestamp": 1_700_000_000_000,
            "parent_tool_use_id": "t9",
        },
    })

    assert isinstance(event, MessageAppended)
    message = event.message
    assert message.role == MessageRole.ASSISTANT
    assert message.content == "from blocks"
    assert message.parent_tool_use_id == "t9"
    assert message.timestamp.year == 2023


def test_session_info_optional_fields() -> None:
    event = dict_to_event({"type": "session_info", "session_id": "s1", "name": "Fix tests"})

    assert isinstance(event, SessionInfo)
    assert event.name == "Fix tests"
    assert event.context_used_percent is None


@pytest.mark.parametrize(
    "data",
    [
        "not a dict",
        {"session_id": "s1"},
        {"type": "message_start"},
        {"type": "message_start", "session_id": ""},
        {"type": "text_delta", "session_id": "s1", "text": 5},
        {"type": "content_block", "session_id": "s1", "block": {"type": "tool_use", "id": "x"}},
        {"type": "permission_request", "session_id": "s1"},
        {"type": "permission_request", "session_id": "s1", "request_id": "p", "payload": []},
        {"type": "permission_resolved", "session_id": "s1", "request_id": "p", "decision": "later"},
        {"type": "message", "session_id": "s1", "message": {"role": "robot"}},
        {"type": "session_info", "session_id": "s1", "context_used_percent": "lots"},
    ],
)
def test_malformed_events_raise(data) -> None:
    with pytest.raises(MalformedEventError):
        dict_to_event(data)


def test_outbound_serialization() -> None:
    resolved = PermissionResolved(
        session_id="s1", request_id="p1", decision=PermissionDecision.ALLOW,
    )

    assert event_to_dict(resolved) == {
        "type": "permission_resolved",
        "session_id": "s1",
        "request_id": "p1",
        "decision": "allow",
    }
    assert event_to_dict(Relaunch(session_id="s1")) == {"type": "relaunch", "session_id": "s1"}


def test_decodes_utc_z_suffixed_iso_timestamp() -> None:
    event = dict_to_event({
        "type": "message",
        "session_id": "s1",
        "message": {"id": "u1", "role": "user", "content": "hi", "timestamp": "2024-03-05T10:20:30.123Z"},
    })

    assert isinstance(event, MessageAppended)
    stamp = event.message.timestamp
    assert stamp.utcoffset() is not None
    assert stamp.utcoffset().total_seconds() == 0
    assert (stamp.year, stamp.hour, stamp.microsecond) == (2024, 10, 123000)
