"""Protocol event types exchanged with the agent host.

Each inbound wire dict is parsed into a typed dataclass for safe
consumption by the ingestion pipeline; outbound events are built here
and serialized back to plain dicts for the transport.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from companion.engine.errors import MalformedEventError
from companion.engine.models import PermissionDecision, RunStatus
from companion.shared.models.message import (
    ContentBlock,
    Message,
    block_from_dict,
    block_to_dict,
)


@dataclass
class ProtocolEvent:
    """Base event, scoped to one session."""
    type: str = ""
    session_id: str = ""


# ── Inbound ──


@dataclass
class MessageStart(ProtocolEvent):
    type: str = "message_start"
    message_id: str | None = None
    parent_tool_use_id: str | None = None


@dataclass
class TextDelta(ProtocolEvent):
    type: str = "text_delta"
    text: str = ""
    output_tokens: int = 0


@dataclass
class ContentBlockEvent(ProtocolEvent):
    type: str = "content_block"
    block: ContentBlock | None = None


@dataclass
class MessageEnd(ProtocolEvent):
    type: str = "message_end"
    message_id: str | None = None


@dataclass
class StatusChange(ProtocolEvent):
    type: str = "status_change"
    status: RunStatus = RunStatus.IDLE


@dataclass
class PermissionRequested(ProtocolEvent):
    type: str = "permission_request"
    request_id: str = ""
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class PermissionResolved(ProtocolEvent):
    """Inbound echo of a resolution, and the outbound resolution itself."""
    type: str = "permission_resolved"
    request_id: str = ""
    decision: PermissionDecision = PermissionDecision.DENY


@dataclass
class LivenessChange(ProtocolEvent):
    type: str = "liveness_change"
    live: bool = False


@dataclass
class MessageAppended(ProtocolEvent):
    """A complete message delivered in one piece (history replay, echoes)."""
    type: str = "message"
    message: Message | None = None


@dataclass
class SessionInfo(ProtocolEvent):
    type: str = "session_info"
    cwd: str | None = None
    model: str | None = None
    context_used_percent: float | None = None
    name: str | None = None


# ── Outbound ──


@dataclass
class UserMessage(ProtocolEvent):
    type: str = "user_message"
    content: str = ""


@dataclass
class Relaunch(ProtocolEvent):
    type: str = "relaunch"


INBOUND_EVENT_TYPES = frozenset({
    "message_start",
    "text_delta",
    "content_block",
    "message_end",
    "status_change",
    "permission_request",
    "permission_resolved",
    "liveness_change",
    "message",
    "session_info",
})


def _opt_str(data: dict[str, Any], key: str) -> str | None:
    value = data.get(key)
    return str(value) if value not in (None, "") else None


def _require_str(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise MalformedEventError(f"{data.get('type')} missing {key}", data)
    return value


def dict_to_event(data: dict[str, Any]) -> ProtocolEvent:
    """Convert a wire dict to a typed inbound event.

    Raises MalformedEventError for non-dicts, unknown types, a missing
    session_id, or fields of the wrong shape.
    """
    if not isinstance(data, dict):
        raise MalformedEventError("event is not a mapping", data)
    event_type = data.get("type")
    if event_type not in INBOUND_EVENT_TYPES:
        raise MalformedEventError(f"unknown event type {event_type!r}", data)
    session_id = _require_str(data, "session_id")

    try:
        if event_type == "message_start":
            return MessageStart(
                session_id=session_id,
                message_id=_opt_str(data, "message_id"),
                parent_tool_use_id=_opt_str(data, "parent_tool_use_id"),
            )
        if event_type == "text_delta":
            text = data.get("text", "")
            if not isinstance(text, str):
                raise MalformedEventError("text_delta text is not a string", data)
            return TextDelta(
                session_id=session_id,
                text=text,
                output_tokens=int(data.get("output_tokens") or 0),
            )
        if event_type == "content_block":
            return ContentBlockEvent(session_id=session_id, block=block_from_dict(data.get("block")))
        if event_type == "message_end":
            return MessageEnd(session_id=session_id, message_id=_opt_str(data, "message_id"))
        if event_type == "status_change":
            return StatusChange(session_id=session_id, status=RunStatus(data.get("status")))
        if event_type == "permission_request":
            payload = data.get("payload") or {}
            if not isinstance(payload, dict):
                raise MalformedEventError("permission payload is not a mapping", data)
            return PermissionRequested(
                session_id=session_id,
                request_id=_require_str(data, "request_id"),
                payload=dict(payload),
            )
        if event_type == "permission_resolved":
            return PermissionResolved(
                session_id=session_id,
                request_id=_require_str(data, "request_id"),
                decision=PermissionDecision(data.get("decision", "deny")),
            )
        if event_type == "liveness_change":
            live = data.get("live")
            if not isinstance(live, bool):
                raise MalformedEventError("liveness_change live is not a bool", data)
            return LivenessChange(session_id=session_id, live=live)
        if event_type == "message":
            return MessageAppended(session_id=session_id, message=Message.from_dict(data.get("message")))
        percent = data.get("context_used_percent")
        return SessionInfo(
            session_id=session_id,
            cwd=_opt_str(data, "cwd"),
            model=_opt_str(data, "model"),
            context_used_percent=float(percent) if percent is not None else None,
            name=_opt_str(data, "name"),
        )
    except MalformedEventError:
        raise
    except (TypeError, ValueError) as exc:
        raise MalformedEventError(f"{event_type}: {exc}", data) from exc


def event_to_dict(event: ProtocolEvent) -> dict[str, Any]:
    """Convert a typed event to a plain dict for JSON serialization."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if val is None:
            continue
        if isinstance(val, (RunStatus, PermissionDecision)):
            val = val.value
        elif isinstance(val, Message):
            val = val.to_dict()
        elif f == "block":
            val = block_to_dict(val)
        d[f] = val
    return d
