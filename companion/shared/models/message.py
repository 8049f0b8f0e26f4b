"""Message and content block models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union
import uuid


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _gen_id() -> str:
    return str(uuid.uuid4())[:8]


class MessageRole(Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass(frozen=True)
class TextBlock:
    text: str
    type: str = field(default="text", init=False)


@dataclass(frozen=True)
class ThinkingBlock:
    thinking: str
    type: str = field(default="thinking", init=False)


@dataclass(frozen=True)
class ToolUseBlock:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    type: str = field(default="tool_use", init=False)


@dataclass(frozen=True)
class ToolResultBlock:
    tool_use_id: str
    content: Any = ""
    is_error: bool = False
    type: str = field(default="tool_result", init=False)


ContentBlock = Union[TextBlock, ThinkingBlock, ToolUseBlock, ToolResultBlock]


def block_from_dict(data: dict[str, Any]) -> ContentBlock:
    """Build a content block from its wire dict.

    Raises ValueError for unknown block types or missing required keys.
    """
    if not isinstance(data, dict):
        raise ValueError(f"content block must be a mapping, got {type(data).__name__}")
    kind = data.get("type")
    if kind == "text":
        return TextBlock(text=str(data.get("text", "")))
    if kind == "thinking":
        return ThinkingBlock(thinking=str(data.get("thinking", "")))
    if kind == "tool_use":
        if not data.get("id") or not data.get("name"):
            raise ValueError("tool_use block needs id and name")
        raw_input = data.get("input") or {}
        if not isinstance(raw_input, dict):
            raise ValueError("tool_use input must be a mapping")
        return ToolUseBlock(id=str(data["id"]), name=str(data["name"]), input=dict(raw_input))
    if kind == "tool_result":
        if not data.get("tool_use_id"):
            raise ValueError("tool_result block needs tool_use_id")
        return ToolResultBlock(
            tool_use_id=str(data["tool_use_id"]),
            content=data.get("content", ""),
            is_error=bool(data.get("is_error", False)),
        )
    raise ValueError(f"unknown content block type: {kind!r}")


def block_to_dict(block: ContentBlock) -> dict[str, Any]:
    if isinstance(block, TextBlock):
        return {"type": "text", "text": block.text}
    if isinstance(block, ThinkingBlock):
        return {"type": "thinking", "thinking": block.thinking}
    if isinstance(block, ToolUseBlock):
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": dict(block.input)}
    return {
        "type": "tool_result",
        "tool_use_id": block.tool_use_id,
        "content": block.content,
        "is_error": block.is_error,
    }


@dataclass(frozen=True)
class Message:
    """A finalized transcript entry. Immutable once appended."""
    role: MessageRole
    content: str = ""
    content_blocks: tuple[ContentBlock, ...] = ()
    parent_tool_use_id: str | None = None
    id: str = field(default_factory=_gen_id)
    timestamp: datetime = field(default_factory=_utcnow)

    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.content_blocks if isinstance(b, ToolUseBlock)]

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "content_blocks": [block_to_dict(b) for b in self.content_blocks],
            "timestamp": self.timestamp.isoformat(),
        }
        if self.parent_tool_use_id:
            d["parent_tool_use_id"] = self.parent_tool_use_id
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        """Parse a wire/JSON message. Raises ValueError when malformed."""
        if not isinstance(data, dict):
            raise ValueError("message must be a mapping")
        try:
            role = MessageRole(data.get("role", ""))
        except ValueError:
            raise ValueError(f"unknown message role: {data.get('role')!r}") from None
        blocks = tuple(block_from_dict(b) for b in data.get("content_blocks") or ())
        content = data.get("content")
        if content is None:
            content = "".join(b.text for b in blocks if isinstance(b, TextBlock))
        kwargs: dict[str, Any] = {}
        if data.get("id"):
            kwargs["id"] = str(data["id"])
        ts = data.get("timestamp")
        if isinstance(ts, str) and ts:
            # fromisoformat() only accepts a trailing Z from Python 3.11 on
            if ts.endswith(("Z", "z")):
                ts = ts[:-1] + "+00:00"
            kwargs["timestamp"] = datetime.fromisoformat(ts)
        elif isinstance(ts, (int, float)):
            # Epoch milliseconds, as emitted by browser clients
            kwargs["timestamp"] = datetime.fromtimestamp(ts / 1000, tz=timezone.utc)
        return cls(
            role=role,
            content=str(content),
            content_blocks=blocks,
            parent_tool_use_id=data.get("parent_tool_use_id") or None,
            **kwargs,
        )
