"""Feed entry models — the derived, display-oriented transcript tree.

Entries are frozen and compare by value, so two reconstructions of the
same transcript are ``==``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

from companion.shared.models.message import Message, MessageRole

PREVIEW_CHARS = 60


@dataclass(frozen=True)
class ToolItem:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class MessageEntry:
    message: Message
    kind: str = field(default="message", init=False)


@dataclass(frozen=True)
class ToolGroup:
    """A run of consecutive tool-only messages sharing one tool name."""
    tool_name: str
    items: tuple[ToolItem, ...]
    first_id: str
    kind: str = field(default="tool_group", init=False)

    def __len__(self) -> int:
        return len(self.items)


@dataclass(frozen=True)
class SubagentGroup:
    """Messages of a nested agent, placed under the Task call that spawned it."""
    task_tool_use_id: str
    description: str
    agent_type: str
    children: tuple[FeedEntry, ...]
    kind: str = field(default="subagent", init=False)

    def last_preview(self) -> str:
        """Compact one-line summary of the latest child activity."""
        if not self.children:
            return ""
        last = self.children[-1]
        if isinstance(last, ToolGroup):
            count = len(last.items)
            return last.tool_name + (f" ×{count}" if count > 1 else "")
        if isinstance(last, MessageEntry) and last.message.role == MessageRole.ASSISTANT:
            text = last.message.content.strip()
            if text:
                return text if len(text) <= PREVIEW_CHARS else text[:PREVIEW_CHARS] + "..."
            tool_uses = last.message.tool_uses()
            if tool_uses:
                return tool_uses[0].name
        return ""


FeedEntry = Union[MessageEntry, ToolGroup, SubagentGroup]
