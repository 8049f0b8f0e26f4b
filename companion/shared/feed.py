"""Feed reconstruction — flat transcript to hierarchical feed.

Pure functions over an immutable snapshot of messages. Nothing here
reads or mutates session state, so callers may run ``reconstruct`` from
any thread, as often as they like.

Three passes:

1. Task discovery — find every ``tool_use`` of the sub-agent spawning
   tool and remember its description / agent type.
2. Partition — messages whose ``parent_tool_use_id`` names a discovered
   Task go into that Task's children bucket; the rest are top level.
3. Build — group consecutive tool-only messages, and after each entry
   that holds Task ids, insert a sub-agent entry built recursively from
   the matching bucket.
"""
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from companion.shared.models.feed import (
    FeedEntry,
    MessageEntry,
    SubagentGroup,
    ToolGroup,
    ToolItem,
)
from companion.shared.models.message import (
    Message,
    MessageRole,
    TextBlock,
    ThinkingBlock,
    ToolUseBlock,
)

TASK_TOOL_NAME = "Task"
DEFAULT_SUBAGENT_DESCRIPTION = "Subagent"


@dataclass(frozen=True)
class _TaskInfo:
    description: str
    agent_type: str


def tool_only_name(msg: Message) -> str | None:
    """Return the shared tool name if *msg* is tool-only, else None.

    Tool-only means an assistant message whose blocks are all tool
    invocations of one name. Whitespace-only text blocks and tool
    results do not count against it; thinking or real text does.
    """
    if msg.role != MessageRole.ASSISTANT or not msg.content_blocks:
        return None
    name: str | None = None
    for block in msg.content_blocks:
        if isinstance(block, TextBlock):
            if block.text.strip():
                return None
        elif isinstance(block, ThinkingBlock):
            return None
        elif isinstance(block, ToolUseBlock):
            if name is None:
                name = block.name
            elif name != block.name:
                return None
    return name


def _tool_items(msg: Message) -> tuple[ToolItem, ...]:
    return tuple(
        ToolItem(id=b.id, name=b.name, input=dict(b.input))
        for b in msg.content_blocks
        if isinstance(b, ToolUseBlock)
    )


def group_tool_messages(messages: Sequence[Message]) -> list[FeedEntry]:
    """Collapse maximal runs of same-name tool-only messages."""
    entries: list[FeedEntry] = []
    for msg in messages:
        name = tool_only_name(msg)
        if name is None:
            entries.append(MessageEntry(message=msg))
            continue
        last = entries[-1] if entries else None
        if isinstance(last, ToolGroup) and last.tool_name == name:
            entries[-1] = ToolGroup(
                tool_name=name,
                items=last.items + _tool_items(msg),
                first_id=last.first_id,
            )
        else:
            entries.append(ToolGroup(tool_name=name, items=_tool_items(msg), first_id=msg.id))
    return entries


def _task_ids(entry: FeedEntry, task_tool_name: str) -> list[str]:
    if isinstance(entry, MessageEntry):
        return [b.id for b in entry.message.tool_uses() if b.name == task_tool_name]
    if isinstance(entry, ToolGroup) and entry.tool_name == task_tool_name:
        return [item.id for item in entry.items]
    return []


def _discover_tasks(messages: Sequence[Message], task_tool_name: str) -> dict[str, _TaskInfo]:
    tasks: dict[str, _TaskInfo] = {}
    for msg in messages:
        for block in msg.tool_uses():
            if block.name != task_tool_name:
                continue
            tasks[block.id] = _TaskInfo(
                description=str(block.input.get("description") or DEFAULT_SUBAGENT_DESCRIPTION),
                agent_type=str(block.input.get("subagent_type") or ""),
            )
    return tasks


def _build(
    messages: Sequence[Message],
    tasks: dict[str, _TaskInfo],
    children: dict[str, list[Message]],
    task_tool_name: str,
) -> list[FeedEntry]:
    result: list[FeedEntry] = []
    for entry in group_tool_messages(messages):
        result.append(entry)
        for task_id in _task_ids(entry, task_tool_name):
            bucket = children.get(task_id)
            if not bucket:
                continue
            info = tasks[task_id]
            result.append(SubagentGroup(
                task_tool_use_id=task_id,
                description=info.description,
                agent_type=info.agent_type,
                children=tuple(_build(bucket, tasks, children, task_tool_name)),
            ))
    return result


def reconstruct(
    messages: Sequence[Message],
    task_tool_name: str = TASK_TOOL_NAME,
) -> list[FeedEntry]:
    """Rebuild the hierarchical feed for a flat, ordered transcript."""
    tasks = _discover_tasks(messages, task_tool_name)
    if not tasks:
        return group_tool_messages(messages)

    children: dict[str, list[Message]] = {}
    top_level: list[Message] = []
    for msg in messages:
        parent = msg.parent_tool_use_id
        if parent and parent in tasks:
            children.setdefault(parent, []).append(msg)
        else:
            top_level.append(msg)

    return _build(top_level, tasks, children, task_tool_name)


def outline(entries: Sequence[FeedEntry], indent: int = 0) -> list[str]:
    """Plain-text outline of a feed, one line per entry (CLI/log output)."""
    pad = "  " * indent
    lines: list[str] = []
    for entry in entries:
        if isinstance(entry, ToolGroup):
            lines.append(f"{pad}[{entry.tool_name} x{len(entry.items)}]")
        elif isinstance(entry, SubagentGroup):
            label = entry.description
            if entry.agent_type:
                label += f" ({entry.agent_type})"
            lines.append(f"{pad}> {label}")
            lines.extend(outline(entry.children, indent + 1))
        else:
            msg = entry.message
            text = msg.content.strip().splitlines()[0] if msg.content.strip() else ""
            if not text and msg.tool_uses():
                text = ", ".join(b.name for b in msg.tool_uses())
            lines.append(f"{pad}{msg.role.value}: {text[:80]}")
    return lines
