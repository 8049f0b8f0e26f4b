from __future__ import annotations

from companion.shared.feed import outline, reconstruct, tool_only_name
from companion.shared.models.feed import MessageEntry, SubagentGroup, ToolGroup
from companion.shared.models.message import (
    Message,
    MessageRole,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
)


def _user(text: str, msg_id: str, parent: str | None = None) -> Message:
    return Message(
        role=MessageRole.USER,
        content=text,
        content_blocks=(TextBlock(text=text),),
        parent_tool_use_id=parent,
        id=msg_id,
    )


def _text(text: str, msg_id: str, parent: str | None = None) -> Message:
    return Message(
        role=MessageRole.ASSISTANT,
        content=text,
        content_blocks=(TextBlock(text=text),),
        parent_tool_use_id=parent,
        id=msg_id,
    )


def _tool(name: str, tool_id: str, msg_id: str, parent: str | None = None, **tool_input) -> Message:
    return Message(
        role=MessageRole.ASSISTANT,
        content_blocks=(ToolUseBlock(id=tool_id, name=name, input=dict(tool_input)),),
        parent_tool_use_id=parent,
        id=msg_id,
    )


def test_two_read_messages_collapse_into_one_group() -> None:
    messages = [
        _tool("Read", "r1", "m1", file_path="a.py"),
        _tool("Read", "r2", "m2", file_path="b.py"),
    ]

    feed = reconstruct(messages)

    assert len(feed) == 1
    group = feed[0]
    assert isinstance(group, ToolGroup)
    assert group.tool_name == "Read"
    assert [item.id for item in group.items] == ["r1", "r2"]
    assert [item.input["file_path"] for item in group.items] == ["a.py", "b.py"]
    assert group.first_id == "m1"


def test_group_counts_every_invocation_in_order() -> None:
    multi = Message(
        role=MessageRole.ASSISTANT,
        content_blocks=(
            ToolUseBlock(id="g2", name="Grep", input={}),
            ToolUseBlock(id="g3", name="Grep", input={}),
        ),
        id="m2",
    )
    messages = [_tool("Grep", "g1", "m1"), multi, _tool("Grep", "g4", "m3")]

    feed = reconstruct(messages)

    assert len(feed) == 1
    assert [item.id for item in feed[0].items] == ["g1", "g2", "g3", "g4"]
    assert len(feed[0]) == 4


def test_single_tool_only_message_is_group_of_one() -> None:
    feed = reconstruct([_tool("Bash", "b1", "m1", command="ls")])

    assert len(feed) == 1
    assert isinstance(feed[0], ToolGroup)
    assert len(feed[0].items) == 1


def test_different_tool_names_break_the_run() -> None:
    feed = reconstruct([
        _tool("Read", "r1", "m1"),
        _tool("Edit", "e1", "m2"),
        _tool("Read", "r2", "m3"),
    ])

    assert [e.tool_name for e in feed] == ["Read", "Edit", "Read"]


def test_text_message_breaks_the_run_and_is_never_grouped() -> None:
    feed = reconstruct([
        _tool("Read", "r1", "m1"),
        _text("Looking at it", "m2"),
        _tool("Read", "r2", "m3"),
    ])

    assert [type(e) for e in feed] == [ToolGroup, MessageEntry, ToolGroup]
    assert feed[1].message.id == "m2"


def test_tool_only_classification() -> None:
    mixed_names = Message(
        role=MessageRole.ASSISTANT,
        content_blocks=(
            ToolUseBlock(id="a", name="Read"),
            ToolUseBlock(id="b", name="Edit"),
        ),
    )
    with_thinking = Message(
        role=MessageRole.ASSISTANT,
        content_blocks=(ThinkingBlock(thinking="hmm"), ToolUseBlock(id="a", name="Read")),
    )
    whitespace_text = Message(
        role=MessageRole.ASSISTANT,
        content_blocks=(TextBlock(text="  \n"), ToolUseBlock(id="a", name="Read")),
    )
    with_result = Message(
        role=MessageRole.ASSISTANT,
        content_blocks=(
            ToolUseBlock(id="a", name="Read"),
            ToolResultBlock(tool_use_id="a", content="ok"),
        ),
    )
    only_result = Message(
        role=MessageRole.ASSISTANT,
        content_blocks=(ToolResultBlock(tool_use_id="a", content="ok"),),
    )
    empty = Message(role=MessageRole.ASSISTANT)
    user_tool = Message(
        role=MessageRole.USER,
        content_blocks=(ToolUseBlock(id="a", name="Read"),),
    )

    assert tool_only_name(mixed_names) is None
    assert tool_only_name(with_thinking) is None
    assert tool_only_name(whitespace_text) == "Read"
    assert tool_only_name(with_result) == "Read"
    assert tool_only_name(only_result) is None
    assert tool_only_name(empty) is None
    assert tool_only_name(user_tool) is None


def test_task_child_is_nested_under_spawning_call() -> None:
    task = _tool("Task", "t1", "m1", description="Explore repo", subagent_type="explorer")
    child = _text("Found three modules", "m2", parent="t1")

    feed = reconstruct([task, child])

    assert len(feed) == 2
    assert isinstance(feed[0], ToolGroup)
    assert feed[0].items[0].id == "t1"
    sub = feed[1]
    assert isinstance(sub, SubagentGroup)
    assert sub.task_tool_use_id == "t1"
    assert sub.description == "Explore repo"
    assert sub.agent_type == "explorer"
    assert sub.children == (MessageEntry(message=child),)


def test_children_never_appear_at_top_level_and_keep_order() -> None:
    messages = [
        _user("go", "u1"),
        _tool("Task", "t1", "m1"),
        _text("child one", "c1", parent="t1"),
        _text("parent continues", "m2"),
        _tool("Read", "r1", "c2", parent="t1"),
        _tool("Read", "r2", "c3", parent="t1"),
    ]

    feed = reconstruct(messages)

    top_ids = [e.message.id for e in feed if isinstance(e, MessageEntry)]
    assert "c1" not in top_ids
    sub = next(e for e in feed if isinstance(e, SubagentGroup))
    assert sub.description == "Subagent"
    assert sub.agent_type == ""
    assert isinstance(sub.children[0], MessageEntry)
    assert sub.children[0].message.id == "c1"
    assert isinstance(sub.children[1], ToolGroup)
    assert [i.id for i in sub.children[1].items] == ["r1", "r2"]
    # The sub-agent entry follows its Task call, before later top-level messages
    kinds = [e.kind for e in feed]
    assert kinds == ["message", "tool_group", "subagent", "message"]


def test_nested_tasks_build_recursively() -> None:
    messages = [
        _tool("Task", "t1", "m1", description="outer"),
        _tool("Task", "t2", "c1", parent="t1", description="inner"),
        _text("deep work", "d1", parent="t2"),
    ]

    feed = reconstruct(messages)

    outer = feed[1]
    assert isinstance(outer, SubagentGroup)
    assert outer.description == "outer"
    inner = outer.children[1]
    assert isinstance(inner, SubagentGroup)
    assert inner.description == "inner"
    assert inner.children[0].message.id == "d1"


def test_task_without_children_gets_no_subagent_entry() -> None:
    feed = reconstruct([_tool("Task", "t1", "m1"), _text("done", "m2")])

    assert not any(isinstance(e, SubagentGroup) for e in feed)


def test_unknown_parent_stays_top_level() -> None:
    orphan = _text("hello", "m1", parent="not-a-task")

    feed = reconstruct([_tool("Task", "t1", "m0"), orphan])

    assert MessageEntry(message=orphan) in feed


def test_custom_task_tool_name() -> None:
    messages = [
        _tool("Agent", "a1", "m1", description="helper"),
        _text("child", "c1", parent="a1"),
    ]

    assert not any(isinstance(e, SubagentGroup) for e in reconstruct(messages))
    feed = reconstruct(messages, task_tool_name="Agent")
    assert isinstance(feed[1], SubagentGroup)
    assert feed[1].description == "helper"


def test_reconstruct_is_deterministic() -> None:
    messages = [
        _user("hi", "u1"),
        _tool("Task", "t1", "m1"),
        _tool("Read", "r1", "c1", parent="t1"),
        _text("ok", "m2"),
    ]

    assert reconstruct(messages) == reconstruct(messages)
    assert reconstruct(tuple(messages)) == reconstruct(list(messages))


def test_appending_keeps_prefix_entries() -> None:
    prefix = [
        _user("hi", "u1"),
        _tool("Read", "r1", "m1"),
        _text("thinking aloud", "m2"),
    ]
    before = reconstruct(prefix)

    after = reconstruct(prefix + [_tool("Read", "r2", "m3")])

    assert after[: len(before)] == before
    assert len(after) == len(before) + 1


def test_appending_tool_call_extends_only_trailing_group() -> None:
    prefix = [_user("hi", "u1"), _tool("Read", "r1", "m1")]
    before = reconstruct(prefix)

    after = reconstruct(prefix + [_tool("Read", "r2", "m2")])

    assert after[0] == before[0]
    assert len(after) == len(before)
    assert [i.id for i in after[-1].items] == ["r1", "r2"]


def test_last_preview() -> None:
    tools = SubagentGroup(
        task_tool_use_id="t1",
        description="d",
        agent_type="",
        children=tuple(reconstruct([_tool("Read", "r1", "c1"), _tool("Read", "r2", "c2")])),
    )
    long_text = "x" * 100
    text = SubagentGroup(
        task_tool_use_id="t1",
        description="d",
        agent_type="",
        children=(MessageEntry(message=_text(long_text, "c1")),),
    )
    empty = SubagentGroup(task_tool_use_id="t1", description="d", agent_type="", children=())

    assert tools.last_preview() == "Read ×2"
    assert text.last_preview() == "x" * 60 + "..."
    assert empty.last_preview() == ""


def test_outline_lines() -> None:
    messages = [
        _user("please look", "u1"),
        _tool("Task", "t1", "m1", description="Scan", subagent_type="explorer"),
        _tool("Read", "r1", "c1", parent="t1"),
        _tool("Read", "r2", "c2", parent="t1"),
    ]

    lines = outline(reconstruct(messages))

    assert lines == [
        "user: please look",
        "[Task x1]",
        "> Scan (explorer)",
        "  [Read x2]",
    ]
