"""Transcript export service — turn a session transcript into portable text.

``export_markdown`` produces the "copy all" rendering: user and
assistant turns under ``## User`` / ``## Assistant`` headings, separated
by horizontal rules. ``load_transcript`` / ``dump_transcript`` read and
write the JSON form used by the offline CLI commands.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from companion.shared.models.message import Message, MessageRole

logger = logging.getLogger(__name__)

_SEPARATOR = "\n\n---\n\n"
_HEADINGS = {
    MessageRole.USER: "User",
    MessageRole.ASSISTANT: "Assistant",
}


def export_markdown(messages: Sequence[Message]) -> str:
    """Markdown of every user/assistant message, in transcript order.

    System messages are left out. Returns an empty string for an empty
    transcript.
    """
    parts = [
        f"## {_HEADINGS[msg.role]}\n\n{msg.content}"
        for msg in messages
        if msg.role in _HEADINGS
    ]
    return _SEPARATOR.join(parts)


def load_transcript(path: Path | str) -> list[Message]:
    """Read a JSON transcript file.

    Accepts either a bare list of message dicts or an object with a
    ``messages`` list. Entries that fail to parse are skipped with a
    warning so one bad record does not hide the rest.
    """
    path = Path(path)
    raw: Any = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(raw, dict):
        raw = raw.get("messages", [])
    if not isinstance(raw, list):
        raise ValueError(f"{path}: expected a list of messages")

    messages: list[Message] = []
    for index, item in enumerate(raw):
        try:
            messages.append(Message.from_dict(item))
        except ValueError as exc:
            logger.warning("Skipping message #%d in %s: %s", index, path, exc)
    logger.debug("Loaded %d message(s) from %s", len(messages), path)
    return messages


def dump_transcript(messages: Sequence[Message], path: Path | str) -> Path:
    """Write *messages* as a JSON transcript file and return the path."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {"messages": [msg.to_dict() for msg in messages]}
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    logger.info("Wrote %d message(s) to %s", len(messages), path)
    return path
