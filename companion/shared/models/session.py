"""Session state — transcript, in-flight stream, and connection flags."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from companion.engine.models import ConnectionStatus, Remedy, RunStatus
from companion.shared.models.message import (
    ContentBlock,
    Message,
    MessageRole,
    TextBlock,
    _gen_id,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


CONTEXT_WARNING_PERCENT = 80
CONTEXT_CRITICAL_PERCENT = 95


@dataclass
class PermissionRequest:
    """An outstanding authorization the agent is waiting on."""
    request_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def tool_name(self) -> str:
        return str(self.payload.get("tool_name", ""))


@dataclass
class StreamBuffer:
    """The in-progress assistant message assembled from deltas.

    Text deltas extend the trailing text block (or open a new one after
    a non-text block) so production order is preserved.
    """
    message_id: str = field(default_factory=_gen_id)
    parent_tool_use_id: str | None = None
    blocks: list[ContentBlock] = field(default_factory=list)
    started_at: datetime = field(default_factory=_utcnow)
    output_tokens: int = 0

    @property
    def text(self) -> str:
        return "".join(b.text for b in self.blocks if isinstance(b, TextBlock))

    def append_text(self, text: str) -> None:
        if not text:
            return
        if self.blocks and isinstance(self.blocks[-1], TextBlock):
            self.blocks[-1] = TextBlock(text=self.blocks[-1].text + text)
        else:
            self.blocks.append(TextBlock(text=text))

    def append_block(self, block: ContentBlock) -> None:
        if isinstance(block, TextBlock):
            self.append_text(block.text)
        else:
            self.blocks.append(block)

    def to_message(self) -> Message:
        return Message(
            role=MessageRole.ASSISTANT,
            content=self.text,
            content_blocks=tuple(self.blocks),
            parent_tool_use_id=self.parent_tool_use_id,
            id=self.message_id,
            timestamp=_utcnow(),
        )


@dataclass
class Session:
    """Holds all observable state for one conversation."""

    session_id: str
    connection_status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    live: bool = False
    run_status: RunStatus = RunStatus.IDLE
    cwd: str | None = None
    model: str | None = None
    context_used_percent: float = 0.0
    name: str | None = None
    created_at: datetime = field(default_factory=_utcnow)
    messages: list[Message] = field(default_factory=list)
    stream: StreamBuffer | None = None
    pending_permissions: dict[str, PermissionRequest] = field(default_factory=dict)
    # Ids of finalized messages, for duplicate message_end / replay detection
    message_ids: set[str] = field(default_factory=set, repr=False)
    last_error: str | None = None
    # While halted, inbound events for this session are dropped
    halted: bool = False

    @property
    def message_count(self) -> int:
        return len(self.messages)

    @property
    def is_streaming(self) -> bool:
        return self.stream is not None

    def has_message(self, message_id: str) -> bool:
        return message_id in self.message_ids

    def last_message(self, role: MessageRole | None = None) -> Message | None:
        for msg in reversed(self.messages):
            if role is None or msg.role == role:
                return msg
        return None

    def streaming_elapsed(self, now: datetime | None = None) -> float:
        """Seconds since the current stream started, 0 when idle."""
        if self.stream is None:
            return 0.0
        return max(0.0, ((now or _utcnow()) - self.stream.started_at).total_seconds())

    def context_warning(self) -> str | None:
        if self.context_used_percent >= CONTEXT_CRITICAL_PERCENT:
            return "critical"
        if self.context_used_percent >= CONTEXT_WARNING_PERCENT:
            return "warning"
        return None

    def remedy(self) -> Remedy | None:
        """Which fix applies: reconnect the transport or relaunch the agent."""
        if self.connection_status is ConnectionStatus.DISCONNECTED:
            return Remedy.RECONNECT
        if self.connection_status is ConnectionStatus.CONNECTED and not self.live:
            return Remedy.RELAUNCH
        return None
