"""Companion client — wires the session core together for a frontend.

Creates the registry, permission broker, ingestion pipeline and
connection supervisor with an explicit ``start()`` / ``close()`` and
exposes the consumer-facing actions: open and switch sessions, send
user input, answer permission prompts, and read the reconstructed feed.
"""
from __future__ import annotations

import logging
from typing import Any

from companion.adapters.events import Relaunch, UserMessage
from companion.adapters.ingestion import EventIngestor
from companion.adapters.permission_broker import PermissionBroker
from companion.adapters.registry import SessionCallback, SessionRegistry
from companion.adapters.supervisor import ConnectionSupervisor
from companion.adapters.transport import (
    HttpLivenessProbe,
    LivenessProbe,
    Transport,
    WebSocketTransport,
)
from companion.engine.config import CompanionConfig
from companion.engine.models import ConnectionStatus, PermissionDecision, RunStatus
from companion.shared.feed import reconstruct
from companion.shared.models.feed import FeedEntry
from companion.shared.models.message import Message, MessageRole, TextBlock
from companion.shared.models.session import PermissionRequest, Session
from companion.shared.services.transcript_export import export_markdown

logger = logging.getLogger(__name__)


class CompanionClient:
    """Owns one instance of every session-core component.

    Pass *transport* / *probe* to replace the aiohttp defaults (tests use
    in-memory fakes). Pass ``probe=None`` together with
    ``probe_interval_seconds=0`` to run without liveness probing.
    """

    def __init__(
        self,
        config: CompanionConfig | None = None,
        transport: Transport | None = None,
        probe: LivenessProbe | None = None,
    ) -> None:
        self.config = config or CompanionConfig.from_env()
        self.registry = SessionRegistry()
        self.broker = PermissionBroker(self.registry)
        self.ingestor = EventIngestor(
            self.registry, self.broker, queue_size=self.config.event_queue_size,
        )
        self._transport = transport
        self._probe = probe
        self.supervisor: ConnectionSupervisor | None = None
        self._active_session_id: str | None = None
        self._started = False

    # ── Lifecycle ──

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        if self._started:
            return
        if self._transport is None:
            self._transport = WebSocketTransport(self.config)
        if self._probe is None and self.config.probe_interval_seconds > 0:
            self._probe = HttpLivenessProbe(self.config)
        self.supervisor = ConnectionSupervisor(
            self.registry,
            self.ingestor,
            self.broker,
            self._transport,
            self._probe,
            self.config,
        )
        self.broker.set_outbound(self.supervisor.send)
        self._started = True
        logger.info("CompanionClient started server=%s", self.config.server_url)

    async def close(self) -> None:
        """Disconnect every session and drop all state."""
        if not self._started:
            return
        self._started = False
        if self.supervisor is not None:
            await self.supervisor.close()
        await self.ingestor.close()
        self.broker.set_outbound(None)
        self.registry.clear()
        self._active_session_id = None
        logger.info("CompanionClient closed")

    async def __aenter__(self) -> CompanionClient:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _require_supervisor(self) -> ConnectionSupervisor:
        if self.supervisor is None:
            raise RuntimeError("CompanionClient.start() has not been called")
        return self.supervisor

    # ── Sessions ──

    @property
    def active_session_id(self) -> str | None:
        return self._active_session_id

    def session(self, session_id: str) -> Session:
        return self.registry.require(session_id)

    def create_session(self, session_id: str, **attrs: Any) -> Session:
        session = self.registry.create_session(session_id, **attrs)
        if self._active_session_id is None:
            self._active_session_id = session_id
        return session

    async def open_session(self, session_id: str, activate: bool = True) -> Session:
        """Create (if needed) and connect a session."""
        session = self.create_session(session_id)
        if activate:
            self._active_session_id = session_id
        await self._require_supervisor().connect(session_id)
        return session

    async def disconnect_session(self, session_id: str) -> None:
        await self._require_supervisor().disconnect(session_id)

    async def close_session(self, session_id: str) -> None:
        """Disconnect and forget a session."""
        if self.supervisor is not None:
            await self.supervisor.disconnect(session_id)
        self.registry.remove_session(session_id)
        if self._active_session_id == session_id:
            remaining = self.registry.session_ids()
            self._active_session_id = remaining[0] if remaining else None

    def switch_session(self, session_id: str) -> None:
        """Make *session_id* the active one. Background sessions keep running."""
        self.registry.require(session_id)
        if self._active_session_id != session_id:
            logger.info(
                "Active session %s -> %s",
                (self._active_session_id or "-")[:8], session_id[:8],
            )
        self._active_session_id = session_id

    # ── Outbound actions ──

    async def send_user_message(self, session_id: str, content: str) -> Message:
        """Send user input and record it locally in the transcript."""
        self.registry.require(session_id)
        await self._require_supervisor().send(
            session_id, UserMessage(session_id=session_id, content=content),
        )
        message = Message(
            role=MessageRole.USER,
            content=content,
            content_blocks=(TextBlock(text=content),),
        )
        self.registry.append_message(session_id, message)
        return message

    def can_retry(self, session_id: str) -> bool:
        """True when the last exchange can be re-sent.

        Requires an idle, connected, live session whose transcript ends
        with an assistant message preceded by some user message.
        """
        session = self.registry.get_session(session_id)
        if session is None:
            return False
        if session.run_status is RunStatus.RUNNING:
            return False
        if session.connection_status is not ConnectionStatus.CONNECTED or not session.live:
            return False
        last = session.last_message()
        if last is None or last.role != MessageRole.ASSISTANT:
            return False
        return session.last_message(MessageRole.USER) is not None

    async def retry_last_user_message(self, session_id: str) -> Message | None:
        """Re-send the most recent user message. Returns None if not retryable."""
        if not self.can_retry(session_id):
            logger.debug("Retry not available session=%s", session_id[:8])
            return None
        last_user = self.registry.require(session_id).last_message(MessageRole.USER)
        logger.info("Retrying last user message session=%s", session_id[:8])
        return await self.send_user_message(session_id, last_user.content)

    async def relaunch(self, session_id: str) -> None:
        """Ask the host to restart the agent process behind a session."""
        self.registry.require(session_id)
        await self._require_supervisor().send(session_id, Relaunch(session_id=session_id))
        logger.info("Relaunch requested session=%s", session_id[:8])

    async def resolve_permission(
        self,
        session_id: str,
        request_id: str,
        decision: PermissionDecision | str,
    ) -> PermissionRequest:
        return await self.broker.resolve(session_id, request_id, decision)

    def pending_permissions(self, session_id: str) -> list[PermissionRequest]:
        return self.broker.pending(session_id)

    # ── Reading ──

    def feed(self, session_id: str) -> list[FeedEntry]:
        """Reconstruct the hierarchical feed from a transcript snapshot."""
        return reconstruct(self.registry.snapshot(session_id), self.config.task_tool_name)

    def export_markdown(self, session_id: str) -> str:
        return export_markdown(self.registry.snapshot(session_id))

    def subscribe(
        self,
        callback: SessionCallback,
        session_id: str | None = None,
    ):
        return self.registry.subscribe(callback, session_id)
