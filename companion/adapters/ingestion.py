"""Event ingestion — applies inbound protocol events to the registry.

One EventBus and one consumer task per session: events of a session are
applied strictly one at a time, in arrival order; different sessions
are consumed concurrently and never touch each other's state.

Every event maps to exactly one registry / broker mutation. Malformed
events, stream gaps, and events for halted or unknown sessions are
logged and dropped; nothing here stops the pipeline.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from typing import Any

from companion.adapters.event_bus import EventBus
from companion.adapters.events import (
    ContentBlockEvent,
    LivenessChange,
    MessageAppended,
    MessageEnd,
    MessageStart,
    PermissionRequested,
    PermissionResolved,
    ProtocolEvent,
    SessionInfo,
    StatusChange,
    TextDelta,
    dict_to_event,
)
from companion.adapters.permission_broker import PermissionBroker
from companion.adapters.registry import SessionRegistry
from companion.engine.errors import LogicError, MalformedEventError, StreamStateError
from companion.shared.models.session import PermissionRequest

logger = logging.getLogger(__name__)


class EventIngestor:
    """Per-session sequential processor for inbound events."""

    def __init__(
        self,
        registry: SessionRegistry,
        broker: PermissionBroker,
        queue_size: int = 5000,
    ) -> None:
        self._registry = registry
        self._broker = broker
        self._queue_size = queue_size
        self._buses: dict[str, EventBus] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        # Diagnostics: applied / dropped_* counts
        self.stats: Counter[str] = Counter()

    # ── Decoding ──

    def decode(self, data: dict[str, Any]) -> ProtocolEvent | None:
        """Decode a wire dict, or log and return None if malformed."""
        try:
            return dict_to_event(data)
        except MalformedEventError as exc:
            self.stats["dropped_malformed"] += 1
            logger.warning("Dropping malformed event: %s", exc.reason)
            return None

    # ── Queued path ──

    async def submit(self, data: dict[str, Any] | ProtocolEvent) -> bool:
        """Queue an event for its session's consumer.

        Events for unknown or halted sessions are dropped, not queued.
        """
        event = data if isinstance(data, ProtocolEvent) else self.decode(data)
        if event is None:
            return False
        if not self._accepting(event):
            return False
        bus = self._ensure_consumer(event.session_id)
        return await bus.emit(event)

    def _ensure_consumer(self, session_id: str) -> EventBus:
        bus = self._buses.get(session_id)
        if bus is None or bus.closed:
            bus = EventBus(maxsize=self._queue_size)
            self._buses[session_id] = bus
        task = self._tasks.get(session_id)
        if task is None or task.done():
            self._tasks[session_id] = asyncio.create_task(
                self._consume(session_id, bus),
                name=f"ingest-{session_id[:8]}",
            )
        return bus

    async def _consume(self, session_id: str, bus: EventBus) -> None:
        try:
            async for event in bus.consume():
                try:
                    self.apply(event)
                except Exception:
                    logger.exception(
                        "Error applying event %s for session %s (consumer continues)",
                        event.type, session_id[:8],
                    )
        except asyncio.CancelledError:
            pass

    async def stop(self, session_id: str) -> int:
        """Stop a session's consumer and drop anything still queued."""
        dropped = 0
        bus = self._buses.pop(session_id, None)
        if bus is not None:
            dropped = bus.close()
            if dropped:
                self.stats["dropped_on_stop"] += dropped
                logger.info("Dropped %d queued event(s) for session=%s", dropped, session_id[:8])
        task = self._tasks.pop(session_id, None)
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        return dropped

    async def close(self) -> None:
        for session_id in list(self._buses):
            await self.stop(session_id)

    async def join(self, session_id: str, timeout: float = 5.0) -> None:
        """Wait until everything queued for *session_id* has been applied."""
        bus = self._buses.get(session_id)
        if bus is None:
            return
        try:
            await asyncio.wait_for(bus.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "join timed out after %.1fs session=%s (%d event(s) still queued)",
                timeout, session_id[:8], bus.qsize(),
            )

    # ── Direct path ──

    def apply_raw(self, data: dict[str, Any]) -> bool:
        event = self.decode(data)
        return event is not None and self.apply(event)

    def _accepting(self, event: ProtocolEvent) -> bool:
        session = self._registry.get_session(event.session_id)
        if session is None:
            self.stats["dropped_unknown_session"] += 1
            logger.debug(
                "Dropping %s for unknown session=%s",
                event.type, event.session_id[:8],
            )
            return False
        if session.halted:
            self.stats["dropped_halted"] += 1
            logger.debug(
                "Dropping %s for halted session=%s",
                event.type, event.session_id[:8],
            )
            return False
        return True

    def apply(self, event: ProtocolEvent) -> bool:
        """Apply one event synchronously. Returns True if it changed state."""
        if not self._accepting(event):
            return False
        try:
            applied = self._dispatch(event)
        except StreamStateError as exc:
            self.stats["dropped_gap"] += 1
            logger.warning("Dropping %s (gap): %s", event.type, exc)
            return False
        except (LogicError, MalformedEventError) as exc:
            self.stats["dropped_logic"] += 1
            logger.warning("Dropping %s: %s", event.type, exc)
            return False
        if applied:
            self.stats["applied"] += 1
        return applied

    def _dispatch(self, event: ProtocolEvent) -> bool:
        sid = event.session_id
        reg = self._registry

        if isinstance(event, MessageStart):
            reg.begin_stream(sid, event.message_id, event.parent_tool_use_id)
        elif isinstance(event, TextDelta):
            reg.append_stream_delta(sid, event.text, event.output_tokens)
        elif isinstance(event, ContentBlockEvent):
            if event.block is None:
                raise MalformedEventError("content_block without block")
            reg.append_stream_block(sid, event.block)
        elif isinstance(event, MessageEnd):
            return self._on_message_end(event)
        elif isinstance(event, StatusChange):
            reg.set_run_status(sid, event.status)
        elif isinstance(event, PermissionRequested):
            self._broker.add(sid, PermissionRequest(
                request_id=event.request_id,
                payload=event.payload,
            ))
        elif isinstance(event, PermissionResolved):
            if not self._broker.discard(sid, event.request_id):
                # Normal for the echo of a locally resolved request
                logger.debug(
                    "permission_resolved for non-pending request_id=%s session=%s",
                    event.request_id[:8], sid[:8],
                )
                return False
        elif isinstance(event, LivenessChange):
            reg.set_live(sid, event.live)
        elif isinstance(event, MessageAppended):
            if event.message is None:
                raise MalformedEventError("message event without message")
            return reg.append_message(sid, event.message)
        elif isinstance(event, SessionInfo):
            reg.update_info(
                sid,
                cwd=event.cwd,
                model=event.model,
                context_used_percent=event.context_used_percent,
                name=event.name,
            )
        else:
            self.stats["dropped_unhandled"] += 1
            logger.warning("No handler for event type %r session=%s", event.type, sid[:8])
            return False
        return True

    def _on_message_end(self, event: MessageEnd) -> bool:
        sid = event.session_id
        session = self._registry.require(sid)
        stream = session.stream
        if event.message_id and session.has_message(event.message_id) and (
            stream is None or stream.message_id != event.message_id
        ):
            self.stats["dropped_duplicate"] += 1
            logger.debug("Duplicate message_end id=%s session=%s ignored", event.message_id, sid[:8])
            return False
        message = self._registry.finalize_stream(sid)
        if message is None:
            self.stats["dropped_gap"] += 1
            logger.warning(
                "message_end with no open stream session=%s id=%s (gap)",
                sid[:8], event.message_id or "?",
            )
            return False
        return True
