"""Session registry — the owned container for all per-session state.

Holds every Session (connection flags, run status, transcript, stream
buffer, pending permissions). All mutation goes through this class so
each change is applied atomically with respect to one session and
subscribers are told about it afterwards.
"""
from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any, TypeVar

from companion.engine.errors import SessionNotFoundError, StreamStateError
from companion.engine.models import ConnectionStatus, RunStatus
from companion.shared.models.message import ContentBlock, Message
from companion.shared.models.session import Session, StreamBuffer

logger = logging.getLogger(__name__)

# Signature: def callback(session_id) -> None
SessionCallback = Callable[[str], None]

T = TypeVar("T")

_INFO_FIELDS = frozenset({"cwd", "model", "context_used_percent", "name"})


class SessionRegistry:
    """Owned, injectable store of sessions. Not a singleton.

    Readers use ``snapshot()`` to get an immutable view of a transcript;
    the registry lock guarantees they never see a half-applied event.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._lock = threading.RLock()
        # session_id (None = every session) → callbacks
        self._subscribers: dict[str | None, list[SessionCallback]] = {}

    # ── Lookup ──

    def get_session(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def require(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def session_ids(self) -> list[str]:
        with self._lock:
            return list(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def snapshot(self, session_id: str) -> tuple[Message, ...]:
        """Immutable copy of the finalized transcript."""
        with self._lock:
            return tuple(self.require(session_id).messages)

    # ── Lifecycle ──

    def create_session(self, session_id: str, **attrs: Any) -> Session:
        """Create (or return the existing) session with *session_id*."""
        with self._lock:
            existing = self._sessions.get(session_id)
            if existing is not None:
                return existing
            session = Session(session_id=session_id)
            for key, value in attrs.items():
                if key not in _INFO_FIELDS:
                    raise TypeError(f"create_session() got unexpected attribute {key!r}")
                setattr(session, key, value)
            self._sessions[session_id] = session
        logger.info("Session created session=%s", session_id[:8])
        self._notify(session_id)
        return session

    def remove_session(self, session_id: str) -> bool:
        with self._lock:
            removed = self._sessions.pop(session_id, None)
        if removed is None:
            logger.warning("remove_session: unknown session=%s", session_id[:8])
            return False
        logger.info(
            "Session removed session=%s messages=%d",
            session_id[:8], removed.message_count,
        )
        self._notify(session_id)
        return True

    def clear(self) -> None:
        """Drop every session (application teardown)."""
        with self._lock:
            ids = list(self._sessions)
            self._sessions.clear()
        for session_id in ids:
            self._notify(session_id)

    # ── Generic mutation ──

    def mutate(self, session_id: str, fn: Callable[[Session], T]) -> T:
        """Apply *fn* to a session under the lock, then notify."""
        with self._lock:
            result = fn(self.require(session_id))
        self._notify(session_id)
        return result

    # ── Transcript ──

    def append_message(self, session_id: str, message: Message) -> bool:
        """Append a finalized message. Duplicate ids are ignored."""
        def _append(session: Session) -> bool:
            if session.has_message(message.id):
                logger.debug(
                    "append_message: duplicate id=%s session=%s ignored",
                    message.id, session_id[:8],
                )
                return False
            session.messages.append(message)
            session.message_ids.add(message.id)
            return True

        return self.mutate(session_id, _append)

    def begin_stream(
        self,
        session_id: str,
        message_id: str | None = None,
        parent_tool_use_id: str | None = None,
    ) -> StreamBuffer:
        """Open the stream buffer and mark the session running.

        A stream left open by a lost message_end is finalized first so
        at most one buffer is ever in flight.
        """
        def _begin(session: Session) -> StreamBuffer:
            if session.stream is not None:
                logger.warning(
                    "begin_stream: session=%s already streaming id=%s, finalizing it",
                    session_id[:8], session.stream.message_id,
                )
                self._finalize_locked(session)
            buf = StreamBuffer(parent_tool_use_id=parent_tool_use_id)
            if message_id:
                buf.message_id = message_id
            session.stream = buf
            session.run_status = RunStatus.RUNNING
            return buf

        return self.mutate(session_id, _begin)

    def append_stream_delta(self, session_id: str, text: str, token_delta: int = 0) -> None:
        def _delta(session: Session) -> None:
            if session.stream is None:
                raise StreamStateError(session_id, "append text")
            session.stream.append_text(text)
            session.stream.output_tokens += max(0, token_delta)

        self.mutate(session_id, _delta)

    def append_stream_block(self, session_id: str, block: ContentBlock) -> None:
        def _block(session: Session) -> None:
            if session.stream is None:
                raise StreamStateError(session_id, "append block")
            session.stream.append_block(block)

        self.mutate(session_id, _block)

    def finalize_stream(self, session_id: str) -> Message | None:
        """Turn the stream buffer into a transcript message.

        Returns None, without fabricating a message, when no stream is
        open.
        """
        with self._lock:
            session = self.require(session_id)
            if session.stream is None:
                return None
            message = self._finalize_locked(session)
        self._notify(session_id)
        return message

    def discard_stream(self, session_id: str) -> bool:
        """Drop an unfinished stream buffer without recording it."""
        def _discard(session: Session) -> StreamBuffer | None:
            buf, session.stream = session.stream, None
            return buf

        buf = self.mutate(session_id, _discard)
        if buf is None:
            return False
        logger.info(
            "Discarded partial stream session=%s id=%s (%d chars)",
            session_id[:8], buf.message_id, len(buf.text),
        )
        return True

    @staticmethod
    def _finalize_locked(session: Session) -> Message | None:
        buf = session.stream
        session.stream = None
        if buf is None:
            return None
        message = buf.to_message()
        if session.has_message(message.id):
            return None
        session.messages.append(message)
        session.message_ids.add(message.id)
        return message

    # ── Session flags ──

    def set_connection_status(self, session_id: str, status: ConnectionStatus) -> None:
        def _set(session: Session) -> None:
            if session.connection_status is not status:
                logger.info(
                    "Connection session=%s %s -> %s",
                    session_id[:8], session.connection_status.value, status.value,
                )
            session.connection_status = status
            if status is ConnectionStatus.CONNECTED:
                session.last_error = None

        self.mutate(session_id, _set)

    def set_live(self, session_id: str, live: bool) -> None:
        def _set(session: Session) -> None:
            if session.live != live:
                logger.info("Liveness session=%s live=%s", session_id[:8], live)
            session.live = live

        self.mutate(session_id, _set)

    def set_run_status(self, session_id: str, status: RunStatus) -> None:
        def _set(session: Session) -> None:
            session.run_status = status

        self.mutate(session_id, _set)

    def set_last_error(self, session_id: str, error: str | None) -> None:
        def _set(session: Session) -> None:
            session.last_error = error

        self.mutate(session_id, _set)

    def update_info(self, session_id: str, **info: Any) -> None:
        """Update cwd / model / context_used_percent / name; None values are skipped."""
        unknown = set(info) - _INFO_FIELDS
        if unknown:
            raise TypeError(f"update_info() got unexpected fields {sorted(unknown)}")

        def _update(session: Session) -> None:
            for key, value in info.items():
                if value is not None:
                    setattr(session, key, value)

        self.mutate(session_id, _update)

    def halt(self, session_id: str) -> None:
        """Stop accepting inbound events for the session."""
        def _halt(session: Session) -> None:
            session.halted = True

        self.mutate(session_id, _halt)

    def resume(self, session_id: str) -> None:
        def _resume(session: Session) -> None:
            session.halted = False

        self.mutate(session_id, _resume)

    # ── Observation ──

    def subscribe(
        self,
        callback: SessionCallback,
        session_id: str | None = None,
    ) -> Callable[[], None]:
        """Call *callback(session_id)* after every change.

        Pass *session_id* to watch one session, or None for all of them.
        Returns a function that removes the subscription.
        """
        with self._lock:
            self._subscribers.setdefault(session_id, []).append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                callbacks = self._subscribers.get(session_id, [])
                if callback in callbacks:
                    callbacks.remove(callback)

        return _unsubscribe

    def _notify(self, session_id: str) -> None:
        with self._lock:
            callbacks = [
                *self._subscribers.get(session_id, ()),
                *self._subscribers.get(None, ()),
            ]
        for callback in callbacks:
            try:
                callback(session_id)
            except Exception:
                logger.exception(
                    "Session subscriber failed session=%s (continuing)",
                    session_id[:8],
                )
