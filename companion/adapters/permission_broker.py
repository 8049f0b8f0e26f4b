"""Permission broker — pending authorization requests per session.

Requests are stored on the Session (through the registry) in arrival
order, so the first pending request is the one shown first. Resolving
one routes the human's decision back as an outbound
``permission_resolved`` event.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from companion.adapters.events import PermissionResolved, ProtocolEvent
from companion.adapters.registry import SessionRegistry
from companion.engine.errors import UnknownPermissionError
from companion.engine.models import PermissionDecision
from companion.shared.models.session import PermissionRequest, Session

logger = logging.getLogger(__name__)

# Signature: async def send(session_id, event) -> None
OutboundSink = Callable[[str, ProtocolEvent], Awaitable[None]]


class PermissionBroker:
    """Track outstanding permission requests and route decisions."""

    def __init__(
        self,
        registry: SessionRegistry,
        outbound: OutboundSink | None = None,
    ) -> None:
        self._registry = registry
        self._outbound = outbound
        # Bumped by clear(); a resolve that started earlier must not restore
        self._generations: dict[str, int] = {}

    def set_outbound(self, outbound: OutboundSink | None) -> None:
        self._outbound = outbound

    def add(self, session_id: str, request: PermissionRequest) -> None:
        """Insert a request; a re-issued id keeps its original position."""
        def _add(session: Session) -> None:
            session.pending_permissions[request.request_id] = request

        self._registry.mutate(session_id, _add)
        logger.info(
            "Permission request queued session=%s request_id=%s tool=%s",
            session_id[:8], request.request_id[:8], request.tool_name or "?",
        )

    def pending(self, session_id: str) -> list[PermissionRequest]:
        session = self._registry.get_session(session_id)
        if session is None:
            return []
        return list(session.pending_permissions.values())

    def first_pending(self, session_id: str) -> PermissionRequest | None:
        pending = self.pending(session_id)
        return pending[0] if pending else None

    async def resolve(
        self,
        session_id: str,
        request_id: str,
        decision: PermissionDecision | str,
    ) -> PermissionRequest:
        """Remove the request and emit the decision outbound.

        Raises UnknownPermissionError if *request_id* is not pending
        (including a second resolve of the same id). If the outbound
        send fails the request is put back and the error re-raised,
        unless the session was cleared while the send was in flight.
        """
        decision = PermissionDecision(decision)

        def _pop(session: Session) -> tuple[int, PermissionRequest]:
            if request_id not in session.pending_permissions:
                raise UnknownPermissionError(session_id, request_id)
            index = list(session.pending_permissions).index(request_id)
            return index, session.pending_permissions.pop(request_id)

        try:
            index, request = self._registry.mutate(session_id, _pop)
        except UnknownPermissionError:
            logger.warning(
                "Permission resolve ignored session=%s request_id=%s (not pending)",
                session_id[:8], request_id[:8],
            )
            raise

        generation = self._generations.get(session_id, 0)
        event = PermissionResolved(session_id=session_id, request_id=request_id, decision=decision)
        if self._outbound is not None:
            try:
                await self._outbound(session_id, event)
            except Exception:
                self._restore(session_id, index, request, generation)
                raise
        logger.info(
            "Permission resolved session=%s request_id=%s decision=%s",
            session_id[:8], request_id[:8], decision.value,
        )
        return request

    def discard(self, session_id: str, request_id: str) -> bool:
        """Drop a request without emitting anything (inbound echo)."""
        def _discard(session: Session) -> bool:
            return session.pending_permissions.pop(request_id, None) is not None

        return self._registry.mutate(session_id, _discard)

    def clear(self, session_id: str) -> int:
        """Discard every pending request of a session, silently."""
        self._generations[session_id] = self._generations.get(session_id, 0) + 1
        if session_id not in self._registry:
            return 0

        def _clear(session: Session) -> int:
            count = len(session.pending_permissions)
            session.pending_permissions.clear()
            return count

        count = self._registry.mutate(session_id, _clear)
        if count:
            logger.info(
                "Discarded %d pending permission request(s) session=%s",
                count, session_id[:8],
            )
        return count

    def _restore(
        self,
        session_id: str,
        index: int,
        request: PermissionRequest,
        generation: int,
    ) -> None:
        if session_id not in self._registry:
            return
        if self._generations.get(session_id, 0) != generation:
            logger.info(
                "Not restoring request_id=%s session=%s (cleared during send)",
                request.request_id[:8], session_id[:8],
            )
            return

        def _put_back(session: Session) -> None:
            items: list[tuple[str, Any]] = list(session.pending_permissions.items())
            items.insert(index, (request.request_id, request))
            session.pending_permissions = dict(items)

        self._registry.mutate(session_id, _put_back)
