"""Connection supervisor — per-session transport lifecycle.

States: ``disconnected → connecting → connected``, plus the orthogonal
``live`` flag (is the remote agent process answering). A session can be
connected with ``live = False``: the transport is fine but the agent is
gone, and the remedy is a relaunch rather than a reconnect.

Each connected session owns three tasks: the connect attempt (only
while connecting), a reader pumping transport payloads into the
ingestion pipeline, and a liveness probe. ``disconnect`` cancels all of
them. Sessions are independent: switching or dropping one never touches
another.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any

from companion.adapters.events import ProtocolEvent, event_to_dict
from companion.adapters.ingestion import EventIngestor
from companion.adapters.permission_broker import PermissionBroker
from companion.adapters.registry import SessionRegistry
from companion.adapters.transport import LivenessProbe, Transport, TransportConnection
from companion.engine.config import CompanionConfig
from companion.engine.errors import NotConnectedError, TransportConnectError
from companion.engine.models import ConnectionStatus

logger = logging.getLogger(__name__)


class ConnectionSupervisor:
    """Connect, watch, reconnect, and tear down session transports."""

    def __init__(
        self,
        registry: SessionRegistry,
        ingestor: EventIngestor,
        broker: PermissionBroker,
        transport: Transport,
        probe: LivenessProbe | None = None,
        config: CompanionConfig | None = None,
    ) -> None:
        self._registry = registry
        self._ingestor = ingestor
        self._broker = broker
        self._transport = transport
        self._probe = probe
        self._config = config or CompanionConfig()

        self._connections: dict[str, TransportConnection] = {}
        self._connect_tasks: dict[str, asyncio.Task] = {}
        self._reader_tasks: dict[str, asyncio.Task] = {}
        self._probe_tasks: dict[str, asyncio.Task] = {}

    # ── Queries ──

    def status(self, session_id: str) -> ConnectionStatus:
        session = self._registry.get_session(session_id)
        return session.connection_status if session else ConnectionStatus.DISCONNECTED

    def is_connected(self, session_id: str) -> bool:
        return session_id in self._connections

    # ── Connect ──

    async def connect(self, session_id: str) -> None:
        """Open the transport for *session_id*, retrying with backoff.

        Creates the session on first connect. Raises
        TransportConnectError once attempts are exhausted; the session
        is then left disconnected with ``last_error`` set. Returns
        quietly if a concurrent ``disconnect`` cancels the attempt.
        """
        if session_id not in self._registry:
            self._registry.create_session(session_id)
        if self.is_connected(session_id):
            return

        task = self._connect_tasks.get(session_id)
        if task is None or task.done():
            task = asyncio.create_task(
                self._establish(session_id), name=f"connect-{session_id[:8]}",
            )
            self._connect_tasks[session_id] = task
            task.add_done_callback(lambda t, sid=session_id: self._forget_connect(sid, t))

        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            raise exc

    def _forget_connect(self, session_id: str, task: asyncio.Task) -> None:
        if self._connect_tasks.get(session_id) is task:
            del self._connect_tasks[session_id]

    async def _establish(self, session_id: str) -> None:
        cfg = self._config
        attempts = max(1, cfg.connect_attempts)
        delay = cfg.connect_backoff_initial
        last_exc: BaseException | None = None

        self._registry.set_connection_status(session_id, ConnectionStatus.CONNECTING)
        connected = False
        try:
            for attempt in range(1, attempts + 1):
                try:
                    conn = await asyncio.wait_for(
                        self._transport.open(session_id),
                        timeout=cfg.connect_timeout_seconds,
                    )
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    last_exc = exc
                    if attempt == attempts:
                        break
                    logger.debug(
                        "Connect attempt %d/%d failed session=%s: %s, retrying in %.1fs",
                        attempt, attempts, session_id[:8], exc, delay,
                    )
                    await asyncio.sleep(delay)
                    delay = min(delay * 2, cfg.connect_backoff_max)
                    continue

                self._on_connected(session_id, conn, attempt)
                connected = True
                return
        finally:
            if not connected and session_id in self._registry:
                self._registry.set_connection_status(session_id, ConnectionStatus.DISCONNECTED)

        reason = f"{type(last_exc).__name__}: {last_exc}" if last_exc else "unknown error"
        logger.error(
            "Failed to connect session=%s after %d attempt(s): %s",
            session_id[:8], attempts, reason,
        )
        if session_id in self._registry:
            self._registry.set_last_error(session_id, reason)
        raise TransportConnectError(session_id, attempts, reason)

    def _on_connected(self, session_id: str, conn: TransportConnection, attempt: int) -> None:
        self._connections[session_id] = conn
        self._registry.resume(session_id)
        self._registry.set_connection_status(session_id, ConnectionStatus.CONNECTED)
        self._reader_tasks[session_id] = asyncio.create_task(
            self._read_loop(session_id, conn), name=f"reader-{session_id[:8]}",
        )
        if self._probe is not None and self._config.probe_interval_seconds > 0:
            self._probe_tasks[session_id] = asyncio.create_task(
                self._probe_loop(session_id), name=f"probe-{session_id[:8]}",
            )
        logger.info("Connected session=%s (attempt %d)", session_id[:8], attempt)

    # ── Reader / probe ──

    async def _read_loop(self, session_id: str, conn: TransportConnection) -> None:
        try:
            while True:
                data = await conn.receive()
                if data is None:
                    break
                if isinstance(data, dict):
                    target = data.setdefault("session_id", session_id)
                    if target != session_id:
                        self._ingestor.stats["dropped_misrouted"] += 1
                        logger.warning(
                            "Dropping %s for session=%s received on session=%s transport",
                            data.get("type", "?"), str(target)[:8], session_id[:8],
                        )
                        continue
                await self._ingestor.submit(data)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.warning("Transport read failed session=%s", session_id[:8], exc_info=True)
        await self._on_transport_lost(session_id, conn)

    async def _on_transport_lost(self, session_id: str, conn: TransportConnection) -> None:
        if self._connections.get(session_id) is not conn:
            return
        logger.warning("Transport lost session=%s", session_id[:8])
        del self._connections[session_id]
        self._reader_tasks.pop(session_id, None)
        await self._cancel(self._probe_tasks.pop(session_id, None))
        await self._close_quietly(session_id, conn)
        if session_id not in self._registry:
            return
        self._broker.clear(session_id)
        self._registry.discard_stream(session_id)
        self._registry.set_connection_status(session_id, ConnectionStatus.DISCONNECTED)
        if self._config.auto_reconnect:
            task = asyncio.create_task(
                self._reconnect(session_id), name=f"reconnect-{session_id[:8]}",
            )
            self._connect_tasks[session_id] = task
            task.add_done_callback(lambda t, sid=session_id: self._forget_connect(sid, t))

    async def _reconnect(self, session_id: str) -> None:
        await asyncio.sleep(self._config.connect_backoff_initial)
        try:
            await self._establish(session_id)
        except TransportConnectError:
            # Already logged and recorded on the session; manual reconnect remains.
            pass

    async def _probe_loop(self, session_id: str) -> None:
        interval = self._config.probe_interval_seconds
        while True:
            live = await self.probe_once(session_id)
            session = self._registry.get_session(session_id)
            if session is None:
                return
            if session.live != live:
                self._registry.set_live(session_id, live)
            await asyncio.sleep(interval)

    async def probe_once(self, session_id: str) -> bool:
        """Ask the probe up to ``probe_attempts`` times; any yes wins."""
        if self._probe is None:
            return False
        cfg = self._config
        attempts = max(1, cfg.probe_attempts)
        for attempt in range(1, attempts + 1):
            try:
                if await asyncio.wait_for(
                    self._probe.probe(session_id), timeout=cfg.probe_timeout_seconds,
                ):
                    return True
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.debug(
                    "Liveness probe %d/%d failed session=%s: %s",
                    attempt, attempts, session_id[:8], exc,
                )
            if attempt < attempts:
                await asyncio.sleep(min(0.5, cfg.probe_interval_seconds or 0.5))
        return False

    # ── Disconnect ──

    async def disconnect(self, session_id: str) -> None:
        """Tear down the transport. Valid from any state; idempotent.

        Cancels in-flight connect, reconnect backoff, reader and probe,
        halts ingestion (later events are dropped, not queued) and
        silently discards pending permission requests.
        """
        known = session_id in self._registry
        if known:
            self._registry.halt(session_id)

        await self._cancel(self._connect_tasks.pop(session_id, None))
        await self._cancel(self._reader_tasks.pop(session_id, None))
        await self._cancel(self._probe_tasks.pop(session_id, None))
        conn = self._connections.pop(session_id, None)
        if conn is not None:
            await self._close_quietly(session_id, conn)
        await self._ingestor.stop(session_id)

        if known and session_id in self._registry:
            self._broker.clear(session_id)
            self._registry.discard_stream(session_id)
            self._registry.set_connection_status(session_id, ConnectionStatus.DISCONNECTED)
            logger.info("Disconnected session=%s", session_id[:8])

    async def close(self) -> None:
        """Disconnect every session and release transport resources."""
        session_ids = set(self._connections) | set(self._connect_tasks) | set(self._registry.session_ids())
        for session_id in session_ids:
            await self.disconnect(session_id)
        for collaborator in (self._transport, self._probe):
            closer = getattr(collaborator, "close", None)
            if closer is not None:
                await closer()

    # ── Outbound ──

    async def send(self, session_id: str, event: ProtocolEvent) -> None:
        """Write an outbound event on the session's transport."""
        conn = self._connections.get(session_id)
        if conn is None:
            raise NotConnectedError(session_id)
        payload: dict[str, Any] = event_to_dict(event)
        payload["session_id"] = session_id
        await conn.send(payload)
        logger.debug("Sent %s session=%s", event.type, session_id[:8])
        if self._config.outbound_callback is not None:
            try:
                await self._config.outbound_callback(session_id, payload)
            except Exception:
                logger.exception("Outbound callback failed session=%s", session_id[:8])

    # ── helpers ──

    @staticmethod
    async def _cancel(task: asyncio.Task | None) -> None:
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.debug("Task %s ended with error during cancel", task.get_name(), exc_info=True)

    @staticmethod
    async def _close_quietly(session_id: str, conn: TransportConnection) -> None:
        try:
            await conn.close()
        except Exception:
            logger.debug("Closing transport failed session=%s", session_id[:8], exc_info=True)
