"""Transport collaborators — how sessions reach the agent host.

The supervisor only depends on the two protocols below. The aiohttp
implementations speak JSON over one websocket per session and probe
the host's HTTP API for agent liveness.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Protocol

import aiohttp

from companion.engine.config import CompanionConfig
from companion.engine.errors import TransportError

logger = logging.getLogger(__name__)


class TransportConnection(Protocol):
    """An open, bidirectional event channel for one session."""

    async def receive(self) -> Any:
        """Return the next decoded inbound payload, or None once closed."""
        ...

    async def send(self, data: dict[str, Any]) -> None:
        """Write one outbound event."""
        ...

    async def close(self) -> None:
        ...


class Transport(Protocol):
    """Opens per-session connections. Raises on failure."""

    async def open(self, session_id: str) -> TransportConnection:
        ...


class LivenessProbe(Protocol):
    """Retryable predicate: is the remote agent process answering?"""

    async def probe(self, session_id: str) -> bool:
        ...


class _WebSocketConnection:
    def __init__(self, session_id: str, ws: aiohttp.ClientWebSocketResponse) -> None:
        self._session_id = session_id
        self._ws = ws

    @property
    def closed(self) -> bool:
        return self._ws.closed

    async def receive(self) -> Any:
        while True:
            msg = await self._ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    return json.loads(msg.data)
                except json.JSONDecodeError:
                    logger.warning(
                        "Non-JSON websocket frame session=%s (%d bytes) skipped",
                        self._session_id[:8], len(msg.data),
                    )
                    continue
            if msg.type in (
                aiohttp.WSMsgType.CLOSE,
                aiohttp.WSMsgType.CLOSING,
                aiohttp.WSMsgType.CLOSED,
            ):
                return None
            if msg.type == aiohttp.WSMsgType.ERROR:
                logger.warning(
                    "Websocket error session=%s: %s",
                    self._session_id[:8], self._ws.exception(),
                )
                return None
            # Binary / ping / pong frames carry no protocol events

    async def send(self, data: dict[str, Any]) -> None:
        if self._ws.closed:
            raise TransportError(f"websocket for session {self._session_id} is closed")
        await self._ws.send_str(json.dumps(data))

    async def close(self) -> None:
        if not self._ws.closed:
            await self._ws.close()


class WebSocketTransport:
    """One aiohttp websocket per session, JSON text frames."""

    def __init__(
        self,
        config: CompanionConfig,
        http: aiohttp.ClientSession | None = None,
    ) -> None:
        self._config = config
        self._http = http
        self._owns_http = http is None

    def _client(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
            self._owns_http = True
        return self._http

    async def open(self, session_id: str) -> _WebSocketConnection:
        url = self._config.ws_url(session_id)
        logger.debug("Opening websocket session=%s url=%s", session_id[:8], url)
        ws = await self._client().ws_connect(url, heartbeat=30.0)
        return _WebSocketConnection(session_id, ws)

    async def close(self) -> None:
        if self._owns_http and self._http is not None and not self._http.closed:
            await self._http.close()
        self._http = None


class HttpLivenessProbe:
    """GET the host's session endpoint; 200 means the agent answers.

    When the JSON body carries a ``cli_connected`` flag it wins over the
    status code.
    """

    def __init__(
        self,
        config: CompanionConfig,
        http: aiohttp.ClientSession | None = None,
    ) -> None:
        self._config = config
        self._http = http
        self._owns_http = http is None

    def _client(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
            self._owns_http = True
        return self._http

    async def probe(self, session_id: str) -> bool:
        url = self._config.probe_url(session_id)
        timeout = aiohttp.ClientTimeout(total=self._config.probe_timeout_seconds)
        async with self._client().get(url, timeout=timeout) as resp:
            if resp.status != 200:
                return False
            try:
                body = await resp.json(content_type=None)
            except (json.JSONDecodeError, aiohttp.ContentTypeError):
                return True
            if isinstance(body, dict) and isinstance(body.get("cli_connected"), bool):
                return body["cli_connected"]
            return True

    async def close(self) -> None:
        if self._owns_http and self._http is not None and not self._http.closed:
            await self._http.close()
        self._http = None
