from __future__ import annotations

import asyncio

from aiohttp import WSMsgType, web
from aiohttp.test_utils import AioHTTPTestCase

from companion.adapters.client import CompanionClient
from companion.adapters.transport import HttpLivenessProbe, WebSocketTransport
from companion.engine.config import CompanionConfig
from companion.engine.models import ConnectionStatus


class TestWebSocketTransport(AioHTTPTestCase):
    async def get_application(self):
        self.received: list[dict] = []
        self.cli_connected = True
        app = web.Application()
        app.router.add_get("/ws/browser/{session_id}", self._ws_handler)
        app.router.add_get("/api/sessions/{session_id}", self._session_handler)
        return app

    async def _ws_handler(self, request: web.Request) -> web.WebSocketResponse:
        session_id = request.match_info["session_id"]
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        await ws.send_str("not json")
        await ws.send_json({"type": "session_info", "session_id": session_id, "model": "sonnet"})
        await ws.send_json({"type": "message_start", "session_id": session_id, "message_id": "m1"})
        await ws.send_json({"type": "text_delta", "session_id": session_id, "text": "Hel"})
        await ws.send_json({"type": "text_delta", "session_id": session_id, "text": "lo"})
        await ws.send_json({"type": "message_end", "session_id": session_id, "message_id": "m1"})
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                data = msg.json()
                if data.get("type") == "bye":
                    await ws.close()
                    break
                self.received.append(data)
        return ws

    async def _session_handler(self, request: web.Request) -> web.Response:
        if request.match_info["session_id"] == "missing":
            return web.json_response({"error": "not found"}, status=404)
        return web.json_response({"cli_connected": self.cli_connected})

    def _config(self, **overrides) -> CompanionConfig:
        values = dict(
            server_url=str(self.server.make_url("/")).rstrip("/"),
            connect_attempts=2,
            connect_backoff_initial=0.01,
            auto_reconnect=False,
            probe_interval_seconds=0.05,
            probe_attempts=1,
        )
        values.update(overrides)
        return CompanionConfig(**values)

    async def _wait_for(self, predicate, timeout: float = 3.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            assert loop.time() < deadline, "condition not reached in time"
            await asyncio.sleep(0.01)

    async def test_open_receive_and_send(self):
        transport = WebSocketTransport(self._config())
        conn = await transport.open("s1")

        first = await conn.receive()
        await conn.send({"type": "user_message", "session_id": "s1", "content": "hi"})
        await self._wait_for(lambda: self.received)
        await conn.close()
        await transport.close()

        # The non-JSON frame is skipped
        assert first == {"type": "session_info", "session_id": "s1", "model": "sonnet"}
        assert self.received == [{"type": "user_message", "session_id": "s1", "content": "hi"}]

    async def test_receive_returns_none_after_server_closes_socket(self):
        transport = WebSocketTransport(self._config())
        conn = await transport.open("s1")
        for _ in range(5):
            assert await conn.receive() is not None

        await conn.send({"type": "bye"})

        assert await conn.receive() is None
        await transport.close()

    async def test_probe_reads_cli_connected(self):
        probe = HttpLivenessProbe(self._config())

        assert await probe.probe("s1") is True
        self.cli_connected = False
        assert await probe.probe("s1") is False
        assert await probe.probe("missing") is False
        await probe.close()

    async def test_client_end_to_end(self):
        client = CompanionClient(self._config())
        await client.start()
        try:
            await client.open_session("s1")
            await self._wait_for(lambda: len(client.registry.snapshot("s1")) == 1)
            await self._wait_for(lambda: client.session("s1").live)

            await client.send_user_message("s1", "thanks")
            await self._wait_for(lambda: self.received)

            session = client.session("s1")
            assert session.connection_status is ConnectionStatus.CONNECTED
            assert session.model == "sonnet"
            assert [m.content for m in client.registry.snapshot("s1")] == ["Hello", "thanks"]
            assert self.received == [{"type": "user_message", "session_id": "s1", "content": "thanks"}]
        finally:
            await client.close()
