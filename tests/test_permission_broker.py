from __future__ import annotations

import asyncio

import pytest

from companion.adapters.events import PermissionResolved, ProtocolEvent
from companion.adapters.permission_broker import PermissionBroker
from companion.adapters.registry import SessionRegistry
from companion.engine.errors import NotConnectedError, UnknownPermissionError
from companion.engine.models import PermissionDecision
from companion.shared.models.session import PermissionRequest


class _RecordingSink:
    def __init__(self, fail: bool = False) -> None:
        self.sent: list[tuple[str, ProtocolEvent]] = []
        self.fail = fail

    async def __call__(self, session_id: str, event: ProtocolEvent) -> None:
        if self.fail:
            raise NotConnectedError(session_id)
        self.sent.append((session_id, event))


def _broker_with(*request_ids: str, sink: _RecordingSink | None = None) -> PermissionBroker:
    registry = SessionRegistry()
    registry.create_session("s1")
    broker = PermissionBroker(registry, sink)
    for rid in request_ids:
        broker.add("s1", PermissionRequest(request_id=rid, payload={"tool_name": "Bash"}))
    return broker


@pytest.mark.asyncio
async def test_resolve_removes_only_that_request_and_emits() -> None:
    sink = _RecordingSink()
    broker = _broker_with("p1", "p2", "p3", sink=sink)

    request = await broker.resolve("s1", "p2", "allow")

    assert request.request_id == "p2"
    assert [r.request_id for r in broker.pending("s1")] == ["p1", "p3"]
    assert len(sink.sent) == 1
    session_id, event = sink.sent[0]
    assert session_id == "s1"
    assert isinstance(event, PermissionResolved)
    assert event.request_id == "p2"
    assert event.decision is PermissionDecision.ALLOW


@pytest.mark.asyncio
async def test_second_resolve_raises() -> None:
    sink = _RecordingSink()
    broker = _broker_with("p1", sink=sink)

    await broker.resolve("s1", "p1", PermissionDecision.DENY)
    with pytest.raises(UnknownPermissionError) as exc_info:
        await broker.resolve("s1", "p1", PermissionDecision.DENY)

    assert exc_info.value.request_id == "p1"
    assert len(sink.sent) == 1


@pytest.mark.asyncio
async def test_failed_send_restores_request_in_place() -> None:
    broker = _broker_with("p1", "p2", "p3", sink=_RecordingSink(fail=True))

    with pytest.raises(NotConnectedError):
        await broker.resolve("s1", "p2", "deny")

    assert [r.request_id for r in broker.pending("s1")] == ["p1", "p2", "p3"]


@pytest.mark.asyncio
async def test_invalid_decision_is_rejected() -> None:
    broker = _broker_with("p1")

    with pytest.raises(ValueError):
        await broker.resolve("s1", "p1", "maybe")
    assert broker.first_pending("s1").request_id == "p1"


def test_reissued_request_keeps_position() -> None:
    broker = _broker_with("p1", "p2")

    broker.add("s1", PermissionRequest(request_id="p1", payload={"tool_name": "Edit"}))

    assert [r.request_id for r in broker.pending("s1")] == ["p1", "p2"]
    assert broker.first_pending("s1").tool_name == "Edit"


def test_clear_discards_silently() -> None:
    sink = _RecordingSink()
    broker = _broker_with("p1", "p2", sink=sink)

    assert broker.clear("s1") == 2
    assert broker.pending("s1") == []
    assert broker.first_pending("s1") is None
    assert sink.sent == []
    assert broker.clear("unknown") == 0


def test_discard_does_not_emit() -> None:
    sink = _RecordingSink()
    broker = _broker_with("p1", sink=sink)

    assert broker.discard("s1", "p1") is True
    assert broker.discard("s1", "p1") is False
    assert sink.sent == []


class _GatedFailingSink:
    def __init__(self) -> None:
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def __call__(self, session_id: str, event: ProtocolEvent) -> None:
        self.entered.set()
        await self.release.wait()
        raise NotConnectedError(session_id)


@pytest.mark.asyncio
async def test_failed_send_after_clear_does_not_restore() -> None:
    sink = _GatedFailingSink()
    broker = _broker_with("p1", "p2", sink=sink)

    task = asyncio.create_task(broker.resolve("s1", "p1", "allow"))
    await asyncio.wait_for(sink.entered.wait(), timeout=1.0)
    assert broker.clear("s1") == 1
    sink.release.set()

    with pytest.raises(NotConnectedError):
        await task
    assert broker.pending("s1") == []
