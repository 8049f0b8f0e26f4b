"""Async event queue for one session's inbound protocol events.

The transport reader puts decoded events in; the ingestion consumer
takes them out one at a time, in arrival order.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from companion.adapters.events import ProtocolEvent

logger = logging.getLogger(__name__)


class EventBus:
    """Ordered async queue bridging the transport to the ingestion consumer."""

    def __init__(self, maxsize: int = 5000, put_timeout: float = 30.0) -> None:
        self._queue: asyncio.Queue[ProtocolEvent] = asyncio.Queue(
            maxsize=maxsize
        )
        self._put_timeout = put_timeout
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    async def emit(self, event: ProtocolEvent) -> bool:
        """Queue an event. Returns False if the bus is closed or blocked."""
        if self._closed:
            return False
        try:
            # Use await put() with timeout to add backpressure instead of dropping
            await asyncio.wait_for(self._queue.put(event), timeout=self._put_timeout)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "EventBus queue blocked for %.0fs, dropping: %s (queue size: %d)",
                self._put_timeout,
                event.type,
                self._queue.qsize(),
            )
            return False

    async def consume(self) -> AsyncIterator[ProtocolEvent]:
        """Yield events as they arrive. Stops on close()."""
        while not self._closed:
            try:
                event = await asyncio.wait_for(
                    self._queue.get(), timeout=0.5
                )
            except asyncio.TimeoutError:
                continue
            if self._closed:
                self._queue.task_done()
                break
            try:
                yield event
            finally:
                self._queue.task_done()

    async def join(self) -> None:
        """Wait until every queued event has been handled by the consumer."""
        await self._queue.join()

    def close(self) -> int:
        """Stop the consumer loop permanently and drop queued events.

        Returns the number of events dropped.
        """
        self._closed = True
        return self.drain()

    def drain(self) -> int:
        dropped = 0
        while not self._queue.empty():
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            self._queue.task_done()
            dropped += 1
        return dropped
