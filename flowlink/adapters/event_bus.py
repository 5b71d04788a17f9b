"""Async event bus bridging session manager updates to host consumers.

The manager publishes typed events as sessions change with
emit_nowait(), so a slow or absent consumer never holds up event
ingestion; the host's consumer loop reads them at its own pace.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from flowlink.adapters.events import ManagerEvent

logger = logging.getLogger(__name__)


class EventBus:
    """Async queue bridging manager events to host consumers."""

    def __init__(self, maxsize: int = 5000, put_timeout: float = 30.0) -> None:
        self._queue: asyncio.Queue[ManagerEvent] = asyncio.Queue(
            maxsize=maxsize
        )
        self._put_timeout = put_timeout
        self._closed = False
        self.dropped = 0

    async def emit(self, event: ManagerEvent) -> None:
        if self._closed:
            return
        try:
            # Await put() with a timeout to add backpressure instead of dropping
            await asyncio.wait_for(self._queue.put(event), timeout=self._put_timeout)
        except asyncio.TimeoutError:
            logger.error(
                "EventBus queue blocked for %.0fs, dropping: %s (queue size: %d)",
                self._put_timeout,
                event.event_type,
                self._queue.qsize(),
            )

    def emit_nowait(self, event: ManagerEvent) -> None:
        """Queue without waiting. A full queue loses its oldest event."""
        if self._closed:
            return
        while True:
            try:
                self._queue.put_nowait(event)
                return
            except asyncio.QueueFull:
                try:
                    dropped = self._queue.get_nowait()
                except asyncio.QueueEmpty:
                    continue
                self.dropped += 1
                logger.warning(
                    "EventBus full (%d), dropping oldest: %s for %s",
                    self._queue.maxsize, dropped.event_type, dropped.session_id,
                )

    async def consume(self) -> AsyncIterator[ManagerEvent]:
        """Yield events as they arrive. Stops on close()."""
        while not self._closed:
            try:
                event = await asyncio.wait_for(
                    self._queue.get(), timeout=0.5
                )
                yield event
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

    def get_nowait(self) -> ManagerEvent | None:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def qsize(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        """Stop the consumer loop permanently."""
        self._closed = True

    def reset(self) -> None:
        """Drain leftover events and re-open the bus."""
        while not self._queue.empty():
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
        self._closed = False
