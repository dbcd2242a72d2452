"""
Feed publisher: pushes every newly aggregated BurnEvent to connected subscribers.

A subscriber joins by taking a snapshot and registering its queue under the
same lock that publish() holds while it ingests and fans out, so nothing
published is both in the snapshot and in the queue, and nothing falls between.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect

from core.aggregator import EventAggregator, IngestResult
from core.models import BurnEvent, FeedSnapshot

logger = logging.getLogger(__name__)

_CLOSED = None


class SubscriptionClosed(Exception):
    pass


class Subscription:
    """One connected subscriber: a bounded outbound queue plus its join snapshot."""

    def __init__(self, snapshot: FeedSnapshot, maxsize: int = 256):
        self.snapshot = snapshot
        self.queue: "asyncio.Queue[Optional[BurnEvent]]" = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def offer(self, event: BurnEvent) -> bool:
        """Queue an event. False means the subscriber cannot keep up."""
        if self.closed:
            return False
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        while not self.queue.empty():
            self.queue.get_nowait()
        self.queue.put_nowait(_CLOSED)

    async def next(self) -> BurnEvent:
        event = await self.queue.get()
        if event is _CLOSED:
            raise SubscriptionClosed()
        return event


class FeedPublisher:
    def __init__(self, aggregator: EventAggregator, queue_size: int = 256):
        self.aggregator = aggregator
        self.queue_size = queue_size
        self._lock = asyncio.Lock()
        self._subscribers: Set[Subscription] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def publish(self, event: BurnEvent) -> IngestResult:
        """Ingest into the aggregator and, if new, fan out in arrival order."""
        async with self._lock:
            result = self.aggregator.ingest(event)
            if result is not IngestResult.ACCEPTED:
                return result

            dropped = []
            for sub in list(self._subscribers):
                if not sub.offer(event):
                    dropped.append(sub)
            for sub in dropped:
                self._remove(sub)
                logger.warning("Pruned slow feed subscriber. Total: %d", len(self._subscribers))
            return result

    async def join(self) -> Subscription:
        async with self._lock:
            sub = Subscription(self.aggregator.snapshot(), maxsize=self.queue_size)
            self._subscribers.add(sub)
        logger.info("Feed subscriber joined. Total: %d", len(self._subscribers))
        return sub

    def leave(self, sub: Subscription) -> None:
        if sub in self._subscribers:
            self._remove(sub)
            logger.info("Feed subscriber left. Total: %d", len(self._subscribers))

    def _remove(self, sub: Subscription) -> None:
        self._subscribers.discard(sub)
        sub.close()

    async def close(self) -> None:
        async with self._lock:
            for sub in list(self._subscribers):
                self._remove(sub)

    # ------------------------------------------------------------
    # WebSocket transport
    # ------------------------------------------------------------

    async def serve(self, websocket: WebSocket) -> None:
        """Run one subscriber connection until either side goes away."""
        await websocket.accept()
        sub = await self.join()
        try:
            await websocket.send_json(sub.snapshot.to_message())
            sender = asyncio.create_task(self._send_loop(websocket, sub))
            receiver = asyncio.create_task(self._receive_loop(websocket))
            done, pending = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            for task in done:
                exc = task.exception()
                if exc is not None and not isinstance(exc, (WebSocketDisconnect, SubscriptionClosed)):
                    logger.warning("Feed connection ended: %s", exc)
            if sender in done:
                # pruned or shut down: the client reconnects and rehydrates
                await websocket.close(code=1013)
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.warning("Feed connection failed: %s", e)
        finally:
            self.leave(sub)

    async def _send_loop(self, websocket: WebSocket, sub: Subscription) -> None:
        while True:
            event = await sub.next()
            await websocket.send_json(event.to_message())

    async def _receive_loop(self, websocket: WebSocket) -> None:
        while True:
            data = await websocket.receive_text()
            try:
                message: Dict[str, Any] = json.loads(data)
            except json.JSONDecodeError:
                continue
            if isinstance(message, dict) and message.get("type") == "ping":
                await websocket.send_json({"type": "pong"})
