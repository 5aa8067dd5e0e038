"""
In-process publish/subscribe for theater POS terminals over server-sent events.

Nothing is persisted: a subscriber that is not connected when an event is
broadcast never sees it, and terminals reconnect after a restart.
"""
import asyncio
import itertools
import json
import logging
from typing import AsyncIterator, Dict, Optional, Set

from yqpay.core.config import SSE_HEARTBEAT_SECONDS, SSE_QUEUE_SIZE

logger = logging.getLogger(__name__)

KEEP_ALIVE = ": keep-alive\n\n"

_ids = itertools.count(1)


def format_event(payload: dict) -> str:
    return f"data: {json.dumps(payload, default=str)}\n\n"


class SubscriberClosed(Exception):
    pass


class Subscriber:
    """One open SSE stream. Writes go to a bounded outbox drained by the response."""

    def __init__(self, theater_id: str, maxsize: int = SSE_QUEUE_SIZE):
        self.id = next(_ids)
        self.theater_id = theater_id
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    def send(self, chunk: str) -> None:
        if self.closed:
            raise SubscriberClosed(f"subscriber {self.id} is closed")
        try:
            self._queue.put_nowait(chunk)
        except asyncio.QueueFull:
            raise SubscriberClosed(f"subscriber {self.id} is not keeping up")

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            # reader is stuck anyway; drop one chunk to make room for the sentinel
            self._queue.get_nowait()
            self._queue.put_nowait(None)

    async def stream(self) -> AsyncIterator[str]:
        while True:
            chunk = await self._queue.get()
            if chunk is None:
                return
            yield chunk


class PosEventBus:
    def __init__(self, heartbeat_seconds: float = SSE_HEARTBEAT_SECONDS, queue_size: int = SSE_QUEUE_SIZE):
        self.heartbeat_seconds = heartbeat_seconds
        self.queue_size = queue_size
        self.subscribers: Dict[str, Set[Subscriber]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._heartbeat_task: Optional[asyncio.Task] = None

    def _lock(self, theater_id: str) -> asyncio.Lock:
        lock = self._locks.get(theater_id)
        if lock is None:
            lock = self._locks[theater_id] = asyncio.Lock()
        return lock

    async def subscribe(self, theater_id: str) -> Subscriber:
        theater_id = str(theater_id)
        sub = Subscriber(theater_id, self.queue_size)
        sub.send(format_event({"type": "connected", "theaterId": theater_id}))
        async with self._lock(theater_id):
            self.subscribers.setdefault(theater_id, set()).add(sub)
        logger.info("POS subscriber %s joined theater %s (%d open)", sub.id, theater_id, self.subscriber_count(theater_id))
        return sub

    async def unsubscribe(self, sub: Subscriber) -> None:
        sub.close()
        async with self._lock(sub.theater_id):
            subs = self.subscribers.get(sub.theater_id)
            if subs is not None:
                subs.discard(sub)
                if not subs:
                    del self.subscribers[sub.theater_id]
        logger.info("POS subscriber %s left theater %s", sub.id, sub.theater_id)

    async def _deliver(self, theater_id: str, chunk: str) -> int:
        delivered = 0
        async with self._lock(theater_id):
            subs = self.subscribers.get(theater_id)
            if not subs:
                return 0
            for sub in list(subs):
                try:
                    sub.send(chunk)
                    delivered += 1
                except Exception as e:
                    logger.warning("Dropping POS subscriber %s for theater %s: %s", sub.id, theater_id, e)
                    sub.close()
                    subs.discard(sub)
            if not subs:
                del self.subscribers[theater_id]
        return delivered

    async def broadcast(self, theater_id: str, event: dict) -> int:
        """Fire-and-forget; returns how many subscribers accepted the event."""
        theater_id = str(theater_id)
        sent = await self._deliver(theater_id, format_event(event))
        if sent == 0:
            logger.warning("No POS subscribers for theater %s; %s event dropped", theater_id, event.get("type"))
        return sent

    async def heartbeat_once(self) -> int:
        total = 0
        for theater_id in list(self.subscribers):
            total += await self._deliver(theater_id, KEEP_ALIVE)
        return total

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_seconds)
            try:
                await self.heartbeat_once()
            except Exception:
                logger.exception("POS heartbeat failed")

    def start(self) -> None:
        if self._heartbeat_task is None or self._heartbeat_task.done():
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def stop(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None
        for subs in list(self.subscribers.values()):
            for sub in list(subs):
                sub.close()
        self.subscribers.clear()
        self._locks.clear()

    def subscriber_count(self, theater_id: str) -> int:
        return len(self.subscribers.get(str(theater_id), ()))


pos_bus = PosEventBus()
