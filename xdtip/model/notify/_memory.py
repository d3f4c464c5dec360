# model/notify/_memory.py
"""
In-process topic-per-creator broadcast.

Good for a single worker. Subscribers that join after a publish never see
that event; there is no backlog and nothing survives a restart.
"""
from __future__ import annotations
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Set

logger = logging.getLogger(__name__)


class Subscription:
    __slots__ = ("topic", "_queue")

    def __init__(self, topic: str, queue: asyncio.Queue) -> None:
        self.topic = topic
        self._queue = queue

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Dict[str, Any]:
        return await self._queue.get()

    async def get(self, timeout: float | None = None) -> Dict[str, Any]:
        return await asyncio.wait_for(self._queue.get(), timeout)


class Notifier:
    def __init__(self, max_queue: int = 100) -> None:
        self.max_queue = max_queue
        self._topics: Dict[str, Set[asyncio.Queue]] = {}

    def subscriber_count(self, topic: str) -> int:
        return len(self._topics.get(topic, ()))

    async def publish(self, topic: str, event: Dict[str, Any]) -> int:
        delivered = 0
        for q in list(self._topics.get(topic, ())):
            try:
                q.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                # slow overlay: drop rather than block the publisher
                logger.warning("dropping event for slow subscriber on %s",
                               topic)
        return delivered

    @asynccontextmanager
    async def subscribe(self, topic: str) -> AsyncIterator[Subscription]:
        q: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue)
        self._topics.setdefault(topic, set()).add(q)
        try:
            yield Subscription(topic, q)
        finally:
            subs = self._topics.get(topic)
            if subs is not None:
                subs.discard(q)
                if not subs:
                    del self._topics[topic]

    async def close(self) -> None:
        self._topics.clear()
