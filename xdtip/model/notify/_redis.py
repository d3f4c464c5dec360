# model/notify/_redis.py
"""
Redis pub/sub broadcast, shared by all workers behind the same Redis.

PUBLISH is fire-and-forget: a channel without subscribers just returns 0.
"""
from __future__ import annotations
import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict
import redis.asyncio as redis


# ---- keys
def k_topic(topic: str) -> str: return f"tips:{topic}"


class Subscription:
    def __init__(self, topic: str, pubsub) -> None:
        self.topic = topic
        self._pubsub = pubsub

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Dict[str, Any]:
        while True:
            msg = await self._pubsub.get_message(
                ignore_subscribe_messages=True, timeout=None
            )
            if msg is not None and msg.get("type") == "message":
                return json.loads(msg["data"])

    async def get(self, timeout: float | None = None) -> Dict[str, Any]:
        return await asyncio.wait_for(self.__anext__(), timeout)


class Notifier:
    def __init__(self, r: redis.Redis) -> None:
        self.r = r

    async def publish(self, topic: str, event: Dict[str, Any]) -> int:
        payload = json.dumps(event, separators=(",", ":"))
        return int(await self.r.publish(k_topic(topic), payload))

    @asynccontextmanager
    async def subscribe(self, topic: str) -> AsyncIterator[Subscription]:
        pubsub = self.r.pubsub()
        await pubsub.subscribe(k_topic(topic))
        try:
            yield Subscription(topic, pubsub)
        finally:
            await pubsub.unsubscribe(k_topic(topic))
            await pubsub.aclose()

    async def close(self) -> None:
        # the client itself is owned by the server
        return None
