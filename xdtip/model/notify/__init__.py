# model/notify/__init__.py
import os
from typing import Optional
import redis.asyncio as redis

BACKEND = os.getenv("NOTIFY_BACKEND", "memory").lower()  # 'memory' | 'redis'

if BACKEND == "redis":
    from ._redis import Notifier as _Notifier
else:
    from ._memory import Notifier as _Notifier


# Factory keeps server.py simple and constructor-agnostic:
def new_notifier(*, r: Optional[redis.Redis] = None,
                 max_queue: int = 100):
    if BACKEND == "redis":
        if r is None:
            raise RuntimeError("Notifier(redis) requires r=redis.Redis")
        return _Notifier(r=r)
    return _Notifier(max_queue=max_queue)


Notifier = _Notifier
__all__ = ["Notifier", "new_notifier", "BACKEND"]
