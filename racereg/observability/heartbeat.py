from __future__ import annotations
import asyncio
import logging
from datetime import datetime, timezone

from redis.exceptions import RedisError

from ..redis_client import redis

log = logging.getLogger("racereg.heartbeat")


def heartbeat_key(worker: str) -> str:
    return f"hb:{worker}"


async def beat(worker: str, interval_sec: int = 5, ttl_sec: int = 20):
    """Refresh `hb:<worker>` forever; ops alert when the key lapses."""
    key = heartbeat_key(worker)
    while True:
        try:
            await redis.set(key, datetime.now(timezone.utc).isoformat(), ex=ttl_sec)
        except RedisError as e:
            log.warning("heartbeat_failed", extra={"worker": worker, "error": str(e)})
        await asyncio.sleep(interval_sec)
