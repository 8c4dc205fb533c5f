from redis import asyncio as aioredis
from .config import get_settings

_settings = get_settings()

# shared by rate limiting, worker locks, heartbeats and the outbox dispatcher
redis = aioredis.from_url(_settings.REDIS_URL, encoding="utf-8", decode_responses=True)


async def redis_health() -> bool:
    try:
        return bool(await redis.ping())
    except Exception:
        return False
