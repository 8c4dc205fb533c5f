from __future__ import annotations
import asyncio
import logging

from ..config import get_settings
from ..db import SessionLocal
from ..observability.heartbeat import beat
from ..observability.logging import setup_logging
from ..redis_client import redis
from ..services.hold_sweep import sweep_expired_holds

S = get_settings()
log = logging.getLogger("worker.hold_sweeper")


def _lock_key() -> str: return "lock:hold_sweeper"


async def _acquire_lock() -> bool:
    # Only one instance performs the scan; others idle
    return await redis.set(_lock_key(), "1", ex=S.HOLD_SWEEP_LOCK_TTL_SEC, nx=True) is True


async def run_once() -> int:
    if not await _acquire_lock():
        return 0
    async with SessionLocal() as db:
        swept = await sweep_expired_holds(db, batch=S.HOLD_SWEEP_BATCH)
    return len(swept)


async def run_forever():
    asyncio.create_task(beat("hold_sweeper"))
    while True:
        try:
            await run_once()
        except Exception:
            log.exception("hold_sweeper_error")
        await asyncio.sleep(S.HOLD_SWEEP_INTERVAL_SEC)


def main():
    setup_logging()
    asyncio.run(run_forever())


if __name__ == "__main__":
    main()
