from fastapi import APIRouter
from sqlalchemy import func, select
from ...db import SessionLocal, db_health
from ...models import EventsOutbox
from ...redis_client import redis_health

router = APIRouter(prefix="/health", tags=["health"])


@router.get("")
async def health():
    db_ok, redis_ok = await db_health(), await redis_health()
    status = "ok" if (db_ok and redis_ok) else "degraded"
    return {
        "status": status,
        "dependencies": {
            "postgres": db_ok,
            "redis": redis_ok,
        },
    }


@router.get("/readiness")
async def readiness():
    db_ok, redis_ok = await db_health(), await redis_health()
    outbox_pending = None
    if db_ok:
        # unsent cache/email signals; a growing number means the dispatcher is down
        async with SessionLocal() as db:
            outbox_pending = (
                await db.execute(select(func.count(EventsOutbox.id)).where(EventsOutbox.sent_at.is_(None)))
            ).scalar_one()
    return {"ready": bool(db_ok and redis_ok), "postgres": db_ok, "redis": redis_ok, "outbox_pending": outbox_pending}


@router.get("/liveness")
async def liveness():
    return {"alive": True}
