from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession


async def begin_read_committed_tx(db: AsyncSession) -> None:
    """
    Ensure we're not inside an active transaction, then start a new one whose
    first statement pins READ COMMITTED. Capacity correctness comes from the
    scope row lock; each statement after the lock sees rows committed before it.
    """
    # End any auto-begun tx from earlier reads on the same session (safe if none).
    if db.in_transaction():
        await db.rollback()

    # This execute will implicitly BEGIN a new tx; SET TRANSACTION is its first statement.
    await db.execute(text("SET TRANSACTION ISOLATION LEVEL READ COMMITTED"))


@asynccontextmanager
async def transaction(db: AsyncSession) -> AsyncIterator[AsyncSession]:
    """Commit on normal exit, roll back on any exception (which is re-raised).

    Row locks taken inside (see services.capacity.lock_scope) are released by
    that commit or rollback.
    """
    await begin_read_committed_tx(db)
    try:
        yield db
    except BaseException:
        await db.rollback()
        raise
    else:
        await db.commit()
