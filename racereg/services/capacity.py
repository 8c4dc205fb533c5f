from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Literal, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..domain.holds import reserved_clause
from ..domain.results import ActionError, ErrorCode
from ..models import EventDistance, EventEdition, Registration
from ..observability.metrics import CAPACITY_REJECTED


@dataclass(frozen=True)
class CapacityScope:
    kind: Literal["edition", "distance"]
    id: uuid.UUID
    limit: int

    @property
    def sort_key(self) -> tuple[int, str]:
        # editions before distances, then by id: every multi-lock caller takes locks in this order
        return (0 if self.kind == "edition" else 1, str(self.id))


def resolve_scope(edition: EventEdition, distance: EventDistance) -> Optional[CapacityScope]:
    """Which row bears the capacity for `distance`; None means uncapped."""
    if distance.capacity_scope == "shared_pool" and edition.shared_capacity is not None:
        return CapacityScope("edition", edition.id, edition.shared_capacity)
    if distance.capacity is not None:
        return CapacityScope("distance", distance.id, distance.capacity)
    return None


async def lock_scope(db: AsyncSession, scope: CapacityScope) -> EventEdition | EventDistance:
    """SELECT ... FOR UPDATE on the capacity-bearing row; held until the tx ends.

    The row is reloaded in place, so callers re-resolve the scope from fresh values.
    """
    model = EventEdition if scope.kind == "edition" else EventDistance
    row = await db.execute(
        select(model).where(model.id == scope.id).with_for_update().execution_options(populate_existing=True)
    )
    locked = row.scalar_one_or_none()
    if locked is None:
        raise ActionError(ErrorCode.NOT_FOUND, f"{scope.kind} not found")
    return locked


async def lock_scopes(db: AsyncSession, scopes: Iterable[CapacityScope]) -> list[CapacityScope]:
    ordered = sorted({s.sort_key: s for s in scopes}.values(), key=lambda s: s.sort_key)
    for scope in ordered:
        await lock_scope(db, scope)
    return ordered


async def count_reserved(
    db: AsyncSession,
    scope: CapacityScope,
    *,
    now: datetime,
    exclude_registration_id: Optional[uuid.UUID] = None,
) -> int:
    """Slots held in `scope`. Call only after lock_scope() in the same transaction."""
    q = select(func.count(Registration.id)).where(reserved_clause(now))
    if scope.kind == "edition":
        q = q.where(Registration.edition_id == scope.id)
    else:
        q = q.where(Registration.distance_id == scope.id)
    if exclude_registration_id is not None:
        q = q.where(Registration.id != exclude_registration_id)
    return int((await db.execute(q)).scalar_one())


async def ensure_capacity(
    db: AsyncSession,
    scope: Optional[CapacityScope],
    *,
    now: datetime,
    requested: int = 1,
    exclude_registration_id: Optional[uuid.UUID] = None,
    code: ErrorCode = ErrorCode.SOLD_OUT,
) -> None:
    """Admit all `requested` slots or raise; there is no partial admission."""
    if scope is None:
        return
    reserved = await count_reserved(db, scope, now=now, exclude_registration_id=exclude_registration_id)
    if reserved + requested > scope.limit:
        CAPACITY_REJECTED.labels(scope=scope.kind).inc()
        if code is ErrorCode.SOLD_OUT:
            message = "Edition is sold out" if scope.kind == "edition" else "Distance is sold out"
        else:
            message = f"Not enough capacity: {max(scope.limit - reserved, 0)} left, {requested} requested"
        raise ActionError(code, message)
