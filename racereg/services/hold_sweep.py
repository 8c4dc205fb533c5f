from __future__ import annotations
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..domain.states import (
    LIVE_INVITE_STATUSES,
    PROVISIONAL_STATUSES,
    InviteStatus,
    RegistrationEvent,
    RegistrationStatus,
    sources_for,
)
from ..models import Registration, RegistrationInvite
from ..observability.metrics import HOLDS_SWEPT
from .tx import transaction

log = logging.getLogger("racereg.hold_sweep")


async def sweep_expired_holds(db: AsyncSession, *, batch: int = 500, now: Optional[datetime] = None) -> list[str]:
    """
    Rewrite at most `batch` lapsed provisional registrations to `cancelled` and
    expire their live invites, along with any invite past its own deadline.
    Returns the registration ids swept.

    Reporting only: a lapsed hold already stopped counting toward capacity
    when its expires_at passed.
    """
    now = now or datetime.now(timezone.utc)
    swept: list[str] = []

    async with transaction(db):
        # SKIP LOCKED so a hold being finalized right now is left to its owner
        ids = (
            await db.execute(
                select(Registration.id)
                .where(
                    Registration.deleted_at.is_(None),
                    Registration.status.in_([s.value for s in PROVISIONAL_STATUSES]),
                    Registration.expires_at <= now,
                )
                .order_by(Registration.expires_at.asc())
                .limit(batch)
                .with_for_update(skip_locked=True)
            )
        ).scalars().all()
        if ids:
            res = await db.execute(
                update(Registration)
                .where(
                    Registration.id.in_(ids),
                    Registration.status.in_(sources_for(RegistrationEvent.EXPIRE_SWEEP)),
                )
                .values(status=RegistrationStatus.CANCELLED.value, expires_at=None)
                .returning(Registration.id)
            )
            swept = [str(r) for r in res.scalars().all()]

        # invites of swept holds, plus any past their own deadline
        lapsed = or_(RegistrationInvite.registration_id.in_(ids), RegistrationInvite.expires_at <= now)
        invite_ids = (
            await db.execute(
                select(RegistrationInvite.id)
                .where(
                    RegistrationInvite.is_current.is_(True),
                    RegistrationInvite.status.in_(LIVE_INVITE_STATUSES),
                    lapsed,
                )
                .limit(batch)
                .with_for_update(skip_locked=True)
            )
        ).scalars().all()
        if invite_ids:
            await db.execute(
                update(RegistrationInvite)
                .where(RegistrationInvite.id.in_(invite_ids))
                .values(status=InviteStatus.EXPIRED.value, is_current=False)
            )

    if swept:
        HOLDS_SWEPT.inc(len(swept))
        log.info("holds_swept", extra={"count": len(swept)})
    if invite_ids:
        log.info("invites_expired", extra={"count": len(invite_ids)})
    return swept
