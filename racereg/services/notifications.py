from __future__ import annotations

import logging
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import EventDistance, EventEdition, Registration, User
from ..repos.outbox import CHANNEL_EMAIL, add_outbox_event

log = logging.getLogger("racereg.email")

TEMPLATE_REGISTRATION_COMPLETED = "registration.completed"


async def send_registration_completed_email(db: AsyncSession, *, registration_id: uuid.UUID) -> bool:
    """Best effort: queue the confirmation email. Never raises.

    Runs after the finalize transaction has committed, in its own short transaction.
    """
    try:
        if db.in_transaction():
            await db.rollback()
        row = await db.execute(
            select(Registration, User, EventEdition, EventDistance)
            .join(User, User.id == Registration.buyer_user_id)
            .join(EventEdition, EventEdition.id == Registration.edition_id)
            .join(EventDistance, EventDistance.id == Registration.distance_id)
            .where(Registration.id == registration_id)
        )
        found = row.first()
        if not found:
            log.info("registration_email_skipped", extra={"registration_id": str(registration_id)})
            await db.rollback()
            return False
        reg, buyer, edition, distance = found
        await add_outbox_event(
            db,
            channel=CHANNEL_EMAIL,
            payload={
                "template": TEMPLATE_REGISTRATION_COMPLETED,
                "to": buyer.email,
                "name": buyer.name,
                "registration_id": str(reg.id),
                "status": reg.status,
                "edition": edition.edition_label,
                "distance": distance.label,
                "total_cents": reg.total_cents,
            },
        )
        await db.commit()
        return True
    except Exception:
        log.exception("registration_email_failed", extra={"registration_id": str(registration_id)})
        try:
            await db.rollback()
        except Exception:
            log.warning("registration_email_rollback_failed", extra={"registration_id": str(registration_id)})
        return False
