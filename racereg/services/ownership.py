from __future__ import annotations

import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..domain.results import ActionError, Err, ErrorCode
from ..models import Registration


class RegistrationOwnershipError(ActionError):
    """NOT_FOUND or FORBIDDEN. Both surface as NOT_FOUND so ids cannot be enumerated."""

    def to_result(self) -> Err:
        return Err(error="Registration not found", code=ErrorCode.NOT_FOUND)


async def get_registration_for_owner(
    db: AsyncSession,
    *,
    registration_id: uuid.UUID,
    user_id: uuid.UUID,
    for_update: bool = False,
) -> Registration:
    q = select(Registration).where(Registration.id == registration_id, Registration.deleted_at.is_(None))
    if for_update:
        q = q.with_for_update()
    reg = (await db.execute(q)).scalar_one_or_none()
    if reg is None:
        raise RegistrationOwnershipError(ErrorCode.NOT_FOUND, "Registration not found")
    if reg.buyer_user_id != user_id:
        raise RegistrationOwnershipError(ErrorCode.FORBIDDEN, "Permission denied")
    return reg
