from __future__ import annotations
import uuid
from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from ..domain.caller import Caller
from ..models import EventEdition, OrganizationMembership

# roles allowed to change registration settings and run group uploads
EDITOR_ROLES = ("owner", "admin", "editor")


async def can_edit_registration_settings(db: AsyncSession, caller: Caller, edition_id: uuid.UUID) -> bool:
    if caller.is_admin:
        return True
    row = await db.execute(
        select(OrganizationMembership.role)
        .join(EventEdition, EventEdition.organization_id == OrganizationMembership.organization_id)
        .where(
            EventEdition.id == edition_id,
            EventEdition.deleted_at.is_(None),
            OrganizationMembership.user_id == caller.user_id,
        )
    )
    role = row.scalar_one_or_none()
    return role in EDITOR_ROLES


async def require_registration_editor(db: AsyncSession, caller: Caller, edition_id: uuid.UUID) -> None:
    if not await can_edit_registration_settings(db, caller, edition_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Permission denied")
