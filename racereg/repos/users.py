from __future__ import annotations
import uuid
from datetime import date
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from ..config import get_settings
from ..domain.identity import normalize_email
from ..models import Profile, User


async def get_by_email(db: AsyncSession, email: str) -> Optional[User]:
    # email is CITEXT; normalizing still trims stray whitespace
    res = await db.execute(select(User).where(User.email == normalize_email(email)))
    return res.scalar_one_or_none()


async def upsert_by_email(
    db: AsyncSession,
    *,
    email: str,
    name: Optional[str] = None,
    email_verified: Optional[bool] = None,
) -> User:
    user = await get_by_email(db, email)
    if user:
        changed = False
        if name and user.name != name:
            user.name = name
            changed = True
        if email_verified is not None and user.email_verified != email_verified:
            user.email_verified = email_verified
            changed = True
        if changed:
            await db.flush()
        return user

    user = User(name=name or "Participant", email=normalize_email(email), email_verified=bool(email_verified))
    db.add(user)
    await db.flush()
    return user


async def ensure_system_buyer(db: AsyncSession) -> User:
    """Placeholder owner for batch rows that match no account; its id is fixed by config."""
    S = get_settings()
    await db.execute(
        pg_insert(User)
        .values(
            id=S.SYSTEM_BUYER_ID,
            name=S.SYSTEM_BUYER_NAME,
            email=normalize_email(S.SYSTEM_BUYER_EMAIL),
            email_verified=True,
        )
        .on_conflict_do_nothing()
    )
    user = await db.get(User, S.SYSTEM_BUYER_ID)
    if user is None:
        raise RuntimeError(f"SYSTEM_BUYER_EMAIL {S.SYSTEM_BUYER_EMAIL} belongs to another account")
    return user


async def get_profile(db: AsyncSession, user_id: uuid.UUID, *, for_update: bool = False) -> Optional[Profile]:
    q = select(Profile).where(Profile.user_id == user_id)
    if for_update:
        q = q.with_for_update()
    return (await db.execute(q)).scalar_one_or_none()


async def set_date_of_birth(db: AsyncSession, user_id: uuid.UUID, dob: date) -> Profile:
    profile = await get_profile(db, user_id, for_update=True)
    if profile is None:
        profile = Profile(user_id=user_id, date_of_birth=dob)
        db.add(profile)
    else:
        profile.date_of_birth = dob
    await db.flush()
    return profile


async def find_by_emails(db: AsyncSession, emails: list[str]) -> dict[str, tuple[User, Optional[Profile]]]:
    """normalized email -> (user, profile) for live accounts among `emails`."""
    if not emails:
        return {}
    rows = await db.execute(
        select(User, Profile)
        .outerjoin(Profile, Profile.user_id == User.id)
        .where(User.email.in_(emails), User.deleted_at.is_(None))
    )
    return {normalize_email(u.email): (u, p) for u, p in rows.all()}
