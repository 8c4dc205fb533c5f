from __future__ import annotations

import logging
import secrets
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..domain.holds import is_expired_hold, reserved_clause
from ..domain.identity import hash_token, normalize_email, to_date, to_iso_date_string
from ..domain.results import ActionError, ActionResult, ErrorCode, Ok
from ..domain.schemas.invites import (
    BatchCancelledOut,
    BatchInviteFailure,
    BatchInviteOut,
    BatchInvitesOut,
    InviteCancelledOut,
    IssuedInviteOut,
)
from ..domain.states import (
    LIVE_INVITE_STATUSES,
    BatchStatus,
    InviteStatus,
    RegistrationEvent,
    RegistrationStatus,
    sources_for,
)
from ..models import (
    EventEdition,
    GroupRegistrationBatch,
    GroupRegistrationBatchRow,
    Registration,
    RegistrationInvite,
)
from ..repos import users as users_repo
from .audit import record_audit
from .cache_tags import revalidate_edition
from .tx import transaction

log = logging.getLogger("racereg.invites")

TOKEN_BYTES = 32
TOKEN_PREFIX_LEN = 8


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def generate_token() -> str:
    return secrets.token_urlsafe(TOKEN_BYTES)


def _is_unclaimed(reg: Registration) -> bool:
    return reg.buyer_user_id is None or reg.buyer_user_id == get_settings().SYSTEM_BUYER_ID


async def _organization_id(db: AsyncSession, edition_id: uuid.UUID) -> Optional[uuid.UUID]:
    edition = await db.get(EventEdition, edition_id)
    return edition.organization_id if edition else None


async def get_current_invite_for_email(
    db: AsyncSession, *, edition_id: uuid.UUID, email: str, now: Optional[datetime] = None
) -> Optional[RegistrationInvite]:
    """The live, unclaimed invite addressed to `email` in this edition, if any."""
    now = now or _now_utc()
    row = await db.execute(
        select(RegistrationInvite)
        .join(Registration, Registration.id == RegistrationInvite.registration_id)
        .where(
            RegistrationInvite.edition_id == edition_id,
            RegistrationInvite.email_normalized == normalize_email(email),
            RegistrationInvite.is_current.is_(True),
            RegistrationInvite.status.in_(LIVE_INVITE_STATUSES),
            RegistrationInvite.expires_at > now,
            Registration.buyer_user_id.is_(None),
            reserved_clause(now),
        )
        .limit(1)
    )
    return row.scalar_one_or_none()


async def _supersede_current(db: AsyncSession, *, registration_id: uuid.UUID) -> None:
    # flip is_current first so the partial unique indexes admit the replacement
    await db.execute(
        update(RegistrationInvite)
        .where(RegistrationInvite.registration_id == registration_id, RegistrationInvite.is_current.is_(True))
        .values(is_current=False)
    )
    await db.execute(
        update(RegistrationInvite)
        .where(
            RegistrationInvite.registration_id == registration_id,
            RegistrationInvite.status.in_(LIVE_INVITE_STATUSES),
        )
        .values(status=InviteStatus.SUPERSEDED.value)
    )


async def _issue(
    db: AsyncSession,
    *,
    reg: Registration,
    email: str,
    dob: date,
    now: datetime,
    created_by: Optional[uuid.UUID],
    batch_id: Optional[uuid.UUID],
    batch_row_id: Optional[uuid.UUID],
    expires_at: Optional[datetime] = None,
) -> tuple[RegistrationInvite, str]:
    S = get_settings()
    email_normalized = normalize_email(email)

    clash = (
        await db.execute(
            select(RegistrationInvite.id).where(
                RegistrationInvite.edition_id == reg.edition_id,
                RegistrationInvite.email_normalized == email_normalized,
                RegistrationInvite.is_current.is_(True),
                RegistrationInvite.status.in_(LIVE_INVITE_STATUSES),
                RegistrationInvite.registration_id != reg.id,
            )
        )
    ).scalar_one_or_none()
    if clash is not None:
        raise ActionError(ErrorCode.HAS_ACTIVE_INVITE, "This email already has a pending invite for the event")

    await _supersede_current(db, registration_id=reg.id)

    token = generate_token()
    invite = RegistrationInvite(
        edition_id=reg.edition_id,
        registration_id=reg.id,
        batch_id=batch_id,
        batch_row_id=batch_row_id,
        email=email.strip(),
        email_normalized=email_normalized,
        date_of_birth=dob,
        token_hash=hash_token(token),
        token_prefix=token[:TOKEN_PREFIX_LEN],
        status=InviteStatus.DRAFT.value,
        is_current=True,
        expires_at=expires_at or reg.expires_at or now + timedelta(hours=S.INVITE_TTL_HOURS),
        created_by_user_id=created_by,
    )
    db.add(invite)
    await db.flush()
    return invite, token


async def _lock_live_registration(db: AsyncSession, registration_id: uuid.UUID, now: datetime) -> Registration:
    # invite rows before their registration, the same order claim_invite locks in
    await db.execute(
        select(RegistrationInvite.id)
        .where(RegistrationInvite.registration_id == registration_id, RegistrationInvite.is_current.is_(True))
        .with_for_update()
    )
    reg = (
        await db.execute(
            select(Registration)
            .where(Registration.id == registration_id, Registration.deleted_at.is_(None))
            .with_for_update()
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if reg is None:
        raise ActionError(ErrorCode.NOT_FOUND, "Registration not found")
    if reg.status == RegistrationStatus.CANCELLED.value or is_expired_hold(reg.status, reg.expires_at, now):
        raise ActionError(ErrorCode.INVITE_EXPIRED, "Registration is no longer active")
    if reg.buyer_user_id is not None:
        if reg.buyer_user_id != get_settings().SYSTEM_BUYER_ID:
            raise ActionError(ErrorCode.ALREADY_CLAIMED, "Registration already belongs to an account")
        # a batch row owned by the placeholder buyer is released to whoever claims the invite
        reg.buyer_user_id = None
        await db.flush()
    return reg


async def _lock_live_invite(db: AsyncSession, invite_id: uuid.UUID, now: datetime) -> RegistrationInvite:
    invite = (
        await db.execute(
            select(RegistrationInvite)
            .where(RegistrationInvite.id == invite_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if invite is None:
        raise ActionError(ErrorCode.NOT_FOUND, "Invite not found")
    if invite.status == InviteStatus.CLAIMED.value:
        raise ActionError(ErrorCode.ALREADY_CLAIMED, "Invite already claimed")
    if not invite.is_current or invite.status not in LIVE_INVITE_STATUSES:
        raise ActionError(ErrorCode.INVITE_INVALID, "Only a current, unclaimed invite can be changed")
    if invite.expires_at <= now:
        raise ActionError(ErrorCode.INVITE_EXPIRED, "Invite has expired")
    return invite


async def _withdraw(db: AsyncSession, registration_ids: list[uuid.UUID]) -> list[uuid.UUID]:
    """Cancel unclaimed seats; returns the ids that actually changed."""
    if not registration_ids:
        return []
    res = await db.execute(
        update(Registration)
        .where(
            Registration.id.in_(registration_ids),
            Registration.status.in_(sources_for(RegistrationEvent.WITHDRAW)),
        )
        .values(status=RegistrationStatus.CANCELLED.value, expires_at=None)
        .returning(Registration.id)
    )
    return list(res.scalars().all())


async def issue_invite(
    db: AsyncSession,
    *,
    actor_user_id: uuid.UUID,
    registration_id: uuid.UUID,
    email: str,
    date_of_birth: str,
    batch_row_id: Optional[uuid.UUID] = None,
) -> ActionResult[IssuedInviteOut]:
    """Bind an unowned registration to the person expected to claim it.

    The raw token is only ever returned here; the table keeps its hash.
    """
    dob = to_date(date_of_birth)
    if dob is None:
        return ActionError(ErrorCode.VALIDATION_ERROR, "dateOfBirth must be YYYY-MM-DD").to_result()
    try:
        now = _now_utc()
        async with transaction(db):
            reg = await _lock_live_registration(db, registration_id, now)
            batch_id = None
            if batch_row_id is not None:
                row = await db.get(GroupRegistrationBatchRow, batch_row_id)
                if row is None or row.created_registration_id != reg.id:
                    raise ActionError(ErrorCode.VALIDATION_ERROR, "Batch row does not belong to this registration")
                batch_id = row.batch_id
            invite, token = await _issue(
                db,
                reg=reg,
                email=email,
                dob=dob,
                now=now,
                created_by=actor_user_id,
                batch_id=batch_id,
                batch_row_id=batch_row_id,
            )
            await record_audit(
                db,
                organization_id=await _organization_id(db, reg.edition_id),
                actor_user_id=actor_user_id,
                action="registration_invite.issue",
                entity_type="registration_invite",
                entity_id=invite.id,
                after={"registration_id": reg.id, "email": invite.email_normalized, "batch_row_id": batch_row_id},
            )
            out = IssuedInviteOut(
                invite_id=invite.id, registration_id=reg.id, token=token, expires_at=invite.expires_at
            )
        log.info("invite_issued", extra={"invite_id": str(out.invite_id), "registration_id": str(out.registration_id)})
        return Ok(out)
    except ActionError as e:
        return e.to_result()


async def rotate_invite(
    db: AsyncSession, *, actor_user_id: uuid.UUID, invite_id: uuid.UUID
) -> ActionResult[IssuedInviteOut]:
    """Replace a live invite with a fresh token; the old one becomes `superseded`. The deadline is kept."""
    try:
        now = _now_utc()
        async with transaction(db):
            old = await _lock_live_invite(db, invite_id, now)
            reg = await _lock_live_registration(db, old.registration_id, now)
            invite, token = await _issue(
                db,
                reg=reg,
                email=old.email,
                dob=old.date_of_birth,
                now=now,
                created_by=actor_user_id,
                batch_id=old.batch_id,
                batch_row_id=old.batch_row_id,
                expires_at=old.expires_at,
            )
            await record_audit(
                db,
                organization_id=await _organization_id(db, reg.edition_id),
                actor_user_id=actor_user_id,
                action="registration_invite.rotate",
                entity_type="registration_invite",
                entity_id=invite.id,
                before={"invite_id": old.id},
                after={"invite_id": invite.id},
            )
            out = IssuedInviteOut(
                invite_id=invite.id, registration_id=reg.id, token=token, expires_at=invite.expires_at
            )
        return Ok(out)
    except ActionError as e:
        return e.to_result()


async def update_invite_email(
    db: AsyncSession, *, actor_user_id: uuid.UUID, invite_id: uuid.UUID, email: str
) -> ActionResult[IssuedInviteOut]:
    """Re-address a live invite. The old token stops working; birth date and deadline carry over."""
    try:
        now = _now_utc()
        async with transaction(db):
            old = await _lock_live_invite(db, invite_id, now)
            reg = await _lock_live_registration(db, old.registration_id, now)

            user = await users_repo.get_by_email(db, email)
            if user is not None:
                profile = await users_repo.get_profile(db, user.id)
                on_file = to_iso_date_string(profile.date_of_birth if profile else None)
                if on_file and on_file != to_iso_date_string(old.date_of_birth):
                    raise ActionError(ErrorCode.DOB_MISMATCH, "Date of birth mismatch")
                other = (
                    await db.execute(
                        select(Registration.id)
                        .where(
                            Registration.buyer_user_id == user.id,
                            Registration.edition_id == reg.edition_id,
                            Registration.id != reg.id,
                            reserved_clause(now),
                        )
                        .limit(1)
                    )
                ).scalar_one_or_none()
                if other is not None:
                    raise ActionError(ErrorCode.ALREADY_REGISTERED, "User already registered")

            invite, token = await _issue(
                db,
                reg=reg,
                email=email,
                dob=old.date_of_birth,
                now=now,
                created_by=actor_user_id,
                batch_id=old.batch_id,
                batch_row_id=old.batch_row_id,
                expires_at=old.expires_at,
            )
            if old.batch_row_id is not None:
                row = await db.get(GroupRegistrationBatchRow, old.batch_row_id)
                if row is not None:
                    row.raw_json = {**(row.raw_json or {}), "email": invite.email}
                    await db.flush()
            await record_audit(
                db,
                organization_id=await _organization_id(db, reg.edition_id),
                actor_user_id=actor_user_id,
                action="registration_invite.update_email",
                entity_type="registration_invite",
                entity_id=invite.id,
                before={"invite_id": old.id, "email": old.email_normalized},
                after={"invite_id": invite.id, "email": invite.email_normalized},
            )
            out = IssuedInviteOut(
                invite_id=invite.id, registration_id=reg.id, token=token, expires_at=invite.expires_at
            )
        return Ok(out)
    except ActionError as e:
        return e.to_result()


async def cancel_invite(
    db: AsyncSession,
    *,
    actor_user_id: uuid.UUID,
    invite_id: uuid.UUID,
    request_context: Optional[dict] = None,
) -> ActionResult[InviteCancelledOut]:
    """Withdraw an unclaimed invite together with the seat it was holding."""
    try:
        async with transaction(db):
            invite = (
                await db.execute(
                    select(RegistrationInvite)
                    .where(RegistrationInvite.id == invite_id)
                    .with_for_update()
                    .execution_options(populate_existing=True)
                )
            ).scalar_one_or_none()
            if invite is None:
                raise ActionError(ErrorCode.NOT_FOUND, "Invite not found")
            if invite.status == InviteStatus.CLAIMED.value:
                raise ActionError(ErrorCode.ALREADY_CLAIMED, "Invite already claimed")
            if not invite.is_current or invite.status not in LIVE_INVITE_STATUSES:
                raise ActionError(ErrorCode.INVALID_STATE, "Invite cannot be cancelled")

            reg = (
                await db.execute(
                    select(Registration)
                    .where(Registration.id == invite.registration_id)
                    .with_for_update()
                    .execution_options(populate_existing=True)
                )
            ).scalar_one()
            if not _is_unclaimed(reg):
                raise ActionError(ErrorCode.ALREADY_CLAIMED, "Registration already belongs to an account")

            await _withdraw(db, [reg.id])
            invite.status = InviteStatus.CANCELLED.value
            invite.is_current = False
            await db.flush()
            await record_audit(
                db,
                organization_id=await _organization_id(db, invite.edition_id),
                actor_user_id=actor_user_id,
                action="registration_invite.cancel",
                entity_type="registration_invite",
                entity_id=invite.id,
                after={"registration_id": reg.id},
                request_context=request_context,
            )
            await revalidate_edition(db, invite.edition_id)
            out = InviteCancelledOut(
                invite_id=invite.id, registration_id=reg.id, registration_status=RegistrationStatus.CANCELLED.value
            )
        log.info("invite_cancelled", extra={"invite_id": str(out.invite_id), "registration_id": str(out.registration_id)})
        return Ok(out)
    except ActionError as e:
        return e.to_result()


async def _lock_batch(db: AsyncSession, batch_id: uuid.UUID) -> GroupRegistrationBatch:
    batch = (
        await db.execute(
            select(GroupRegistrationBatch)
            .where(GroupRegistrationBatch.id == batch_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if batch is None:
        raise ActionError(ErrorCode.NOT_FOUND, "Batch not found")
    return batch


async def issue_batch_invites(
    db: AsyncSession,
    *,
    actor_user_id: uuid.UUID,
    batch_id: uuid.UUID,
    request_context: Optional[dict] = None,
) -> ActionResult[BatchInvitesOut]:
    """
    Invite every unclaimed seat of a processed batch to the person named on its row.

    Rows matched to an account at upload and rows that already carry a live
    invite are skipped. A row that cannot be invited is reported and does not
    stop the others.
    """
    try:
        now = _now_utc()
        async with transaction(db):
            batch = await _lock_batch(db, batch_id)
            if batch.status != BatchStatus.PROCESSED.value:
                raise ActionError(ErrorCode.INVALID_STATE, "Batch has not been processed")

            rows = (
                await db.execute(
                    select(GroupRegistrationBatchRow)
                    .where(
                        GroupRegistrationBatchRow.batch_id == batch.id,
                        GroupRegistrationBatchRow.created_registration_id.is_not(None),
                    )
                    .order_by(GroupRegistrationBatchRow.row_index.asc())
                )
            ).scalars().all()
            invited_rows = set(
                (
                    await db.execute(
                        select(RegistrationInvite.batch_row_id).where(
                            RegistrationInvite.batch_id == batch.id,
                            RegistrationInvite.is_current.is_(True),
                            RegistrationInvite.status.in_(LIVE_INVITE_STATUSES),
                        )
                    )
                ).scalars().all()
            )

            out = BatchInvitesOut(batch_id=batch.id)
            for row in rows:
                raw = row.raw_json or {}
                if raw.get("matchedUserId") or row.id in invited_rows:
                    out.skipped += 1
                    continue
                dob = to_date(raw.get("dateOfBirth"))
                if not raw.get("email") or dob is None:
                    out.failed.append(
                        BatchInviteFailure(
                            row_index=row.row_index, code=ErrorCode.INVALID_ROW.value, error="Row has no email or dateOfBirth"
                        )
                    )
                    continue
                try:
                    async with db.begin_nested():
                        reg = await _lock_live_registration(db, row.created_registration_id, now)
                        invite, token = await _issue(
                            db,
                            reg=reg,
                            email=raw["email"],
                            dob=dob,
                            now=now,
                            created_by=actor_user_id,
                            batch_id=batch.id,
                            batch_row_id=row.id,
                        )
                except ActionError as e:
                    out.failed.append(BatchInviteFailure(row_index=row.row_index, code=e.code.value, error=e.message))
                    continue
                out.issued.append(
                    BatchInviteOut(
                        row_index=row.row_index,
                        invite_id=invite.id,
                        registration_id=reg.id,
                        token=token,
                        expires_at=invite.expires_at,
                    )
                )

            await record_audit(
                db,
                organization_id=await _organization_id(db, batch.edition_id),
                actor_user_id=actor_user_id,
                action="group_registrations.invites_issue",
                entity_type="group_registration_batch",
                entity_id=batch.id,
                after={"issued": len(out.issued), "failed": len(out.failed), "skipped": out.skipped},
                request_context=request_context,
            )
        log.info(
            "batch_invites_issued",
            extra={"batch_id": str(batch_id), "issued": len(out.issued), "failed": len(out.failed), "skipped": out.skipped},
        )
        return Ok(out)
    except ActionError as e:
        return e.to_result()


async def cancel_batch(
    db: AsyncSession,
    *,
    actor_user_id: uuid.UUID,
    batch_id: uuid.UUID,
    request_context: Optional[dict] = None,
) -> ActionResult[BatchCancelledOut]:
    """Release every seat of a batch nobody has claimed; claimed and account-owned seats are kept."""
    try:
        async with transaction(db):
            batch = await _lock_batch(db, batch_id)
            reg_ids = (
                await db.execute(
                    select(GroupRegistrationBatchRow.created_registration_id).where(
                        GroupRegistrationBatchRow.batch_id == batch.id,
                        GroupRegistrationBatchRow.created_registration_id.is_not(None),
                    )
                )
            ).scalars().all()

            # invites, then registrations, both in id order
            await db.execute(
                select(RegistrationInvite.id)
                .where(RegistrationInvite.registration_id.in_(reg_ids), RegistrationInvite.is_current.is_(True))
                .order_by(RegistrationInvite.id)
                .with_for_update()
            )
            regs = (
                await db.execute(
                    select(Registration)
                    .where(Registration.id.in_(reg_ids))
                    .order_by(Registration.id)
                    .with_for_update()
                    .execution_options(populate_existing=True)
                )
            ).scalars().all()
            unclaimed = [r.id for r in regs if _is_unclaimed(r)]

            withdrawn = await _withdraw(db, unclaimed)
            cancelled_invites: list[uuid.UUID] = []
            if unclaimed:
                res = await db.execute(
                    update(RegistrationInvite)
                    .where(
                        RegistrationInvite.registration_id.in_(unclaimed),
                        RegistrationInvite.is_current.is_(True),
                        RegistrationInvite.status.in_(LIVE_INVITE_STATUSES),
                    )
                    .values(status=InviteStatus.CANCELLED.value, is_current=False)
                    .returning(RegistrationInvite.id)
                )
                cancelled_invites = list(res.scalars().all())

            out = BatchCancelledOut(
                batch_id=batch.id,
                cancelled_registrations=len(withdrawn),
                cancelled_invites=len(cancelled_invites),
                kept=len(regs) - len(unclaimed),
            )
            await record_audit(
                db,
                organization_id=await _organization_id(db, batch.edition_id),
                actor_user_id=actor_user_id,
                action="group_registrations.cancel",
                entity_type="group_registration_batch",
                entity_id=batch.id,
                after=out.model_dump(exclude={"batch_id"}),
                request_context=request_context,
            )
            await revalidate_edition(db, batch.edition_id)
        log.info("group_batch_cancelled", extra={"batch_id": str(batch_id), "cancelled": out.cancelled_registrations})
        return Ok(out)
    except ActionError as e:
        return e.to_result()
