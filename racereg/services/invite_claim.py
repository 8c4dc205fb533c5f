from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..domain.caller import Caller
from ..domain.holds import is_expired_hold, reserved_clause
from ..domain.identity import hash_token, normalize_email, parse_iso_date, to_iso_date_string
from ..domain.results import ActionError, ActionResult, ErrorCode, Ok
from ..domain.schemas.invites import ClaimInviteOut
from ..domain.states import InviteStatus
from ..models import EventEdition, Registrant, Registration, RegistrationInvite
from ..observability.metrics import INVITES_CLAIMED
from ..repos import users as users_repo
from . import rate_limit
from .audit import record_audit
from .registration_flow import _upsert_registrant
from .tx import transaction

log = logging.getLogger("racereg.invites")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


async def claim_invite(
    db: AsyncSession,
    *,
    caller: Caller,
    token: str,
    date_of_birth: Optional[str] = None,
    request_context: Optional[dict] = None,
) -> ActionResult[ClaimInviteOut]:
    """
    Bind an invited registration to the caller's account.

    The caller must prove identity with the invite's email and date of birth.
    Claiming an invite the caller already claimed returns the same registration.
    """
    if not caller.email_verified:
        return ActionError(ErrorCode.EMAIL_NOT_VERIFIED, "Email verification required").to_result()

    token_hash = hash_token(token)
    if not await rate_limit.allow_invite_claim(caller.user_id, token_hash):
        return ActionError(ErrorCode.RATE_LIMITED, "Too many attempts. Please try again later.").to_result()

    try:
        out = await _claim(db, caller=caller, token_hash=token_hash, date_of_birth=date_of_birth)
    except ActionError as e:
        log.info("invite_claim_rejected", extra={"code": e.code.value, "user_id": str(caller.user_id)})
        return e.to_result()

    if out.already_claimed:
        return Ok(out)

    # audit trail for the claim is written once the binding is durable
    async with transaction(db):
        edition = await db.get(EventEdition, out.edition_id)
        await record_audit(
            db,
            organization_id=edition.organization_id if edition else None,
            actor_user_id=caller.user_id,
            action="registration_invite.claim",
            entity_type="registration_invite",
            entity_id=out.invite_id,
            after={"registration_id": out.registration_id},
            request_context=request_context,
        )
    INVITES_CLAIMED.inc()
    log.info(
        "invite_claimed",
        extra={"invite_id": str(out.invite_id), "registration_id": str(out.registration_id), "user_id": str(caller.user_id)},
    )
    return Ok(out)


async def _claim(
    db: AsyncSession, *, caller: Caller, token_hash: str, date_of_birth: Optional[str]
) -> ClaimInviteOut:
    now = _now_utc()
    caller_email = normalize_email(caller.email)

    async with transaction(db):
        # 1) Invite row first, then its registration
        invite = (
            await db.execute(
                select(RegistrationInvite)
                .where(RegistrationInvite.token_hash == token_hash)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if invite is None:
            raise ActionError(ErrorCode.NOT_FOUND, "Invite not found")

        if invite.status == InviteStatus.CLAIMED.value:
            if invite.claimed_by_user_id == caller.user_id:
                return ClaimInviteOut(
                    invite_id=invite.id,
                    registration_id=invite.registration_id,
                    edition_id=invite.edition_id,
                    already_claimed=True,
                )
            raise ActionError(ErrorCode.ALREADY_CLAIMED, "Invite already claimed")
        if invite.status == InviteStatus.CANCELLED.value:
            raise ActionError(ErrorCode.INVITE_CANCELLED, "Invite cancelled")
        if invite.status == InviteStatus.EXPIRED.value:
            raise ActionError(ErrorCode.INVITE_EXPIRED, "Invite expired")
        if not invite.is_current or invite.status == InviteStatus.SUPERSEDED.value:
            raise ActionError(ErrorCode.INVITE_INVALID, "Invite is not active")
        if invite.expires_at <= now:
            raise ActionError(ErrorCode.INVITE_EXPIRED, "Invite expired")

        reg = (
            await db.execute(
                select(Registration)
                .where(Registration.id == invite.registration_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if reg is None or reg.deleted_at is not None or is_expired_hold(reg.status, reg.expires_at, now):
            raise ActionError(ErrorCode.INVITE_EXPIRED, "Invite expired")
        if reg.buyer_user_id is not None and reg.buyer_user_id != caller.user_id:
            raise ActionError(ErrorCode.ALREADY_CLAIMED, "Invite already claimed")

        # 2) Identity proof
        if caller_email != invite.email_normalized:
            raise ActionError(ErrorCode.EMAIL_MISMATCH, "Email mismatch")

        profile = await users_repo.get_profile(db, caller.user_id, for_update=True)
        profile_dob = to_iso_date_string(profile.date_of_birth if profile else None)
        invite_dob = to_iso_date_string(invite.date_of_birth)
        if profile_dob:
            if profile_dob != invite_dob:
                raise ActionError(ErrorCode.DOB_MISMATCH, "Date of birth mismatch")
        else:
            provided = parse_iso_date(date_of_birth)
            if not provided:
                raise ActionError(ErrorCode.DOB_REQUIRED, "Date of birth required")
            if provided != invite_dob:
                raise ActionError(ErrorCode.DOB_MISMATCH, "Date of birth mismatch")
            await users_repo.set_date_of_birth(db, caller.user_id, invite.date_of_birth)

        # 3) One live registration per person per edition
        other = (
            await db.execute(
                select(Registration.id)
                .where(
                    Registration.buyer_user_id == caller.user_id,
                    Registration.edition_id == invite.edition_id,
                    Registration.id != invite.registration_id,
                    reserved_clause(now),
                )
                .limit(1)
            )
        ).scalar_one_or_none()
        if other is not None:
            raise ActionError(ErrorCode.ALREADY_REGISTERED, "Already registered")

        # 4) CAS the buyer; null-or-self so a racing claim cannot overwrite it
        bound = (
            await db.execute(
                update(Registration)
                .where(
                    Registration.id == reg.id,
                    or_(Registration.buyer_user_id.is_(None), Registration.buyer_user_id == caller.user_id),
                )
                .values(buyer_user_id=caller.user_id)
                .returning(Registration.id)
            )
        ).scalar_one_or_none()
        if bound is None:
            raise ActionError(ErrorCode.ALREADY_CLAIMED, "Invite already claimed")

        await _bind_registrant(db, registration_id=reg.id, user_id=caller.user_id)

        await db.execute(
            update(RegistrationInvite)
            .where(RegistrationInvite.id == invite.id)
            .values(status=InviteStatus.CLAIMED.value, claimed_at=now, claimed_by_user_id=caller.user_id)
        )
        return ClaimInviteOut(invite_id=invite.id, registration_id=reg.id, edition_id=invite.edition_id)


async def _bind_registrant(db: AsyncSession, *, registration_id: uuid.UUID, user_id: uuid.UUID) -> None:
    res = await db.execute(
        update(Registrant)
        .where(Registrant.registration_id == registration_id)
        .values(user_id=user_id)
        .returning(Registrant.id)
    )
    if res.scalar_one_or_none() is None:
        await _upsert_registrant(
            db, registration_id=registration_id, user_id=user_id, snapshot={}, division=None, gender_identity=None
        )
