from __future__ import annotations
import uuid

from fastapi import APIRouter, Depends, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ...auth.deps import get_caller
from ...auth.permissions import require_registration_editor
from ...db import get_db
from ...domain.caller import Caller
from ...domain.results import ActionError, ErrorCode
from ...domain.schemas.invites import ClaimInviteIn, IssueInviteIn, UpdateInviteEmailIn
from ...models import Registration, RegistrationInvite
from ...services import invite_claim, invites
from ..responses import request_context, respond

router = APIRouter(tags=["invites"])


async def _invite_editor(db: AsyncSession, caller: Caller, invite_id: uuid.UUID):
    """None when the caller may manage the invite; else the NOT_FOUND result to return."""
    edition_id = (
        await db.execute(select(RegistrationInvite.edition_id).where(RegistrationInvite.id == invite_id))
    ).scalar_one_or_none()
    if edition_id is None:
        return ActionError(ErrorCode.NOT_FOUND, "Invite not found").to_result()
    await require_registration_editor(db, caller, edition_id)
    return None


@router.post("/registrations/{registration_id}/invites")
async def issue_invite(
    registration_id: uuid.UUID,
    body: IssueInviteIn,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    edition_id = (
        await db.execute(select(Registration.edition_id).where(Registration.id == registration_id))
    ).scalar_one_or_none()
    if edition_id is None:
        return respond(ActionError(ErrorCode.NOT_FOUND, "Registration not found").to_result())
    await require_registration_editor(db, caller, edition_id)

    result = await invites.issue_invite(
        db,
        actor_user_id=caller.user_id,
        registration_id=registration_id,
        email=str(body.email),
        date_of_birth=body.date_of_birth,
        batch_row_id=body.batch_row_id,
    )
    return respond(result, success_status=201)


@router.post("/invites/{invite_id}/rotate")
async def rotate_invite(
    invite_id: uuid.UUID,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    denied = await _invite_editor(db, caller, invite_id)
    if denied is not None:
        return respond(denied)
    result = await invites.rotate_invite(db, actor_user_id=caller.user_id, invite_id=invite_id)
    return respond(result)


@router.put("/invites/{invite_id}/email")
async def update_invite_email(
    invite_id: uuid.UUID,
    body: UpdateInviteEmailIn,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    denied = await _invite_editor(db, caller, invite_id)
    if denied is not None:
        return respond(denied)
    result = await invites.update_invite_email(
        db, actor_user_id=caller.user_id, invite_id=invite_id, email=str(body.email)
    )
    return respond(result)


@router.post("/invites/{invite_id}/cancel")
async def cancel_invite(
    invite_id: uuid.UUID,
    req: Request,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    denied = await _invite_editor(db, caller, invite_id)
    if denied is not None:
        return respond(denied)
    result = await invites.cancel_invite(
        db, actor_user_id=caller.user_id, invite_id=invite_id, request_context=request_context(req)
    )
    return respond(result)


@router.post("/invites/claim")
async def claim_invite(
    body: ClaimInviteIn,
    req: Request,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    result = await invite_claim.claim_invite(
        db,
        caller=caller,
        token=body.token,
        date_of_birth=body.date_of_birth,
        request_context=request_context(req),
    )
    return respond(result)
