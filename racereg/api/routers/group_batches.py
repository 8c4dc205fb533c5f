from __future__ import annotations
import uuid

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ...auth.deps import get_caller
from ...auth.permissions import require_registration_editor
from ...db import get_db
from ...domain.caller import Caller
from ...domain.results import ActionError, ErrorCode
from ...domain.schemas.groups import DiscountRuleIn, GroupUploadIn
from ...services import group_batches, invites
from ..responses import request_context, respond

router = APIRouter(tags=["group-registrations"])


async def _batch_editor(db: AsyncSession, caller: Caller, batch_id: uuid.UUID):
    """None when the caller may act on the batch; else the NOT_FOUND result to return."""
    edition_id = await group_batches.batch_edition_id(db, batch_id)
    if edition_id is None:
        return ActionError(ErrorCode.NOT_FOUND, "Batch not found").to_result()
    await require_registration_editor(db, caller, edition_id)
    return None


@router.post("/editions/{edition_id}/group-batches")
async def upload_group_batch(
    edition_id: uuid.UUID,
    body: GroupUploadIn,
    req: Request,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    await require_registration_editor(db, caller, edition_id)
    result = await group_batches.upload_group_batch(
        db,
        actor_user_id=caller.user_id,
        edition_id=edition_id,
        payload=body,
        request_context=request_context(req),
    )
    return respond(result, success_status=201)


@router.get("/editions/{edition_id}/group-batches/template.csv")
async def group_template(
    edition_id: uuid.UUID,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    await require_registration_editor(db, caller, edition_id)
    result = await group_batches.group_template_csv(db, edition_id=edition_id)
    if not result.ok:
        return respond(result)
    return PlainTextResponse(
        result.data,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="group-registration-template-{edition_id}.csv"'},
    )


@router.put("/editions/{edition_id}/group-discount-rules")
async def upsert_discount_rule(
    edition_id: uuid.UUID,
    body: DiscountRuleIn,
    req: Request,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    await require_registration_editor(db, caller, edition_id)
    result = await group_batches.upsert_group_discount_rule(
        db,
        actor_user_id=caller.user_id,
        edition_id=edition_id,
        rule=body,
        request_context=request_context(req),
    )
    return respond(result)


@router.get("/group-batches/{batch_id}")
async def get_group_batch(
    batch_id: uuid.UUID,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    denied = await _batch_editor(db, caller, batch_id)
    if denied is not None:
        return respond(denied)
    return respond(await group_batches.get_group_batch_status(db, batch_id=batch_id))


@router.post("/group-batches/{batch_id}/process")
async def process_group_batch(
    batch_id: uuid.UUID,
    req: Request,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    denied = await _batch_editor(db, caller, batch_id)
    if denied is not None:
        return respond(denied)
    result = await group_batches.process_group_batch(
        db, actor_user_id=caller.user_id, batch_id=batch_id, request_context=request_context(req)
    )
    return respond(result)


@router.post("/group-batches/{batch_id}/invites")
async def issue_batch_invites(
    batch_id: uuid.UUID,
    req: Request,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    denied = await _batch_editor(db, caller, batch_id)
    if denied is not None:
        return respond(denied)
    result = await invites.issue_batch_invites(
        db, actor_user_id=caller.user_id, batch_id=batch_id, request_context=request_context(req)
    )
    return respond(result, success_status=201)


@router.post("/group-batches/{batch_id}/cancel")
async def cancel_group_batch(
    batch_id: uuid.UUID,
    req: Request,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    denied = await _batch_editor(db, caller, batch_id)
    if denied is not None:
        return respond(denied)
    result = await invites.cancel_batch(
        db, actor_user_id=caller.user_id, batch_id=batch_id, request_context=request_context(req)
    )
    return respond(result)
