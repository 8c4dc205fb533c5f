from __future__ import annotations
import uuid

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ...auth.deps import get_caller
from ...db import get_db
from ...domain.caller import Caller
from ...domain.schemas.registration import AcceptWaiverIn, AnswersIn, RegistrantInfoIn, StartRegistrationIn
from ...services import registration_flow
from ...services.rate_limit import client_ip
from ..responses import request_context, respond

router = APIRouter(tags=["registrations"])


@router.post("/editions/{edition_id}/registrations")
async def start_registration(
    edition_id: uuid.UUID,
    body: StartRegistrationIn,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    result = await registration_flow.start_registration(
        db,
        caller=caller,
        edition_id=edition_id,
        distance_id=body.distance_id,
        registrant=body.registrant,
        division=body.division,
        gender_identity=body.gender_identity,
    )
    return respond(result, success_status=201)


@router.put("/registrations/{registration_id}/registrant")
async def submit_registrant(
    registration_id: uuid.UUID,
    body: RegistrantInfoIn,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    result = await registration_flow.submit_registrant_info(
        db,
        caller=caller,
        registration_id=registration_id,
        profile=body.profile,
        division=body.division,
        gender_identity=body.gender_identity,
    )
    return respond(result)


@router.post("/registrations/{registration_id}/waivers/{waiver_id}/accept")
async def accept_waiver(
    registration_id: uuid.UUID,
    waiver_id: uuid.UUID,
    body: AcceptWaiverIn,
    req: Request,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    result = await registration_flow.accept_waiver(
        db,
        caller=caller,
        registration_id=registration_id,
        waiver_id=waiver_id,
        signature_type=body.signature_type,
        signature_value=body.signature_value,
        ip_address=client_ip(req),
        user_agent=req.headers.get("user-agent"),
    )
    return respond(result)


@router.put("/registrations/{registration_id}/answers")
async def submit_answers(
    registration_id: uuid.UUID,
    body: AnswersIn,
    req: Request,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    result = await registration_flow.submit_answers(
        db,
        caller=caller,
        registration_id=registration_id,
        answers=body.answers,
        request_context=request_context(req),
    )
    return respond(result)


@router.post("/registrations/{registration_id}/finalize")
async def finalize_registration(
    registration_id: uuid.UUID,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    result = await registration_flow.finalize_registration(db, caller=caller, registration_id=registration_id)
    return respond(result)
