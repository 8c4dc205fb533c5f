from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..domain.availability import check_registration_window
from ..domain.caller import Caller
from ..domain.holds import compute_expires_at, is_expired_hold, reserved_clause
from ..domain.pricing import active_tier, price_registration
from ..domain.results import ActionError, ActionResult, ErrorCode, Ok
from ..domain.schemas.registration import (
    AnswerIn,
    AnswersOut,
    ProfileSnapshotIn,
    RegistrationOut,
    WaiverAcceptanceOut,
)
from ..domain.states import RegistrationEvent, RegistrationStatus, next_status, sources_for
from ..models import (
    EventDistance,
    EventEdition,
    PricingTier,
    Registrant,
    Registration,
    RegistrationAnswer,
    RegistrationQuestion,
    Waiver,
    WaiverAcceptance,
)
from ..observability.metrics import HOLDS_STARTED, REG_FINALIZED
from .audit import record_audit
from .cache_tags import revalidate_edition
from .capacity import ensure_capacity, lock_scope, resolve_scope
from .invites import get_current_invite_for_email
from .notifications import send_registration_completed_email
from .ownership import get_registration_for_owner
from .tx import transaction

log = logging.getLogger("racereg.registration")

EDITABLE_STATUSES = (RegistrationStatus.STARTED.value, RegistrationStatus.SUBMITTED.value)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_live_hold(reg: Registration, now: datetime) -> None:
    if is_expired_hold(reg.status, reg.expires_at, now):
        raise ActionError(ErrorCode.REGISTRATION_EXPIRED, "Registration has expired")


async def _load_distance(db: AsyncSession, distance_id: uuid.UUID) -> Optional[EventDistance]:
    row = await db.execute(
        select(EventDistance)
        .where(EventDistance.id == distance_id, EventDistance.deleted_at.is_(None))
        .execution_options(populate_existing=True)
    )
    return row.scalar_one_or_none()


async def _lock_edition(db: AsyncSession, edition_id: uuid.UUID) -> Optional[EventEdition]:
    row = await db.execute(
        select(EventEdition)
        .where(EventEdition.id == edition_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return row.scalar_one_or_none()


async def _upsert_registrant(
    db: AsyncSession,
    *,
    registration_id: uuid.UUID,
    user_id: Optional[uuid.UUID],
    snapshot: dict,
    division: Optional[str],
    gender_identity: Optional[str],
) -> None:
    stmt = pg_insert(Registrant).values(
        registration_id=registration_id,
        user_id=user_id,
        profile_snapshot=snapshot,
        division=division,
        gender_identity=gender_identity,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[Registrant.registration_id],
        set_={
            "user_id": stmt.excluded.user_id,
            "profile_snapshot": stmt.excluded.profile_snapshot,
            "division": stmt.excluded.division,
            "gender_identity": stmt.excluded.gender_identity,
            "updated_at": _now_utc(),
        },
    )
    await db.execute(stmt)


async def _applicable_questions(db: AsyncSession, reg: Registration) -> list[RegistrationQuestion]:
    rows = await db.execute(
        select(RegistrationQuestion)
        .where(
            RegistrationQuestion.edition_id == reg.edition_id,
            RegistrationQuestion.is_active.is_(True),
            RegistrationQuestion.deleted_at.is_(None),
            (RegistrationQuestion.distance_id.is_(None)) | (RegistrationQuestion.distance_id == reg.distance_id),
        )
        .order_by(RegistrationQuestion.sort_order.asc(), RegistrationQuestion.created_at.asc())
    )
    return list(rows.scalars().all())


def _is_blank(value: Optional[str]) -> bool:
    return value is None or value.strip() == ""


def _first_unanswered(questions: Sequence[RegistrationQuestion], answers: dict[uuid.UUID, Optional[str]]):
    for q in questions:
        if q.is_required and _is_blank(answers.get(q.id)):
            return q
    return None


# ---------------------------------------------------------------- start
async def start_registration(
    db: AsyncSession,
    *,
    caller: Caller,
    distance_id: uuid.UUID,
    edition_id: Optional[uuid.UUID] = None,
    registrant: Optional[ProfileSnapshotIn] = None,
    division: Optional[str] = None,
    gender_identity: Optional[str] = None,
) -> ActionResult[RegistrationOut]:
    """
    Open a `started` hold on one slot of `distance_id`.
    Re-entrant: a caller who already holds a live started/submitted hold on the
    same distance gets that registration back instead of a second one.
    """
    try:
        return Ok(
            await _start(
                db,
                caller=caller,
                distance_id=distance_id,
                edition_id=edition_id,
                registrant=registrant,
                division=division,
                gender_identity=gender_identity,
            )
        )
    except ActionError as e:
        return e.to_result()


async def _start(db, *, caller, distance_id, edition_id, registrant, division, gender_identity) -> RegistrationOut:
    now = _now_utc()

    async with transaction(db):
        distance = await _load_distance(db, distance_id)
        if distance is None or (edition_id is not None and distance.edition_id != edition_id):
            raise ActionError(ErrorCode.NOT_FOUND, "Distance not found")

        # 1) Lock edition, then distance (the order every multi-row locker uses)
        edition = await _lock_edition(db, distance.edition_id)
        check_registration_window(edition, now)
        scope = resolve_scope(edition, distance)
        if scope is not None and scope.kind == "distance":
            await lock_scope(db, scope)
            scope = resolve_scope(edition, distance)

        # 2) One live registration per caller per edition
        existing = (
            await db.execute(
                select(Registration)
                .where(
                    Registration.edition_id == edition.id,
                    Registration.buyer_user_id == caller.user_id,
                    reserved_clause(now),
                )
                .order_by(Registration.created_at.desc())
                .limit(1)
            )
        ).scalar_one_or_none()
        if existing is not None:
            if existing.distance_id == distance.id and existing.status in EDITABLE_STATUSES:
                return RegistrationOut.model_validate(existing)
            raise ActionError(ErrorCode.ALREADY_REGISTERED, "You are already registered for this event")

        # 3) A pending invite must be claimed rather than bypassed
        if await get_current_invite_for_email(db, edition_id=edition.id, email=caller.email, now=now):
            raise ActionError(ErrorCode.HAS_ACTIVE_INVITE, "You have a pending invite for this event")

        # 4) Capacity under lock
        await ensure_capacity(db, scope, now=now)

        tiers = (await db.execute(select(PricingTier).where(PricingTier.distance_id == distance.id))).scalars().all()
        tier = active_tier(tiers, now)
        price = price_registration(tier.price_cents if tier else None)

        reg = Registration(
            edition_id=edition.id,
            distance_id=distance.id,
            buyer_user_id=caller.user_id,
            payment_responsibility="self_pay",
            status=RegistrationStatus.STARTED.value,
            base_price_cents=price.base_price_cents,
            fees_cents=price.fees_cents,
            tax_cents=price.tax_cents,
            total_cents=price.total_cents,
            expires_at=compute_expires_at(now, RegistrationStatus.STARTED),
        )
        db.add(reg)
        await db.flush()

        if registrant is not None:
            await _upsert_registrant(
                db,
                registration_id=reg.id,
                user_id=caller.user_id,
                snapshot=registrant.snapshot(),
                division=division,
                gender_identity=gender_identity,
            )
        await revalidate_edition(db, edition.id)
        out = RegistrationOut.model_validate(reg)

    HOLDS_STARTED.inc()
    log.info(
        "registration_started",
        extra={"registration_id": str(out.id), "distance_id": str(out.distance_id), "user_id": str(caller.user_id)},
    )
    return out


# ---------------------------------------------------------------- submit
async def submit_registrant_info(
    db: AsyncSession,
    *,
    caller: Caller,
    registration_id: uuid.UUID,
    profile: ProfileSnapshotIn,
    division: Optional[str] = None,
    gender_identity: Optional[str] = None,
) -> ActionResult[RegistrationOut]:
    try:
        now = _now_utc()
        async with transaction(db):
            reg = await get_registration_for_owner(db, registration_id=registration_id, user_id=caller.user_id)
            _ensure_live_hold(reg, now)
            if reg.status != RegistrationStatus.STARTED.value:
                raise ActionError(ErrorCode.ALREADY_SUBMITTED, "Registration info was already submitted")

            await _upsert_registrant(
                db,
                registration_id=reg.id,
                user_id=caller.user_id,
                snapshot=profile.snapshot(),
                division=division,
                gender_identity=gender_identity,
            )

            # CAS started -> submitted; a concurrent submit blocks here and then matches nothing
            res = await db.execute(
                update(Registration)
                .where(
                    Registration.id == reg.id,
                    Registration.status.in_(sources_for(RegistrationEvent.SUBMIT)),
                    Registration.deleted_at.is_(None),
                )
                .values(
                    status=next_status(reg.status, RegistrationEvent.SUBMIT).value,
                    expires_at=compute_expires_at(now, RegistrationStatus.SUBMITTED),
                )
                .returning(Registration)
                .execution_options(populate_existing=True)
            )
            updated = res.scalar_one_or_none()
            if updated is None:
                raise ActionError(ErrorCode.INVALID_STATE, "Registration is no longer editable")
            await revalidate_edition(db, updated.edition_id, public=False)
        return Ok(RegistrationOut.model_validate(updated))
    except ActionError as e:
        return e.to_result()


# ---------------------------------------------------------------- waivers
async def accept_waiver(
    db: AsyncSession,
    *,
    caller: Caller,
    registration_id: uuid.UUID,
    waiver_id: uuid.UUID,
    signature_type: str,
    signature_value: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> ActionResult[WaiverAcceptanceOut]:
    """Record acceptance of one waiver. Accepting again is a successful no-op."""
    try:
        now = _now_utc()
        async with transaction(db):
            reg = await get_registration_for_owner(db, registration_id=registration_id, user_id=caller.user_id)
            _ensure_live_hold(reg, now)

            waiver = (
                await db.execute(select(Waiver).where(Waiver.id == waiver_id, Waiver.edition_id == reg.edition_id))
            ).scalar_one_or_none()
            if waiver is None:
                raise ActionError(ErrorCode.NOT_FOUND, "Waiver not found")
            if waiver.signature_type != signature_type:
                raise ActionError(ErrorCode.VALIDATION_ERROR, "Signature type does not match this waiver")

            value: Optional[str] = None
            if signature_type != "checkbox":
                value = (signature_value or "").strip()
                if not value:
                    raise ActionError(ErrorCode.VALIDATION_ERROR, "A signature is required for this waiver")

            already = (
                await db.execute(
                    select(WaiverAcceptance.id).where(
                        WaiverAcceptance.registration_id == reg.id, WaiverAcceptance.waiver_id == waiver.id
                    )
                )
            ).scalar_one_or_none()
            if already is not None:
                return Ok(WaiverAcceptanceOut(registration_id=reg.id, waiver_id=waiver.id, already_accepted=True))

            if reg.status not in EDITABLE_STATUSES:
                raise ActionError(ErrorCode.INVALID_STATE, "Waivers can only be accepted before finalizing")

            inserted = await db.execute(
                pg_insert(WaiverAcceptance)
                .values(
                    registration_id=reg.id,
                    waiver_id=waiver.id,
                    waiver_version_hash=waiver.version_hash,
                    signature_type=signature_type,
                    signature_value=value,
                    ip_address=ip_address,
                    user_agent=user_agent,
                )
                .on_conflict_do_nothing(constraint="uq_waiver_acceptance_once")
                .returning(WaiverAcceptance.id)
            )
            # lost a race with an identical acceptance: same outcome
            created = inserted.scalar_one_or_none() is not None
        return Ok(WaiverAcceptanceOut(registration_id=reg.id, waiver_id=waiver.id, already_accepted=not created))
    except ActionError as e:
        return e.to_result()


# ---------------------------------------------------------------- answers
async def submit_answers(
    db: AsyncSession,
    *,
    caller: Caller,
    registration_id: uuid.UUID,
    answers: Sequence[AnswerIn],
    request_context: Optional[dict] = None,
) -> ActionResult[AnswersOut]:
    try:
        now = _now_utc()
        async with transaction(db):
            reg = await get_registration_for_owner(db, registration_id=registration_id, user_id=caller.user_id)
            _ensure_live_hold(reg, now)
            if reg.status not in EDITABLE_STATUSES:
                raise ActionError(ErrorCode.INVALID_STATE, "Answers can only be changed before finalizing")

            questions = await _applicable_questions(db, reg)
            provided = {a.question_id: a.value for a in answers}
            missing = _first_unanswered(questions, provided)
            if missing is not None:
                raise ActionError(
                    ErrorCode.MISSING_REQUIRED_ANSWER, f"Please answer the required question: {missing.prompt}"
                )

            applicable = {q.id for q in questions}
            saved = 0
            for question_id, value in provided.items():
                if question_id not in applicable:
                    continue
                stmt = pg_insert(RegistrationAnswer).values(
                    registration_id=reg.id, question_id=question_id, value=value
                )
                stmt = stmt.on_conflict_do_update(
                    constraint="uq_answer_once",
                    set_={"value": stmt.excluded.value, "updated_at": now},
                )
                await db.execute(stmt)
                saved += 1

            edition = await db.get(EventEdition, reg.edition_id)
            await record_audit(
                db,
                organization_id=edition.organization_id if edition else None,
                actor_user_id=caller.user_id,
                action="registration_answers.submit",
                entity_type="registration",
                entity_id=reg.id,
                after={"answer_count": saved},
                request_context=request_context,
            )
            await revalidate_edition(db, reg.edition_id, public=False)
        return Ok(AnswersOut(registration_id=reg.id, saved=saved))
    except ActionError as e:
        return e.to_result()


# ---------------------------------------------------------------- finalize
async def finalize_registration(
    db: AsyncSession,
    *,
    caller: Caller,
    registration_id: uuid.UUID,
) -> ActionResult[RegistrationOut]:
    """
    Re-validate everything and move the hold forward:
    confirmed (no-payment mode or central pay) or payment_pending.
    Calling it on an already finalized registration returns it unchanged.
    """
    try:
        out, changed = await _finalize(db, caller=caller, registration_id=registration_id)
    except ActionError as e:
        return e.to_result()

    if changed:
        REG_FINALIZED.labels(status=out.status).inc()
        log.info("registration_finalized", extra={"registration_id": str(out.id), "status": out.status})
        # best effort; finalize has already committed
        await send_registration_completed_email(db, registration_id=out.id)
    return Ok(out)


async def _finalize(db: AsyncSession, *, caller: Caller, registration_id: uuid.UUID) -> tuple[RegistrationOut, bool]:
    S = get_settings()
    now = _now_utc()

    async with transaction(db):
        reg = await get_registration_for_owner(db, registration_id=registration_id, user_id=caller.user_id)
        if reg.status == RegistrationStatus.CONFIRMED.value:
            return RegistrationOut.model_validate(reg), False
        _ensure_live_hold(reg, now)
        if reg.status == RegistrationStatus.PAYMENT_PENDING.value:
            return RegistrationOut.model_validate(reg), False

        # 1) Completeness (nothing here consumes capacity)
        registrant_id = (
            await db.execute(select(Registrant.id).where(Registrant.registration_id == reg.id))
        ).scalar_one_or_none()
        if registrant_id is None:
            raise ActionError(ErrorCode.MISSING_REGISTRANT, "Registrant information is required")

        waiver_ids = set(
            (await db.execute(select(Waiver.id).where(Waiver.edition_id == reg.edition_id))).scalars().all()
        )
        accepted_ids = set(
            (
                await db.execute(
                    select(WaiverAcceptance.waiver_id).where(WaiverAcceptance.registration_id == reg.id)
                )
            ).scalars().all()
        )
        if waiver_ids - accepted_ids:
            raise ActionError(ErrorCode.MISSING_WAIVER, "All waivers must be accepted")

        questions = await _applicable_questions(db, reg)
        answers = dict(
            (
                await db.execute(
                    select(RegistrationAnswer.question_id, RegistrationAnswer.value).where(
                        RegistrationAnswer.registration_id == reg.id
                    )
                )
            ).all()
        )
        missing = _first_unanswered(questions, answers)
        if missing is not None:
            raise ActionError(
                ErrorCode.MISSING_REQUIRED_ANSWER, f"Please answer the required question: {missing.prompt}"
            )

        # 2) Fresh edition/distance; never trust an earlier read
        edition = (
            await db.execute(
                select(EventEdition)
                .where(EventEdition.id == reg.edition_id)
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        distance = await _load_distance(db, reg.distance_id)
        if distance is None:
            raise ActionError(ErrorCode.EVENT_NOT_FOUND, "Event or distance not found")
        check_registration_window(edition, now, at_finalize=True)

        # 3) Capacity under lock, not counting our own hold
        scope = resolve_scope(edition, distance)
        if scope is not None:
            await lock_scope(db, scope)
            scope = resolve_scope(edition, distance)
        await ensure_capacity(db, scope, now=now, exclude_registration_id=reg.id)

        event = (
            RegistrationEvent.FINALIZE_PAID
            if S.NO_PAYMENT_MODE or reg.payment_responsibility == "central_pay"
            else RegistrationEvent.FINALIZE_UNPAID
        )
        target = next_status(reg.status, event)
        new_expires_at = None if target is RegistrationStatus.CONFIRMED else compute_expires_at(now, target)

        # 4) CAS forward; a concurrent finalize that won first leaves nothing to match
        res = await db.execute(
            update(Registration)
            .where(
                Registration.id == reg.id,
                Registration.status.in_(sources_for(event)),
                Registration.expires_at > now,
                Registration.deleted_at.is_(None),
            )
            .values(status=target.value, expires_at=new_expires_at)
            .returning(Registration)
            .execution_options(populate_existing=True)
        )
        updated = res.scalar_one_or_none()
        if updated is None:
            current = (
                await db.execute(
                    select(Registration.status, Registration.expires_at).where(Registration.id == registration_id)
                )
            ).first()
            if current is not None and is_expired_hold(current.status, current.expires_at, now):
                raise ActionError(ErrorCode.REGISTRATION_EXPIRED, "Registration has expired")
            raise ActionError(ErrorCode.INVALID_STATE_TRANSITION, "Registration changed while finalizing")
        await revalidate_edition(db, updated.edition_id)
        out = RegistrationOut.model_validate(updated)

    return out, True
