import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select, update

from racereg.db import SessionLocal
from racereg.domain.results import ErrorCode
from racereg.domain.schemas.groups import GroupUploadIn
from racereg.domain.schemas.registration import AnswerIn, ProfileSnapshotIn
from racereg.models import EventDistance, EventEdition, EventsOutbox, Registration, WaiverAcceptance
from racereg.services import group_batches
from racereg.services import registration_flow as flow
from tests.conftest import mk_distance, mk_edition, mk_question, mk_user, mk_waiver

pytestmark = pytest.mark.asyncio


def _profile(email: str) -> ProfileSnapshotIn:
    return ProfileSnapshotIn(first_name="Ana", last_name="Perez", email=email, date_of_birth="1990-01-15")


async def _expire(db, registration_id: uuid.UUID):
    await db.execute(
        update(Registration)
        .where(Registration.id == registration_id)
        .values(expires_at=datetime.now(timezone.utc) - timedelta(minutes=1))
    )
    await db.commit()


async def _reserved(db, distance_id: uuid.UUID) -> int:
    now = datetime.now(timezone.utc)
    res = await db.execute(
        select(func.count(Registration.id)).where(
            Registration.distance_id == distance_id,
            (Registration.status == "confirmed")
            | (Registration.status.in_(["started", "submitted", "payment_pending"]) & (Registration.expires_at > now)),
        )
    )
    return int(res.scalar_one())


async def test_happy_path_to_confirmed(db):
    ed = await mk_edition(db)
    dist = await mk_distance(db, ed, capacity=2, price_cents=10_000)
    waiver = await mk_waiver(db, ed)
    question = await mk_question(db, ed)
    ana = await mk_user(db, "ana@example.com", "Ana")

    started = await flow.start_registration(db, caller=ana, distance_id=dist)
    assert started.ok
    reg = started.data
    assert reg.status == "started"
    assert (reg.base_price_cents, reg.fees_cents, reg.total_cents) == (10_000, 500, 10_500)
    assert reg.expires_at is not None

    submitted = await flow.submit_registrant_info(
        db, caller=ana, registration_id=reg.id, profile=_profile("ana@example.com")
    )
    assert submitted.ok and submitted.data.status == "submitted"

    again = await flow.submit_registrant_info(
        db, caller=ana, registration_id=reg.id, profile=_profile("ana@example.com")
    )
    assert not again.ok and again.code is ErrorCode.ALREADY_SUBMITTED

    first = await flow.accept_waiver(db, caller=ana, registration_id=reg.id, waiver_id=waiver, signature_type="checkbox")
    second = await flow.accept_waiver(db, caller=ana, registration_id=reg.id, waiver_id=waiver, signature_type="checkbox")
    assert first.ok and not first.data.already_accepted
    assert second.ok and second.data.already_accepted
    n = await db.execute(select(func.count(WaiverAcceptance.id)).where(WaiverAcceptance.registration_id == reg.id))
    assert n.scalar_one() == 1

    blank = await flow.submit_answers(db, caller=ana, registration_id=reg.id, answers=[AnswerIn(question_id=question, value="  ")])
    assert not blank.ok and blank.code is ErrorCode.MISSING_REQUIRED_ANSWER
    answered = await flow.submit_answers(db, caller=ana, registration_id=reg.id, answers=[AnswerIn(question_id=question, value="M")])
    assert answered.ok and answered.data.saved == 1

    done = await flow.finalize_registration(db, caller=ana, registration_id=reg.id)
    assert done.ok
    assert done.data.status == "confirmed"
    assert done.data.expires_at is None

    # idempotent
    repeat = await flow.finalize_registration(db, caller=ana, registration_id=reg.id)
    assert repeat.ok and repeat.data.status == "confirmed" and repeat.data.id == reg.id

    emails = (await db.execute(select(EventsOutbox).where(EventsOutbox.channel == "email:send"))).scalars().all()
    assert len(emails) == 1
    assert emails[0].payload["template"] == "registration.completed"


async def test_third_start_is_sold_out(db):
    ed = await mk_edition(db)
    dist = await mk_distance(db, ed, capacity=2)
    callers = [await mk_user(db, f"u{i}@example.com") for i in range(3)]

    a = await flow.start_registration(db, caller=callers[0], distance_id=dist)
    b = await flow.start_registration(db, caller=callers[1], distance_id=dist)
    c = await flow.start_registration(db, caller=callers[2], distance_id=dist)
    assert a.ok and b.ok
    assert not c.ok and c.code is ErrorCode.SOLD_OUT


async def test_start_is_reentrant_for_the_same_distance(db):
    ed = await mk_edition(db)
    dist = await mk_distance(db, ed, capacity=1)
    other = await mk_distance(db, ed, label="5K")
    ana = await mk_user(db, "ana@example.com")

    first = await flow.start_registration(db, caller=ana, distance_id=dist)
    second = await flow.start_registration(db, caller=ana, distance_id=dist)
    assert first.ok and second.ok and first.data.id == second.data.id

    elsewhere = await flow.start_registration(db, caller=ana, distance_id=other)
    assert not elsewhere.ok and elsewhere.code is ErrorCode.ALREADY_REGISTERED


async def test_start_rejects_distance_from_another_edition(db):
    ed = await mk_edition(db)
    other_ed = await mk_edition(db)
    dist = await mk_distance(db, other_ed)
    ana = await mk_user(db, "ana@example.com")

    res = await flow.start_registration(db, caller=ana, distance_id=dist, edition_id=ed)
    assert not res.ok and res.code is ErrorCode.NOT_FOUND


async def test_concurrent_starts_never_exceed_capacity(db):
    cap, n = 3, 8
    ed = await mk_edition(db)
    dist = await mk_distance(db, ed, capacity=cap)
    callers = [await mk_user(db, f"racer{i}@example.com") for i in range(n)]

    async def one(caller):
        async with SessionLocal() as s:
            return await flow.start_registration(s, caller=caller, distance_id=dist)

    results = await asyncio.gather(*[one(c) for c in callers])

    admitted = [r for r in results if r.ok]
    refused = [r for r in results if not r.ok]
    assert len(admitted) == cap
    assert all(r.code is ErrorCode.SOLD_OUT for r in refused)
    assert await _reserved(db, dist) == cap


async def test_shared_pool_counts_across_distances(db):
    ed = await mk_edition(db, shared_capacity=1)
    d10 = await mk_distance(db, ed, label="10K", capacity=50, capacity_scope="shared_pool")
    d5 = await mk_distance(db, ed, label="5K", capacity=50, capacity_scope="shared_pool")
    ana = await mk_user(db, "ana@example.com")
    ben = await mk_user(db, "ben@example.com")

    assert (await flow.start_registration(db, caller=ana, distance_id=d10)).ok
    res = await flow.start_registration(db, caller=ben, distance_id=d5)
    assert not res.ok and res.code is ErrorCode.SOLD_OUT


async def test_lapsed_hold_frees_its_slot(db):
    ed = await mk_edition(db)
    dist = await mk_distance(db, ed, capacity=1)
    ana = await mk_user(db, "ana@example.com")
    ben = await mk_user(db, "ben@example.com")

    held = await flow.start_registration(db, caller=ana, distance_id=dist)
    assert held.ok
    assert not (await flow.start_registration(db, caller=ben, distance_id=dist)).ok

    await _expire(db, held.data.id)

    # no sweep needed: the lapsed row simply stops counting
    assert (await flow.start_registration(db, caller=ben, distance_id=dist)).ok

    late = await flow.submit_registrant_info(db, caller=ana, registration_id=held.data.id, profile=_profile("ana@example.com"))
    assert not late.ok and late.code is ErrorCode.REGISTRATION_EXPIRED
    late_final = await flow.finalize_registration(db, caller=ana, registration_id=held.data.id)
    assert not late_final.ok and late_final.code is ErrorCode.REGISTRATION_EXPIRED


async def test_concurrent_submits_advance_once(db):
    ed = await mk_edition(db)
    dist = await mk_distance(db, ed)
    ana = await mk_user(db, "ana@example.com")
    reg = (await flow.start_registration(db, caller=ana, distance_id=dist)).data

    async def submit():
        async with SessionLocal() as s:
            return await flow.submit_registrant_info(s, caller=ana, registration_id=reg.id, profile=_profile("ana@example.com"))

    results = await asyncio.gather(submit(), submit())
    assert sum(1 for r in results if r.ok) == 1
    loser = next(r for r in results if not r.ok)
    assert loser.code in (ErrorCode.ALREADY_SUBMITTED, ErrorCode.INVALID_STATE)


async def test_finalize_requires_registrant_and_waivers(db):
    ed = await mk_edition(db)
    dist = await mk_distance(db, ed)
    waiver = await mk_waiver(db, ed, signature_type="initials")
    ana = await mk_user(db, "ana@example.com")
    reg = (await flow.start_registration(db, caller=ana, distance_id=dist)).data

    res = await flow.finalize_registration(db, caller=ana, registration_id=reg.id)
    assert not res.ok and res.code is ErrorCode.MISSING_REGISTRANT

    await flow.submit_registrant_info(db, caller=ana, registration_id=reg.id, profile=_profile("ana@example.com"))
    res = await flow.finalize_registration(db, caller=ana, registration_id=reg.id)
    assert not res.ok and res.code is ErrorCode.MISSING_WAIVER

    unsigned = await flow.accept_waiver(db, caller=ana, registration_id=reg.id, waiver_id=waiver, signature_type="initials")
    assert not unsigned.ok and unsigned.code is ErrorCode.VALIDATION_ERROR
    signed = await flow.accept_waiver(
        db, caller=ana, registration_id=reg.id, waiver_id=waiver, signature_type="initials", signature_value="AP"
    )
    assert signed.ok

    res = await flow.finalize_registration(db, caller=ana, registration_id=reg.id)
    assert res.ok and res.data.status == "confirmed"


async def test_other_users_cannot_see_a_registration(db):
    ed = await mk_edition(db)
    dist = await mk_distance(db, ed)
    ana = await mk_user(db, "ana@example.com")
    mallory = await mk_user(db, "mallory@example.com")
    reg = (await flow.start_registration(db, caller=ana, distance_id=dist)).data

    res = await flow.submit_registrant_info(db, caller=mallory, registration_id=reg.id, profile=_profile("m@example.com"))
    assert not res.ok and res.code is ErrorCode.NOT_FOUND
    res = await flow.finalize_registration(db, caller=mallory, registration_id=reg.id)
    assert not res.ok and res.code is ErrorCode.NOT_FOUND


@pytest.mark.parametrize(
    "edition_kwargs,code",
    [
        ({"visibility": "draft"}, ErrorCode.NOT_PUBLISHED),
        ({"visibility": "unlisted"}, ErrorCode.NOT_PUBLISHED),
        ({"paused": True}, ErrorCode.REGISTRATION_PAUSED),
        ({"opens_at": datetime.now(timezone.utc) + timedelta(days=1)}, ErrorCode.REGISTRATION_NOT_OPEN),
        ({"closes_at": datetime.now(timezone.utc) - timedelta(days=1)}, ErrorCode.REGISTRATION_CLOSED),
    ],
)
async def test_registration_window(db, edition_kwargs, code):
    ed = await mk_edition(db, **edition_kwargs)
    dist = await mk_distance(db, ed)
    ana = await mk_user(db, "ana@example.com")
    res = await flow.start_registration(db, caller=ana, distance_id=dist)
    assert not res.ok and res.code is code


async def _ready_to_finalize(db, caller, distance_id):
    reg = (await flow.start_registration(db, caller=caller, distance_id=distance_id)).data
    submitted = await flow.submit_registrant_info(
        db, caller=caller, registration_id=reg.id, profile=_profile(caller.email)
    )
    assert submitted.ok
    return reg


async def test_finalize_does_not_count_its_own_hold(db):
    ed = await mk_edition(db)
    dist = await mk_distance(db, ed, capacity=1)
    ana = await mk_user(db, "ana@example.com")
    reg = await _ready_to_finalize(db, ana, dist)

    res = await flow.finalize_registration(db, caller=ana, registration_id=reg.id)
    assert res.ok and res.data.status == "confirmed"
    assert await _reserved(db, dist) == 1


async def test_finalize_rechecks_capacity_under_lock(db):
    ed = await mk_edition(db)
    dist = await mk_distance(db, ed, capacity=2)
    ana = await mk_user(db, "ana@example.com")
    ben = await mk_user(db, "ben@example.com")
    reg = await _ready_to_finalize(db, ana, dist)
    await _ready_to_finalize(db, ben, dist)

    # organizer shrinks the distance after both holds were taken
    await db.execute(update(EventDistance).where(EventDistance.id == dist).values(capacity=1))
    await db.commit()

    res = await flow.finalize_registration(db, caller=ana, registration_id=reg.id)
    assert not res.ok and res.code is ErrorCode.SOLD_OUT
    row = await db.get(Registration, reg.id, populate_existing=True)
    assert row.status == "submitted"


@pytest.mark.parametrize(
    "changes,code",
    [
        ({"visibility": "unlisted"}, ErrorCode.EVENT_NOT_PUBLISHED),
        ({"visibility": "draft"}, ErrorCode.EVENT_NOT_PUBLISHED),
        ({"is_registration_paused": True}, ErrorCode.REGISTRATION_PAUSED),
        ({"registration_closes_at": datetime.now(timezone.utc) - timedelta(minutes=1)}, ErrorCode.REGISTRATION_CLOSED),
    ],
)
async def test_finalize_rechecks_the_schedule(db, changes, code):
    ed = await mk_edition(db)
    dist = await mk_distance(db, ed)
    ana = await mk_user(db, "ana@example.com")
    reg = await _ready_to_finalize(db, ana, dist)

    await db.execute(update(EventEdition).where(EventEdition.id == ed).values(**changes))
    await db.commit()

    res = await flow.finalize_registration(db, caller=ana, registration_id=reg.id)
    assert not res.ok and res.code is code


async def test_finalize_requires_stored_answers(db):
    ed = await mk_edition(db)
    dist = await mk_distance(db, ed)
    await mk_question(db, ed, prompt="Club name")
    ana = await mk_user(db, "ana@example.com")
    reg = await _ready_to_finalize(db, ana, dist)

    res = await flow.finalize_registration(db, caller=ana, registration_id=reg.id)
    assert not res.ok and res.code is ErrorCode.MISSING_REQUIRED_ANSWER
    assert res.error == "Please answer the required question: Club name"


async def test_concurrent_finalizes_transition_once(db):
    ed = await mk_edition(db)
    dist = await mk_distance(db, ed, capacity=1)
    ana = await mk_user(db, "ana@example.com")
    reg = await _ready_to_finalize(db, ana, dist)

    async def finalize():
        async with SessionLocal() as s:
            return await flow.finalize_registration(s, caller=ana, registration_id=reg.id)

    results = await asyncio.gather(finalize(), finalize())
    assert any(r.ok for r in results)
    assert all(r.ok or r.code is ErrorCode.INVALID_STATE_TRANSITION for r in results)

    # only the call that moved the status enqueues the completion email
    emails = (await db.execute(select(EventsOutbox).where(EventsOutbox.channel == "email:send"))).scalars().all()
    assert len(emails) == 1
    assert await _reserved(db, dist) == 1


@pytest.mark.parametrize("rows,batch_ok", [(2, True), (3, False)])
async def test_finalize_and_batch_process_share_capacity(db, rows, batch_ok):
    cap = 3
    ed = await mk_edition(db)
    dist = await mk_distance(db, ed, capacity=cap)
    coach = await mk_user(db, "coach@example.com")
    ana = await mk_user(db, "ana@example.com")
    reg = await _ready_to_finalize(db, ana, dist)

    csv_text = "firstName,lastName,email,dateOfBirth,distanceLabel\n" + "".join(
        f"Kid{i},Runner,kid{i}@example.com,2012-01-0{i + 1},10K\n" for i in range(rows)
    )
    up = await group_batches.upload_group_batch(
        db, actor_user_id=coach.user_id, edition_id=ed, payload=GroupUploadIn(csv_text=csv_text)
    )
    assert up.ok and up.data.status == "validated"

    async def finalize():
        async with SessionLocal() as s:
            return await flow.finalize_registration(s, caller=ana, registration_id=reg.id)

    async def process():
        async with SessionLocal() as s:
            return await group_batches.process_group_batch(s, actor_user_id=coach.user_id, batch_id=up.data.id)

    finalized, processed = await asyncio.gather(finalize(), process())
    assert finalized.ok and finalized.data.status == "confirmed"
    assert processed.ok is batch_ok
    if not batch_ok:
        assert processed.code is ErrorCode.INSUFFICIENT_CAPACITY
    assert await _reserved(db, dist) == (1 + rows if batch_ok else 1)
    assert await _reserved(db, dist) <= cap
