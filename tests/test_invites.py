from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import select, update

from racereg.domain.results import ErrorCode
from racereg.domain.schemas.groups import GroupUploadIn
from racereg.models import GroupRegistrationBatchRow, Registrant, Registration, RegistrationInvite
from racereg.repos import users as users_repo
from racereg.services import group_batches, invite_claim, invites
from racereg.services import registration_flow as flow
from racereg.services.hold_sweep import sweep_expired_holds
from tests.conftest import mk_distance, mk_edition, mk_user

pytestmark = pytest.mark.asyncio

INVITEE = "kid@example.com"
DOB = "2012-04-09"


async def _batch_registration(db, edition_id, coach) -> Registration:
    csv_text = (
        "firstName,lastName,email,dateOfBirth,distanceLabel\n"
        f"Kid,Runner,{INVITEE},{DOB},5K\n"
    )
    up = await group_batches.upload_group_batch(
        db, actor_user_id=coach.user_id, edition_id=edition_id, payload=GroupUploadIn(csv_text=csv_text)
    )
    assert up.ok and up.data.status == "validated"
    assert (await group_batches.process_group_batch(db, actor_user_id=coach.user_id, batch_id=up.data.id)).ok
    return (await db.execute(select(Registration).where(Registration.edition_id == edition_id))).scalar_one()


async def _setup(db):
    ed = await mk_edition(db)
    dist = await mk_distance(db, ed, label="5K", capacity=10)
    coach = await mk_user(db, "coach@example.com")
    reg = await _batch_registration(db, ed, coach)
    issued = await invites.issue_invite(
        db, actor_user_id=coach.user_id, registration_id=reg.id, email=INVITEE.upper(), date_of_birth=DOB
    )
    assert issued.ok
    return ed, dist, coach, reg, issued.data


async def test_claim_backfills_birthdate_and_binds_buyer(db):
    ed, _, _, reg, issued = await _setup(db)
    kid = await mk_user(db, INVITEE, "Kid")

    res = await invite_claim.claim_invite(db, caller=kid, token=issued.token)
    assert not res.ok and res.code is ErrorCode.DOB_REQUIRED

    res = await invite_claim.claim_invite(db, caller=kid, token=issued.token, date_of_birth="2012-04-10")
    assert not res.ok and res.code is ErrorCode.DOB_MISMATCH

    res = await invite_claim.claim_invite(db, caller=kid, token=issued.token, date_of_birth=DOB)
    assert res.ok
    assert res.data.registration_id == reg.id and not res.data.already_claimed

    profile = await users_repo.get_profile(db, kid.user_id)
    assert profile.date_of_birth == date(2012, 4, 9)
    claimed = await db.get(Registration, reg.id, populate_existing=True)
    assert claimed.buyer_user_id == kid.user_id
    registrant_user = (
        await db.execute(select(Registrant.user_id).where(Registrant.registration_id == reg.id))
    ).scalar_one()
    assert registrant_user == kid.user_id

    # same caller again: same outcome, no DOB needed now that the profile has one
    again = await invite_claim.claim_invite(db, caller=kid, token=issued.token)
    assert again.ok and again.data.already_claimed


async def test_claim_is_exclusive(db):
    _, _, _, _, issued = await _setup(db)
    kid = await mk_user(db, INVITEE, "Kid")
    assert (await invite_claim.claim_invite(db, caller=kid, token=issued.token, date_of_birth=DOB)).ok

    sibling = await mk_user(db, "sibling@example.com")
    res = await invite_claim.claim_invite(db, caller=sibling, token=issued.token, date_of_birth=DOB)
    assert not res.ok and res.code is ErrorCode.ALREADY_CLAIMED


async def test_claim_checks_identity(db):
    _, _, _, _, issued = await _setup(db)

    unverified = await mk_user(db, INVITEE, verified=False)
    res = await invite_claim.claim_invite(db, caller=unverified, token=issued.token, date_of_birth=DOB)
    assert not res.ok and res.code is ErrorCode.EMAIL_NOT_VERIFIED

    stranger = await mk_user(db, "stranger@example.com")
    res = await invite_claim.claim_invite(db, caller=stranger, token=issued.token, date_of_birth=DOB)
    assert not res.ok and res.code is ErrorCode.EMAIL_MISMATCH

    res = await invite_claim.claim_invite(db, caller=stranger, token="x" * 43, date_of_birth=DOB)
    assert not res.ok and res.code is ErrorCode.NOT_FOUND


async def test_profile_birthdate_must_match(db):
    _, _, _, _, issued = await _setup(db)
    kid = await mk_user(db, INVITEE)
    await users_repo.set_date_of_birth(db, kid.user_id, date(2011, 1, 1))
    await db.commit()

    # a provided DOB never overrides the one on file
    res = await invite_claim.claim_invite(db, caller=kid, token=issued.token, date_of_birth=DOB)
    assert not res.ok and res.code is ErrorCode.DOB_MISMATCH


async def test_rotation_supersedes_the_old_token(db):
    _, _, coach, _, issued = await _setup(db)
    rotated = await invites.rotate_invite(db, actor_user_id=coach.user_id, invite_id=issued.invite_id)
    assert rotated.ok and rotated.data.token != issued.token

    kid = await mk_user(db, INVITEE)
    old = await invite_claim.claim_invite(db, caller=kid, token=issued.token, date_of_birth=DOB)
    assert not old.ok and old.code is ErrorCode.INVITE_INVALID
    new = await invite_claim.claim_invite(db, caller=kid, token=rotated.data.token, date_of_birth=DOB)
    assert new.ok

    stale = await invites.rotate_invite(db, actor_user_id=coach.user_id, invite_id=issued.invite_id)
    assert not stale.ok and stale.code is ErrorCode.INVITE_INVALID


async def test_pending_invite_blocks_self_registration(db):
    ed, dist, _, _, _ = await _setup(db)
    kid = await mk_user(db, INVITEE)
    res = await flow.start_registration(db, caller=kid, distance_id=dist)
    assert not res.ok and res.code is ErrorCode.HAS_ACTIVE_INVITE


async def test_one_live_invite_per_email(db):
    ed, _, coach, _, _ = await _setup(db)
    other = await _batch_registration_for(db, ed, coach, "other@example.com")
    res = await invites.issue_invite(
        db, actor_user_id=coach.user_id, registration_id=other.id, email=INVITEE, date_of_birth=DOB
    )
    assert not res.ok and res.code is ErrorCode.HAS_ACTIVE_INVITE


async def _batch_row_for(db, edition_id, coach, email):
    csv_text = f"firstName,lastName,email,dateOfBirth,distanceLabel\nOther,Runner,{email},2010-02-02,5K\n"
    up = await group_batches.upload_group_batch(
        db, actor_user_id=coach.user_id, edition_id=edition_id, payload=GroupUploadIn(csv_text=csv_text)
    )
    processed = await group_batches.process_group_batch(db, actor_user_id=coach.user_id, batch_id=up.data.id)
    assert processed.ok
    status = await group_batches.get_group_batch_status(db, batch_id=up.data.id)
    return status.data.rows[0]


async def _batch_registration_for(db, edition_id, coach, email) -> Registration:
    row = await _batch_row_for(db, edition_id, coach, email)
    return await db.get(Registration, row.created_registration_id)


async def test_sweep_cancels_lapsed_holds_and_expires_invites(db):
    ed = await mk_edition(db)
    dist = await mk_distance(db, ed, label="5K")
    coach = await mk_user(db, "coach@example.com")
    ana = await mk_user(db, "ana@example.com")
    held = (await flow.start_registration(db, caller=ana, distance_id=dist)).data
    issued = await invites.issue_invite(
        db, actor_user_id=coach.user_id, registration_id=held.id, email=INVITEE, date_of_birth=DOB
    )
    # ana owns the hold, so it is not open for invites
    assert not issued.ok and issued.code is ErrorCode.ALREADY_CLAIMED

    await db.execute(
        update(Registration)
        .where(Registration.id == held.id)
        .values(expires_at=datetime.now(timezone.utc) - timedelta(minutes=5))
    )
    await db.commit()

    swept = await sweep_expired_holds(db, batch=10)
    assert swept == [str(held.id)]
    reg = await db.get(Registration, held.id, populate_existing=True)
    assert (reg.status, reg.expires_at) == ("cancelled", None)
    assert await sweep_expired_holds(db, batch=10) == []


async def test_sweep_expires_live_invites(db):
    _, _, _, reg, issued = await _setup(db)
    await db.execute(
        update(Registration)
        .where(Registration.id == reg.id)
        .values(status="payment_pending", expires_at=datetime.now(timezone.utc) - timedelta(minutes=1))
    )
    await db.commit()

    assert await sweep_expired_holds(db) == [str(reg.id)]
    invite = await db.get(RegistrationInvite, issued.invite_id, populate_existing=True)
    assert invite.status == "expired" and invite.is_current is False


async def _lapse_invite(db, invite_id):
    await db.execute(
        update(RegistrationInvite)
        .where(RegistrationInvite.id == invite_id)
        .values(expires_at=datetime.now(timezone.utc) - timedelta(minutes=1))
    )
    await db.commit()


async def test_invite_past_its_deadline_cannot_be_claimed(db):
    _, _, coach, reg, issued = await _setup(db)
    # a confirmed batch seat has no hold deadline, so the invite carries its own
    assert issued.expires_at > datetime.now(timezone.utc)
    await _lapse_invite(db, issued.invite_id)

    kid = await mk_user(db, INVITEE)
    res = await invite_claim.claim_invite(db, caller=kid, token=issued.token, date_of_birth=DOB)
    assert not res.ok and res.code is ErrorCode.INVITE_EXPIRED

    rotated = await invites.rotate_invite(db, actor_user_id=coach.user_id, invite_id=issued.invite_id)
    assert not rotated.ok and rotated.code is ErrorCode.INVITE_EXPIRED

    # the seat itself is still held; only the invite lapses
    assert await sweep_expired_holds(db) == []
    invite = await db.get(RegistrationInvite, issued.invite_id, populate_existing=True)
    assert invite.status == "expired" and invite.is_current is False
    seat = await db.get(Registration, reg.id, populate_existing=True)
    assert seat.status != "cancelled"


async def test_cancelled_invite_releases_the_seat(db):
    ed = await mk_edition(db)
    dist = await mk_distance(db, ed, label="5K", capacity=1)
    coach = await mk_user(db, "coach@example.com")
    reg = await _batch_registration(db, ed, coach)
    issued = (
        await invites.issue_invite(db, actor_user_id=coach.user_id, registration_id=reg.id, email=INVITEE, date_of_birth=DOB)
    ).data

    walk_in = await mk_user(db, "walkin@example.com")
    full = await flow.start_registration(db, caller=walk_in, distance_id=dist)
    assert not full.ok and full.code is ErrorCode.SOLD_OUT

    res = await invites.cancel_invite(db, actor_user_id=coach.user_id, invite_id=issued.invite_id)
    assert res.ok and res.data.registration_status == "cancelled"
    seat = await db.get(Registration, reg.id, populate_existing=True)
    assert seat.status == "cancelled"

    kid = await mk_user(db, INVITEE)
    claim = await invite_claim.claim_invite(db, caller=kid, token=issued.token, date_of_birth=DOB)
    assert not claim.ok and claim.code is ErrorCode.INVITE_CANCELLED

    assert (await flow.start_registration(db, caller=walk_in, distance_id=dist)).ok

    again = await invites.cancel_invite(db, actor_user_id=coach.user_id, invite_id=issued.invite_id)
    assert not again.ok and again.code is ErrorCode.INVALID_STATE


async def test_claimed_invite_cannot_be_cancelled(db):
    _, _, coach, reg, issued = await _setup(db)
    kid = await mk_user(db, INVITEE)
    assert (await invite_claim.claim_invite(db, caller=kid, token=issued.token, date_of_birth=DOB)).ok

    res = await invites.cancel_invite(db, actor_user_id=coach.user_id, invite_id=issued.invite_id)
    assert not res.ok and res.code is ErrorCode.ALREADY_CLAIMED
    seat = await db.get(Registration, reg.id, populate_existing=True)
    assert seat.status == "confirmed" and seat.buyer_user_id == kid.user_id


async def test_batch_row_must_belong_to_the_registration(db):
    ed = await mk_edition(db)
    await mk_distance(db, ed, label="5K")
    coach = await mk_user(db, "coach@example.com")
    row_a = await _batch_row_for(db, ed, coach, "a@example.com")
    row_b = await _batch_row_for(db, ed, coach, "b@example.com")

    res = await invites.issue_invite(
        db,
        actor_user_id=coach.user_id,
        registration_id=row_a.created_registration_id,
        email="a@example.com",
        date_of_birth="2010-02-02",
        batch_row_id=row_b.id,
    )
    assert not res.ok and res.code is ErrorCode.VALIDATION_ERROR

    res = await invites.issue_invite(
        db,
        actor_user_id=coach.user_id,
        registration_id=row_a.created_registration_id,
        email="a@example.com",
        date_of_birth="2010-02-02",
        batch_row_id=row_a.id,
    )
    assert res.ok
    invite = await db.get(RegistrationInvite, res.data.invite_id)
    assert invite.batch_row_id == row_a.id and invite.batch_id is not None


async def test_invite_email_update_moves_the_claim(db):
    ed = await mk_edition(db)
    await mk_distance(db, ed, label="5K")
    coach = await mk_user(db, "coach@example.com")
    row = await _batch_row_for(db, ed, coach, "typo@exmaple.com")
    issued = (
        await invites.issue_invite(
            db,
            actor_user_id=coach.user_id,
            registration_id=row.created_registration_id,
            email="typo@exmaple.com",
            date_of_birth="2010-02-02",
            batch_row_id=row.id,
        )
    ).data

    moved = await invites.update_invite_email(
        db, actor_user_id=coach.user_id, invite_id=issued.invite_id, email="Fixed@Example.com"
    )
    assert moved.ok and moved.data.token != issued.token
    assert moved.data.expires_at == issued.expires_at

    fixed = await mk_user(db, "fixed@example.com")
    old = await invite_claim.claim_invite(db, caller=fixed, token=issued.token, date_of_birth="2010-02-02")
    assert not old.ok and old.code is ErrorCode.INVITE_INVALID
    new = await invite_claim.claim_invite(db, caller=fixed, token=moved.data.token, date_of_birth="2010-02-02")
    assert new.ok and new.data.registration_id == row.created_registration_id

    stored = await db.get(GroupRegistrationBatchRow, row.id, populate_existing=True)
    assert stored.raw_json["email"] == "Fixed@Example.com"


async def test_invite_email_update_checks_the_account(db):
    _, _, coach, _, issued = await _setup(db)
    other = await mk_user(db, "older@example.com")
    await users_repo.set_date_of_birth(db, other.user_id, date(1990, 1, 1))
    await db.commit()

    res = await invites.update_invite_email(
        db, actor_user_id=coach.user_id, invite_id=issued.invite_id, email="older@example.com"
    )
    assert not res.ok and res.code is ErrorCode.DOB_MISMATCH


async def _processed_batch(db, edition_id, coach, emails):
    lines = [f"Kid{i},Runner,{email},2011-0{i + 1}-01,5K" for i, email in enumerate(emails)]
    csv_text = "firstName,lastName,email,dateOfBirth,distanceLabel\n" + "\n".join(lines) + "\n"
    up = await group_batches.upload_group_batch(
        db, actor_user_id=coach.user_id, edition_id=edition_id, payload=GroupUploadIn(csv_text=csv_text)
    )
    assert up.ok and up.data.status == "validated"
    assert (await group_batches.process_group_batch(db, actor_user_id=coach.user_id, batch_id=up.data.id)).ok
    return up.data.id


async def test_batch_invites_cover_unowned_rows_once(db):
    ed = await mk_edition(db)
    await mk_distance(db, ed, label="5K")
    coach = await mk_user(db, "coach@example.com")
    member = await mk_user(db, "member@example.com")
    batch_id = await _processed_batch(db, ed, coach, ["a@example.com", "b@example.com", "member@example.com"])

    res = await invites.issue_batch_invites(db, actor_user_id=coach.user_id, batch_id=batch_id)
    assert res.ok
    assert sorted(i.row_index for i in res.data.issued) == [0, 1]
    assert res.data.skipped == 1 and res.data.failed == []

    again = await invites.issue_batch_invites(db, actor_user_id=coach.user_id, batch_id=batch_id)
    assert again.ok and again.data.issued == [] and again.data.skipped == 3

    a = await mk_user(db, "a@example.com")
    first = next(i for i in res.data.issued if i.row_index == 0)
    claim = await invite_claim.claim_invite(db, caller=a, token=first.token, date_of_birth="2011-01-01")
    assert claim.ok

    member_seat = (
        await db.execute(select(Registration).where(Registration.buyer_user_id == member.user_id))
    ).scalar_one()
    assert member_seat.edition_id == ed


async def test_batch_invites_need_a_processed_batch(db):
    ed = await mk_edition(db)
    await mk_distance(db, ed, label="5K")
    coach = await mk_user(db, "coach@example.com")
    up = await group_batches.upload_group_batch(
        db,
        actor_user_id=coach.user_id,
        edition_id=ed,
        payload=GroupUploadIn(csv_text=f"firstName,lastName,email,dateOfBirth,distanceLabel\nKid,Runner,{INVITEE},{DOB},5K\n"),
    )
    res = await invites.issue_batch_invites(db, actor_user_id=coach.user_id, batch_id=up.data.id)
    assert not res.ok and res.code is ErrorCode.INVALID_STATE


async def test_cancel_batch_keeps_claimed_seats(db):
    ed = await mk_edition(db)
    await mk_distance(db, ed, label="5K")
    coach = await mk_user(db, "coach@example.com")
    batch_id = await _processed_batch(db, ed, coach, ["a@example.com", "b@example.com", "c@example.com"])
    issued = (await invites.issue_batch_invites(db, actor_user_id=coach.user_id, batch_id=batch_id)).data.issued
    by_row = {i.row_index: i for i in issued}

    a = await mk_user(db, "a@example.com")
    assert (await invite_claim.claim_invite(db, caller=a, token=by_row[0].token, date_of_birth="2011-01-01")).ok

    res = await invites.cancel_batch(db, actor_user_id=coach.user_id, batch_id=batch_id)
    assert res.ok
    assert (res.data.cancelled_registrations, res.data.cancelled_invites, res.data.kept) == (2, 2, 1)

    kept = await db.get(Registration, by_row[0].registration_id, populate_existing=True)
    assert kept.status == "confirmed" and kept.buyer_user_id == a.user_id

    b = await mk_user(db, "b@example.com")
    res = await invite_claim.claim_invite(db, caller=b, token=by_row[1].token, date_of_birth="2011-02-01")
    assert not res.ok and res.code is ErrorCode.INVITE_CANCELLED
