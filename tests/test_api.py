import uuid
from datetime import timedelta

import httpx
import pytest

from racereg.api.responses import http_status_for
from racereg.auth.jwt import InvalidSession, create_session_token, decode_session_token
from racereg.domain.results import ErrorCode
from racereg.main import app
from racereg.models import EventEdition, OrganizationMembership
from tests.conftest import mk_distance, mk_edition, mk_user

pytestmark = pytest.mark.asyncio


def _client() -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


async def test_error_codes_map_to_http_statuses():
    assert http_status_for(ErrorCode.NOT_FOUND) == 404
    assert http_status_for(ErrorCode.RATE_LIMITED) == 429
    assert http_status_for(ErrorCode.INVALID_HEADERS) == 422
    assert http_status_for(ErrorCode.EMAIL_NOT_VERIFIED) == 403
    assert http_status_for(ErrorCode.SOLD_OUT) == 409
    assert http_status_for(ErrorCode.ALREADY_CLAIMED) == 409


async def test_session_tokens():
    uid = uuid.uuid4()
    claims = decode_session_token(create_session_token(uid, "ana@example.com"))
    assert claims["sub"] == str(uid)
    with pytest.raises(InvalidSession):
        decode_session_token(create_session_token(uid, "ana@example.com", expires_in=timedelta(seconds=-5)))
    with pytest.raises(InvalidSession):
        decode_session_token("not-a-jwt")


async def test_requests_without_a_session_are_rejected():
    async with _client() as client:
        r = await client.post(f"/registrations/{uuid.uuid4()}/finalize", headers={"X-Request-ID": "req-123"})
        assert r.status_code == 401
        assert r.headers["X-Request-ID"] == "req-123"

        r = await client.post(
            f"/registrations/{uuid.uuid4()}/finalize", headers={"Authorization": "Bearer garbage"}
        )
        assert r.status_code == 401


async def test_start_over_http(db):
    ed = await mk_edition(db)
    dist = await mk_distance(db, ed, capacity=1, price_cents=5_000)
    ana = await mk_user(db, "ana@example.com")
    ben = await mk_user(db, "ben@example.com")

    async with _client() as client:
        r = await client.post(
            f"/editions/{ed}/registrations",
            json={"distance_id": str(dist)},
            headers={"Authorization": f"Bearer {create_session_token(ana.user_id, ana.email)}"},
        )
        assert r.status_code == 201
        body = r.json()
        assert body["ok"] is True
        assert body["data"]["status"] == "started"
        assert body["data"]["total_cents"] == 5_250

        r = await client.post(
            f"/editions/{ed}/registrations",
            json={"distance_id": str(dist)},
            headers={"Authorization": f"Bearer {create_session_token(ben.user_id, ben.email)}"},
        )
        assert r.status_code == 409
        assert r.json() == {"ok": False, "error": "Distance is sold out", "code": "SOLD_OUT"}


async def test_group_upload_requires_an_editor_membership(db):
    ed = await mk_edition(db)
    await mk_distance(db, ed, label="10K")
    coach = await mk_user(db, "coach@example.com")
    headers = {"Authorization": f"Bearer {create_session_token(coach.user_id, coach.email)}"}
    payload = {"csv_text": "firstName,lastName,email,dateOfBirth,distanceLabel\nAna,Perez,ana@example.com,1990-01-15,10K\n"}

    async with _client() as client:
        r = await client.post(f"/editions/{ed}/group-batches", json=payload, headers=headers)
        assert r.status_code == 403

        edition = await db.get(EventEdition, ed)
        db.add(OrganizationMembership(organization_id=edition.organization_id, user_id=coach.user_id, role="editor"))
        await db.commit()

        r = await client.post(f"/editions/{ed}/group-batches", json=payload, headers=headers)
        assert r.status_code == 201
        batch = r.json()["data"]
        assert batch["status"] == "validated"

        r = await client.post(f"/group-batches/{batch['id']}/process", headers=headers)
        assert r.status_code == 200
        assert r.json()["data"]["created_count"] == 1

        r = await client.get(f"/editions/{ed}/group-batches/template.csv", headers=headers)
        assert r.status_code == 200
        assert r.headers["content-type"].startswith("text/csv")


async def test_batch_invites_and_cancel_over_http(db):
    ed = await mk_edition(db)
    await mk_distance(db, ed, label="10K")
    coach = await mk_user(db, "coach@example.com")
    outsider = await mk_user(db, "outsider@example.com")
    edition = await db.get(EventEdition, ed)
    db.add(OrganizationMembership(organization_id=edition.organization_id, user_id=coach.user_id, role="editor"))
    await db.commit()
    headers = {"Authorization": f"Bearer {create_session_token(coach.user_id, coach.email)}"}
    payload = {"csv_text": "firstName,lastName,email,dateOfBirth,distanceLabel\nAna,Perez,ana@example.com,1990-01-15,10K\n"}

    async with _client() as client:
        batch = (await client.post(f"/editions/{ed}/group-batches", json=payload, headers=headers)).json()["data"]
        assert (await client.post(f"/group-batches/{batch['id']}/process", headers=headers)).status_code == 200

        r = await client.post(f"/group-batches/{batch['id']}/invites", headers=headers)
        assert r.status_code == 201
        issued = r.json()["data"]["issued"]
        assert [i["row_index"] for i in issued] == [0]
        invite_id = issued[0]["invite_id"]

        r = await client.post(
            f"/invites/{invite_id}/cancel",
            headers={"Authorization": f"Bearer {create_session_token(outsider.user_id, outsider.email)}"},
        )
        assert r.status_code == 403

        r = await client.post(f"/invites/{uuid.uuid4()}/cancel", headers=headers)
        assert r.status_code == 404

        r = await client.post(f"/invites/{invite_id}/cancel", headers=headers)
        assert r.status_code == 200
        assert r.json()["data"]["registration_status"] == "cancelled"

        r = await client.post(f"/group-batches/{batch['id']}/cancel", headers=headers)
        assert r.status_code == 200
        assert r.json()["data"]["cancelled_registrations"] == 0
