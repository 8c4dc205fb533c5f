import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
import pytest_asyncio

# IMPORTANT: import engine/SessionLocal only after config is loaded
from racereg.db import SessionLocal, create_schema, db_health, engine
from racereg.domain.caller import Caller
from racereg.models import (
    AddOn,
    AddOnOption,
    EventDistance,
    EventEdition,
    Organization,
    PricingTier,
    RegistrationQuestion,
    Waiver,
)
from racereg.repos import users as users_repo

TABLES = [
    "events_outbox",
    "audit_logs",
    "registration_invites",
    "group_registration_batch_rows",
    "group_registration_batches",
    "group_discount_rules",
    "add_on_selections",
    "add_on_options",
    "add_ons",
    "registration_answers",
    "registration_questions",
    "waiver_acceptances",
    "waivers",
    "registrants",
    "registrations",
    "pricing_tiers",
    "event_distances",
    "event_editions",
    "organization_memberships",
    "organizations",
    "profiles",
    "users",
]


# Clean DB before each test, on the SAME loop as the test function.
# Also DISPOSE the engine after each test so no pooled connection (bound to
# a previous loop) is reused by the next test.
@pytest_asyncio.fixture(loop_scope="function")
async def _db_clean():
    if not await db_health():
        await engine.dispose()
        pytest.skip("postgres is not reachable")
    await create_schema()
    async with engine.begin() as conn:
        await conn.exec_driver_sql(f"TRUNCATE TABLE {', '.join(TABLES)} RESTART IDENTITY CASCADE;")
    yield
    await engine.dispose()


@pytest_asyncio.fixture
async def db(_db_clean):
    async with SessionLocal() as s:
        yield s


# Rate limiting lives in Redis; tests run without it.
@pytest.fixture(autouse=True)
def _stub_rate_limit(monkeypatch):
    import racereg.services.rate_limit as rate_limit

    async def _always(*args, **kwargs):
        return True

    monkeypatch.setattr(rate_limit, "_hit", _always)
    yield


# ---------- helpers ----------
async def mk_user(db, email: str, name: str = "Runner", *, verified: bool = True) -> Caller:
    u = await users_repo.upsert_by_email(db, email=email, name=name, email_verified=verified)
    await db.commit()
    return Caller(user_id=u.id, email=u.email, email_verified=u.email_verified)


async def mk_edition(
    db,
    *,
    shared_capacity: Optional[int] = None,
    visibility: str = "published",
    opens_at: Optional[datetime] = None,
    closes_at: Optional[datetime] = None,
    paused: bool = False,
) -> uuid.UUID:
    org = Organization(name="Club", slug=f"club-{uuid.uuid4().hex[:8]}")
    db.add(org)
    await db.flush()
    ed = EventEdition(
        organization_id=org.id,
        series_slug="city-run",
        slug=f"city-run-{uuid.uuid4().hex[:6]}",
        edition_label="2026",
        visibility=visibility,
        registration_opens_at=opens_at,
        registration_closes_at=closes_at,
        is_registration_paused=paused,
        shared_capacity=shared_capacity,
    )
    db.add(ed)
    await db.commit()
    return ed.id


async def mk_distance(
    db,
    edition_id: uuid.UUID,
    *,
    label: str = "10K",
    capacity: Optional[int] = None,
    capacity_scope: str = "per_distance",
    price_cents: Optional[int] = None,
) -> uuid.UUID:
    d = EventDistance(edition_id=edition_id, label=label, capacity=capacity, capacity_scope=capacity_scope)
    db.add(d)
    await db.flush()
    if price_cents is not None:
        now = datetime.now(timezone.utc)
        db.add(
            PricingTier(
                distance_id=d.id,
                label="Regular",
                starts_at=now - timedelta(days=1),
                ends_at=now + timedelta(days=30),
                price_cents=price_cents,
            )
        )
    await db.commit()
    return d.id


async def mk_waiver(db, edition_id: uuid.UUID, *, signature_type: str = "checkbox") -> uuid.UUID:
    w = Waiver(edition_id=edition_id, title="Release", body="I accept the risks.", version_hash="v1", signature_type=signature_type)
    db.add(w)
    await db.commit()
    return w.id


async def mk_question(db, edition_id: uuid.UUID, *, prompt: str = "T-shirt size", required: bool = True) -> uuid.UUID:
    q = RegistrationQuestion(edition_id=edition_id, prompt=prompt, is_required=required)
    db.add(q)
    await db.commit()
    return q.id


async def mk_add_on_option(db, edition_id: uuid.UUID, *, price_cents: int = 2500, max_qty: int = 5) -> uuid.UUID:
    a = AddOn(edition_id=edition_id, title="Merch")
    db.add(a)
    await db.flush()
    o = AddOnOption(add_on_id=a.id, label="Finisher shirt", price_cents=price_cents, max_qty_per_order=max_qty)
    db.add(o)
    await db.commit()
    return o.id
