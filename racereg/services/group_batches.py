from __future__ import annotations

import logging
import uuid
from collections import Counter
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..domain.holds import compute_expires_at, reserved_clause
from ..domain.identity import is_valid_email, normalize_email, parse_iso_date, to_iso_date_string
from ..domain.pricing import active_tier, applicable_discount_rule, price_registration
from ..domain.results import ActionError, ActionResult, ErrorCode, Ok
from ..domain.schemas.groups import (
    BatchOut,
    BatchRowOut,
    DiscountRuleIn,
    DiscountRuleOut,
    GroupUploadIn,
    ProcessBatchOut,
)
from ..domain.states import BATCH_PROCESSABLE, BatchStatus, RegistrationStatus
from ..models import (
    AddOn,
    AddOnOption,
    AddOnSelection,
    EventDistance,
    EventEdition,
    GroupDiscountRule,
    GroupRegistrationBatch,
    GroupRegistrationBatchRow,
    PricingTier,
    Registrant,
    Registration,
)
from ..observability.metrics import BATCHES_FAILED, BATCHES_PROCESSED
from ..repos import users as users_repo
from . import group_csv, rate_limit
from .audit import record_audit
from .cache_tags import revalidate_edition
from .capacity import CapacityScope, ensure_capacity, lock_scopes, resolve_scope
from .tx import transaction

log = logging.getLogger("racereg.groups")

SNAPSHOT_FIELDS = (
    ("firstName", "first_name"),
    ("lastName", "last_name"),
    ("email", "email"),
    ("dateOfBirth", "date_of_birth"),
    ("phone", "phone"),
    ("gender", "gender"),
    ("city", "city"),
    ("state", "state"),
    ("country", "country"),
    ("emergencyContactName", "emergency_contact_name"),
    ("emergencyContactPhone", "emergency_contact_phone"),
)


class BatchAborted(ActionError):
    """Process-time failure that leaves the batch `failed` instead of retrying it."""

    def __init__(self, code: ErrorCode, message: str, reason: str):
        super().__init__(code, message)
        self.reason = reason


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


async def _load_edition(db: AsyncSession, edition_id: uuid.UUID) -> EventEdition:
    edition = (
        await db.execute(
            select(EventEdition).where(EventEdition.id == edition_id, EventEdition.deleted_at.is_(None))
        )
    ).scalar_one_or_none()
    if edition is None:
        raise ActionError(ErrorCode.NOT_FOUND, "Event edition not found")
    return edition


async def batch_edition_id(db: AsyncSession, batch_id: uuid.UUID) -> Optional[uuid.UUID]:
    """Edition owning a batch; the HTTP layer checks permissions against it."""
    return (
        await db.execute(select(GroupRegistrationBatch.edition_id).where(GroupRegistrationBatch.id == batch_id))
    ).scalar_one_or_none()


# ---------------------------------------------------------------- upload
class _EditionSnapshot:
    """Unlocked view of an edition used to pre-validate rows. Process time re-checks under lock."""

    def __init__(self, edition, distances, reserved_by_distance, options):
        self.edition = edition
        self.by_id = {str(d.id): d for d in distances}
        self.by_label = {}
        for d in distances:
            self.by_label.setdefault(d.label.strip().lower(), d)
        self.reserved_by_distance = reserved_by_distance
        # option id -> (max qty, add-on distance id or None)
        self.options = options

    def sold_out_error(self, distance: EventDistance) -> Optional[str]:
        scope = resolve_scope(self.edition, distance)
        if scope is None:
            return None
        if scope.kind == "edition":
            reserved = sum(self.reserved_by_distance.values())
            return "edition is sold out" if reserved >= scope.limit else None
        reserved = self.reserved_by_distance.get(str(distance.id), 0)
        return "distance is sold out" if reserved >= scope.limit else None


async def _snapshot(db: AsyncSession, edition: EventEdition, now: datetime) -> _EditionSnapshot:
    distances = (
        await db.execute(
            select(EventDistance).where(EventDistance.edition_id == edition.id, EventDistance.deleted_at.is_(None))
        )
    ).scalars().all()
    reserved_rows = await db.execute(
        select(Registration.distance_id, func.count(Registration.id))
        .where(Registration.edition_id == edition.id, reserved_clause(now))
        .group_by(Registration.distance_id)
    )
    reserved = {str(did): int(n) for did, n in reserved_rows.all()}
    option_rows = await db.execute(
        select(AddOnOption.id, AddOnOption.max_qty_per_order, AddOn.distance_id)
        .join(AddOn, AddOn.id == AddOnOption.add_on_id)
        .where(
            AddOn.edition_id == edition.id,
            AddOn.is_active.is_(True),
            AddOn.deleted_at.is_(None),
            AddOnOption.is_active.is_(True),
            AddOnOption.deleted_at.is_(None),
        )
    )
    options = {str(oid): (max_qty, str(did) if did else None) for oid, max_qty, did in option_rows.all()}
    return _EditionSnapshot(edition, distances, reserved, options)


def _validate_row(row, index, snap: _EditionSnapshot, seen: set, accounts: dict):
    """(raw_json, errors) for one data row; errors never abort the batch."""
    def get(header: str) -> str:
        return group_csv.cell(row, index, header)

    errors: list[str] = []

    first_name = get("firstName").strip()
    last_name = get("lastName").strip()
    email = normalize_email(get("email"))
    dob = parse_iso_date(get("dateOfBirth"))

    if not first_name:
        errors.append("firstName is required")
    if not last_name:
        errors.append("lastName is required")
    if not email:
        errors.append("email is required")
    elif not is_valid_email(email):
        errors.append("email is invalid")
    if not dob:
        errors.append("dateOfBirth must be YYYY-MM-DD")

    distance_id_in = get("distanceId").strip()
    distance_label_in = get("distanceLabel").strip()
    distance: Optional[EventDistance] = None
    if distance_id_in:
        try:
            key = str(uuid.UUID(distance_id_in))
        except ValueError:
            errors.append("distanceId must be a UUID")
        else:
            distance = snap.by_id.get(key)
            if distance is None:
                errors.append("distanceId does not exist in this edition")
    elif distance_label_in:
        distance = snap.by_label.get(distance_label_in.lower())
        if distance is None:
            errors.append("distanceLabel does not match any distance in this edition")
    else:
        errors.append("distanceId or distanceLabel is required")

    if distance is not None:
        sold_out = snap.sold_out_error(distance)
        if sold_out:
            errors.append(sold_out)

    picks = group_csv.parse_add_on_selections(get("addOnSelections"))
    if isinstance(picks, str):
        errors.append(picks)
        picks = []
    if picks and distance is None:
        errors.append("addOnSelections requires a valid distance")
    if picks and distance is not None:
        for pick in picks:
            option = snap.options.get(pick.option_id)
            if option is None:
                errors.append("addOnSelections contains an invalid optionId")
                continue
            max_qty, option_distance = option
            if option_distance and option_distance != str(distance.id):
                errors.append("addOnSelections contains options not available for this distance")
            if pick.quantity > max_qty:
                errors.append("addOnSelections quantity exceeds maxQtyPerOrder")

    matched_user_id: Optional[str] = None
    if email and dob:
        identity = (email, dob)
        if identity in seen:
            errors.append("duplicate row (email + dateOfBirth) in this file")
        else:
            seen.add(identity)

        match = accounts.get(email)
        if match is not None:
            user, profile = match
            known_dob = to_iso_date_string(profile.date_of_birth) if profile else None
            if known_dob and known_dob != dob:
                errors.append("existing account found with same email but different dateOfBirth")
            else:
                matched_user_id = str(user.id)

    raw = {
        "firstName": first_name,
        "lastName": last_name,
        "email": email,
        "dateOfBirth": dob,
        "phone": get("phone").strip() or None,
        "gender": get("gender").strip() or None,
        "genderIdentity": get("genderIdentity").strip() or None,
        "city": get("city").strip() or None,
        "state": get("state").strip() or None,
        "country": get("country").strip() or None,
        "emergencyContactName": get("emergencyContactName").strip() or None,
        "emergencyContactPhone": get("emergencyContactPhone").strip() or None,
        "distanceId": str(distance.id) if distance is not None else None,
        "distanceLabel": distance_label_in or None,
        "addOnSelections": [p.to_json() for p in picks],
        "matchedUserId": matched_user_id,
    }
    return raw, errors


async def upload_group_batch(
    db: AsyncSession,
    *,
    actor_user_id: uuid.UUID,
    edition_id: uuid.UUID,
    payload: GroupUploadIn,
    request_context: Optional[dict] = None,
) -> ActionResult[BatchOut]:
    """
    Validate-on-upload: every row is checked and stored with its own error list.
    Nothing here reserves capacity.
    """
    S = get_settings()
    if not await rate_limit.allow_group_upload(actor_user_id):
        return ActionError(ErrorCode.RATE_LIMITED, "Too many uploads. Please try again later.").to_result()

    try:
        table = group_csv.parse_upload(csv_text=payload.csv_text, xlsx_base64=payload.xlsx_base64)
    except group_csv.TabularParseError as e:
        log.info("group_upload_unreadable", extra={"edition_id": str(edition_id), "error": str(e)})
        return ActionError(ErrorCode.INVALID_FILE, "Invalid registration file").to_result()

    if not table.headers:
        return ActionError(ErrorCode.INVALID_HEADERS, "File is missing headers").to_result()
    if group_csv.missing_headers(table):
        return ActionError(ErrorCode.INVALID_HEADERS, "Headers do not match the expected template").to_result()
    if not table.rows:
        return ActionError(ErrorCode.NO_ROWS, "File has no data rows").to_result()
    if len(table.rows) > S.GROUP_UPLOAD_MAX_ROWS:
        return ActionError(
            ErrorCode.TOO_MANY_ROWS, f"File exceeds maximum of {S.GROUP_UPLOAD_MAX_ROWS} rows"
        ).to_result()

    index = table.header_index()
    now = _now_utc()
    try:
        async with transaction(db):
            edition = await _load_edition(db, edition_id)
            snap = await _snapshot(db, edition, now)

            emails = sorted({normalize_email(group_csv.cell(r, index, "email")) for r in table.rows} - {""})
            accounts = await users_repo.find_by_emails(db, emails)

            batch = GroupRegistrationBatch(
                edition_id=edition.id,
                created_by_user_id=actor_user_id,
                status=BatchStatus.UPLOADED.value,
                payment_responsibility=payload.payment_responsibility,
                source_filename=payload.source_filename,
                row_count=len(table.rows),
            )
            db.add(batch)
            await db.flush()

            seen: set = set()
            validated = [_validate_row(row, index, snap, seen, accounts) for row in table.rows]

            # matched accounts already holding a slot in this edition (unlocked, best effort)
            matched_ids = {uuid.UUID(raw["matchedUserId"]) for raw, _ in validated if raw["matchedUserId"]}
            busy: set[str] = set()
            if matched_ids:
                busy = {
                    str(uid)
                    for uid in (
                        await db.execute(
                            select(Registration.buyer_user_id).where(
                                Registration.edition_id == edition.id,
                                Registration.buyer_user_id.in_(matched_ids),
                                reserved_clause(now),
                            )
                        )
                    ).scalars().all()
                }

            rows_out: list[BatchRowOut] = []
            error_rows = 0
            for i, (raw, errors) in enumerate(validated):
                if raw["matchedUserId"] in busy:
                    errors.append("user already has an active registration for this edition")
                if errors:
                    error_rows += 1
                db.add(
                    GroupRegistrationBatchRow(
                        batch_id=batch.id, row_index=i + 2, raw_json=raw, validation_errors_json=errors
                    )
                )
                rows_out.append(BatchRowOut(row_index=i + 2, raw=raw, errors=errors))

            batch.status = BatchStatus.FAILED.value if error_rows else BatchStatus.VALIDATED.value
            await db.flush()

            await record_audit(
                db,
                organization_id=edition.organization_id,
                actor_user_id=actor_user_id,
                action="group_registrations.upload",
                entity_type="group_registration_batch",
                entity_id=batch.id,
                after={
                    "edition_id": edition.id,
                    "status": batch.status,
                    "rows": len(rows_out),
                    "errors": error_rows,
                    "filename": payload.source_filename,
                },
                request_context=request_context,
            )
            out = BatchOut(
                id=batch.id,
                edition_id=edition.id,
                status=batch.status,
                payment_responsibility=batch.payment_responsibility,
                row_count=len(rows_out),
                error_row_count=error_rows,
                created_at=now,
                rows=rows_out,
            )
    except ActionError as e:
        return e.to_result()

    log.info(
        "group_batch_uploaded",
        extra={"batch_id": str(out.id), "status": out.status, "rows": out.row_count, "error_rows": out.error_row_count},
    )
    return Ok(out)


# ---------------------------------------------------------------- status
async def get_group_batch_status(db: AsyncSession, *, batch_id: uuid.UUID) -> ActionResult[BatchOut]:
    async with transaction(db):
        batch = await db.get(GroupRegistrationBatch, batch_id, populate_existing=True)
        if batch is None:
            return ActionError(ErrorCode.NOT_FOUND, "Batch not found").to_result()
        rows = (
            await db.execute(
                select(GroupRegistrationBatchRow)
                .where(GroupRegistrationBatchRow.batch_id == batch.id)
                .order_by(GroupRegistrationBatchRow.row_index.asc())
            )
        ).scalars().all()
        out = BatchOut(
            id=batch.id,
            edition_id=batch.edition_id,
            status=batch.status,
            payment_responsibility=batch.payment_responsibility,
            row_count=len(rows),
            error_row_count=sum(1 for r in rows if r.validation_errors_json),
            created_at=batch.created_at,
            processed_at=batch.processed_at,
            rows=[
                BatchRowOut(
                    id=r.id,
                    row_index=r.row_index,
                    raw=r.raw_json or {},
                    errors=list(r.validation_errors_json or []),
                    created_registration_id=r.created_registration_id,
                )
                for r in rows
            ],
        )
    return Ok(out)


# ---------------------------------------------------------------- process
def _snapshot_from_raw(raw: dict) -> dict:
    return {dst: raw[src] for src, dst in SNAPSHOT_FIELDS if isinstance(raw.get(src), str) and raw.get(src)}


async def _load_options(db: AsyncSession, edition_id: uuid.UUID, option_ids: set[str]):
    """option id -> (price, max qty, add-on distance id); any unknown or retired option aborts."""
    if not option_ids:
        return {}
    rows = (
        await db.execute(
            select(AddOnOption, AddOn)
            .join(AddOn, AddOn.id == AddOnOption.add_on_id)
            .where(
                AddOnOption.id.in_([uuid.UUID(o) for o in option_ids]),
                AddOnOption.is_active.is_(True),
                AddOnOption.deleted_at.is_(None),
            )
        )
    ).all()
    found = {}
    for option, add_on in rows:
        if add_on.deleted_at is not None or not add_on.is_active or add_on.edition_id != edition_id:
            raise BatchAborted(ErrorCode.INVALID_ROW, "Batch contains invalid row data", "INVALID_ROW")
        found[str(option.id)] = (option.price_cents, option.max_qty_per_order, add_on.distance_id)
    if len(found) != len(option_ids):
        raise BatchAborted(ErrorCode.INVALID_ROW, "Batch contains invalid row data", "INVALID_ROW")
    return found


async def process_group_batch(
    db: AsyncSession,
    *,
    actor_user_id: uuid.UUID,
    batch_id: uuid.UUID,
    request_context: Optional[dict] = None,
) -> ActionResult[ProcessBatchOut]:
    """
    Admit every row of a clean batch or none of them.

    Re-processing a `processed` batch returns its prior count. Capacity and
    referential failures roll everything back and mark the batch `failed`.
    """
    try:
        return Ok(
            await _process(db, actor_user_id=actor_user_id, batch_id=batch_id, request_context=request_context)
        )
    except BatchAborted as e:
        await _mark_failed(db, actor_user_id=actor_user_id, batch_id=batch_id, error=e, request_context=request_context)
        return e.to_result()
    except ActionError as e:
        return e.to_result()


async def _process(db, *, actor_user_id, batch_id, request_context) -> ProcessBatchOut:
    S = get_settings()
    now = _now_utc()

    async with transaction(db):
        # batch row lock serializes concurrent process calls on the same batch
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

        rows = (
            await db.execute(
                select(GroupRegistrationBatchRow)
                .where(GroupRegistrationBatchRow.batch_id == batch.id)
                .order_by(GroupRegistrationBatchRow.row_index.asc())
            )
        ).scalars().all()

        if batch.status == BatchStatus.PROCESSED.value:
            return ProcessBatchOut(
                batch_id=batch.id,
                created_count=sum(1 for r in rows if r.created_registration_id),
                percent_off=None,
            )
        if batch.status not in BATCH_PROCESSABLE:
            raise ActionError(ErrorCode.INVALID_STATE, "Batch is not validated")
        if any(r.validation_errors_json for r in rows):
            raise ActionError(ErrorCode.VALIDATION_ERROR, "Batch contains validation errors")

        per_distance = Counter(r.raw_json.get("distanceId") for r in rows if r.raw_json.get("distanceId"))
        if not per_distance:
            raise ActionError(ErrorCode.VALIDATION_ERROR, "No distances found in batch")

        edition = (
            await db.execute(
                select(EventEdition)
                .where(EventEdition.id == batch.edition_id, EventEdition.deleted_at.is_(None))
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if edition is None:
            raise BatchAborted(ErrorCode.NOT_FOUND, "Event edition not found", "EDITION_NOT_FOUND")

        rules = (
            await db.execute(select(GroupDiscountRule).where(GroupDiscountRule.edition_id == edition.id))
        ).scalars().all()
        rule = applicable_discount_rule(rules, len(rows))
        percent_off = rule.percent_off if rule else None

        buyer_placeholder = await users_repo.ensure_system_buyer(db)

        # 1) Lock every scope the batch touches (edition before distances), then count
        distances = {
            str(d.id): d
            for d in (
                await db.execute(
                    select(EventDistance).where(
                        EventDistance.id.in_([uuid.UUID(d) for d in per_distance]),
                        EventDistance.edition_id == edition.id,
                        EventDistance.deleted_at.is_(None),
                    )
                )
            ).scalars().all()
        }
        if len(distances) != len(per_distance):
            raise BatchAborted(ErrorCode.INVALID_ROW, "Batch contains invalid row data", "INVALID_ROW")

        scopes: dict[tuple, CapacityScope] = {}
        for did in per_distance:
            scope = resolve_scope(edition, distances[did])
            if scope is not None:
                scopes[scope.sort_key] = scope
        await lock_scopes(db, scopes.values())

        # 2) Re-verify the aggregate under lock from the reloaded rows; one short scope fails the whole batch
        wanted: dict[tuple, int] = {}
        fresh: dict[tuple, CapacityScope] = {}
        for did, n in per_distance.items():
            scope = resolve_scope(edition, distances[did])
            if scope is None:
                continue
            fresh[scope.sort_key] = scope
            wanted[scope.sort_key] = wanted.get(scope.sort_key, 0) + n
        for key, scope in sorted(fresh.items()):
            try:
                await ensure_capacity(
                    db, scope, now=now, requested=wanted[key], code=ErrorCode.INSUFFICIENT_CAPACITY
                )
            except ActionError as e:
                raise BatchAborted(e.code, e.message, "INSUFFICIENT_CAPACITY") from None

        # 3) Referential re-check of add-ons
        picks_by_row: dict[uuid.UUID, list] = {}
        option_ids: set[str] = set()
        for r in rows:
            picks = group_csv.stored_add_on_selections(r.raw_json.get("addOnSelections"))
            if picks is None:
                raise BatchAborted(ErrorCode.INVALID_ROW, "Batch contains invalid row data", "INVALID_ROW")
            picks_by_row[r.id] = picks
            option_ids.update(p.option_id for p in picks)
        options = await _load_options(db, edition.id, option_ids)

        tiers_by_distance: dict[str, list[PricingTier]] = {did: [] for did in distances}
        for tier in (
            await db.execute(
                select(PricingTier).where(PricingTier.distance_id.in_([d.id for d in distances.values()]))
            )
        ).scalars().all():
            tiers_by_distance[str(tier.distance_id)].append(tier)

        status = RegistrationStatus.CONFIRMED if S.NO_PAYMENT_MODE else RegistrationStatus.PAYMENT_PENDING
        expires_at = None if status is RegistrationStatus.CONFIRMED else compute_expires_at(now, status)

        # 4) Admit
        created = 0
        for r in rows:
            raw = r.raw_json
            did = raw["distanceId"]
            lines = []
            for pick in picks_by_row[r.id]:
                price_cents, max_qty, option_distance = options[pick.option_id]
                if pick.quantity > max_qty or (option_distance and str(option_distance) != did):
                    raise BatchAborted(ErrorCode.INVALID_ROW, "Batch contains invalid row data", "INVALID_ROW")
                lines.append((pick, price_cents * pick.quantity))

            tier = active_tier(tiers_by_distance[did], now)
            price = price_registration(
                tier.price_cents if tier else None,
                percent_off=percent_off,
                add_on_line_totals=[total for _, total in lines],
            )
            matched = uuid.UUID(raw["matchedUserId"]) if raw.get("matchedUserId") else None
            buyer_id = matched or buyer_placeholder.id

            reg = Registration(
                edition_id=edition.id,
                distance_id=uuid.UUID(did),
                buyer_user_id=buyer_id,
                payment_responsibility=batch.payment_responsibility,
                status=status.value,
                base_price_cents=price.base_price_cents,
                fees_cents=price.fees_cents,
                tax_cents=price.tax_cents,
                total_cents=price.total_cents,
                expires_at=expires_at,
            )
            db.add(reg)
            await db.flush()

            for pick, total in lines:
                db.add(
                    AddOnSelection(
                        registration_id=reg.id,
                        option_id=uuid.UUID(pick.option_id),
                        quantity=pick.quantity,
                        line_total_cents=total,
                    )
                )
            db.add(
                Registrant(
                    registration_id=reg.id,
                    user_id=matched,
                    profile_snapshot=_snapshot_from_raw(raw),
                    gender_identity=raw.get("genderIdentity"),
                )
            )
            await record_audit(
                db,
                organization_id=edition.organization_id,
                actor_user_id=actor_user_id,
                action="registration.create",
                entity_type="registration",
                entity_id=reg.id,
                after={
                    "edition_id": edition.id,
                    "distance_id": did,
                    "buyer_user_id": buyer_id,
                    "status": status.value,
                    "base_price_cents": price.base_price_cents,
                    "fees_cents": price.fees_cents,
                    "add_ons_cents": price.add_ons_cents,
                    "total_cents": price.total_cents,
                    "group_batch_id": batch.id,
                    "batch_row_id": r.id,
                    "row_index": r.row_index,
                    "percent_off": percent_off,
                },
                request_context=request_context,
            )
            r.created_registration_id = reg.id
            created += 1

        batch.status = BatchStatus.PROCESSED.value
        batch.processed_at = now
        await db.flush()
        await record_audit(
            db,
            organization_id=edition.organization_id,
            actor_user_id=actor_user_id,
            action="group_registrations.process",
            entity_type="group_registration_batch",
            entity_id=batch.id,
            after={"status": batch.status, "created_count": created, "percent_off": percent_off},
            request_context=request_context,
        )
        await revalidate_edition(db, edition.id)
        out = ProcessBatchOut(batch_id=batch.id, created_count=created, percent_off=percent_off)

    BATCHES_PROCESSED.inc()
    log.info(
        "group_batch_processed",
        extra={"batch_id": str(out.batch_id), "created": out.created_count, "percent_off": out.percent_off},
    )
    return out


async def _mark_failed(db, *, actor_user_id, batch_id, error: BatchAborted, request_context) -> None:
    """Separate transaction: the admission work is already rolled back."""
    async with transaction(db):
        res = await db.execute(
            update(GroupRegistrationBatch)
            .where(GroupRegistrationBatch.id == batch_id, GroupRegistrationBatch.status.in_(BATCH_PROCESSABLE))
            .values(status=BatchStatus.FAILED.value, processed_at=_now_utc())
            .returning(GroupRegistrationBatch.edition_id)
        )
        edition_id = res.scalar_one_or_none()
        if edition_id is None:
            return
        edition = await db.get(EventEdition, edition_id)
        await record_audit(
            db,
            organization_id=edition.organization_id if edition else None,
            actor_user_id=actor_user_id,
            action="group_registrations.process_failed",
            entity_type="group_registration_batch",
            entity_id=batch_id,
            after={"status": BatchStatus.FAILED.value, "reason": error.reason, "message": error.message},
            request_context=request_context,
        )
    BATCHES_FAILED.labels(code=error.code.value).inc()
    log.warning("group_batch_failed", extra={"batch_id": str(batch_id), "reason": error.reason})


# ---------------------------------------------------------------- discount rules
async def upsert_group_discount_rule(
    db: AsyncSession,
    *,
    actor_user_id: uuid.UUID,
    edition_id: uuid.UUID,
    rule: DiscountRuleIn,
    request_context: Optional[dict] = None,
) -> ActionResult[DiscountRuleOut]:
    try:
        async with transaction(db):
            edition = await _load_edition(db, edition_id)
            stmt = pg_insert(GroupDiscountRule).values(
                edition_id=edition.id,
                min_participants=rule.min_participants,
                percent_off=rule.percent_off,
                is_active=rule.is_active,
            )
            stmt = stmt.on_conflict_do_update(
                constraint="uq_group_discount_threshold",
                set_={
                    "percent_off": stmt.excluded.percent_off,
                    "is_active": stmt.excluded.is_active,
                    "updated_at": _now_utc(),
                },
            ).returning(GroupDiscountRule)
            saved = (await db.execute(stmt.execution_options(populate_existing=True))).scalar_one()
            await record_audit(
                db,
                organization_id=edition.organization_id,
                actor_user_id=actor_user_id,
                action="group_discount_rule.upsert",
                entity_type="group_discount_rule",
                entity_id=saved.id,
                after=rule.model_dump(),
                request_context=request_context,
            )
            out = DiscountRuleOut.model_validate(saved, from_attributes=True)
        return Ok(out)
    except ActionError as e:
        return e.to_result()


async def group_template_csv(db: AsyncSession, *, edition_id: uuid.UUID) -> ActionResult[str]:
    """Template with the fixed column order; the example row names the edition's first distance."""
    try:
        async with transaction(db):
            await _load_edition(db, edition_id)
            label = (
                await db.execute(
                    select(EventDistance.label)
                    .where(EventDistance.edition_id == edition_id, EventDistance.deleted_at.is_(None))
                    .order_by(EventDistance.sort_order.asc(), EventDistance.created_at.asc())
                    .limit(1)
                )
            ).scalar_one_or_none()
        return Ok(group_csv.template_csv(label))
    except ActionError as e:
        return e.to_result()
