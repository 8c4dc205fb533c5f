from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy import CheckConstraint, ForeignKey, Index, UniqueConstraint
from sqlalchemy.dialects import postgresql as pg
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ---------- Base & naming ----------
class Base(DeclarativeBase):
    # Keep index/constraint names stable for cleaner migrations
    metadata = sa.MetaData(
        naming_convention={
            "ix": "ix_%(column_0_label)s",
            "uq": "uq_%(table_name)s_%(column_0_name)s",
            "ck": "ck_%(table_name)s_%(constraint_name)s",
            "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
            "pk": "pk_%(table_name)s",
        }
    )


def _created_at() -> Mapped[datetime]:
    return mapped_column(pg.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text("now()"))


def _uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(pg.UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)


# ---------- USERS ----------
class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = _uuid_pk()
    name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    # CITEXT gives case-insensitive unique email
    email: Mapped[str] = mapped_column(pg.CITEXT, nullable=False, unique=True)
    email_verified: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False, server_default=sa.text("false"))
    is_admin: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False, server_default=sa.text("false"))
    status: Mapped[str] = mapped_column(
        sa.Text,
        nullable=False,
        default="active",
        server_default=sa.text("'active'"),
    )  # 'active' | 'disabled'
    created_at: Mapped[datetime] = _created_at()
    deleted_at: Mapped[Optional[datetime]] = mapped_column(pg.TIMESTAMP(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("status in ('active','disabled')", name="users_status"),
        Index("ix_users_deleted_at", "deleted_at"),
    )


class Profile(Base):
    __tablename__ = "profiles"

    user_id: Mapped[uuid.UUID] = mapped_column(
        pg.UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    date_of_birth: Mapped[Optional[date]] = mapped_column(sa.Date, nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    gender: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    city: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    state: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    country: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    emergency_contact_name: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    emergency_contact_phone: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        pg.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text("now()"), onupdate=sa.text("now()")
    )


# ---------- ORGANIZATIONS ----------
class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[uuid.UUID] = _uuid_pk()
    name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    slug: Mapped[str] = mapped_column(sa.Text, nullable=False, unique=True)
    created_at: Mapped[datetime] = _created_at()


class OrganizationMembership(Base):
    __tablename__ = "organization_memberships"

    organization_id: Mapped[uuid.UUID] = mapped_column(
        pg.UUID(as_uuid=True), ForeignKey("organizations.id", ondelete="CASCADE"), primary_key=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        pg.UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    role: Mapped[str] = mapped_column(sa.Text, nullable=False)  # owner | admin | editor | viewer
    created_at: Mapped[datetime] = _created_at()

    __table_args__ = (
        CheckConstraint("role in ('owner','admin','editor','viewer')", name="membership_role"),
    )


# ---------- EDITIONS / DISTANCES / PRICING ----------
class EventEdition(Base):
    __tablename__ = "event_editions"

    id: Mapped[uuid.UUID] = _uuid_pk()
    organization_id: Mapped[uuid.UUID] = mapped_column(
        pg.UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False
    )
    series_slug: Mapped[str] = mapped_column(sa.Text, nullable=False)
    slug: Mapped[str] = mapped_column(sa.Text, nullable=False)
    edition_label: Mapped[str] = mapped_column(sa.Text, nullable=False)
    visibility: Mapped[str] = mapped_column(
        sa.Text, nullable=False, default="draft", server_default=sa.text("'draft'")
    )  # draft | published | unlisted | archived
    registration_opens_at: Mapped[Optional[datetime]] = mapped_column(pg.TIMESTAMP(timezone=True), nullable=True)
    registration_closes_at: Mapped[Optional[datetime]] = mapped_column(pg.TIMESTAMP(timezone=True), nullable=True)
    is_registration_paused: Mapped[bool] = mapped_column(
        sa.Boolean, nullable=False, default=False, server_default=sa.text("false")
    )
    # non-null => one pool across all shared_pool distances
    shared_capacity: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)
    created_at: Mapped[datetime] = _created_at()
    deleted_at: Mapped[Optional[datetime]] = mapped_column(pg.TIMESTAMP(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("visibility in ('draft','published','unlisted','archived')", name="editions_visibility"),
        CheckConstraint("shared_capacity IS NULL OR shared_capacity > 0", name="editions_shared_capacity_pos"),
        Index("ix_editions_org", "organization_id"),
    )


class EventDistance(Base):
    __tablename__ = "event_distances"

    id: Mapped[uuid.UUID] = _uuid_pk()
    edition_id: Mapped[uuid.UUID] = mapped_column(
        pg.UUID(as_uuid=True), ForeignKey("event_editions.id", ondelete="CASCADE"), nullable=False
    )
    label: Mapped[str] = mapped_column(sa.Text, nullable=False)
    capacity: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)  # NULL => uncapped
    capacity_scope: Mapped[str] = mapped_column(
        sa.Text, nullable=False, default="per_distance", server_default=sa.text("'per_distance'")
    )  # per_distance | shared_pool
    sort_order: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0, server_default=sa.text("0"))
    created_at: Mapped[datetime] = _created_at()
    deleted_at: Mapped[Optional[datetime]] = mapped_column(pg.TIMESTAMP(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("capacity IS NULL OR capacity > 0", name="distances_capacity_pos"),
        CheckConstraint("capacity_scope in ('per_distance','shared_pool')", name="distances_capacity_scope"),
        Index("ix_distances_edition", "edition_id"),
    )


class PricingTier(Base):
    __tablename__ = "pricing_tiers"

    id: Mapped[uuid.UUID] = _uuid_pk()
    distance_id: Mapped[uuid.UUID] = mapped_column(
        pg.UUID(as_uuid=True), ForeignKey("event_distances.id", ondelete="CASCADE"), nullable=False
    )
    label: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    starts_at: Mapped[Optional[datetime]] = mapped_column(pg.TIMESTAMP(timezone=True), nullable=True)
    ends_at: Mapped[Optional[datetime]] = mapped_column(pg.TIMESTAMP(timezone=True), nullable=True)
    price_cents: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    currency: Mapped[str] = mapped_column(sa.Text, nullable=False, default="MXN", server_default=sa.text("'MXN'"))
    sort_order: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0, server_default=sa.text("0"))
    created_at: Mapped[datetime] = _created_at()
    deleted_at: Mapped[Optional[datetime]] = mapped_column(pg.TIMESTAMP(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("price_cents >= 0", name="pricing_tiers_price_nonneg"),
        Index("ix_pricing_tiers_distance", "distance_id", "sort_order"),
    )


# ---------- REGISTRATIONS ----------
class Registration(Base):
    __tablename__ = "registrations"

    id: Mapped[uuid.UUID] = _uuid_pk()
    edition_id: Mapped[uuid.UUID] = mapped_column(
        pg.UUID(as_uuid=True), ForeignKey("event_editions.id"), nullable=False
    )
    distance_id: Mapped[uuid.UUID] = mapped_column(
        pg.UUID(as_uuid=True), ForeignKey("event_distances.id"), nullable=False
    )
    # NULL until an invite is claimed
    buyer_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        pg.UUID(as_uuid=True), ForeignKey("users.id"), nullable=True
    )
    payment_responsibility: Mapped[str] = mapped_column(
        sa.Text, nullable=False, default="self_pay", server_default=sa.text("'self_pay'")
    )  # self_pay | central_pay
    status: Mapped[str] = mapped_column(
        sa.Text, nullable=False, default="started", server_default=sa.text("'started'")
    )  # started | submitted | payment_pending | confirmed | cancelled

    base_price_cents: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)
    fees_cents: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)
    tax_cents: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)
    total_cents: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)

    expires_at: Mapped[Optional[datetime]] = mapped_column(pg.TIMESTAMP(timezone=True), nullable=True)
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = mapped_column(
        pg.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text("now()"), onupdate=sa.text("now()")
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(pg.TIMESTAMP(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status in ('started','submitted','payment_pending','confirmed','cancelled')",
            name="registrations_status",
        ),
        CheckConstraint(
            "payment_responsibility in ('self_pay','central_pay')",
            name="registrations_payment_responsibility",
        ),
        Index("ix_reg_distance_status", "distance_id", "status", "expires_at"),
        Index("ix_reg_edition_status", "edition_id", "status", "expires_at"),
        Index("ix_reg_buyer", "buyer_user_id"),
    )


class Registrant(Base):
    __tablename__ = "registrants"

    id: Mapped[uuid.UUID] = _uuid_pk()
    registration_id: Mapped[uuid.UUID] = mapped_column(
        pg.UUID(as_uuid=True), ForeignKey("registrations.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(pg.UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)
    profile_snapshot: Mapped[dict] = mapped_column(pg.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb"))
    division: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    gender_identity: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = mapped_column(
        pg.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text("now()"), onupdate=sa.text("now()")
    )


# ---------- WAIVERS ----------
class Waiver(Base):
    __tablename__ = "waivers"

    id: Mapped[uuid.UUID] = _uuid_pk()
    edition_id: Mapped[uuid.UUID] = mapped_column(
        pg.UUID(as_uuid=True), ForeignKey("event_editions.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(sa.Text, nullable=False)
    body: Mapped[str] = mapped_column(sa.Text, nullable=False)
    # hash of the body at publish time; stamped onto each acceptance
    version_hash: Mapped[str] = mapped_column(sa.Text, nullable=False)
    signature_type: Mapped[str] = mapped_column(
        sa.Text, nullable=False, default="checkbox", server_default=sa.text("'checkbox'")
    )  # checkbox | initials | signature
    display_order: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0, server_default=sa.text("0"))
    created_at: Mapped[datetime] = _created_at()

    __table_args__ = (
        CheckConstraint("signature_type in ('checkbox','initials','signature')", name="waivers_signature_type"),
        Index("ix_waivers_edition", "edition_id", "display_order"),
    )


class WaiverAcceptance(Base):
    __tablename__ = "waiver_acceptances"

    id: Mapped[uuid.UUID] = _uuid_pk()
    registration_id: Mapped[uuid.UUID] = mapped_column(
        pg.UUID(as_uuid=True), ForeignKey("registrations.id", ondelete="CASCADE"), nullable=False
    )
    waiver_id: Mapped[uuid.UUID] = mapped_column(pg.UUID(as_uuid=True), ForeignKey("waivers.id"), nullable=False)
    waiver_version_hash: Mapped[str] = mapped_column(sa.Text, nullable=False)
    signature_type: Mapped[str] = mapped_column(sa.Text, nullable=False)
    signature_value: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    accepted_at: Mapped[datetime] = _created_at()

    __table_args__ = (
        UniqueConstraint("registration_id", "waiver_id", name="uq_waiver_acceptance_once"),
    )


# ---------- QUESTIONS ----------
class RegistrationQuestion(Base):
    __tablename__ = "registration_questions"

    id: Mapped[uuid.UUID] = _uuid_pk()
    edition_id: Mapped[uuid.UUID] = mapped_column(
        pg.UUID(as_uuid=True), ForeignKey("event_editions.id", ondelete="CASCADE"), nullable=False
    )
    # NULL => applies to every distance in the edition
    distance_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        pg.UUID(as_uuid=True), ForeignKey("event_distances.id"), nullable=True
    )
    type: Mapped[str] = mapped_column(sa.Text, nullable=False, default="text", server_default=sa.text("'text'"))
    prompt: Mapped[str] = mapped_column(sa.Text, nullable=False)
    options: Mapped[Optional[list]] = mapped_column(pg.JSONB, nullable=True)
    is_required: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False, server_default=sa.text("false"))
    is_active: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=True, server_default=sa.text("true"))
    sort_order: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0, server_default=sa.text("0"))
    created_at: Mapped[datetime] = _created_at()
    deleted_at: Mapped[Optional[datetime]] = mapped_column(pg.TIMESTAMP(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("type in ('text','single_select','checkbox')", name="questions_type"),
        Index("ix_questions_edition", "edition_id", "sort_order"),
    )


class RegistrationAnswer(Base):
    __tablename__ = "registration_answers"

    id: Mapped[uuid.UUID] = _uuid_pk()
    registration_id: Mapped[uuid.UUID] = mapped_column(
        pg.UUID(as_uuid=True), ForeignKey("registrations.id", ondelete="CASCADE"), nullable=False
    )
    question_id: Mapped[uuid.UUID] = mapped_column(
        pg.UUID(as_uuid=True), ForeignKey("registration_questions.id"), nullable=False
    )
    value: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = mapped_column(
        pg.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text("now()"), onupdate=sa.text("now()")
    )

    __table_args__ = (
        UniqueConstraint("registration_id", "question_id", name="uq_answer_once"),
    )


# ---------- ADD-ONS ----------
class AddOn(Base):
    __tablename__ = "add_ons"

    id: Mapped[uuid.UUID] = _uuid_pk()
    edition_id: Mapped[uuid.UUID] = mapped_column(
        pg.UUID(as_uuid=True), ForeignKey("event_editions.id", ondelete="CASCADE"), nullable=False
    )
    # NULL => available for every distance
    distance_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        pg.UUID(as_uuid=True), ForeignKey("event_distances.id"), nullable=True
    )
    title: Mapped[str] = mapped_column(sa.Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=True, server_default=sa.text("true"))
    created_at: Mapped[datetime] = _created_at()
    deleted_at: Mapped[Optional[datetime]] = mapped_column(pg.TIMESTAMP(timezone=True), nullable=True)


class AddOnOption(Base):
    __tablename__ = "add_on_options"

    id: Mapped[uuid.UUID] = _uuid_pk()
    add_on_id: Mapped[uuid.UUID] = mapped_column(
        pg.UUID(as_uuid=True), ForeignKey("add_ons.id", ondelete="CASCADE"), nullable=False
    )
    label: Mapped[str] = mapped_column(sa.Text, nullable=False)
    price_cents: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0, server_default=sa.text("0"))
    max_qty_per_order: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=5, server_default=sa.text("5"))
    is_active: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=True, server_default=sa.text("true"))
    created_at: Mapped[datetime] = _created_at()
    deleted_at: Mapped[Optional[datetime]] = mapped_column(pg.TIMESTAMP(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("price_cents >= 0", name="add_on_options_price_nonneg"),
        CheckConstraint("max_qty_per_order >= 1", name="add_on_options_max_qty_pos"),
    )


class AddOnSelection(Base):
    __tablename__ = "add_on_selections"

    id: Mapped[uuid.UUID] = _uuid_pk()
    registration_id: Mapped[uuid.UUID] = mapped_column(
        pg.UUID(as_uuid=True), ForeignKey("registrations.id", ondelete="CASCADE"), nullable=False
    )
    option_id: Mapped[uuid.UUID] = mapped_column(pg.UUID(as_uuid=True), ForeignKey("add_on_options.id"), nullable=False)
    quantity: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    line_total_cents: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    created_at: Mapped[datetime] = _created_at()

    __table_args__ = (
        CheckConstraint("quantity >= 1", name="add_on_selections_qty_pos"),
        UniqueConstraint("registration_id", "option_id", name="uq_add_on_selection_once"),
    )


# ---------- GROUP REGISTRATIONS ----------
class GroupDiscountRule(Base):
    __tablename__ = "group_discount_rules"

    id: Mapped[uuid.UUID] = _uuid_pk()
    edition_id: Mapped[uuid.UUID] = mapped_column(
        pg.UUID(as_uuid=True), ForeignKey("event_editions.id", ondelete="CASCADE"), nullable=False
    )
    min_participants: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    percent_off: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=True, server_default=sa.text("true"))
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = mapped_column(
        pg.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text("now()"), onupdate=sa.text("now()")
    )

    __table_args__ = (
        UniqueConstraint("edition_id", "min_participants", name="uq_group_discount_threshold"),
        CheckConstraint("min_participants >= 1", name="group_discount_min_pos"),
        CheckConstraint("percent_off >= 1 AND percent_off <= 100", name="group_discount_percent_range"),
    )


class GroupRegistrationBatch(Base):
    __tablename__ = "group_registration_batches"

    id: Mapped[uuid.UUID] = _uuid_pk()
    edition_id: Mapped[uuid.UUID] = mapped_column(
        pg.UUID(as_uuid=True), ForeignKey("event_editions.id"), nullable=False
    )
    created_by_user_id: Mapped[uuid.UUID] = mapped_column(
        pg.UUID(as_uuid=True), ForeignKey("users.id"), nullable=False
    )
    status: Mapped[str] = mapped_column(
        sa.Text, nullable=False, default="uploaded", server_default=sa.text("'uploaded'")
    )  # uploaded | validated | failed | processed
    payment_responsibility: Mapped[str] = mapped_column(
        sa.Text, nullable=False, default="central_pay", server_default=sa.text("'central_pay'")
    )
    source_filename: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    row_count: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0, server_default=sa.text("0"))
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = mapped_column(
        pg.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text("now()"), onupdate=sa.text("now()")
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(pg.TIMESTAMP(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("status in ('uploaded','validated','failed','processed')", name="batches_status"),
        CheckConstraint(
            "payment_responsibility in ('self_pay','central_pay')",
            name="batches_payment_responsibility",
        ),
        Index("ix_batches_edition", "edition_id", "created_at"),
    )


class GroupRegistrationBatchRow(Base):
    __tablename__ = "group_registration_batch_rows"

    id: Mapped[uuid.UUID] = _uuid_pk()
    batch_id: Mapped[uuid.UUID] = mapped_column(
        pg.UUID(as_uuid=True), ForeignKey("group_registration_batches.id", ondelete="CASCADE"), nullable=False
    )
    row_index: Mapped[int] = mapped_column(sa.Integer, nullable=False)  # 1-based file line (header is line 1)
    raw_json: Mapped[dict] = mapped_column(pg.JSONB, nullable=False)
    validation_errors_json: Mapped[list] = mapped_column(pg.JSONB, nullable=False, server_default=sa.text("'[]'::jsonb"))
    created_registration_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        pg.UUID(as_uuid=True), ForeignKey("registrations.id"), nullable=True
    )
    created_at: Mapped[datetime] = _created_at()

    __table_args__ = (
        UniqueConstraint("batch_id", "row_index", name="uq_batch_row_index"),
    )


# ---------- INVITES ----------
class RegistrationInvite(Base):
    __tablename__ = "registration_invites"

    id: Mapped[uuid.UUID] = _uuid_pk()
    edition_id: Mapped[uuid.UUID] = mapped_column(
        pg.UUID(as_uuid=True), ForeignKey("event_editions.id"), nullable=False
    )
    registration_id: Mapped[uuid.UUID] = mapped_column(
        pg.UUID(as_uuid=True), ForeignKey("registrations.id"), nullable=False
    )
    batch_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        pg.UUID(as_uuid=True), ForeignKey("group_registration_batches.id"), nullable=True
    )
    batch_row_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        pg.UUID(as_uuid=True), ForeignKey("group_registration_batch_rows.id"), nullable=True
    )
    email: Mapped[str] = mapped_column(sa.Text, nullable=False)
    email_normalized: Mapped[str] = mapped_column(sa.Text, nullable=False)
    date_of_birth: Mapped[date] = mapped_column(sa.Date, nullable=False)
    token_hash: Mapped[str] = mapped_column(sa.Text, nullable=False, unique=True)
    token_prefix: Mapped[str] = mapped_column(sa.Text, nullable=False)
    status: Mapped[str] = mapped_column(
        sa.Text, nullable=False, default="draft", server_default=sa.text("'draft'")
    )  # draft | sent | claimed | cancelled | expired | superseded
    is_current: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=True, server_default=sa.text("true"))
    expires_at: Mapped[datetime] = mapped_column(pg.TIMESTAMP(timezone=True), nullable=False)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(pg.TIMESTAMP(timezone=True), nullable=True)
    claimed_by_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        pg.UUID(as_uuid=True), ForeignKey("users.id"), nullable=True
    )
    send_count: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0, server_default=sa.text("0"))
    last_sent_at: Mapped[Optional[datetime]] = mapped_column(pg.TIMESTAMP(timezone=True), nullable=True)
    created_by_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        pg.UUID(as_uuid=True), ForeignKey("users.id"), nullable=True
    )
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = mapped_column(
        pg.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text("now()"), onupdate=sa.text("now()")
    )

    __table_args__ = (
        CheckConstraint(
            "status in ('draft','sent','claimed','cancelled','expired','superseded')",
            name="invites_status",
        ),
        # one current invite per batch row / per registration / per edition+email (while live)
        Index(
            "uq_invite_current_batch_row",
            "batch_row_id",
            unique=True,
            postgresql_where=sa.text("is_current AND batch_row_id IS NOT NULL"),
        ),
        Index(
            "uq_invite_current_registration",
            "registration_id",
            unique=True,
            postgresql_where=sa.text("is_current"),
        ),
        Index(
            "uq_invite_current_edition_email",
            "edition_id",
            "email_normalized",
            unique=True,
            postgresql_where=sa.text("is_current AND status in ('draft','sent')"),
        ),
    )


# ---------- AUDIT ----------
class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(sa.BigInteger, primary_key=True, autoincrement=True)
    organization_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        pg.UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=True
    )
    actor_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        pg.UUID(as_uuid=True), ForeignKey("users.id"), nullable=True
    )
    action: Mapped[str] = mapped_column(sa.Text, nullable=False)
    entity_type: Mapped[str] = mapped_column(sa.Text, nullable=False)
    entity_id: Mapped[str] = mapped_column(sa.Text, nullable=False)
    before: Mapped[Optional[dict]] = mapped_column(pg.JSONB, nullable=True)
    after: Mapped[Optional[dict]] = mapped_column(pg.JSONB, nullable=True)
    request_context: Mapped[Optional[dict]] = mapped_column(pg.JSONB, nullable=True)
    created_at: Mapped[datetime] = _created_at()

    __table_args__ = (
        Index("ix_audit_entity", "entity_type", "entity_id"),
        Index("ix_audit_org_created", "organization_id", "created_at"),
    )


# ---------- EVENTS OUTBOX ----------
class EventsOutbox(Base):
    __tablename__ = "events_outbox"

    id: Mapped[int] = mapped_column(sa.BigInteger, primary_key=True, autoincrement=True)
    channel: Mapped[str] = mapped_column(sa.Text, nullable=False)
    payload: Mapped[dict] = mapped_column(pg.JSONB, nullable=False)
    available_at: Mapped[datetime] = mapped_column(pg.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text("now()"))
    sent_at: Mapped[Optional[datetime]] = mapped_column(pg.TIMESTAMP(timezone=True), nullable=True)
    attempts: Mapped[int] = mapped_column(sa.Integer, nullable=False, server_default=sa.text("0"))
    error: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    created_at: Mapped[datetime] = _created_at()
