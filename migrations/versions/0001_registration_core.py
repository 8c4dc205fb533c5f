"""registration core schema

Revision ID: 0001_registration_core
Revises:
Create Date: 2026-10-18

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql as pg


# revision identifiers, used by Alembic.
revision = "0001_registration_core"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name, nullable=False, now=True):
    return sa.Column(
        name,
        pg.TIMESTAMP(timezone=True),
        nullable=nullable,
        server_default=sa.text("now()") if now else None,
    )


def _uuid(name, *args, **kw):
    return sa.Column(name, pg.UUID(as_uuid=True), *args, **kw)


def upgrade() -> None:
    # Enable citext for case-insensitive email
    op.execute("CREATE EXTENSION IF NOT EXISTS citext")

    # users / profiles
    op.create_table(
        "users",
        _uuid("id", primary_key=True, nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("email", pg.CITEXT(), nullable=False),
        sa.Column("email_verified", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_admin", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("status", sa.Text(), nullable=False, server_default=sa.text("'active'")),
        _ts("created_at"),
        _ts("deleted_at", nullable=True, now=False),
        sa.CheckConstraint("status in ('active','disabled')", name="ck_users_users_status"),
    )
    op.create_unique_constraint("uq_users_email", "users", ["email"])
    op.create_index("ix_users_deleted_at", "users", ["deleted_at"])

    op.create_table(
        "profiles",
        _uuid("user_id", sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True, nullable=False),
        sa.Column("date_of_birth", sa.Date(), nullable=True),
        sa.Column("phone", sa.Text(), nullable=True),
        sa.Column("gender", sa.Text(), nullable=True),
        sa.Column("city", sa.Text(), nullable=True),
        sa.Column("state", sa.Text(), nullable=True),
        sa.Column("country", sa.Text(), nullable=True),
        sa.Column("emergency_contact_name", sa.Text(), nullable=True),
        sa.Column("emergency_contact_phone", sa.Text(), nullable=True),
        _ts("updated_at"),
    )

    # organizations
    op.create_table(
        "organizations",
        _uuid("id", primary_key=True, nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("slug", sa.Text(), nullable=False),
        _ts("created_at"),
    )
    op.create_unique_constraint("uq_organizations_slug", "organizations", ["slug"])

    op.create_table(
        "organization_memberships",
        _uuid("organization_id", sa.ForeignKey("organizations.id", ondelete="CASCADE"), primary_key=True),
        _uuid("user_id", sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("role", sa.Text(), nullable=False),
        _ts("created_at"),
        sa.CheckConstraint(
            "role in ('owner','admin','editor','viewer')", name="ck_organization_memberships_membership_role"
        ),
    )

    # editions / distances / pricing
    op.create_table(
        "event_editions",
        _uuid("id", primary_key=True, nullable=False),
        _uuid("organization_id", sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("series_slug", sa.Text(), nullable=False),
        sa.Column("slug", sa.Text(), nullable=False),
        sa.Column("edition_label", sa.Text(), nullable=False),
        sa.Column("visibility", sa.Text(), nullable=False, server_default=sa.text("'draft'")),
        _ts("registration_opens_at", nullable=True, now=False),
        _ts("registration_closes_at", nullable=True, now=False),
        sa.Column("is_registration_paused", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("shared_capacity", sa.Integer(), nullable=True),
        _ts("created_at"),
        _ts("deleted_at", nullable=True, now=False),
        sa.CheckConstraint(
            "visibility in ('draft','published','unlisted','archived')", name="ck_event_editions_editions_visibility"
        ),
        sa.CheckConstraint(
            "shared_capacity IS NULL OR shared_capacity > 0", name="ck_event_editions_editions_shared_capacity_pos"
        ),
    )
    op.create_index("ix_editions_org", "event_editions", ["organization_id"])

    op.create_table(
        "event_distances",
        _uuid("id", primary_key=True, nullable=False),
        _uuid("edition_id", sa.ForeignKey("event_editions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("label", sa.Text(), nullable=False),
        sa.Column("capacity", sa.Integer(), nullable=True),
        sa.Column("capacity_scope", sa.Text(), nullable=False, server_default=sa.text("'per_distance'")),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default=sa.text("0")),
        _ts("created_at"),
        _ts("deleted_at", nullable=True, now=False),
        sa.CheckConstraint("capacity IS NULL OR capacity > 0", name="ck_event_distances_distances_capacity_pos"),
        sa.CheckConstraint(
            "capacity_scope in ('per_distance','shared_pool')", name="ck_event_distances_distances_capacity_scope"
        ),
    )
    op.create_index("ix_distances_edition", "event_distances", ["edition_id"])

    op.create_table(
        "pricing_tiers",
        _uuid("id", primary_key=True, nullable=False),
        _uuid("distance_id", sa.ForeignKey("event_distances.id", ondelete="CASCADE"), nullable=False),
        sa.Column("label", sa.Text(), nullable=True),
        _ts("starts_at", nullable=True, now=False),
        _ts("ends_at", nullable=True, now=False),
        sa.Column("price_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.Text(), nullable=False, server_default=sa.text("'MXN'")),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default=sa.text("0")),
        _ts("created_at"),
        _ts("deleted_at", nullable=True, now=False),
        sa.CheckConstraint("price_cents >= 0", name="ck_pricing_tiers_pricing_tiers_price_nonneg"),
    )
    op.create_index("ix_pricing_tiers_distance", "pricing_tiers", ["distance_id", "sort_order"])

    # registrations
    op.create_table(
        "registrations",
        _uuid("id", primary_key=True, nullable=False),
        _uuid("edition_id", sa.ForeignKey("event_editions.id"), nullable=False),
        _uuid("distance_id", sa.ForeignKey("event_distances.id"), nullable=False),
        _uuid("buyer_user_id", sa.ForeignKey("users.id"), nullable=True),
        sa.Column("payment_responsibility", sa.Text(), nullable=False, server_default=sa.text("'self_pay'")),
        sa.Column("status", sa.Text(), nullable=False, server_default=sa.text("'started'")),
        sa.Column("base_price_cents", sa.Integer(), nullable=True),
        sa.Column("fees_cents", sa.Integer(), nullable=True),
        sa.Column("tax_cents", sa.Integer(), nullable=True),
        sa.Column("total_cents", sa.Integer(), nullable=True),
        _ts("expires_at", nullable=True, now=False),
        _ts("created_at"),
        _ts("updated_at"),
        _ts("deleted_at", nullable=True, now=False),
        sa.CheckConstraint(
            "status in ('started','submitted','payment_pending','confirmed','cancelled')",
            name="ck_registrations_registrations_status",
        ),
        sa.CheckConstraint(
            "payment_responsibility in ('self_pay','central_pay')",
            name="ck_registrations_registrations_payment_responsibility",
        ),
    )
    # capacity counts scan these; expires_at last so lapsed holds are filtered in-index
    op.create_index("ix_reg_distance_status", "registrations", ["distance_id", "status", "expires_at"])
    op.create_index("ix_reg_edition_status", "registrations", ["edition_id", "status", "expires_at"])
    op.create_index("ix_reg_buyer", "registrations", ["buyer_user_id"])

    op.create_table(
        "registrants",
        _uuid("id", primary_key=True, nullable=False),
        _uuid("registration_id", sa.ForeignKey("registrations.id", ondelete="CASCADE"), nullable=False),
        _uuid("user_id", sa.ForeignKey("users.id"), nullable=True),
        sa.Column("profile_snapshot", pg.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("division", sa.Text(), nullable=True),
        sa.Column("gender_identity", sa.Text(), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_unique_constraint("uq_registrants_registration_id", "registrants", ["registration_id"])

    # waivers
    op.create_table(
        "waivers",
        _uuid("id", primary_key=True, nullable=False),
        _uuid("edition_id", sa.ForeignKey("event_editions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("version_hash", sa.Text(), nullable=False),
        sa.Column("signature_type", sa.Text(), nullable=False, server_default=sa.text("'checkbox'")),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default=sa.text("0")),
        _ts("created_at"),
        sa.CheckConstraint(
            "signature_type in ('checkbox','initials','signature')", name="ck_waivers_waivers_signature_type"
        ),
    )
    op.create_index("ix_waivers_edition", "waivers", ["edition_id", "display_order"])

    op.create_table(
        "waiver_acceptances",
        _uuid("id", primary_key=True, nullable=False),
        _uuid("registration_id", sa.ForeignKey("registrations.id", ondelete="CASCADE"), nullable=False),
        _uuid("waiver_id", sa.ForeignKey("waivers.id"), nullable=False),
        sa.Column("waiver_version_hash", sa.Text(), nullable=False),
        sa.Column("signature_type", sa.Text(), nullable=False),
        sa.Column("signature_value", sa.Text(), nullable=True),
        sa.Column("ip_address", sa.Text(), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        _ts("accepted_at"),
        sa.UniqueConstraint("registration_id", "waiver_id", name="uq_waiver_acceptance_once"),
    )

    # questions
    op.create_table(
        "registration_questions",
        _uuid("id", primary_key=True, nullable=False),
        _uuid("edition_id", sa.ForeignKey("event_editions.id", ondelete="CASCADE"), nullable=False),
        _uuid("distance_id", sa.ForeignKey("event_distances.id"), nullable=True),
        sa.Column("type", sa.Text(), nullable=False, server_default=sa.text("'text'")),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("options", pg.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("is_required", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default=sa.text("0")),
        _ts("created_at"),
        _ts("deleted_at", nullable=True, now=False),
        sa.CheckConstraint(
            "type in ('text','single_select','checkbox')", name="ck_registration_questions_questions_type"
        ),
    )
    op.create_index("ix_questions_edition", "registration_questions", ["edition_id", "sort_order"])

    op.create_table(
        "registration_answers",
        _uuid("id", primary_key=True, nullable=False),
        _uuid("registration_id", sa.ForeignKey("registrations.id", ondelete="CASCADE"), nullable=False),
        _uuid("question_id", sa.ForeignKey("registration_questions.id"), nullable=False),
        sa.Column("value", sa.Text(), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        sa.UniqueConstraint("registration_id", "question_id", name="uq_answer_once"),
    )

    # add-ons
    op.create_table(
        "add_ons",
        _uuid("id", primary_key=True, nullable=False),
        _uuid("edition_id", sa.ForeignKey("event_editions.id", ondelete="CASCADE"), nullable=False),
        _uuid("distance_id", sa.ForeignKey("event_distances.id"), nullable=True),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _ts("created_at"),
        _ts("deleted_at", nullable=True, now=False),
    )
    op.create_table(
        "add_on_options",
        _uuid("id", primary_key=True, nullable=False),
        _uuid("add_on_id", sa.ForeignKey("add_ons.id", ondelete="CASCADE"), nullable=False),
        sa.Column("label", sa.Text(), nullable=False),
        sa.Column("price_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_qty_per_order", sa.Integer(), nullable=False, server_default=sa.text("5")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _ts("created_at"),
        _ts("deleted_at", nullable=True, now=False),
        sa.CheckConstraint("price_cents >= 0", name="ck_add_on_options_add_on_options_price_nonneg"),
        sa.CheckConstraint("max_qty_per_order >= 1", name="ck_add_on_options_add_on_options_max_qty_pos"),
    )
    op.create_table(
        "add_on_selections",
        _uuid("id", primary_key=True, nullable=False),
        _uuid("registration_id", sa.ForeignKey("registrations.id", ondelete="CASCADE"), nullable=False),
        _uuid("option_id", sa.ForeignKey("add_on_options.id"), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("line_total_cents", sa.Integer(), nullable=False),
        _ts("created_at"),
        sa.CheckConstraint("quantity >= 1", name="ck_add_on_selections_add_on_selections_qty_pos"),
        sa.UniqueConstraint("registration_id", "option_id", name="uq_add_on_selection_once"),
    )

    # group registrations
    op.create_table(
        "group_discount_rules",
        _uuid("id", primary_key=True, nullable=False),
        _uuid("edition_id", sa.ForeignKey("event_editions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("min_participants", sa.Integer(), nullable=False),
        sa.Column("percent_off", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _ts("created_at"),
        _ts("updated_at"),
        sa.UniqueConstraint("edition_id", "min_participants", name="uq_group_discount_threshold"),
        sa.CheckConstraint("min_participants >= 1", name="ck_group_discount_rules_group_discount_min_pos"),
        sa.CheckConstraint(
            "percent_off >= 1 AND percent_off <= 100", name="ck_group_discount_rules_group_discount_percent_range"
        ),
    )
    op.create_table(
        "group_registration_batches",
        _uuid("id", primary_key=True, nullable=False),
        _uuid("edition_id", sa.ForeignKey("event_editions.id"), nullable=False),
        _uuid("created_by_user_id", sa.ForeignKey("users.id"), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default=sa.text("'uploaded'")),
        sa.Column("payment_responsibility", sa.Text(), nullable=False, server_default=sa.text("'central_pay'")),
        sa.Column("source_filename", sa.Text(), nullable=True),
        sa.Column("row_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        _ts("created_at"),
        _ts("updated_at"),
        _ts("processed_at", nullable=True, now=False),
        sa.CheckConstraint(
            "status in ('uploaded','validated','failed','processed')",
            name="ck_group_registration_batches_batches_status",
        ),
        sa.CheckConstraint(
            "payment_responsibility in ('self_pay','central_pay')",
            name="ck_group_registration_batches_batches_payment_responsibility",
        ),
    )
    op.create_index("ix_batches_edition", "group_registration_batches", ["edition_id", "created_at"])

    op.create_table(
        "group_registration_batch_rows",
        _uuid("id", primary_key=True, nullable=False),
        _uuid("batch_id", sa.ForeignKey("group_registration_batches.id", ondelete="CASCADE"), nullable=False),
        sa.Column("row_index", sa.Integer(), nullable=False),
        sa.Column("raw_json", pg.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column(
            "validation_errors_json", pg.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'[]'::jsonb")
        ),
        _uuid("created_registration_id", sa.ForeignKey("registrations.id"), nullable=True),
        _ts("created_at"),
        sa.UniqueConstraint("batch_id", "row_index", name="uq_batch_row_index"),
    )

    # invites
    op.create_table(
        "registration_invites",
        _uuid("id", primary_key=True, nullable=False),
        _uuid("edition_id", sa.ForeignKey("event_editions.id"), nullable=False),
        _uuid("registration_id", sa.ForeignKey("registrations.id"), nullable=False),
        _uuid("batch_id", sa.ForeignKey("group_registration_batches.id"), nullable=True),
        _uuid("batch_row_id", sa.ForeignKey("group_registration_batch_rows.id"), nullable=True),
        sa.Column("email", sa.Text(), nullable=False),
        sa.Column("email_normalized", sa.Text(), nullable=False),
        sa.Column("date_of_birth", sa.Date(), nullable=False),
        sa.Column("token_hash", sa.Text(), nullable=False),
        sa.Column("token_prefix", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default=sa.text("'draft'")),
        sa.Column("is_current", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _ts("expires_at", now=False),
        _ts("claimed_at", nullable=True, now=False),
        _uuid("claimed_by_user_id", sa.ForeignKey("users.id"), nullable=True),
        sa.Column("send_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        _ts("last_sent_at", nullable=True, now=False),
        _uuid("created_by_user_id", sa.ForeignKey("users.id"), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        sa.CheckConstraint(
            "status in ('draft','sent','claimed','cancelled','expired','superseded')",
            name="ck_registration_invites_invites_status",
        ),
    )
    op.create_unique_constraint("uq_registration_invites_token_hash", "registration_invites", ["token_hash"])
    op.create_index(
        "uq_invite_current_batch_row",
        "registration_invites",
        ["batch_row_id"],
        unique=True,
        postgresql_where=sa.text("is_current AND batch_row_id IS NOT NULL"),
    )
    op.create_index(
        "uq_invite_current_registration",
        "registration_invites",
        ["registration_id"],
        unique=True,
        postgresql_where=sa.text("is_current"),
    )
    op.create_index(
        "uq_invite_current_edition_email",
        "registration_invites",
        ["edition_id", "email_normalized"],
        unique=True,
        postgresql_where=sa.text("is_current AND status in ('draft','sent')"),
    )

    # audit
    op.create_table(
        "audit_logs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        _uuid("organization_id", sa.ForeignKey("organizations.id"), nullable=True),
        _uuid("actor_user_id", sa.ForeignKey("users.id"), nullable=True),
        sa.Column("action", sa.Text(), nullable=False),
        sa.Column("entity_type", sa.Text(), nullable=False),
        sa.Column("entity_id", sa.Text(), nullable=False),
        sa.Column("before", pg.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("after", pg.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("request_context", pg.JSONB(astext_type=sa.Text()), nullable=True),
        _ts("created_at"),
    )
    op.create_index("ix_audit_entity", "audit_logs", ["entity_type", "entity_id"])
    op.create_index("ix_audit_org_created", "audit_logs", ["organization_id", "created_at"])

    # durable publish of cache/email signals
    op.create_table(
        "events_outbox",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("channel", sa.Text(), nullable=False),
        sa.Column("payload", pg.JSONB(astext_type=sa.Text()), nullable=False),
        _ts("available_at"),
        _ts("sent_at", nullable=True, now=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("error", sa.Text(), nullable=True),
        _ts("created_at"),
    )
    op.create_index(
        "ix_outbox_ready",
        "events_outbox",
        ["available_at", "id"],
        unique=False,
        postgresql_where=sa.text("sent_at IS NULL"),
    )


def downgrade() -> None:
    op.drop_index("ix_outbox_ready", table_name="events_outbox")
    for table in (
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
    ):
        op.drop_table(table)
