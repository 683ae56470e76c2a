"""marketplace core schema

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19

service_requests + engineer_offers with the negotiation indexes, plus
audit_logs, notification_outbox and recurring_job_runs.
Request flow: OPEN -> OFFERS_COLLECTING -> ASSIGNED -> IN_PROGRESS -> COMPLETED -> RATED | CANCELLED.
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "20261019_000001"
down_revision = None
branch_labels = None
depends_on = None

_JSONB = postgresql.JSONB(astext_type=sa.Text())


def upgrade() -> None:
    op.create_table(
        "service_requests",
        sa.Column("id", postgresql.UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), nullable=False),
        sa.Column("customer_id", sa.String(64), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("service_type", sa.String(64), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("images", _JSONB, nullable=False, server_default=sa.text("'[]'")),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("address_ref", sa.String(128), nullable=False),
        sa.Column("city", sa.String(128), nullable=True),
        sa.Column("lat", sa.Float(), nullable=False),
        sa.Column("lng", sa.Float(), nullable=False),
        sa.Column("geohash", sa.String(12), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default=sa.text("'OPEN'")),
        sa.Column("engineer_id", sa.String(64), nullable=True),
        sa.Column("accepted_offer", _JSONB, nullable=True),
        sa.Column("rating", _JSONB, nullable=True),
        sa.Column("admin_notes", _JSONB, nullable=False, server_default=sa.text("'[]'")),
        sa.Column("cancel_reason", sa.String(32), nullable=True),
        sa.Column("status_changed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint(
            "status IN ('OPEN','OFFERS_COLLECTING','ASSIGNED','IN_PROGRESS','COMPLETED','RATED','CANCELLED')",
            name="chk_service_request_status",
        ),
        sa.CheckConstraint(
            "lat BETWEEN -90 AND 90 AND lng BETWEEN -180 AND 180",
            name="chk_service_request_coords",
        ),
        sa.CheckConstraint(
            "((engineer_id IS NULL AND status IN ('OPEN','OFFERS_COLLECTING','CANCELLED'))"
            " OR (engineer_id IS NOT NULL AND status IN ('ASSIGNED','IN_PROGRESS','COMPLETED','RATED')))",
            name="chk_service_request_engineer_axis",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_sr_customer_status_created", "service_requests", ["customer_id", "status", "created_at"])
    op.create_index("idx_sr_engineer_status_created", "service_requests", ["engineer_id", "status", "created_at"])
    op.create_index("idx_sr_status_created", "service_requests", ["status", "created_at"])
    op.create_index(
        "idx_sr_status_geohash",
        "service_requests",
        ["status", "geohash"],
        postgresql_ops={"geohash": "varchar_pattern_ops"},
    )

    op.create_table(
        "engineer_offers",
        sa.Column("id", postgresql.UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), nullable=False),
        sa.Column("request_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("engineer_id", sa.String(64), nullable=False),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("currency", sa.String(10), nullable=False, server_default=sa.text("'YER'")),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("distance_km", sa.Float(), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default=sa.text("'OFFERED'")),
        sa.Column("updates_count", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint(
            "status IN ('OFFERED','ACCEPTED','REJECTED','CANCELLED','OUTBID','EXPIRED')",
            name="chk_offer_status",
        ),
        sa.CheckConstraint("amount > 0", name="chk_offer_amount_positive"),
        sa.ForeignKeyConstraint(["request_id"], ["service_requests.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("request_id", "engineer_id", name="uniq_offer_request_engineer"),
    )
    op.create_index("idx_offer_request_status", "engineer_offers", ["request_id", "status"])
    op.create_index("idx_offer_engineer_created", "engineer_offers", ["engineer_id", "created_at"])
    op.create_index("idx_offer_status_updated", "engineer_offers", ["status", "updated_at"])
    # At most one ACCEPTED offer per request, enforced by the database as well.
    op.create_index(
        "uniq_offer_accepted_per_request",
        "engineer_offers",
        ["request_id"],
        unique=True,
        postgresql_where=sa.text("status = 'ACCEPTED'"),
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), nullable=False),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("entity_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("old_value", _JSONB, nullable=True),
        sa.Column("new_value", _JSONB, nullable=True),
        sa.Column("actor_type", sa.String(50), nullable=False),
        sa.Column("actor_id", sa.String(64), nullable=True),
        sa.Column("metadata", _JSONB, nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id", "timestamp"])

    op.create_table(
        "notification_outbox",
        sa.Column("id", postgresql.UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), nullable=False),
        sa.Column("recipient_id", sa.String(64), nullable=False),
        sa.Column("event_key", sa.String(64), nullable=False),
        sa.Column("payload_json", _JSONB, nullable=False),
        sa.Column("dedupe_key", sa.String(160), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default=sa.text("'PENDING'")),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("dedupe_key", name="uniq_notification_outbox_dedupe_key"),
    )
    op.create_index("idx_notification_outbox_status_next", "notification_outbox", ["status", "next_attempt_at"])

    op.create_table(
        "recurring_job_runs",
        sa.Column("job_key", sa.String(64), nullable=False),
        sa.Column("period_key", sa.String(16), nullable=False),
        sa.Column("last_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_result", _JSONB, nullable=True),
        sa.PrimaryKeyConstraint("job_key"),
    )


def downgrade() -> None:
    op.drop_table("recurring_job_runs")
    op.drop_index("idx_notification_outbox_status_next", table_name="notification_outbox")
    op.drop_table("notification_outbox")
    op.drop_index("idx_audit_entity", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("uniq_offer_accepted_per_request", table_name="engineer_offers")
    op.drop_index("idx_offer_status_updated", table_name="engineer_offers")
    op.drop_index("idx_offer_engineer_created", table_name="engineer_offers")
    op.drop_index("idx_offer_request_status", table_name="engineer_offers")
    op.drop_table("engineer_offers")
    op.drop_index("idx_sr_status_geohash", table_name="service_requests")
    op.drop_index("idx_sr_status_created", table_name="service_requests")
    op.drop_index("idx_sr_engineer_status_created", table_name="service_requests")
    op.drop_index("idx_sr_customer_status_created", table_name="service_requests")
    op.drop_table("service_requests")
