import uuid

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func
from sqlalchemy.types import CHAR, TypeDecorator

Base = declarative_base()


class GUID(TypeDecorator):
    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PGUUID(as_uuid=True))
        return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, uuid.UUID):
            return value if dialect.name == "postgresql" else str(value)
        if isinstance(value, str):
            try:
                parsed = uuid.UUID(value)
            except ValueError:
                return value
            return parsed if dialect.name == "postgresql" else str(parsed)
        return value

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, uuid.UUID):
            return value
        try:
            return uuid.UUID(value)
        except ValueError:
            return value


UUID_TYPE = GUID()
JSON_TYPE = JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql")

REQUEST_STATUSES_SQL = "'OPEN','OFFERS_COLLECTING','ASSIGNED','IN_PROGRESS','COMPLETED','RATED','CANCELLED'"
OFFER_STATUSES_SQL = "'OFFERED','ACCEPTED','REJECTED','CANCELLED','OUTBID','EXPIRED'"


class ServiceRequest(Base):
    __tablename__ = "service_requests"
    __table_args__ = (
        CheckConstraint(f"status IN ({REQUEST_STATUSES_SQL})", name="chk_service_request_status"),
        CheckConstraint("lat BETWEEN -90 AND 90 AND lng BETWEEN -180 AND 180", name="chk_service_request_coords"),
        CheckConstraint(
            "((engineer_id IS NULL AND status IN ('OPEN','OFFERS_COLLECTING','CANCELLED'))"
            " OR (engineer_id IS NOT NULL AND status IN ('ASSIGNED','IN_PROGRESS','COMPLETED','RATED')))",
            name="chk_service_request_engineer_axis",
        ),
        Index("idx_sr_customer_status_created", "customer_id", "status", "created_at"),
        Index("idx_sr_engineer_status_created", "engineer_id", "status", "created_at"),
        Index("idx_sr_status_created", "status", "created_at"),
        Index("idx_sr_status_geohash", "status", "geohash"),
    )

    id = Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    customer_id = Column(String(64), nullable=False)
    title = Column(String(200), nullable=False)
    service_type = Column(String(64))
    description = Column(Text)
    images = Column(JSON_TYPE, nullable=False, default=list, server_default=text("'[]'"))
    scheduled_at = Column(DateTime(timezone=True))

    address_ref = Column(String(128), nullable=False)
    city = Column(String(128))
    lat = Column(Float, nullable=False)
    lng = Column(Float, nullable=False)
    geohash = Column(String(12), nullable=False)

    status = Column(String(32), nullable=False, default="OPEN", server_default=text("'OPEN'"))
    engineer_id = Column(String(64))
    accepted_offer = Column(JSON_TYPE)
    rating = Column(JSON_TYPE)
    admin_notes = Column(JSON_TYPE, nullable=False, default=list, server_default=text("'[]'"))
    cancel_reason = Column(String(32))
    status_changed_at = Column(DateTime(timezone=True))
    row_version = Column(Integer, nullable=False, default=1, server_default=text("1"))

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class EngineerOffer(Base):
    __tablename__ = "engineer_offers"
    __table_args__ = (
        UniqueConstraint("request_id", "engineer_id", name="uniq_offer_request_engineer"),
        CheckConstraint(f"status IN ({OFFER_STATUSES_SQL})", name="chk_offer_status"),
        CheckConstraint("amount > 0", name="chk_offer_amount_positive"),
        Index("idx_offer_request_status", "request_id", "status"),
        Index("idx_offer_engineer_created", "engineer_id", "created_at"),
        Index("idx_offer_status_updated", "status", "updated_at"),
        Index(
            "uniq_offer_accepted_per_request",
            "request_id",
            unique=True,
            postgresql_where=text("status = 'ACCEPTED'"),
            sqlite_where=text("status = 'ACCEPTED'"),
        ),
    )

    id = Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    request_id = Column(UUID_TYPE, ForeignKey("service_requests.id", ondelete="CASCADE"), nullable=False)
    engineer_id = Column(String(64), nullable=False)
    amount = Column(Numeric(14, 2), nullable=False)
    currency = Column(String(10), nullable=False, default="YER", server_default=text("'YER'"))
    note = Column(Text)
    distance_km = Column(Float)
    status = Column(String(16), nullable=False, default="OFFERED", server_default=text("'OFFERED'"))
    updates_count = Column(Integer, nullable=False, default=1, server_default=text("1"))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"
    __table_args__ = (Index("idx_audit_entity", "entity_type", "entity_id", "timestamp"),)

    id = Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(UUID_TYPE, nullable=False)
    action = Column(String(64), nullable=False)
    old_value = Column(JSON_TYPE)
    new_value = Column(JSON_TYPE)
    actor_type = Column(String(50), nullable=False)
    actor_id = Column(String(64))
    audit_meta = Column("metadata", JSON_TYPE, nullable=True)
    timestamp = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class NotificationOutbox(Base):
    __tablename__ = "notification_outbox"
    __table_args__ = (
        UniqueConstraint("dedupe_key", name="uniq_notification_outbox_dedupe_key"),
        Index("idx_notification_outbox_status_next", "status", "next_attempt_at"),
    )

    id = Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    recipient_id = Column(String(64), nullable=False)
    event_key = Column(String(64), nullable=False)
    payload_json = Column(JSON_TYPE, nullable=False)
    dedupe_key = Column(String(160), nullable=False)

    status = Column(String(16), nullable=False, default="PENDING", server_default=text("'PENDING'"))
    attempt_count = Column(Integer, nullable=False, default=0, server_default=text("0"))
    next_attempt_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    sent_at = Column(DateTime(timezone=True))
    last_error = Column(Text)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class RecurringJobRun(Base):
    __tablename__ = "recurring_job_runs"

    job_key = Column(String(64), primary_key=True)
    period_key = Column(String(16), nullable=False)
    last_started_at = Column(DateTime(timezone=True))
    last_finished_at = Column(DateTime(timezone=True))
    last_result = Column(JSON_TYPE)
