import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import INET, JSONB
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
JSON_TYPE = JSON().with_variant(JSONB, "postgresql")
INET_TYPE = String(45).with_variant(INET, "postgresql")


class CommissionRate(Base):
    """Operator CPA schedule. ``state_code`` NULL is the operator-wide default."""

    __tablename__ = "commission_rates"
    __table_args__ = (
        Index("idx_commission_rates_lookup", "operator_id", "state_code", "effective_from"),
    )

    id = Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    operator_id = Column(Integer, nullable=False)
    state_code = Column(String(2))
    cpa_amount = Column(Numeric(10, 2), nullable=False)
    effective_from = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    effective_until = Column(DateTime(timezone=True))
    is_active = Column(Boolean, nullable=False, default=True, server_default=text("true"))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class SignUp(Base):
    __tablename__ = "signups"
    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uniq_signups_idempotency_key"),
        CheckConstraint(
            "(event_id IS NOT NULL AND solo_chat_id IS NULL) OR (event_id IS NULL AND solo_chat_id IS NOT NULL)",
            name="chk_signups_single_source",
        ),
        CheckConstraint(
            "extraction_confidence IS NULL OR (extraction_confidence >= 0 AND extraction_confidence <= 100)",
            name="chk_signups_extraction_confidence",
        ),
        CheckConstraint(
            "extraction_status IN ('none', 'pending', 'processing', 'completed', 'failed')",
            name="chk_signups_extraction_status",
        ),
        CheckConstraint(
            "review_status IN ('pending', 'confirmed', 'skipped')",
            name="chk_signups_review_status",
        ),
        Index("idx_signups_duplicate_lookup", "customer_email", "operator_id", "submitted_at"),
        Index("idx_signups_review_queue", "review_status", "extraction_status", "submitted_at"),
        Index("idx_signups_ambassador", "ambassador_id"),
    )

    id = Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    idempotency_key = Column(String(64), nullable=False)
    source_type = Column(String(16), nullable=False)
    ambassador_id = Column(UUID_TYPE, nullable=False)
    event_id = Column(UUID_TYPE)
    solo_chat_id = Column(UUID_TYPE)
    operator_id = Column(Integer, nullable=False)

    customer_name = Column(String(200), nullable=False)
    customer_email = Column(String(255), nullable=False)
    customer_phone = Column(String(32))
    customer_state = Column(String(2))

    # Locked at submission, never rewritten.
    cpa_amount = Column(Numeric(10, 2), nullable=False)

    bet_slip_image_ref = Column(Text)
    bet_slip_content_type = Column(String(64))

    bet_amount = Column(Numeric(12, 2))
    team_bet_on = Column(String(255))
    odds = Column(String(50))
    extraction_confidence = Column(Numeric(5, 2))
    extraction_status = Column(String(16), nullable=False, default="none", server_default=text("'none'"))

    review_status = Column(String(16), nullable=False, default="pending", server_default=text("'pending'"))
    resolved_by = Column(UUID_TYPE)
    resolved_at = Column(DateTime(timezone=True))
    resolution_notes = Column(Text)

    ip_address = Column(INET_TYPE)
    user_agent = Column(Text)

    submitted_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class ExtractionJob(Base):
    __tablename__ = "extraction_jobs"
    __table_args__ = (
        UniqueConstraint("signup_id", name="uniq_extraction_jobs_signup_id"),
        CheckConstraint(
            "attempt_count >= 0 AND attempt_count <= max_attempts",
            name="chk_extraction_jobs_attempt_count",
        ),
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="chk_extraction_jobs_status",
        ),
        Index("idx_extraction_jobs_status_next", "status", "next_attempt_at"),
    )

    id = Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    signup_id = Column(UUID_TYPE, ForeignKey("signups.id", ondelete="CASCADE"), nullable=False)
    status = Column(String(16), nullable=False, default="pending", server_default=text("'pending'"))
    attempt_count = Column(Integer, nullable=False, default=0, server_default=text("0"))
    max_attempts = Column(Integer, nullable=False, default=3, server_default=text("3"))
    next_attempt_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    claim_token = Column(String(36))
    last_error = Column(Text)
    ai_response = Column(JSON_TYPE)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("idx_audit_logs_entity", "entity_type", "entity_id", "timestamp"),
    )

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
    actor_id = Column(UUID_TYPE)
    ip_address = Column(INET_TYPE)
    user_agent = Column(Text)
    audit_meta = Column("metadata", JSON_TYPE, nullable=True)
    timestamp = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
