"""sign-up submission and extraction core schema

Revision ID: 20261018_000001
Revises:
Create Date: 2026-10-18 09:00:00
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "20261018_000001"
down_revision = None
branch_labels = None
depends_on = None


def _uuid_pk():
    return sa.Column(
        "id",
        postgresql.UUID(as_uuid=True),
        primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )


def _timestamp(name: str, nullable: bool = False):
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=nullable,
        server_default=sa.text("now()"),
    )


def upgrade() -> None:
    json_type = sa.JSON().with_variant(postgresql.JSONB, "postgresql")

    op.create_table(
        "commission_rates",
        _uuid_pk(),
        sa.Column("operator_id", sa.Integer(), nullable=False),
        sa.Column("state_code", sa.String(length=2), nullable=True),
        sa.Column("cpa_amount", sa.Numeric(10, 2), nullable=False),
        _timestamp("effective_from"),
        sa.Column("effective_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")
        ),
        _timestamp("created_at"),
    )
    op.create_index(
        "idx_commission_rates_lookup",
        "commission_rates",
        ["operator_id", "state_code", "effective_from"],
        unique=False,
    )

    op.create_table(
        "signups",
        _uuid_pk(),
        sa.Column("idempotency_key", sa.String(length=64), nullable=False),
        sa.Column("source_type", sa.String(length=16), nullable=False),
        sa.Column("ambassador_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("event_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("solo_chat_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("operator_id", sa.Integer(), nullable=False),
        sa.Column("customer_name", sa.String(length=200), nullable=False),
        sa.Column("customer_email", sa.String(length=255), nullable=False),
        sa.Column("customer_phone", sa.String(length=32), nullable=True),
        sa.Column("customer_state", sa.String(length=2), nullable=True),
        sa.Column("cpa_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("bet_slip_image_ref", sa.Text(), nullable=True),
        sa.Column("bet_slip_content_type", sa.String(length=64), nullable=True),
        sa.Column("bet_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("team_bet_on", sa.String(length=255), nullable=True),
        sa.Column("odds", sa.String(length=50), nullable=True),
        sa.Column("extraction_confidence", sa.Numeric(5, 2), nullable=True),
        sa.Column(
            "extraction_status",
            sa.String(length=16),
            nullable=False,
            server_default=sa.text("'none'"),
        ),
        sa.Column(
            "review_status",
            sa.String(length=16),
            nullable=False,
            server_default=sa.text("'pending'"),
        ),
        sa.Column("resolved_by", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        sa.Column("ip_address", postgresql.INET(), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        _timestamp("submitted_at"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint("idempotency_key", name="uniq_signups_idempotency_key"),
        sa.CheckConstraint(
            "(event_id IS NOT NULL AND solo_chat_id IS NULL) OR (event_id IS NULL AND solo_chat_id IS NOT NULL)",
            name="chk_signups_single_source",
        ),
        sa.CheckConstraint(
            "extraction_confidence IS NULL OR (extraction_confidence >= 0 AND extraction_confidence <= 100)",
            name="chk_signups_extraction_confidence",
        ),
        sa.CheckConstraint(
            "extraction_status IN ('none', 'pending', 'processing', 'completed', 'failed')",
            name="chk_signups_extraction_status",
        ),
        sa.CheckConstraint(
            "review_status IN ('pending', 'confirmed', 'skipped')",
            name="chk_signups_review_status",
        ),
    )
    op.create_index(
        "idx_signups_duplicate_lookup",
        "signups",
        ["customer_email", "operator_id", "submitted_at"],
        unique=False,
    )
    op.create_index(
        "idx_signups_review_queue",
        "signups",
        ["review_status", "extraction_status", "submitted_at"],
        unique=False,
    )
    op.create_index("idx_signups_ambassador", "signups", ["ambassador_id"], unique=False)

    op.create_table(
        "extraction_jobs",
        _uuid_pk(),
        sa.Column("signup_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "status",
            sa.String(length=16),
            nullable=False,
            server_default=sa.text("'pending'"),
        ),
        sa.Column(
            "attempt_count", sa.Integer(), nullable=False, server_default=sa.text("0")
        ),
        sa.Column(
            "max_attempts", sa.Integer(), nullable=False, server_default=sa.text("3")
        ),
        _timestamp("next_attempt_at"),
        sa.Column("claim_token", sa.String(length=36), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("ai_response", json_type, nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.ForeignKeyConstraint(["signup_id"], ["signups.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("signup_id", name="uniq_extraction_jobs_signup_id"),
        sa.CheckConstraint(
            "attempt_count >= 0 AND attempt_count <= max_attempts",
            name="chk_extraction_jobs_attempt_count",
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="chk_extraction_jobs_status",
        ),
    )
    op.create_index(
        "idx_extraction_jobs_status_next",
        "extraction_jobs",
        ["status", "next_attempt_at"],
        unique=False,
    )

    op.create_table(
        "audit_logs",
        _uuid_pk(),
        sa.Column("entity_type", sa.String(length=50), nullable=False),
        sa.Column("entity_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("old_value", json_type, nullable=True),
        sa.Column("new_value", json_type, nullable=True),
        sa.Column("actor_type", sa.String(length=50), nullable=False),
        sa.Column("actor_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("ip_address", postgresql.INET(), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("metadata", json_type, nullable=True),
        _timestamp("timestamp"),
    )
    op.create_index(
        "idx_audit_logs_entity",
        "audit_logs",
        ["entity_type", "entity_id", "timestamp"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_audit_logs_entity", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("idx_extraction_jobs_status_next", table_name="extraction_jobs")
    op.drop_table("extraction_jobs")
    op.drop_index("idx_signups_ambassador", table_name="signups")
    op.drop_index("idx_signups_review_queue", table_name="signups")
    op.drop_index("idx_signups_duplicate_lookup", table_name="signups")
    op.drop_table("signups")
    op.drop_index("idx_commission_rates_lookup", table_name="commission_rates")
    op.drop_table("commission_rates")
