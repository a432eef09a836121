"""Create marketplace core tables.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import ENUM, JSONB

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_ENUMS = (
    "partystatus", "trustscorestatus", "jobstatus", "offeredby", "bidstatus",
    "bideventtype", "commissiontype", "paymenttype", "paymentstatus",
    "warrantystatus", "resolutionoutcome", "usertype", "trustchangetype",
    "penaltyreason", "reviewrole", "deliverystatus",
)


def _party_columns(id_column: str) -> list[sa.Column]:
    return [
        sa.Column(id_column, sa.Uuid(), primary_key=True),
        sa.Column("display_name", sa.String(128), nullable=False),
        sa.Column("city", sa.String(128), nullable=True),
        sa.Column("region", sa.String(128), nullable=True),
        sa.Column(
            "status",
            ENUM("active", "suspended", name="partystatus", create_type=False),
            nullable=False,
            server_default="active",
        ),
        sa.Column("trust_score", sa.Numeric(5, 2), nullable=False, server_default="50.00"),
        sa.Column(
            "trust_score_status",
            ENUM("good", "normal", "risk", "critical", name="trustscorestatus", create_type=False),
            nullable=False,
            server_default="risk",
        ),
        sa.Column("last_trust_score_update", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    sa.Enum("active", "suspended", name="partystatus").create(bind, checkfirst=True)
    sa.Enum("good", "normal", "risk", "critical", name="trustscorestatus").create(bind, checkfirst=True)

    op.create_table("dealers", *_party_columns("dealer_id"))
    op.create_table("technicians", *_party_columns("technician_id"))

    op.create_table(
        "job_posts",
        sa.Column("job_id", sa.Uuid(), primary_key=True),
        sa.Column("job_number", sa.String(32), nullable=False, unique=True),
        sa.Column("dealer_id", sa.Uuid(), sa.ForeignKey("dealers.dealer_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("assigned_technician_id", sa.Uuid(), sa.ForeignKey("technicians.technician_id", ondelete="RESTRICT"), nullable=True),
        sa.Column("title", sa.String(256), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("service_category", sa.String(128), nullable=False),
        sa.Column("service_sub_category", sa.String(128), nullable=True),
        sa.Column("city", sa.String(128), nullable=True),
        sa.Column("region", sa.String(128), nullable=True),
        sa.Column(
            "status",
            sa.Enum(
                "pending", "soft_locked", "waiting_for_payment", "assigned",
                "in_progress", "completion_pending_approval", "completed", "cancelled",
                name="jobstatus",
            ),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("estimated_cost", sa.BigInteger(), nullable=False),
        sa.Column("final_price", sa.BigInteger(), nullable=True),
        sa.Column("price_locked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("accepted_bid_id", sa.Uuid(), nullable=True),
        sa.Column("soft_locked_by_technician_id", sa.Uuid(), nullable=True),
        sa.Column("soft_locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("soft_lock_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_deadline_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("negotiation_rounds", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("recirculation_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("timeout_reasons", JSONB, nullable=True, server_default="[]"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completion_requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("cancelled_by_role", sa.String(32), nullable=True),
    )
    op.create_index("ix_job_posts_dealer_id", "job_posts", ["dealer_id"])
    op.create_index("ix_job_posts_status", "job_posts", ["status"])
    # Sweep scans
    op.create_index("ix_job_posts_soft_lock_expires_at", "job_posts", ["soft_lock_expires_at"])
    op.create_index("ix_job_posts_payment_deadline_expires_at", "job_posts", ["payment_deadline_expires_at"])

    op.create_table(
        "job_bids",
        sa.Column("bid_id", sa.Uuid(), primary_key=True),
        sa.Column("job_id", sa.Uuid(), sa.ForeignKey("job_posts.job_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("technician_id", sa.Uuid(), sa.ForeignKey("technicians.technician_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("offered_price", sa.BigInteger(), nullable=False),
        sa.Column(
            "offered_by_role",
            sa.Enum("dealer", "technician", name="offeredby"),
            nullable=False,
            server_default="technician",
        ),
        sa.Column(
            "status",
            sa.Enum(
                "pending", "countered", "accepted", "rejected", "withdrawn", "expired", "cancelled",
                name="bidstatus",
            ),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("is_counter_offer", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("previous_bid_id", sa.Uuid(), sa.ForeignKey("job_bids.bid_id", ondelete="RESTRICT"), nullable=True),
        sa.Column("round_number", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_job_bids_job_id", "job_bids", ["job_id"])
    op.create_index("ix_job_bids_technician_id", "job_bids", ["technician_id"])
    op.create_index(
        "uq_job_bids_pending_per_technician",
        "job_bids",
        ["job_id", "technician_id"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )

    op.create_table(
        "bid_events",
        sa.Column("event_id", sa.Uuid(), primary_key=True),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.Uuid(), sa.ForeignKey("job_posts.job_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("bid_id", sa.Uuid(), sa.ForeignKey("job_bids.bid_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("technician_id", sa.Uuid(), nullable=False),
        sa.Column(
            "event_type",
            sa.Enum(
                "submitted", "countered", "accepted", "rejected", "reopened",
                "withdrawn", "expired", "cancelled",
                name="bideventtype",
            ),
            nullable=False,
        ),
        sa.Column("actor_role", sa.String(32), nullable=False),
        sa.Column("actor_id", sa.Uuid(), nullable=True),
        sa.Column("price", sa.BigInteger(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("job_id", "sequence", name="uq_bid_events_job_sequence"),
    )
    op.create_index("ix_bid_events_job_id", "bid_events", ["job_id"])

    op.create_table(
        "commission_rules",
        sa.Column("rule_id", sa.Uuid(), primary_key=True),
        sa.Column("dealer_id", sa.Uuid(), sa.ForeignKey("dealers.dealer_id", ondelete="RESTRICT"), nullable=True),
        sa.Column("service_category", sa.String(128), nullable=True),
        sa.Column("service_sub_category", sa.String(128), nullable=True),
        sa.Column("city", sa.String(128), nullable=True),
        sa.Column("region", sa.String(128), nullable=True),
        sa.Column(
            "commission_type",
            sa.Enum("percentage", "fixed", name="commissiontype"),
            nullable=False,
            server_default="percentage",
        ),
        sa.Column("commission_value", sa.Numeric(12, 2), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("effective_from", sa.DateTime(timezone=True), nullable=True),
        sa.Column("effective_to", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "job_payments",
        sa.Column("payment_id", sa.Uuid(), primary_key=True),
        sa.Column("job_id", sa.Uuid(), sa.ForeignKey("job_posts.job_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("dealer_id", sa.Uuid(), sa.ForeignKey("dealers.dealer_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("technician_id", sa.Uuid(), sa.ForeignKey("technicians.technician_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("payment_intent_id", sa.String(128), nullable=False, unique=True),
        sa.Column(
            "payment_type",
            sa.Enum("service_payment", "warranty_hold", name="paymenttype"),
            nullable=False,
            server_default="service_payment",
        ),
        sa.Column("is_warranty_hold", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "status",
            sa.Enum(
                "pending", "escrow_hold", "released", "failed", "refunded", "forfeited",
                name="paymentstatus",
            ),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("commission_type", sa.String(16), nullable=True),
        sa.Column("commission_value", sa.Numeric(12, 2), nullable=True),
        sa.Column("commission_amount", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("net_amount", sa.BigInteger(), nullable=False),
        sa.Column("released_amount", sa.BigInteger(), nullable=True),
        sa.Column("rule_source", sa.String(64), nullable=True),
        sa.Column("currency", sa.String(8), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("captured_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.CheckConstraint("amount >= 0", name="ck_job_payments_amount"),
    )
    op.create_index("ix_job_payments_job_id", "job_payments", ["job_id"])

    op.create_table(
        "warranty_holds",
        sa.Column("hold_id", sa.Uuid(), primary_key=True),
        sa.Column("job_id", sa.Uuid(), sa.ForeignKey("job_posts.job_id", ondelete="RESTRICT"), nullable=False, unique=True),
        sa.Column("technician_id", sa.Uuid(), sa.ForeignKey("technicians.technician_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("dealer_id", sa.Uuid(), sa.ForeignKey("dealers.dealer_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("payment_id", sa.Uuid(), sa.ForeignKey("job_payments.payment_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("hold_amount", sa.BigInteger(), nullable=False),
        sa.Column("hold_fraction", sa.Numeric(5, 4), nullable=False),
        sa.Column("warranty_days", sa.Integer(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("locked", "frozen", "released", "forfeited", name="warrantystatus"),
            nullable=False,
            server_default="locked",
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("frozen_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paused_seconds", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("issue_description", sa.Text(), nullable=True),
        sa.Column("issue_reported_by", sa.Uuid(), nullable=True),
        sa.Column("issue_reported_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("issue_metadata", JSONB, nullable=True),
        sa.Column("rework_technician_id", sa.Uuid(), nullable=True),
        sa.Column(
            "resolution_outcome",
            sa.Enum(
                "unfounded", "technician_not_at_fault", "technician_at_fault",
                name="resolutionoutcome",
            ),
            nullable=True,
        ),
        sa.Column("resolution_note", sa.Text(), nullable=True),
        sa.Column("resolved_by", sa.Uuid(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("release_reason", sa.String(64), nullable=True),
    )
    op.create_index("ix_warranty_holds_technician_id", "warranty_holds", ["technician_id"])
    op.create_index("ix_warranty_holds_status_expires_at", "warranty_holds", ["status", "expires_at"])

    op.create_table(
        "trust_score_history",
        sa.Column("history_id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("user_type", sa.Enum("dealer", "technician", name="usertype"), nullable=False),
        sa.Column("previous_score", sa.Numeric(5, 2), nullable=False),
        sa.Column("new_score", sa.Numeric(5, 2), nullable=False),
        sa.Column(
            "change_type",
            sa.Enum(
                "system_recalculation", "manual_increase", "manual_decrease",
                "job_completion", "rating_impact", "complaint_impact", "penalty_impact",
                name="trustchangetype",
            ),
            nullable=False,
        ),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("changed_by", sa.Uuid(), nullable=True),
        sa.Column("changed_by_role", sa.String(32), nullable=False, server_default="system"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("new_score >= 0 AND new_score <= 100", name="ck_trust_history_new_score"),
    )
    op.create_index("ix_trust_score_history_user_id", "trust_score_history", ["user_id"])

    op.create_table(
        "penalties",
        sa.Column("penalty_id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column(
            "user_type",
            ENUM("dealer", "technician", name="usertype", create_type=False),
            nullable=False,
        ),
        sa.Column("job_id", sa.Uuid(), nullable=True),
        sa.Column(
            "reason",
            sa.Enum("late_cancellation", "warranty_forfeit", name="penaltyreason"),
            nullable=False,
        ),
        sa.Column("amount", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_penalties_user_id", "penalties", ["user_id"])

    op.create_table(
        "job_reviews",
        sa.Column("review_id", sa.Uuid(), primary_key=True),
        sa.Column("job_id", sa.Uuid(), sa.ForeignKey("job_posts.job_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("reviewer_id", sa.Uuid(), nullable=False),
        sa.Column("reviewee_id", sa.Uuid(), nullable=False),
        sa.Column(
            "role",
            sa.Enum("dealer_reviewing_technician", "technician_reviewing_dealer", name="reviewrole"),
            nullable=False,
        ),
        sa.Column("rating", sa.Integer(), nullable=False),
        sa.Column("is_complaint", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("comment", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("rating >= 1 AND rating <= 5", name="ck_job_reviews_rating"),
        sa.UniqueConstraint("job_id", "reviewer_id", name="uq_job_reviews_job_reviewer"),
    )
    op.create_index("ix_job_reviews_reviewee_id", "job_reviews", ["reviewee_id"])

    op.create_table(
        "audit_log",
        sa.Column("audit_id", sa.Uuid(), primary_key=True),
        sa.Column("entity_type", sa.String(32), nullable=False),
        sa.Column("entity_id", sa.Uuid(), nullable=False),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("actor_id", sa.Uuid(), nullable=True),
        sa.Column("actor_role", sa.String(32), nullable=False, server_default="system"),
        sa.Column("amount", sa.BigInteger(), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("metadata", JSONB, nullable=True),
    )
    op.create_index("ix_audit_log_entity_id", "audit_log", ["entity_id"])

    op.create_table(
        "notification_deliveries",
        sa.Column("delivery_id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("template_id", sa.String(64), nullable=False),
        sa.Column("payload", JSONB, nullable=False),
        sa.Column("backend", sa.String(16), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "delivered", "failed", name="deliverystatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_notification_deliveries_user_id", "notification_deliveries", ["user_id"])


def downgrade() -> None:
    for table in (
        "notification_deliveries", "audit_log", "job_reviews", "penalties",
        "trust_score_history", "warranty_holds", "job_payments", "commission_rules",
        "bid_events", "job_bids", "job_posts", "technicians", "dealers",
    ):
        op.drop_table(table)
    for name in _ENUMS:
        op.execute(f"DROP TYPE IF EXISTS {name}")
