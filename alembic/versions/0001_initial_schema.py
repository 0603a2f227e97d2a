"""
Users, lessons, bookings, escrow ledger, disputes, reviews, reliability and ops tables

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-01 00:00:00
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.sql import func


revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), server_default=func.now(), nullable=False)


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("user_id", sa.String(length=36), primary_key=True),
        sa.Column("full_name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False, unique=True),
        sa.Column("role", sa.String(length=16), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
    )
    op.create_table(
        "coach_profiles",
        sa.Column("user_id", sa.String(length=36), sa.ForeignKey("users.user_id"), primary_key=True),
        sa.Column("headline", sa.String(length=255), nullable=True),
        sa.Column("rating_average", sa.Numeric(4, 2), nullable=False, server_default="0"),
        sa.Column("rating_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("payout_account_id", sa.String(length=255), nullable=True),
    )
    op.create_table(
        "lessons",
        sa.Column("lesson_id", sa.String(length=36), primary_key=True),
        sa.Column("coach_id", sa.String(length=36), sa.ForeignKey("users.user_id"), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column("price", sa.Numeric(10, 2), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_lessons_coach_id", "lessons", ["coach_id"])

    op.create_table(
        "bookings",
        sa.Column("booking_id", sa.String(length=36), primary_key=True),
        sa.Column("lesson_id", sa.String(length=36), sa.ForeignKey("lessons.lesson_id"), nullable=False),
        sa.Column("coach_id", sa.String(length=36), sa.ForeignKey("users.user_id"), nullable=False),
        sa.Column("primary_student_id", sa.String(length=36), sa.ForeignKey("users.user_id"), nullable=True),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column("price", sa.Numeric(10, 2), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("payout_status", sa.String(length=32), nullable=False),
        sa.Column("cancelled_by", sa.String(length=16), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("messaging_locked", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("reschedule_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reschedule_limit", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("extra_paid_reschedules", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reschedule_deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("court_location_id", sa.String(length=36), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=func.now(), nullable=False),
    )
    op.create_index("ix_bookings_lesson_id", "bookings", ["lesson_id"])
    op.create_index("ix_bookings_coach_id", "bookings", ["coach_id"])
    op.create_index("ix_bookings_primary_student_id", "bookings", ["primary_student_id"])
    op.create_index("ix_bookings_court_location_id", "bookings", ["court_location_id"])
    op.create_index("ix_bookings_status", "bookings", ["status"])
    op.create_index("ix_bookings_payout_status", "bookings", ["payout_status"])
    op.create_index("ix_bookings_scheduled_status", "bookings", ["scheduled_at", "status"])
    op.create_index(
        "ix_bookings_coach_status_scheduled", "bookings", ["coach_id", "status", "scheduled_at"]
    )
    op.create_index(
        "ix_bookings_student_status_scheduled",
        "bookings",
        ["primary_student_id", "status", "scheduled_at"],
    )

    op.create_table(
        "payments",
        sa.Column("payment_id", sa.String(length=36), primary_key=True),
        sa.Column("booking_id", sa.String(length=36), sa.ForeignKey("bookings.booking_id"), nullable=False),
        sa.Column("student_id", sa.String(length=36), sa.ForeignKey("users.user_id"), nullable=False),
        sa.Column("coach_id", sa.String(length=36), sa.ForeignKey("users.user_id"), nullable=False),
        sa.Column("lesson_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("platform_fee_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("total_charge_to_student", sa.Numeric(12, 2), nullable=False),
        sa.Column("coach_payout_expected", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=8), nullable=False, server_default="usd"),
        sa.Column("payment_method", sa.String(length=32), nullable=False),
        sa.Column("escrow_status", sa.String(length=16), nullable=False),
        sa.Column("payment_status", sa.String(length=16), nullable=False),
        sa.Column("processor_intent_id", sa.String(length=255), nullable=True, unique=True),
        sa.Column("processor_charge_id", sa.String(length=255), nullable=True),
        sa.Column("processor_transfer_id", sa.String(length=255), nullable=True),
        sa.Column("refunded_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=func.now(), nullable=False),
    )
    op.create_index("ix_payments_booking_id", "payments", ["booking_id"])
    op.create_index("ix_payments_escrow_status", "payments", ["escrow_status"])
    op.create_index("ix_payments_coach_escrow", "payments", ["coach_id", "escrow_status"])
    op.create_index("ix_payments_processor_charge_id", "payments", ["processor_charge_id"])

    op.create_table(
        "payouts",
        sa.Column("payout_id", sa.String(length=36), primary_key=True),
        sa.Column("coach_id", sa.String(length=36), sa.ForeignKey("users.user_id"), nullable=False),
        sa.Column(
            "payment_id", sa.String(length=36), sa.ForeignKey("payments.payment_id"), nullable=False, unique=True
        ),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=8), nullable=False, server_default="usd"),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("processor_transfer_id", sa.String(length=255), nullable=True),
        sa.Column("failure_reason", sa.String(length=255), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
    )
    op.create_index("ix_payouts_coach_id", "payouts", ["coach_id"])

    op.create_table(
        "processor_events",
        sa.Column("event_id", sa.String(length=255), primary_key=True),
        sa.Column("event_type", sa.String(length=128), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("payload_hash", sa.String(length=64), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=func.now(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "reschedule_history",
        sa.Column("reschedule_id", sa.String(length=36), primary_key=True),
        sa.Column("booking_id", sa.String(length=36), sa.ForeignKey("bookings.booking_id"), nullable=False),
        sa.Column("requested_by", sa.String(length=16), nullable=False),
        sa.Column("requested_by_id", sa.String(length=36), sa.ForeignKey("users.user_id"), nullable=True),
        sa.Column("old_scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("new_scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("approval_status", sa.String(length=16), nullable=False),
        sa.Column("approved_by", sa.String(length=36), sa.ForeignKey("users.user_id"), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("paid_reschedule", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("requested_at", sa.DateTime(timezone=True), server_default=func.now(), nullable=False),
    )
    op.create_index(
        "ix_reschedule_history_booking_requested", "reschedule_history", ["booking_id", "requested_at"]
    )
    op.create_index("ix_reschedule_history_requested_by_id", "reschedule_history", ["requested_by_id"])

    op.create_table(
        "cancellation_history",
        sa.Column("cancellation_id", sa.String(length=36), primary_key=True),
        sa.Column("booking_id", sa.String(length=36), sa.ForeignKey("bookings.booking_id"), nullable=False),
        sa.Column("cancelled_by", sa.String(length=16), nullable=False),
        sa.Column("cancelled_by_id", sa.String(length=36), sa.ForeignKey("users.user_id"), nullable=True),
        sa.Column("refund_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("penalty_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("penalty_reason", sa.String(length=255), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("refund_payment_id", sa.String(length=36), sa.ForeignKey("payments.payment_id"), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_cancellation_history_booking_cancelled", "cancellation_history", ["booking_id", "cancelled_at"]
    )

    op.create_table(
        "disputes",
        sa.Column("dispute_id", sa.String(length=36), primary_key=True),
        sa.Column("booking_id", sa.String(length=36), sa.ForeignKey("bookings.booking_id"), nullable=False),
        sa.Column("opened_by", sa.String(length=16), nullable=False),
        sa.Column("opened_by_id", sa.String(length=36), sa.ForeignKey("users.user_id"), nullable=True),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        sa.Column("admin_id", sa.String(length=36), sa.ForeignKey("users.user_id"), nullable=True),
        sa.Column("processor_dispute_id", sa.String(length=255), nullable=True),
        sa.Column("opened_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_disputes_booking_status", "disputes", ["booking_id", "status"])

    op.create_table(
        "reviews",
        sa.Column("review_id", sa.String(length=36), primary_key=True),
        sa.Column("booking_id", sa.String(length=36), sa.ForeignKey("bookings.booking_id"), nullable=False),
        sa.Column("reviewer_id", sa.String(length=36), sa.ForeignKey("users.user_id"), nullable=False),
        sa.Column("target_user_id", sa.String(length=36), sa.ForeignKey("users.user_id"), nullable=False),
        sa.Column("rating", sa.Integer(), nullable=False),
        sa.Column("comment", sa.Text(), nullable=True),
        sa.Column("is_public", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
        sa.UniqueConstraint("booking_id", "reviewer_id", name="uq_reviews_booking_reviewer"),
        sa.CheckConstraint("rating >= 1 AND rating <= 5", name="ck_reviews_rating_range"),
    )
    op.create_index("ix_reviews_target_user_id", "reviews", ["target_user_id"])

    op.create_table(
        "user_reliability",
        sa.Column("user_id", sa.String(length=36), sa.ForeignKey("users.user_id"), primary_key=True),
        sa.Column("total_bookings", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_reschedules", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("paid_reschedules", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("late_cancels", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("no_shows", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("coach_cancels", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reliability_score", sa.Numeric(5, 2), nullable=False, server_default="100"),
        sa.Column("last_calculated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=func.now(), nullable=False),
    )

    op.create_table(
        "notifications",
        sa.Column("notification_id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=36), sa.ForeignKey("users.user_id"), nullable=False),
        sa.Column("booking_id", sa.String(length=36), sa.ForeignKey("bookings.booking_id"), nullable=False),
        sa.Column("notification_type", sa.String(length=32), nullable=False),
        sa.Column("channel", sa.String(length=16), nullable=False, server_default="push"),
        sa.Column("payload", sa.JSON(), nullable=True),
        _created_at(),
        sa.UniqueConstraint(
            "booking_id", "user_id", "notification_type", name="uq_notifications_booking_user_type"
        ),
    )
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"])

    op.create_table(
        "job_heartbeats",
        sa.Column("runner_name", sa.String(length=64), primary_key=True),
        sa.Column("last_beat_at", sa.DateTime(timezone=True), server_default=func.now(), nullable=False),
        sa.Column("last_jobs", sa.String(length=255), nullable=True),
        sa.Column("tick_count", sa.Integer(), nullable=False, server_default="0"),
    )


def downgrade() -> None:
    op.drop_table("job_heartbeats")
    op.drop_index("ix_notifications_user_id", table_name="notifications")
    op.drop_table("notifications")
    op.drop_table("user_reliability")
    op.drop_index("ix_reviews_target_user_id", table_name="reviews")
    op.drop_table("reviews")
    op.drop_index("ix_disputes_booking_status", table_name="disputes")
    op.drop_table("disputes")
    op.drop_index("ix_cancellation_history_booking_cancelled", table_name="cancellation_history")
    op.drop_table("cancellation_history")
    op.drop_index("ix_reschedule_history_requested_by_id", table_name="reschedule_history")
    op.drop_index("ix_reschedule_history_booking_requested", table_name="reschedule_history")
    op.drop_table("reschedule_history")
    op.drop_table("processor_events")
    op.drop_index("ix_payouts_coach_id", table_name="payouts")
    op.drop_table("payouts")
    op.drop_index("ix_payments_processor_charge_id", table_name="payments")
    op.drop_index("ix_payments_coach_escrow", table_name="payments")
    op.drop_index("ix_payments_escrow_status", table_name="payments")
    op.drop_index("ix_payments_booking_id", table_name="payments")
    op.drop_table("payments")
    for index_name in (
        "ix_bookings_student_status_scheduled",
        "ix_bookings_coach_status_scheduled",
        "ix_bookings_scheduled_status",
        "ix_bookings_payout_status",
        "ix_bookings_status",
        "ix_bookings_court_location_id",
        "ix_bookings_primary_student_id",
        "ix_bookings_coach_id",
        "ix_bookings_lesson_id",
    ):
        op.drop_index(index_name, table_name="bookings")
    op.drop_table("bookings")
    op.drop_index("ix_lessons_coach_id", table_name="lessons")
    op.drop_table("lessons")
    op.drop_table("coach_profiles")
    op.drop_table("users")
