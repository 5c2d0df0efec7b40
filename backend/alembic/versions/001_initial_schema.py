"""Initial schema: users, session types, availability, subscriptions,
credits, bookings, invoices, calendar integration and payment event ledger.

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    # Users (mirror of the identity provider)
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("full_name", sa.String(255), nullable=True),
        sa.Column("role", sa.String(20), nullable=False, server_default="customer"),
        *_timestamps(),
        sa.CheckConstraint("role IN ('customer', 'staff')", name="check_user_role"),
    )
    op.create_index("ix_users_id", "users", ["id"])
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    # Session types
    op.create_table(
        "session_types",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.String(1000), nullable=True),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column("capacity", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("price_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        *_timestamps(),
        sa.CheckConstraint("capacity >= 1", name="check_session_type_capacity_positive"),
        sa.CheckConstraint("price_cents >= 0", name="check_session_type_price_non_negative"),
        sa.CheckConstraint("duration_minutes IN (30, 45, 60, 90)", name="check_session_type_duration"),
    )
    op.create_index("ix_session_types_id", "session_types", ["id"])

    # Availability
    op.create_table(
        "availability_templates",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("day_of_week", sa.Integer(), nullable=False),
        sa.Column("start_time", sa.Time(), nullable=False),
        sa.Column("end_time", sa.Time(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        sa.CheckConstraint("day_of_week BETWEEN 0 AND 6", name="check_template_day_of_week"),
        sa.CheckConstraint("start_time < end_time", name="check_template_window_order"),
    )
    op.create_index("ix_availability_templates_id", "availability_templates", ["id"])
    op.create_index("ix_availability_templates_day", "availability_templates", ["day_of_week"])

    op.create_table(
        "availability_exceptions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("exception_date", sa.Date(), nullable=False),
        sa.Column("start_time", sa.Time(), nullable=True),
        sa.Column("end_time", sa.Time(), nullable=True),
        sa.Column("is_available", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("reason", sa.String(500), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_availability_exceptions_id", "availability_exceptions", ["id"])
    op.create_index("ix_availability_exceptions_date", "availability_exceptions", ["exception_date"])

    op.create_table(
        "scheduling_settings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("cancellation_notice_hours", sa.Integer(), nullable=False, server_default=sa.text("24")),
        sa.Column("booking_window_days", sa.Integer(), nullable=False, server_default=sa.text("30")),
        sa.Column("min_booking_notice_hours", sa.Integer(), nullable=False, server_default=sa.text("2")),
        sa.Column("timezone", sa.String(64), nullable=False, server_default="America/Los_Angeles"),
        *_timestamps(),
        sa.CheckConstraint("cancellation_notice_hours >= 0", name="check_cancellation_notice_non_negative"),
        sa.CheckConstraint("booking_window_days >= 1", name="check_booking_window_positive"),
        sa.CheckConstraint("min_booking_notice_hours >= 0", name="check_min_notice_non_negative"),
    )

    # Subscriptions
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("customer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("tier", sa.String(50), nullable=True),
        sa.Column("sessions_per_week", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("stripe_subscription_id", sa.String(255), nullable=True, unique=True),
        sa.Column("stripe_customer_id", sa.String(255), nullable=True),
        sa.Column("stripe_price_id", sa.String(255), nullable=True),
        sa.Column("last_event_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('active', 'past_due', 'cancelled', 'paused')",
            name="check_subscription_status",
        ),
        sa.CheckConstraint(
            "sessions_per_week IS NULL OR sessions_per_week >= 0",
            name="check_subscription_quota_non_negative",
        ),
    )
    op.create_index("ix_subscriptions_id", "subscriptions", ["id"])
    op.create_index("ix_subscriptions_customer_id", "subscriptions", ["customer_id"])
    # PARTIAL UNIQUE INDEX: at most one live subscription per customer.
    # Cancelled and paused rows are history and may accumulate freely.
    op.create_index(
        "uq_subscriptions_one_live_per_customer",
        "subscriptions",
        ["customer_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('active', 'past_due')"),
    )

    # Session credits
    op.create_table(
        "session_credits",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("customer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("total_sessions", sa.Integer(), nullable=False),
        sa.Column("used_sessions", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("purchased_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("product_type", sa.String(50), nullable=True),
        sa.Column("price_cents", sa.Integer(), nullable=True),
        sa.Column("stripe_checkout_session_id", sa.String(255), nullable=True, unique=True),
        sa.Column("stripe_payment_intent_id", sa.String(255), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("total_sessions > 0", name="check_credit_total_positive"),
        sa.CheckConstraint("used_sessions >= 0", name="check_credit_used_non_negative"),
        sa.CheckConstraint("used_sessions <= total_sessions", name="check_credit_used_lte_total"),
    )
    op.create_index("ix_session_credits_id", "session_credits", ["id"])
    op.create_index("ix_session_credits_customer_id", "session_credits", ["customer_id"])
    op.create_index("ix_session_credits_customer_purchased", "session_credits", ["customer_id", "purchased_at"])

    # Bookings
    op.create_table(
        "bookings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("customer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("athlete_id", sa.Integer(), nullable=True),
        sa.Column("session_type_id", sa.Integer(), sa.ForeignKey("session_types.id"), nullable=False),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("funding_source", sa.String(20), nullable=False),
        sa.Column("subscription_id", sa.Integer(), sa.ForeignKey("subscriptions.id"), nullable=True),
        sa.Column("credit_id", sa.Integer(), sa.ForeignKey("session_credits.id"), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_by", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("calendar_event_id", sa.String(255), nullable=True),
        sa.Column("calendar_sync_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("calendar_sync_error", sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("end_time > start_time", name="check_booking_interval"),
        sa.CheckConstraint(
            "status IN ('pending', 'confirmed', 'completed', 'no_show', 'cancelled')",
            name="check_booking_status",
        ),
        sa.CheckConstraint(
            "funding_source IN ('subscription', 'credit', 'staff')",
            name="check_booking_funding_source",
        ),
        sa.CheckConstraint(
            "calendar_sync_status IN ('pending', 'synced', 'failed', 'not_applicable')",
            name="check_booking_sync_status",
        ),
    )
    op.create_index("ix_bookings_id", "bookings", ["id"])
    op.create_index("ix_bookings_customer_id", "bookings", ["customer_id"])
    op.create_index("ix_bookings_session_type_id", "bookings", ["session_type_id"])
    # CAPACITY CHECK INDEX: overlapping occupying bookings for one session type.
    # Every booking attempt runs this range query inside its transaction.
    op.create_index("ix_bookings_type_start_end", "bookings", ["session_type_id", "start_time", "end_time"])
    # WEEKLY QUOTA INDEX: a customer's bookings inside one policy week.
    op.create_index("ix_bookings_customer_start", "bookings", ["customer_id", "start_time"])

    # Invoices
    op.create_table(
        "invoices",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("customer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="draft"),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("stripe_checkout_session_id", sa.String(255), nullable=True),
        sa.Column("stripe_payment_intent_id", sa.String(255), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("status IN ('draft', 'sent', 'paid', 'void')", name="check_invoice_status"),
        sa.CheckConstraint("amount_cents >= 0", name="check_invoice_amount_non_negative"),
    )
    op.create_index("ix_invoices_id", "invoices", ["id"])
    op.create_index("ix_invoices_customer_id", "invoices", ["customer_id"])

    # Calendar integration
    op.create_table(
        "calendar_integrations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("provider", sa.String(50), nullable=False, unique=True, server_default="google_calendar"),
        sa.Column("encrypted_access_token", sa.Text(), nullable=True),
        sa.Column("encrypted_refresh_token", sa.Text(), nullable=False),
        sa.Column("token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("account_email", sa.String(255), nullable=True),
        sa.Column("calendar_id", sa.String(500), nullable=False, server_default="primary"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_calendar_integrations_id", "calendar_integrations", ["id"])

    # Payment event ledger
    op.create_table(
        "payment_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("event_id", sa.String(255), nullable=False, unique=True),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("event_created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("outcome", sa.String(20), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_payment_events_id", "payment_events", ["id"])


def downgrade() -> None:
    op.drop_table("payment_events")
    op.drop_table("calendar_integrations")
    op.drop_table("invoices")
    op.drop_table("bookings")
    op.drop_table("session_credits")
    op.drop_table("subscriptions")
    op.drop_table("scheduling_settings")
    op.drop_table("availability_exceptions")
    op.drop_table("availability_templates")
    op.drop_table("session_types")
    op.drop_table("users")
