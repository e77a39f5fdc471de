"""settlement initial schema

Revision ID: 3c1d9e7a5b20
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "3c1d9e7a5b20"
down_revision = None
branch_labels = None
depends_on = None


def _index(table: str, *cols: str, unique: bool = False) -> None:
    op.create_index(op.f(f"ix_{table}_{'_'.join(cols)}"), table, list(cols), unique=unique)


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False, server_default=""),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("phone", sa.String(length=32), nullable=True),
        sa.Column("role", sa.String(length=32), nullable=False, server_default="buyer"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("payout_recipient_code", sa.String(length=120), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    _index("users", "email", unique=True)
    _index("users", "phone", unique=True)
    _index("users", "created_at")

    op.create_table(
        "listings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("seller_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False, server_default=""),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("price_minor", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("is_sold", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    _index("listings", "seller_id")
    _index("listings", "is_active")
    _index("listings", "created_at")

    op.create_table(
        "fraud_alerts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("listing_id", sa.Integer(), sa.ForeignKey("listings.id"), nullable=True),
        sa.Column("alert_type", sa.String(length=48), nullable=False),
        sa.Column("severity", sa.String(length=16), nullable=False, server_default="warning"),
        sa.Column("score_weight", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("title", sa.String(length=200), nullable=False, server_default=""),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("evidence_json", sa.Text(), nullable=True),
        sa.Column("related_user_ids_json", sa.Text(), nullable=True),
        sa.Column("auto_action_taken", sa.String(length=32), nullable=True),
        sa.Column("dedupe_key", sa.String(length=180), nullable=True, unique=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("reviewed_by", sa.Integer(), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(), nullable=True),
        sa.Column("review_note", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    for col in ("user_id", "listing_id", "alert_type", "severity", "status", "created_at"):
        _index("fraud_alerts", col)

    op.create_table(
        "bids",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("listing_id", sa.Integer(), sa.ForeignKey("listings.id"), nullable=False),
        sa.Column("bidder_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("amount_minor", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    for col in ("listing_id", "bidder_id", "created_at"):
        _index("bids", col)

    op.create_table(
        "price_history",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("listing_id", sa.Integer(), sa.ForeignKey("listings.id"), nullable=False),
        sa.Column("price_minor", sa.Integer(), nullable=False),
        sa.Column("recorded_at", sa.DateTime(), nullable=False),
    )
    _index("price_history", "listing_id")
    _index("price_history", "recorded_at")

    op.create_table(
        "listing_moderations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("fraud_alert_id", sa.Integer(), sa.ForeignKey("fraud_alerts.id"), nullable=False),
        sa.Column("listing_id", sa.Integer(), sa.ForeignKey("listings.id"), nullable=False),
        sa.Column("action", sa.String(length=32), nullable=False),
        sa.Column("applied_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("fraud_alert_id", "listing_id", name="uq_listing_moderation_alert_listing"),
    )
    _index("listing_moderations", "fraud_alert_id")
    _index("listing_moderations", "listing_id")

    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("buyer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("seller_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("listing_id", sa.Integer(), sa.ForeignKey("listings.id"), nullable=True),
        sa.Column("amount_minor", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=8), nullable=False, server_default="GBP"),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("payout_status", sa.String(length=32), nullable=False, server_default="none"),
        sa.Column("buyer_fee_minor", sa.Integer(), nullable=True),
        sa.Column("seller_commission_minor", sa.Integer(), nullable=True),
        sa.Column("payout_amount_minor", sa.Integer(), nullable=True),
        sa.Column("fee_schedule_version", sa.String(length=64), nullable=True),
        sa.Column("fee_snapshot_json", sa.Text(), nullable=True),
        sa.Column("payment_reference", sa.String(length=128), nullable=True),
        sa.Column("refund_status", sa.String(length=32), nullable=True),
        sa.Column("refund_amount_minor", sa.Integer(), nullable=True),
        sa.Column("tracking_number", sa.String(length=120), nullable=True),
        sa.Column("carrier", sa.String(length=64), nullable=True),
        sa.Column("requires_manual_review", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("manual_review_reason", sa.String(length=120), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("paid_at", sa.DateTime(), nullable=True),
        sa.Column("shipped_at", sa.DateTime(), nullable=True),
        sa.Column("delivered_at", sa.DateTime(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.Column("refunded_at", sa.DateTime(), nullable=True),
        sa.Column("payout_completed_at", sa.DateTime(), nullable=True),
    )
    for col in (
        "buyer_id",
        "seller_id",
        "listing_id",
        "status",
        "payout_status",
        "payment_reference",
        "requires_manual_review",
        "created_at",
    ):
        _index("orders", col)

    op.create_table(
        "order_transitions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("axis", sa.String(length=16), nullable=False, server_default="status"),
        sa.Column("from_status", sa.String(length=32), nullable=False, server_default=""),
        sa.Column("to_status", sa.String(length=32), nullable=False),
        sa.Column("actor_type", sa.String(length=32), nullable=False, server_default="system"),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        sa.Column("reason", sa.String(length=240), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    _index("order_transitions", "order_id")
    _index("order_transitions", "created_at")

    op.create_table(
        "payouts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("seller_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("net_amount_minor", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=8), nullable=False, server_default="GBP"),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("batch_id", sa.String(length=128), nullable=True),
        sa.Column("retry_generation", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("submit_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("poll_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("cancelled_reason", sa.String(length=120), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("submitted_at", sa.DateTime(), nullable=True),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    _index("payouts", "order_id", unique=True)
    for col in ("seller_id", "status", "batch_id", "created_at"):
        _index("payouts", col)

    op.create_table(
        "refunds",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("buyer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("seller_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("amount_minor", sa.Integer(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=24), nullable=False, server_default="pending"),
        sa.Column("requested_by", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("approved_by", sa.Integer(), nullable=True),
        sa.Column("requires_admin_approval", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("processor_refund_id", sa.String(length=64), nullable=True),
        sa.Column("admin_note", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
    )
    for col in ("order_id", "buyer_id", "seller_id", "status", "requested_by", "created_at"):
        _index("refunds", col)
    open_refund = sa.text("status IN ('pending', 'processing')")
    op.create_index(
        "uq_refunds_one_open_per_order",
        "refunds",
        ["order_id"],
        unique=True,
        sqlite_where=open_refund,
        postgresql_where=open_refund,
    )

    op.create_table(
        "payout_clawbacks",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("payout_id", sa.Integer(), sa.ForeignKey("payouts.id"), nullable=True),
        sa.Column("refund_id", sa.Integer(), sa.ForeignKey("refunds.id"), nullable=False, unique=True),
        sa.Column("seller_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("amount_minor", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=24), nullable=False, server_default="open"),
        sa.Column("resolved_by", sa.Integer(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    for col in ("order_id", "payout_id", "seller_id", "status"):
        _index("payout_clawbacks", col)

    op.create_table(
        "seller_risk_profiles",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("fraud_score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("withdrawal_blocked", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("withdrawal_blocked_reason", sa.String(length=240), nullable=True),
        sa.Column("withdrawal_blocked_at", sa.DateTime(), nullable=True),
        sa.Column("kyc_status", sa.String(length=16), nullable=False, server_default="not_started"),
        sa.Column("pending_balance_minor", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    _index("seller_risk_profiles", "user_id", unique=True)
    _index("seller_risk_profiles", "withdrawal_blocked")

    op.create_table(
        "prohibited_keywords",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("keyword", sa.String(length=120), nullable=False, unique=True),
        sa.Column("severity", sa.String(length=16), nullable=False, server_default="warning"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    _index("prohibited_keywords", "is_active")

    op.create_table(
        "access_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("ip_address", sa.String(length=64), nullable=False),
        sa.Column("action", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    for col in ("user_id", "ip_address", "created_at"):
        _index("access_events", col)

    op.create_table(
        "fee_schedules",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("fee_type", sa.String(length=32), nullable=False),
        sa.Column("value", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_percentage", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_by", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("deactivated_at", sa.DateTime(), nullable=True),
    )
    _index("fee_schedules", "fee_type")
    _index("fee_schedules", "is_active")

    op.create_table(
        "platform_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("event_type", sa.String(length=80), nullable=False),
        sa.Column("actor_user_id", sa.Integer(), nullable=True),
        sa.Column("subject_type", sa.String(length=80), nullable=True),
        sa.Column("subject_id", sa.String(length=120), nullable=True),
        sa.Column("request_id", sa.String(length=80), nullable=True),
        sa.Column("idempotency_key", sa.String(length=180), nullable=True, unique=True),
        sa.Column("severity", sa.String(length=16), nullable=False, server_default="INFO"),
        sa.Column("metadata_json", sa.Text(), nullable=True),
    )
    for col in ("created_at", "event_type", "actor_user_id", "subject_type", "subject_id", "severity"):
        _index("platform_events", col)

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("actor_user_id", sa.Integer(), nullable=True),
        sa.Column("action", sa.String(length=120), nullable=False),
        sa.Column("target_type", sa.String(length=64), nullable=False),
        sa.Column("target_id", sa.Integer(), nullable=True),
        sa.Column("old_values_json", sa.Text(), nullable=True),
        sa.Column("new_values_json", sa.Text(), nullable=True),
        sa.Column("meta", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    for col in ("actor_user_id", "action", "target_id", "created_at"):
        _index("audit_logs", col)

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("channel", sa.String(length=32), nullable=False, server_default="in_app"),
        sa.Column("title", sa.String(length=160), nullable=True),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=24), nullable=False, server_default="queued"),
        sa.Column("provider", sa.String(length=64), nullable=True),
        sa.Column("provider_ref", sa.String(length=120), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("sent_at", sa.DateTime(), nullable=True),
        sa.Column("meta", sa.Text(), nullable=True),
    )
    _index("notifications", "user_id")

    op.create_table(
        "webhook_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("provider", sa.String(length=32), nullable=False, server_default="payments"),
        sa.Column("event_id", sa.String(length=128), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=True),
        sa.Column("signature_valid", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="received"),
        sa.Column("payload_hash", sa.String(length=64), nullable=True),
        sa.Column("payload_json", sa.Text(), nullable=True),
        sa.Column("source_ip", sa.String(length=64), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("provider", "event_id", name="uq_webhook_events_provider_event"),
    )
    _index("webhook_events", "created_at")

    op.create_table(
        "job_runs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("job_name", sa.String(length=64), nullable=False),
        sa.Column("ran_at", sa.DateTime(), nullable=False),
        sa.Column("ok", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("summary_json", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
    )
    _index("job_runs", "job_name")
    _index("job_runs", "ran_at")

    op.create_table(
        "reconciliation_reports",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("scope", sa.String(length=64), nullable=False, server_default="settlement"),
        sa.Column("summary_json", sa.Text(), nullable=True),
        sa.Column("drift_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_by", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    _index("reconciliation_reports", "created_at")

    op.create_table(
        "settlement_settings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("payouts_enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("risk_sweep_enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("payouts_provider", sa.String(length=24), nullable=False, server_default="mock"),
        sa.Column("messaging_provider", sa.String(length=24), nullable=False, server_default="disabled"),
        sa.Column("feature_flags_json", sa.Text(), nullable=True),
        sa.Column("last_settlement_run_at", sa.DateTime(), nullable=True),
        sa.Column("last_payment_webhook_at", sa.DateTime(), nullable=True),
        sa.Column("updated_by", sa.Integer(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )


def downgrade():
    for table in (
        "settlement_settings",
        "reconciliation_reports",
        "job_runs",
        "webhook_events",
        "notifications",
        "audit_logs",
        "platform_events",
        "fee_schedules",
        "access_events",
        "prohibited_keywords",
        "seller_risk_profiles",
        "payout_clawbacks",
        "refunds",
        "payouts",
        "order_transitions",
        "orders",
        "listing_moderations",
        "price_history",
        "bids",
        "fraud_alerts",
        "listings",
        "users",
    ):
        op.drop_table(table)
