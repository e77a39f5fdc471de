from datetime import datetime

from settlement.extensions import db


class Payout(db.Model):
    __tablename__ = "payouts"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, unique=True, index=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    net_amount_minor = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(8), nullable=False, default="GBP")

    status = db.Column(db.String(32), nullable=False, default="pending", index=True)
    batch_id = db.Column(db.String(128), nullable=True, index=True)

    # Bumped by an admin retry so a resubmission gets a fresh processor key.
    retry_generation = db.Column(db.Integer, nullable=False, default=0)
    submit_failures = db.Column(db.Integer, nullable=False, default=0)
    poll_failures = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text, nullable=True)
    cancelled_reason = db.Column(db.String(120), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    submitted_at = db.Column(db.DateTime, nullable=True)
    processed_at = db.Column(db.DateTime, nullable=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    @property
    def idempotency_key(self) -> str:
        base = f"payout:{int(self.id)}"
        gen = int(self.retry_generation or 0)
        return base if gen == 0 else f"{base}:retry:{gen}"

    def to_dict(self):
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "seller_id": int(self.seller_id),
            "net_amount_minor": int(self.net_amount_minor or 0),
            "currency": self.currency or "",
            "status": self.status or "pending",
            "batch_id": self.batch_id or "",
            "idempotency_key": self.idempotency_key,
            "submit_failures": int(self.submit_failures or 0),
            "poll_failures": int(self.poll_failures or 0),
            "last_error": self.last_error or "",
            "cancelled_reason": self.cancelled_reason or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
        }


class PayoutClawback(db.Model):
    """Money already settled to a seller that a later refund says is owed back."""

    __tablename__ = "payout_clawbacks"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    payout_id = db.Column(db.Integer, db.ForeignKey("payouts.id"), nullable=True, index=True)
    refund_id = db.Column(db.Integer, db.ForeignKey("refunds.id"), nullable=False, unique=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    amount_minor = db.Column(db.Integer, nullable=False)

    status = db.Column(db.String(24), nullable=False, default="open", index=True)  # open | recovered | written_off
    resolved_by = db.Column(db.Integer, nullable=True)
    resolved_at = db.Column(db.DateTime, nullable=True)
    note = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "payout_id": int(self.payout_id) if self.payout_id is not None else None,
            "refund_id": int(self.refund_id),
            "seller_id": int(self.seller_id),
            "amount_minor": int(self.amount_minor or 0),
            "status": self.status or "open",
            "resolved_by": self.resolved_by,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "note": self.note or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
