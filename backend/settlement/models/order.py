from datetime import datetime
import json

from settlement.extensions import db


class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(db.Integer, primary_key=True)
    buyer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    listing_id = db.Column(db.Integer, db.ForeignKey("listings.id"), nullable=True, index=True)

    # Gross amount in currency minor units.
    amount_minor = db.Column(db.Integer, nullable=False, default=0)
    currency = db.Column(db.String(8), nullable=False, default="GBP")

    status = db.Column(db.String(32), nullable=False, default="pending", index=True)
    payout_status = db.Column(db.String(32), nullable=False, default="none", index=True)

    # Frozen when the order becomes paid.
    buyer_fee_minor = db.Column(db.Integer, nullable=True)
    seller_commission_minor = db.Column(db.Integer, nullable=True)
    payout_amount_minor = db.Column(db.Integer, nullable=True)
    fee_schedule_version = db.Column(db.String(64), nullable=True)
    fee_snapshot_json = db.Column(db.Text, nullable=True)
    payment_reference = db.Column(db.String(128), nullable=True, index=True)

    refund_status = db.Column(db.String(32), nullable=True)  # pending_approval | approved | rejected
    refund_amount_minor = db.Column(db.Integer, nullable=True)

    tracking_number = db.Column(db.String(120), nullable=True)
    carrier = db.Column(db.String(64), nullable=True)

    requires_manual_review = db.Column(db.Boolean, nullable=False, default=False, index=True)
    manual_review_reason = db.Column(db.String(120), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    paid_at = db.Column(db.DateTime, nullable=True)
    shipped_at = db.Column(db.DateTime, nullable=True)
    delivered_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    refunded_at = db.Column(db.DateTime, nullable=True)
    payout_completed_at = db.Column(db.DateTime, nullable=True)

    def fee_snapshot(self) -> dict:
        raw = self.fee_snapshot_json
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
        except Exception:
            return {}
        return parsed if isinstance(parsed, dict) else {}

    def to_dict(self):
        def _ts(value):
            return value.isoformat() if value else None

        return {
            "id": int(self.id),
            "buyer_id": int(self.buyer_id),
            "seller_id": int(self.seller_id),
            "listing_id": int(self.listing_id) if self.listing_id is not None else None,
            "amount_minor": int(self.amount_minor or 0),
            "currency": self.currency or "",
            "status": self.status or "pending",
            "payout_status": self.payout_status or "none",
            "buyer_fee_minor": self.buyer_fee_minor,
            "seller_commission_minor": self.seller_commission_minor,
            "payout_amount_minor": self.payout_amount_minor,
            "fee_schedule_version": self.fee_schedule_version or "",
            "refund_status": self.refund_status,
            "refund_amount_minor": self.refund_amount_minor,
            "tracking_number": self.tracking_number or "",
            "carrier": self.carrier or "",
            "requires_manual_review": bool(self.requires_manual_review),
            "manual_review_reason": self.manual_review_reason or "",
            "created_at": _ts(self.created_at),
            "paid_at": _ts(self.paid_at),
            "shipped_at": _ts(self.shipped_at),
            "delivered_at": _ts(self.delivered_at),
            "cancelled_at": _ts(self.cancelled_at),
            "refunded_at": _ts(self.refunded_at),
            "payout_completed_at": _ts(self.payout_completed_at),
        }


class OrderTransition(db.Model):
    __tablename__ = "order_transitions"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    axis = db.Column(db.String(16), nullable=False, default="status")  # status | payout_status
    from_status = db.Column(db.String(32), nullable=False, default="")
    to_status = db.Column(db.String(32), nullable=False)
    actor_type = db.Column(db.String(32), nullable=False, default="system")
    actor_id = db.Column(db.Integer, nullable=True)
    reason = db.Column(db.String(240), nullable=True)
    metadata_json = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    def to_dict(self):
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "axis": self.axis or "status",
            "from_status": self.from_status or "",
            "to_status": self.to_status or "",
            "actor_type": self.actor_type or "",
            "actor_id": int(self.actor_id) if self.actor_id is not None else None,
            "reason": self.reason or "",
            "metadata_json": self.metadata_json or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
