from datetime import datetime

from settlement.extensions import db


_OPEN_REFUND = db.text("status IN ('pending', 'processing')")


class Refund(db.Model):
    __tablename__ = "refunds"
    __table_args__ = (
        db.Index(
            "uq_refunds_one_open_per_order",
            "order_id",
            unique=True,
            sqlite_where=_OPEN_REFUND,
            postgresql_where=_OPEN_REFUND,
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    buyer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    amount_minor = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.Text, nullable=False)

    status = db.Column(db.String(24), nullable=False, default="pending", index=True)
    requested_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    approved_by = db.Column(db.Integer, nullable=True)
    requires_admin_approval = db.Column(db.Boolean, nullable=False, default=True)

    processor_refund_id = db.Column(db.String(64), nullable=True)
    admin_note = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    processed_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self):
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "buyer_id": int(self.buyer_id),
            "seller_id": int(self.seller_id),
            "amount_minor": int(self.amount_minor or 0),
            "reason": self.reason or "",
            "status": self.status or "pending",
            "requested_by": int(self.requested_by),
            "approved_by": int(self.approved_by) if self.approved_by is not None else None,
            "requires_admin_approval": bool(self.requires_admin_approval),
            "processor_refund_id": self.processor_refund_id or "",
            "admin_note": self.admin_note or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
        }
