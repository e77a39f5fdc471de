from datetime import datetime

from settlement.extensions import db


class FeeSchedule(db.Model):
    __tablename__ = "fee_schedules"

    id = db.Column(db.Integer, primary_key=True)
    fee_type = db.Column(db.String(32), nullable=False, index=True)  # buyer_fee | seller_commission
    # Minor units when fixed, basis points when is_percentage.
    value = db.Column(db.Integer, nullable=False, default=0)
    is_percentage = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    deactivated_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self):
        return {
            "id": int(self.id),
            "fee_type": self.fee_type or "",
            "value": int(self.value or 0),
            "is_percentage": bool(self.is_percentage),
            "is_active": bool(self.is_active),
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "deactivated_at": self.deactivated_at.isoformat() if self.deactivated_at else None,
        }
