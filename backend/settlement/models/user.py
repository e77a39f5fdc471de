from datetime import datetime

from settlement.extensions import db


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(120), nullable=False, default="")
    email = db.Column(db.String(255), unique=True, index=True, nullable=False)
    phone = db.Column(db.String(32), unique=True, index=True, nullable=True)

    role = db.Column(db.String(32), nullable=False, default="buyer")  # buyer | seller | admin
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    # Processor-side recipient handle used as the payout destination.
    payout_recipient_code = db.Column(db.String(120), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

    @property
    def is_admin(self) -> bool:
        return (self.role or "").strip().lower() == "admin"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": getattr(self, "phone", None),
            "role": self.role or "buyer",
            "is_active": bool(self.is_active),
            "has_payout_recipient": bool((self.payout_recipient_code or "").strip()),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
