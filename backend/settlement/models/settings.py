from datetime import datetime
import sqlalchemy as sa

from settlement.extensions import db


class SettlementSettings(db.Model):
    """Single operator-controlled row; secrets stay in the environment."""

    __tablename__ = "settlement_settings"

    id = db.Column(db.Integer, primary_key=True)

    payouts_enabled = db.Column(db.Boolean, nullable=False, default=True, server_default=sa.text("true"))
    risk_sweep_enabled = db.Column(db.Boolean, nullable=False, default=True, server_default=sa.text("true"))
    payouts_provider = db.Column(db.String(24), nullable=False, default="mock", server_default="mock")
    messaging_provider = db.Column(db.String(24), nullable=False, default="disabled", server_default="disabled")
    feature_flags_json = db.Column(db.Text, nullable=True)

    last_settlement_run_at = db.Column(db.DateTime, nullable=True)
    last_payment_webhook_at = db.Column(db.DateTime, nullable=True)

    updated_by = db.Column(db.Integer, nullable=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "payouts_enabled": bool(self.payouts_enabled),
            "risk_sweep_enabled": bool(self.risk_sweep_enabled),
            "payouts_provider": self.payouts_provider or "mock",
            "messaging_provider": self.messaging_provider or "disabled",
            "last_settlement_run_at": self.last_settlement_run_at.isoformat() if self.last_settlement_run_at else None,
            "last_payment_webhook_at": self.last_payment_webhook_at.isoformat() if self.last_payment_webhook_at else None,
            "updated_by": self.updated_by,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
