from datetime import datetime
import json

from settlement.extensions import db


class AuditLog(db.Model):
    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)
    actor_user_id = db.Column(db.Integer, nullable=True, index=True)
    action = db.Column(db.String(120), nullable=False, index=True)
    target_type = db.Column(db.String(64), nullable=False)
    target_id = db.Column(db.Integer, nullable=True, index=True)
    old_values_json = db.Column(db.Text, nullable=True)
    new_values_json = db.Column(db.Text, nullable=True)
    meta = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    @staticmethod
    def _load(raw) -> dict:
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
        except Exception:
            return {"raw": str(raw)}
        return parsed if isinstance(parsed, dict) else {"value": parsed}

    def to_dict(self):
        return {
            "id": int(self.id),
            "actor_user_id": self.actor_user_id,
            "action": self.action or "",
            "target_type": self.target_type or "",
            "target_id": self.target_id,
            "old_values": self._load(self.old_values_json),
            "new_values": self._load(self.new_values_json),
            "meta": self._load(self.meta),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
