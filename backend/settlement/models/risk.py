from datetime import datetime
import json

from settlement.extensions import db


class FraudAlert(db.Model):
    """Append-only risk signal. Only `status` and review fields change after insert."""

    __tablename__ = "fraud_alerts"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    listing_id = db.Column(db.Integer, db.ForeignKey("listings.id"), nullable=True, index=True)

    alert_type = db.Column(db.String(48), nullable=False, index=True)
    severity = db.Column(db.String(16), nullable=False, default="warning", index=True)
    score_weight = db.Column(db.Integer, nullable=False, default=0)
    title = db.Column(db.String(200), nullable=False, default="")
    description = db.Column(db.Text, nullable=True)
    evidence_json = db.Column(db.Text, nullable=True)
    related_user_ids_json = db.Column(db.Text, nullable=True)
    auto_action_taken = db.Column(db.String(32), nullable=True)

    # Deterministic per rule fact so repeated sweeps do not re-alert.
    dedupe_key = db.Column(db.String(180), nullable=True, unique=True)

    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    reviewed_by = db.Column(db.Integer, nullable=True)
    reviewed_at = db.Column(db.DateTime, nullable=True)
    review_note = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    def evidence(self) -> dict:
        try:
            parsed = json.loads(self.evidence_json or "{}")
        except Exception:
            return {}
        return parsed if isinstance(parsed, dict) else {}

    def related_user_ids(self) -> list[int]:
        try:
            parsed = json.loads(self.related_user_ids_json or "[]")
        except Exception:
            return []
        if not isinstance(parsed, list):
            return []
        return [int(x) for x in parsed if str(x).isdigit()]

    def to_dict(self):
        return {
            "id": int(self.id),
            "user_id": int(self.user_id),
            "listing_id": int(self.listing_id) if self.listing_id is not None else None,
            "alert_type": self.alert_type or "",
            "severity": self.severity or "warning",
            "score_weight": int(self.score_weight or 0),
            "title": self.title or "",
            "description": self.description or "",
            "evidence": self.evidence(),
            "related_user_ids": self.related_user_ids(),
            "auto_action_taken": self.auto_action_taken or "none",
            "status": self.status or "pending",
            "reviewed_by": self.reviewed_by,
            "reviewed_at": self.reviewed_at.isoformat() if self.reviewed_at else None,
            "review_note": self.review_note or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class SellerRiskProfile(db.Model):
    __tablename__ = "seller_risk_profiles"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, unique=True, index=True)

    fraud_score = db.Column(db.Integer, nullable=False, default=0)

    withdrawal_blocked = db.Column(db.Boolean, nullable=False, default=False, index=True)
    withdrawal_blocked_reason = db.Column(db.String(240), nullable=True)
    withdrawal_blocked_at = db.Column(db.DateTime, nullable=True)

    kyc_status = db.Column(db.String(16), nullable=False, default="not_started")

    # Net owed to the seller for payouts that have not completed yet.
    pending_balance_minor = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "user_id": int(self.user_id),
            "fraud_score": int(self.fraud_score or 0),
            "withdrawal_blocked": bool(self.withdrawal_blocked),
            "withdrawal_blocked_reason": self.withdrawal_blocked_reason or "",
            "withdrawal_blocked_at": self.withdrawal_blocked_at.isoformat() if self.withdrawal_blocked_at else None,
            "kyc_status": self.kyc_status or "not_started",
            "pending_balance_minor": int(self.pending_balance_minor or 0),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class ProhibitedKeyword(db.Model):
    __tablename__ = "prohibited_keywords"

    id = db.Column(db.Integer, primary_key=True)
    keyword = db.Column(db.String(120), nullable=False, unique=True)
    severity = db.Column(db.String(16), nullable=False, default="warning")
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)


class AccessEvent(db.Model):
    """Network origin observed for an authenticated account action."""

    __tablename__ = "access_events"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    ip_address = db.Column(db.String(64), nullable=False, index=True)
    action = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
