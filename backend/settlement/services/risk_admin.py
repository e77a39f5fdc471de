from __future__ import annotations

import logging
from datetime import datetime

from settlement.errors import NotFoundError, PolicyViolationError, ValidationError
from settlement.extensions import db
from settlement.models import FraudAlert, SellerRiskProfile, User
from settlement.services.ledger import atomic_add, ensure_risk_profile, stage_audit
from settlement.services.notification_service import notify
from settlement.services.risk_engine import AlertStatus
from settlement.utils.events import log_event

logger = logging.getLogger(__name__)

KYC_STATUSES = ("not_started", "pending", "approved", "rejected")


def _require_user(user_id: int) -> User:
    user = db.session.get(User, int(user_id))
    if user is None:
        raise NotFoundError("user not found", code="USER_NOT_FOUND")
    return user


def review_alert(alert_id: int, *, admin_id: int, outcome: str, note: str = "") -> FraudAlert:
    """Close a pending alert. Dismissal takes the alert's weight back off the score."""
    outcome = (outcome or "").strip().lower()
    if outcome not in (AlertStatus.REVIEWED, AlertStatus.DISMISSED):
        raise ValidationError("outcome must be reviewed or dismissed", code="INVALID_OUTCOME")
    alert = db.session.get(FraudAlert, int(alert_id))
    if alert is None:
        raise NotFoundError("alert not found", code="ALERT_NOT_FOUND")
    if alert.status != AlertStatus.PENDING:
        raise PolicyViolationError(f"alert is already {alert.status}", code="ALERT_CLOSED")

    ensure_risk_profile(int(alert.user_id))
    alert.status = outcome
    alert.reviewed_by = int(admin_id)
    alert.reviewed_at = datetime.utcnow()
    alert.review_note = (note or "").strip() or None
    weight = int(alert.score_weight or 0)
    if outcome == AlertStatus.DISMISSED and weight > 0:
        atomic_add(SellerRiskProfile, {"user_id": int(alert.user_id)}, "fraud_score", -weight, floor=0)
    stage_audit(
        actor_id=int(admin_id),
        action="fraud_alert_reviewed",
        target_type="fraud_alert",
        target_id=int(alert.id),
        old_values={"status": AlertStatus.PENDING},
        new_values={"status": outcome, "score_delta": -weight if outcome == AlertStatus.DISMISSED else 0},
        meta={"note": note or ""},
    )
    log_event(
        "fraud_alert_reviewed",
        actor_user_id=int(admin_id),
        subject_type="fraud_alert",
        subject_id=int(alert.id),
        metadata={"outcome": outcome, "user_id": int(alert.user_id)},
    )
    db.session.commit()
    return alert


def lift_withdrawal_hold(user_id: int, *, admin_id: int, note: str = "") -> SellerRiskProfile:
    _require_user(user_id)
    profile = ensure_risk_profile(int(user_id))
    if not bool(profile.withdrawal_blocked):
        raise PolicyViolationError("no withdrawal hold is set", code="NO_HOLD")
    old = {"withdrawal_blocked": True, "reason": profile.withdrawal_blocked_reason or ""}
    profile.withdrawal_blocked = False
    profile.withdrawal_blocked_reason = None
    profile.withdrawal_blocked_at = None
    profile.updated_at = datetime.utcnow()
    stage_audit(
        actor_id=int(admin_id),
        action="withdrawal_hold_lifted",
        target_type="user",
        target_id=int(user_id),
        old_values=old,
        new_values={"withdrawal_blocked": False},
        meta={"note": note or ""},
    )
    log_event(
        "withdrawal_hold_lifted",
        actor_user_id=int(admin_id),
        subject_type="user",
        subject_id=int(user_id),
        severity="WARNING",
        metadata={"note": note or ""},
    )
    db.session.commit()
    notify(int(user_id), "Payouts resumed", "The hold on your payouts has been lifted.", {})
    return profile


def set_kyc_status(user_id: int, status: str, *, admin_id: int) -> SellerRiskProfile:
    status = (status or "").strip().lower()
    if status not in KYC_STATUSES:
        raise ValidationError(f"kyc status must be one of {list(KYC_STATUSES)}", code="INVALID_KYC_STATUS")
    _require_user(user_id)
    profile = ensure_risk_profile(int(user_id))
    previous = profile.kyc_status or "not_started"
    if previous == status:
        return profile
    profile.kyc_status = status
    profile.updated_at = datetime.utcnow()
    stage_audit(
        actor_id=int(admin_id),
        action="kyc_status_changed",
        target_type="user",
        target_id=int(user_id),
        old_values={"kyc_status": previous},
        new_values={"kyc_status": status},
    )
    log_event(
        "kyc_status_changed",
        actor_user_id=int(admin_id),
        subject_type="user",
        subject_id=int(user_id),
        metadata={"from": previous, "to": status},
    )
    db.session.commit()
    return profile
