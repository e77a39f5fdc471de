from __future__ import annotations

from flask import Blueprint, jsonify, request

from settlement.errors import ValidationError
from settlement.jobs import risk_runner
from settlement.models import FraudAlert, SellerRiskProfile
from settlement.services import risk_admin, risk_engine
from settlement.services.ledger import read_risk_profile
from settlement.utils.auth import require_admin, require_admin_or_service

risk_bp = Blueprint("risk_bp", __name__, url_prefix="/api/risk")
risk_admin_bp = Blueprint("risk_admin_bp", __name__, url_prefix="/api/admin/risk")

_CHECKS = ("check_user", "check_listing", "check_withdrawal", "scan_platform")


def _body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _require_int(data: dict, key: str) -> int:
    value = data.get(key)
    if isinstance(value, bool):
        raise ValidationError(f"{key} is required", code="INVALID_REQUEST")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} is required", code="INVALID_REQUEST")


@risk_bp.post("/check")
def run_check():
    require_admin_or_service()
    data = _body()
    action = str(data.get("action") or "").strip().lower()
    if action not in _CHECKS:
        raise ValidationError(f"action must be one of {list(_CHECKS)}", code="INVALID_ACTION")

    if action == "scan_platform":
        return jsonify({"ok": True, "action": action, "summary": risk_engine.scan_platform()}), 200

    if action == "check_listing":
        alerts = risk_engine.check_listing(_require_int(data, "listing_id"))
    elif action == "check_withdrawal":
        alerts = risk_engine.check_withdrawal(_require_int(data, "user_id"))
    else:
        user_id = _require_int(data, "user_id")
        ip_address = str(data.get("ip_address") or "").strip()
        if ip_address:
            risk_engine.record_access(user_id, ip_address, action=str(data.get("context") or "risk_check"))
        alerts = risk_engine.check_user(user_id, ip_address=ip_address or None)
    return jsonify({"ok": True, "action": action, "alerts": [a.to_dict() for a in alerts]}), 200


@risk_admin_bp.get("/alerts")
def list_alerts():
    require_admin()
    q = FraudAlert.query
    status = (request.args.get("status") or "").strip().lower()
    if status:
        q = q.filter(FraudAlert.status == status)
    severity = (request.args.get("severity") or "").strip().lower()
    if severity:
        q = q.filter(FraudAlert.severity == severity)
    user_id = request.args.get("user_id")
    if user_id and user_id.isdigit():
        q = q.filter(FraudAlert.user_id == int(user_id))
    try:
        limit = max(1, min(int(request.args.get("limit") or 50), 500))
    except (TypeError, ValueError):
        limit = 50
    rows = q.order_by(FraudAlert.id.desc()).limit(limit).all()
    return jsonify({"ok": True, "items": [a.to_dict() for a in rows]}), 200


@risk_admin_bp.post("/alerts/<int:alert_id>/review")
def review_alert(alert_id: int):
    admin = require_admin()
    data = _body()
    alert = risk_admin.review_alert(
        alert_id,
        admin_id=int(admin.id),
        outcome=str(data.get("outcome") or ""),
        note=str(data.get("note") or ""),
    )
    return jsonify({"ok": True, "alert": alert.to_dict()}), 200


@risk_admin_bp.get("/profiles/<int:user_id>")
def get_profile(user_id: int):
    require_admin()
    profile = read_risk_profile(user_id)
    return jsonify({"ok": True, "profile": profile.to_dict() if profile else None}), 200


@risk_admin_bp.get("/profiles")
def list_blocked_profiles():
    require_admin()
    rows = (
        SellerRiskProfile.query.filter(SellerRiskProfile.withdrawal_blocked.is_(True))
        .order_by(SellerRiskProfile.withdrawal_blocked_at.desc())
        .limit(200)
        .all()
    )
    return jsonify({"ok": True, "items": [p.to_dict() for p in rows]}), 200


@risk_admin_bp.post("/profiles/<int:user_id>/lift-hold")
def lift_hold(user_id: int):
    admin = require_admin()
    data = _body()
    profile = risk_admin.lift_withdrawal_hold(user_id, admin_id=int(admin.id), note=str(data.get("note") or ""))
    return jsonify({"ok": True, "profile": profile.to_dict()}), 200


@risk_admin_bp.post("/profiles/<int:user_id>/kyc")
def set_kyc(user_id: int):
    admin = require_admin()
    data = _body()
    profile = risk_admin.set_kyc_status(user_id, str(data.get("status") or ""), admin_id=int(admin.id))
    return jsonify({"ok": True, "profile": profile.to_dict()}), 200


@risk_admin_bp.post("/sweep")
def run_sweep():
    require_admin()
    return jsonify({"ok": True, "result": risk_runner.run_risk_sweep()}), 200
