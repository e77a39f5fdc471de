from __future__ import annotations

from flask import Blueprint, jsonify, request

from settlement.errors import ValidationError
from settlement.jobs import settlement_runner
from settlement.models import JobRun, Payout, PayoutClawback, Refund
from settlement.services import fee_calculator, order_lifecycle, refund_service, settlement_service
from settlement.utils.auth import require_admin
from settlement.utils.money import optional_minor_amount, parse_minor_amount
from settlement.utils.settings import get_all_flags, get_settings, update_flags

admin_ops_bp = Blueprint("admin_ops_bp", __name__, url_prefix="/api/admin")


def _body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _limit(default: int = 50, cap: int = 500) -> int:
    try:
        value = int(request.args.get("limit") or default)
    except (TypeError, ValueError):
        value = default
    return max(1, min(value, cap))


@admin_ops_bp.get("/refunds")
def list_refunds():
    require_admin()
    q = Refund.query
    status = (request.args.get("status") or "").strip().lower()
    if status:
        q = q.filter(Refund.status == status)
    rows = q.order_by(Refund.id.desc()).limit(_limit()).all()
    return jsonify({"ok": True, "items": [r.to_dict() for r in rows]}), 200


@admin_ops_bp.post("/refunds/<int:refund_id>/approve")
def approve_refund(refund_id: int):
    admin = require_admin()
    data = _body()
    refund = refund_service.approve_refund(
        refund_id,
        admin_id=int(admin.id),
        amount_minor=optional_minor_amount(data),
        note=data.get("note"),
    )
    return jsonify({"ok": True, "refund": refund.to_dict()}), 200


@admin_ops_bp.post("/refunds/<int:refund_id>/reject")
def reject_refund(refund_id: int):
    admin = require_admin()
    data = _body()
    refund = refund_service.reject_refund(refund_id, admin_id=int(admin.id), note=str(data.get("note") or ""))
    return jsonify({"ok": True, "refund": refund.to_dict()}), 200


@admin_ops_bp.post("/orders/<int:order_id>/refund")
def refund_order(order_id: int):
    admin = require_admin()
    data = _body()
    refund = refund_service.admin_refund_order(
        order_id,
        admin_id=int(admin.id),
        reason=str(data.get("reason") or ""),
        amount_minor=optional_minor_amount(data),
    )
    return jsonify({"ok": True, "refund": refund.to_dict()}), 200


@admin_ops_bp.post("/orders/<int:order_id>/force-status")
def force_status(order_id: int):
    admin = require_admin()
    data = _body()
    order = order_lifecycle.force_order_status(
        order_id,
        str(data.get("status") or ""),
        admin=admin,
        reason=str(data.get("reason") or ""),
    )
    return jsonify({"ok": True, "order": order.to_dict()}), 200


@admin_ops_bp.get("/payouts")
def list_payouts():
    require_admin()
    q = Payout.query
    status = (request.args.get("status") or "").strip().lower()
    if status:
        q = q.filter(Payout.status == status)
    seller_id = request.args.get("seller_id")
    if seller_id and seller_id.isdigit():
        q = q.filter(Payout.seller_id == int(seller_id))
    rows = q.order_by(Payout.id.desc()).limit(_limit()).all()
    return jsonify({"ok": True, "items": [p.to_dict() for p in rows]}), 200


@admin_ops_bp.post("/payouts/<int:payout_id>/retry")
def retry_payout(payout_id: int):
    admin = require_admin()
    payout = settlement_service.retry_payout(payout_id, admin_id=int(admin.id))
    return jsonify({"ok": True, "payout": payout.to_dict()}), 200


@admin_ops_bp.post("/settlement/run")
def run_settlement():
    require_admin()
    return jsonify({"ok": True, "result": settlement_runner.run_settlement_cycle()}), 200


@admin_ops_bp.get("/settlement/status")
def settlement_status():
    require_admin()
    latest = {}
    for job_name in ("payout_enqueue", "payout_submit", "payout_reconcile", "risk_sweep", "listing_moderation"):
        row = JobRun.query.filter_by(job_name=job_name).order_by(JobRun.id.desc()).first()
        latest[job_name] = row.to_dict() if row else None
    return jsonify({"ok": True, "settings": get_settings().to_dict(), "jobs": latest}), 200


@admin_ops_bp.get("/fees")
def get_fees():
    require_admin()
    return jsonify({"ok": True, "schedule": fee_calculator.active_fee_schedule().to_dict()}), 200


@admin_ops_bp.post("/fees")
def set_fee():
    admin = require_admin()
    data = _body()
    value = parse_minor_amount(data.get("value"))
    if value is None:
        raise ValidationError("value must be an integer", code="INVALID_FEE_VALUE")
    row = fee_calculator.activate_fee(
        str(data.get("fee_type") or ""),
        value,
        is_percentage=bool(data.get("is_percentage")),
        admin_id=int(admin.id),
    )
    return jsonify({"ok": True, "fee": row.to_dict(), "schedule": fee_calculator.active_fee_schedule().to_dict()}), 200


@admin_ops_bp.get("/clawbacks")
def list_clawbacks():
    require_admin()
    q = PayoutClawback.query
    status = (request.args.get("status") or "").strip().lower()
    if status:
        q = q.filter(PayoutClawback.status == status)
    rows = q.order_by(PayoutClawback.id.desc()).limit(_limit()).all()
    return jsonify({"ok": True, "items": [c.to_dict() for c in rows]}), 200


@admin_ops_bp.post("/clawbacks/<int:clawback_id>/resolve")
def resolve_clawback(clawback_id: int):
    admin = require_admin()
    data = _body()
    row = refund_service.resolve_clawback(
        clawback_id,
        admin_id=int(admin.id),
        status=str(data.get("status") or ""),
        note=str(data.get("note") or ""),
    )
    return jsonify({"ok": True, "clawback": row.to_dict()}), 200


@admin_ops_bp.get("/flags")
def get_flags():
    require_admin()
    return jsonify({"ok": True, "flags": get_all_flags()}), 200


@admin_ops_bp.post("/flags")
def set_flags():
    admin = require_admin()
    data = _body()
    flags = data.get("flags")
    if not isinstance(flags, dict):
        raise ValidationError("flags must be an object", code="INVALID_FLAGS")
    return jsonify({"ok": True, "flags": update_flags(flags, updated_by=int(admin.id))}), 200
