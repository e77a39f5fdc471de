from __future__ import annotations

import json

from flask import Blueprint, jsonify, request

from settlement.models import ReconciliationReport
from settlement.services.reconciliation_service import persist_report, recompute_settlement_drift
from settlement.utils.auth import require_admin

reconciliation_admin_bp = Blueprint("reconciliation_admin_bp", __name__, url_prefix="/api/admin/reconcile")


@reconciliation_admin_bp.post("")
def run_reconcile():
    admin = require_admin()
    data = request.get_json(silent=True) or {}
    try:
        limit = int(data.get("limit") or 5000)
    except (TypeError, ValueError):
        limit = 5000
    summary = recompute_settlement_drift(limit=max(1, min(limit, 20000)))
    report = persist_report(summary, created_by=int(admin.id))
    return jsonify({"ok": True, "report_id": int(report.id), "summary": summary}), 200


@reconciliation_admin_bp.get("/latest")
def latest_report():
    require_admin()
    row = ReconciliationReport.query.order_by(ReconciliationReport.id.desc()).first()
    if not row:
        return jsonify({"ok": True, "report": None}), 200
    try:
        summary = json.loads(row.summary_json or "{}")
    except ValueError:
        summary = {}
    return jsonify({"ok": True, "report": row.to_dict(), "summary": summary}), 200
