from __future__ import annotations

import json
from datetime import datetime

from settlement.extensions import db
from settlement.models import Order, Payout, PayoutClawback, ReconciliationReport, SellerRiskProfile
from settlement.services.order_lifecycle import OrderStatus, PayoutStatus

_UNSETTLED = (PayoutStatus.PENDING, PayoutStatus.PROCESSING, PayoutStatus.FAILED)


def _order_checks(order: Order, payout: Payout | None) -> list[dict]:
    found = []
    oid = int(order.id)
    if payout is not None and payout.status != order.payout_status:
        found.append({"check": "status_mirror", "order_id": oid, "order_payout_status": order.payout_status, "payout_status": payout.status})
    if payout is None and order.payout_status in _UNSETTLED + (PayoutStatus.COMPLETED,):
        found.append({"check": "missing_payout", "order_id": oid, "order_payout_status": order.payout_status})
    if payout is not None and order.payout_amount_minor is not None and int(payout.net_amount_minor) != int(order.payout_amount_minor):
        found.append({"check": "amount_drift", "order_id": oid, "order_minor": int(order.payout_amount_minor), "payout_minor": int(payout.net_amount_minor)})
    if order.payout_status != PayoutStatus.NONE and order.payout_status != PayoutStatus.CANCELLED and order.delivered_at is None:
        found.append({"check": "payout_before_delivery", "order_id": oid, "order_payout_status": order.payout_status})
    if order.status == OrderStatus.REFUNDED and order.payout_status not in (PayoutStatus.CANCELLED, PayoutStatus.COMPLETED):
        found.append({"check": "refund_payout_open", "order_id": oid, "order_payout_status": order.payout_status})
    if order.status in (OrderStatus.REFUNDED, OrderStatus.PARTIALLY_REFUNDED) and order.payout_status == PayoutStatus.COMPLETED:
        if PayoutClawback.query.filter_by(order_id=oid).first() is None:
            found.append({"check": "clawback_missing", "order_id": oid})
    return found


def recompute_settlement_drift(*, limit: int = 5000) -> dict:
    """Cross-check orders, payouts and pending balances without changing anything."""
    orders = Order.query.order_by(Order.id.asc()).limit(int(limit)).all()
    payouts = {int(p.order_id): p for p in Payout.query.filter(Payout.order_id.in_([int(o.id) for o in orders])).all()} if orders else {}
    drift_items: list[dict] = []
    for order in orders:
        drift_items.extend(_order_checks(order, payouts.get(int(order.id))))

    owed: dict[int, int] = {}
    for payout in Payout.query.filter(Payout.status.in_(_UNSETTLED)).all():
        owed[int(payout.seller_id)] = owed.get(int(payout.seller_id), 0) + int(payout.net_amount_minor or 0)
    for profile in SellerRiskProfile.query.all():
        expected = owed.pop(int(profile.user_id), 0)
        stored = int(profile.pending_balance_minor or 0)
        if stored != expected:
            drift_items.append({"check": "pending_balance_drift", "user_id": int(profile.user_id), "stored_minor": stored, "computed_minor": expected})
    for seller_id, expected in owed.items():
        drift_items.append({"check": "pending_balance_drift", "user_id": seller_id, "stored_minor": None, "computed_minor": expected})

    by_check: dict[str, int] = {}
    for item in drift_items:
        by_check[item["check"]] = by_check.get(item["check"], 0) + 1
    return {
        "ok": True,
        "scope": "settlement",
        "order_count": len(orders),
        "drift_count": len(drift_items),
        "by_check": by_check,
        "drift_items": drift_items,
        "generated_at": datetime.utcnow().isoformat(),
    }


def persist_report(summary: dict, *, created_by: int | None = None) -> ReconciliationReport:
    report = ReconciliationReport(
        scope=(summary.get("scope") or "settlement")[:64],
        summary_json=json.dumps(summary)[:200000],
        drift_count=int(summary.get("drift_count") or 0),
        created_by=int(created_by) if created_by is not None else None,
        created_at=datetime.utcnow(),
    )
    db.session.add(report)
    db.session.commit()
    return report
