from __future__ import annotations

from flask import Blueprint, jsonify, request

from settlement.errors import AuthorizationError
from settlement.models import OrderTransition, Refund
from settlement.services import order_lifecycle, refund_service
from settlement.utils.auth import require_user
from settlement.utils.money import optional_minor_amount

orders_bp = Blueprint("orders_bp", __name__, url_prefix="/api/orders")


def _body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _visible_order(order_id: int):
    user = require_user()
    order = order_lifecycle.get_order(order_id)
    if not user.is_admin and int(user.id) not in (int(order.buyer_id), int(order.seller_id)):
        raise AuthorizationError("not your order")
    return user, order


@orders_bp.get("/<int:order_id>")
def get_order(order_id: int):
    _, order = _visible_order(order_id)
    transitions = (
        OrderTransition.query.filter_by(order_id=int(order.id))
        .order_by(OrderTransition.id.asc())
        .all()
    )
    return jsonify({"ok": True, "order": order.to_dict(), "transitions": [t.to_dict() for t in transitions]}), 200


@orders_bp.post("/<int:order_id>/ship")
def ship_order(order_id: int):
    user = require_user()
    data = _body()
    order = order_lifecycle.mark_shipped(
        order_id,
        seller_id=int(user.id),
        tracking_number=str(data.get("tracking_number") or ""),
        carrier=str(data.get("carrier") or ""),
    )
    return jsonify({"ok": True, "order": order.to_dict()}), 200


@orders_bp.post("/<int:order_id>/confirm-delivery")
def confirm_delivery(order_id: int):
    user = require_user()
    order = order_lifecycle.confirm_delivery(order_id, buyer_id=int(user.id))
    return jsonify({"ok": True, "order": order.to_dict()}), 200


@orders_bp.post("/<int:order_id>/cancel")
def cancel_order(order_id: int):
    user = require_user()
    data = _body()
    order = refund_service.cancel_unpaid_order(order_id, actor_user=user, reason=str(data.get("reason") or ""))
    return jsonify({"ok": True, "order": order.to_dict()}), 200


@orders_bp.post("/<int:order_id>/refunds")
def request_refund(order_id: int):
    user = require_user()
    data = _body()
    refund = refund_service.request_refund(
        order_id,
        requester_id=int(user.id),
        reason=str(data.get("reason") or ""),
        amount_minor=optional_minor_amount(data),
    )
    return jsonify({"ok": True, "refund": refund.to_dict()}), 201


@orders_bp.get("/<int:order_id>/refunds")
def list_refunds(order_id: int):
    _, order = _visible_order(order_id)
    rows = Refund.query.filter_by(order_id=int(order.id)).order_by(Refund.id.desc()).all()
    return jsonify({"ok": True, "items": [r.to_dict() for r in rows]}), 200
