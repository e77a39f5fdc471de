from __future__ import annotations

import json
import logging
from datetime import datetime

from settlement.errors import (
    AuthorizationError,
    NotFoundError,
    PolicyViolationError,
    StaleStateError,
    ValidationError,
)
from settlement.extensions import db
from settlement.models import Order, OrderTransition, User
from settlement.services import fee_calculator
from settlement.services.ledger import compare_and_set, stage_audit
from settlement.services.notification_service import notify
from settlement.services.payment_events import PaymentConfirmed, PaymentFailed
from settlement.utils.events import log_event

logger = logging.getLogger(__name__)


class OrderStatus:
    PENDING = "pending"
    PAID = "paid"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"

    ALL = {PENDING, PAID, SHIPPED, DELIVERED, CANCELLED, REFUNDED, PARTIALLY_REFUNDED}
    TERMINAL = {CANCELLED, REFUNDED}
    REFUNDABLE = {PENDING, PAID, SHIPPED, DELIVERED}

    # Shipping axis, driven by this module.
    FORWARD = {
        PENDING: {PAID},
        PAID: {SHIPPED},
        SHIPPED: {DELIVERED},
    }
    # Reversals, driven only by the refund workflow.
    REVERSAL = {
        PENDING: {CANCELLED, REFUNDED, PARTIALLY_REFUNDED},
        PAID: {CANCELLED, REFUNDED, PARTIALLY_REFUNDED},
        SHIPPED: {CANCELLED, REFUNDED, PARTIALLY_REFUNDED},
        DELIVERED: {CANCELLED, REFUNDED, PARTIALLY_REFUNDED},
    }


class PayoutStatus:
    NONE = "none"
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    ALL = {NONE, PENDING, PROCESSING, COMPLETED, FAILED, CANCELLED}
    ALLOWED = {
        NONE: {PENDING, CANCELLED},
        PENDING: {PROCESSING, FAILED, CANCELLED},
        PROCESSING: {PENDING, COMPLETED, FAILED},
        FAILED: {PENDING, CANCELLED},
        COMPLETED: set(),
        CANCELLED: set(),
    }


_STATUS_TIMESTAMPS = {
    OrderStatus.PAID: "paid_at",
    OrderStatus.SHIPPED: "shipped_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.CANCELLED: "cancelled_at",
    OrderStatus.REFUNDED: "refunded_at",
    OrderStatus.PARTIALLY_REFUNDED: "refunded_at",
}


def _now():
    return datetime.utcnow()


def _parse_actor(actor) -> tuple[str, int | None]:
    if isinstance(actor, dict):
        actor_type = str(actor.get("type") or "system")
        actor_id_raw = actor.get("id")
        try:
            actor_id = int(actor_id_raw) if actor_id_raw is not None else None
        except (TypeError, ValueError):
            actor_id = None
        return actor_type, actor_id
    return "system", None


def get_order(order_id: int) -> Order:
    order = db.session.get(Order, int(order_id))
    if order is None:
        raise NotFoundError("order not found", code="ORDER_NOT_FOUND")
    return order


def _current_value(order_id: int, column: str) -> str | None:
    row = (
        Order.query.filter_by(id=int(order_id))
        .execution_options(populate_existing=True)
        .first()
    )
    return getattr(row, column, None) if row is not None else None


def _stage_transition(order_id: int, axis: str, from_status: str, to_status: str, *, actor=None, reason: str = "", metadata: dict | None = None) -> OrderTransition:
    actor_type, actor_id = _parse_actor(actor)
    row = OrderTransition(
        order_id=int(order_id),
        axis=axis,
        from_status=from_status,
        to_status=to_status,
        actor_type=actor_type[:32],
        actor_id=actor_id,
        reason=(reason or "")[:240],
        metadata_json=json.dumps(metadata or {}, default=str)[:4000],
        created_at=_now(),
    )
    db.session.add(row)
    return row


def advance_status(
    order_id: int,
    *,
    expected: str,
    target: str,
    allowed: dict | None = None,
    values: dict | None = None,
    guard: dict | None = None,
    actor=None,
    reason: str = "",
    metadata: dict | None = None,
) -> None:
    """Conditionally move `orders.status` from `expected` to `target`.

    Stages the change and its transition row; the caller commits. Raises
    StaleStateError when the stored status (or any `guard` column) no longer
    matches.
    """
    table = OrderStatus.FORWARD if allowed is None else allowed
    if target not in table.get(expected, set()):
        raise ValidationError(f"invalid order transition {expected}->{target}", code="INVALID_TRANSITION")
    now = _now()
    vals = dict(values or {})
    vals["status"] = target
    vals["updated_at"] = now
    stamp = _STATUS_TIMESTAMPS.get(target)
    if stamp and stamp not in vals:
        vals[stamp] = now
    cond = {"status": expected}
    cond.update(guard or {})
    if compare_and_set(Order, order_id, expected=cond, values=vals) == 0:
        raise StaleStateError(
            f"order {int(order_id)} is no longer {expected}",
            expected=expected,
            actual=_current_value(order_id, "status"),
        )
    _stage_transition(order_id, "status", expected, target, actor=actor, reason=reason, metadata=metadata)


def advance_payout_status(
    order_id: int,
    *,
    expected: str,
    target: str,
    values: dict | None = None,
    guard: dict | None = None,
    actor=None,
    reason: str = "",
    metadata: dict | None = None,
) -> None:
    """Same contract as advance_status, on the orthogonal payout axis."""
    if target not in PayoutStatus.ALLOWED.get(expected, set()):
        raise ValidationError(f"invalid payout transition {expected}->{target}", code="INVALID_TRANSITION")
    vals = dict(values or {})
    vals["payout_status"] = target
    vals["updated_at"] = _now()
    if target == PayoutStatus.COMPLETED and "payout_completed_at" not in vals:
        vals["payout_completed_at"] = vals["updated_at"]
    cond = {"payout_status": expected}
    cond.update(guard or {})
    if compare_and_set(Order, order_id, expected=cond, values=vals) == 0:
        raise StaleStateError(
            f"order {int(order_id)} payout is no longer {expected}",
            expected=expected,
            actual=_current_value(order_id, "payout_status"),
        )
    _stage_transition(order_id, "payout_status", expected, target, actor=actor, reason=reason, metadata=metadata)


def _freeze_fees(order: Order) -> tuple[fee_calculator.FeeBreakdown, dict]:
    """Read the active schedule once and return the order columns that pin it."""
    schedule = fee_calculator.active_fee_schedule()
    breakdown = fee_calculator.compute_fees(int(order.amount_minor or 0), schedule)
    snapshot = {"schedule": schedule.to_dict(), "breakdown": breakdown.to_dict()}
    return breakdown, {
        "buyer_fee_minor": breakdown.buyer_fee_minor,
        "seller_commission_minor": breakdown.seller_commission_minor,
        "payout_amount_minor": breakdown.net_payout_minor,
        "fee_schedule_version": schedule.version,
        "fee_snapshot_json": json.dumps(snapshot),
    }


def apply_payment_confirmed(event: PaymentConfirmed) -> dict:
    """pending -> paid, freezing the fee split. Replays of the same payment are no-ops."""
    order = get_order(event.order_id)
    if order.status != OrderStatus.PENDING:
        if order.status in OrderStatus.TERMINAL:
            log_event(
                "payment_after_close",
                subject_type="order",
                subject_id=int(order.id),
                severity="WARNING",
                idempotency_key=f"payment_after_close:{int(order.id)}:{event.reference}"[:180],
                metadata={"status": order.status, "reference": event.reference},
            )
            db.session.commit()
            return {"ok": True, "ignored": True, "order_id": int(order.id), "status": order.status}
        return {"ok": True, "duplicate": True, "order_id": int(order.id), "status": order.status}

    if event.amount_minor is not None and int(event.amount_minor) < int(order.amount_minor or 0):
        raise ValidationError(
            "payment amount is lower than the order amount",
            code="AMOUNT_MISMATCH",
            details={"expected_minor": int(order.amount_minor or 0), "received_minor": int(event.amount_minor)},
        )
    if event.currency and order.currency and event.currency.upper() != order.currency.upper():
        raise ValidationError("payment currency does not match the order", code="CURRENCY_MISMATCH")

    breakdown, values = _freeze_fees(order)
    values["payment_reference"] = event.reference or None
    try:
        advance_status(
            int(order.id),
            expected=OrderStatus.PENDING,
            target=OrderStatus.PAID,
            values=values,
            actor={"type": "payment_provider"},
            reason="payment_confirmed",
            metadata={"reference": event.reference},
        )
    except StaleStateError:
        db.session.rollback()
        return {"ok": True, "duplicate": True, "order_id": int(order.id)}

    log_event(
        "order_paid",
        subject_type="order",
        subject_id=int(order.id),
        idempotency_key=f"order_paid:{int(order.id)}",
        metadata={"reference": event.reference, **breakdown.to_dict()},
    )
    db.session.commit()
    notify(
        int(order.seller_id),
        "Order paid",
        f"Order #{int(order.id)} has been paid. Please ship it.",
        {"order_id": int(order.id)},
    )
    return {"ok": True, "order_id": int(order.id), "status": OrderStatus.PAID, "fees": breakdown.to_dict()}


def apply_payment_failed(event: PaymentFailed) -> dict:
    order = get_order(event.order_id)
    log_event(
        "payment_failed",
        subject_type="order",
        subject_id=int(order.id),
        severity="WARNING",
        metadata={"reference": event.reference, "reason": event.reason, "status": order.status},
    )
    db.session.commit()
    if order.status == OrderStatus.PENDING:
        notify(
            int(order.buyer_id),
            "Payment failed",
            f"Payment for order #{int(order.id)} did not go through.",
            {"order_id": int(order.id), "reason": event.reason},
        )
    return {"ok": True, "order_id": int(order.id), "status": order.status}


def mark_shipped(order_id: int, *, seller_id: int, tracking_number: str, carrier: str = "") -> Order:
    tracking_number = (tracking_number or "").strip()
    carrier = (carrier or "").strip()
    if not tracking_number:
        raise ValidationError("tracking_number is required", code="TRACKING_REQUIRED")
    order = get_order(order_id)
    if int(order.seller_id) != int(seller_id):
        raise AuthorizationError("only the seller can ship this order")
    if order.status != OrderStatus.PAID:
        raise PolicyViolationError(f"order is {order.status}, expected paid", code="ORDER_NOT_PAID")
    advance_status(
        int(order.id),
        expected=OrderStatus.PAID,
        target=OrderStatus.SHIPPED,
        values={"tracking_number": tracking_number[:120], "carrier": carrier[:64] or None},
        actor={"type": "seller", "id": int(seller_id)},
        reason="tracking_supplied",
        metadata={"tracking_number": tracking_number, "carrier": carrier},
    )
    log_event(
        "order_shipped",
        actor_user_id=int(seller_id),
        subject_type="order",
        subject_id=int(order.id),
        metadata={"carrier": carrier},
    )
    db.session.commit()
    notify(
        int(order.buyer_id),
        "Order shipped",
        f"Order #{int(order.id)} is on its way ({carrier or 'carrier'} {tracking_number}).",
        {"order_id": int(order.id), "tracking_number": tracking_number, "carrier": carrier},
    )
    return order


def confirm_delivery(order_id: int, *, buyer_id: int | None = None, actor=None) -> Order:
    """shipped -> delivered, by the buyer or by a system actor enforcing a delivery timeout."""
    order = get_order(order_id)
    if buyer_id is not None:
        if int(order.buyer_id) != int(buyer_id):
            raise AuthorizationError("only the buyer can confirm delivery")
        actor = {"type": "buyer", "id": int(buyer_id)}
    elif actor is None:
        actor = {"type": "system"}
    if order.status != OrderStatus.SHIPPED:
        raise PolicyViolationError(f"order is {order.status}, expected shipped", code="ORDER_NOT_SHIPPED")
    advance_status(
        int(order.id),
        expected=OrderStatus.SHIPPED,
        target=OrderStatus.DELIVERED,
        actor=actor,
        reason="delivery_confirmed",
    )
    log_event(
        "order_delivered",
        actor_user_id=buyer_id,
        subject_type="order",
        subject_id=int(order.id),
        idempotency_key=f"order_delivered:{int(order.id)}",
    )
    db.session.commit()
    notify(
        int(order.seller_id),
        "Order delivered",
        f"Order #{int(order.id)} was delivered. Your payout will be scheduled.",
        {"order_id": int(order.id)},
    )
    return order


def force_order_status(order_id: int, to_status: str, *, admin: User, reason: str) -> Order:
    """Admin override of the shipping axis, audited with before/after values."""
    target = (to_status or "").strip().lower()
    reason = (reason or "").strip()
    if target not in OrderStatus.ALL:
        raise ValidationError(f"status must be one of {sorted(OrderStatus.ALL)}", code="INVALID_STATUS")
    if len(reason) < 3:
        raise ValidationError("a reason is required to force an order status", code="REASON_REQUIRED")
    order = get_order(order_id)
    before = order.to_dict()
    current = order.status
    if current == target:
        raise ValidationError(f"order is already {target}", code="NO_CHANGE")

    values: dict = {}
    payout_target = None
    if target in OrderStatus.TERMINAL:
        if order.payout_status in (PayoutStatus.PENDING, PayoutStatus.PROCESSING, PayoutStatus.FAILED):
            raise PolicyViolationError(
                "the order has an open payout; use the refund workflow",
                code="PAYOUT_OPEN",
                details={"payout_status": order.payout_status},
            )
        if order.payout_status == PayoutStatus.NONE:
            payout_target = PayoutStatus.CANCELLED
        if order.payout_status == PayoutStatus.COMPLETED and target == OrderStatus.REFUNDED:
            values["requires_manual_review"] = True
            values["manual_review_reason"] = "forced_refund_after_payout"
    elif target in (OrderStatus.PENDING, OrderStatus.PAID, OrderStatus.SHIPPED):
        if order.payout_status not in (PayoutStatus.NONE, PayoutStatus.CANCELLED):
            raise PolicyViolationError(
                "the order already has a payout; it cannot move back before delivery",
                code="PAYOUT_OPEN",
                details={"payout_status": order.payout_status},
            )
    # Anything past pending must carry the frozen fee split, as a real payment would.
    if target in (OrderStatus.PAID, OrderStatus.SHIPPED, OrderStatus.DELIVERED) and order.payout_amount_minor is None:
        _, fee_values = _freeze_fees(order)
        values.update(fee_values)

    everything = {s: OrderStatus.ALL - {s} for s in OrderStatus.ALL}
    actor = {"type": "admin", "id": int(admin.id)}
    advance_status(
        int(order.id),
        expected=current,
        target=target,
        allowed=everything,
        values=values,
        actor=actor,
        reason=f"forced: {reason}",
    )
    if payout_target is not None:
        advance_payout_status(
            int(order.id),
            expected=PayoutStatus.NONE,
            target=payout_target,
            actor=actor,
            reason="order_force_closed",
        )
    db.session.refresh(order)
    after = order.to_dict()
    stage_audit(
        actor_id=int(admin.id),
        action="order_status_forced",
        target_type="order",
        target_id=int(order.id),
        old_values={"status": before["status"], "payout_status": before["payout_status"]},
        new_values={"status": after["status"], "payout_status": after["payout_status"]},
        meta={"reason": reason},
    )
    log_event(
        "order_status_forced",
        actor_user_id=int(admin.id),
        subject_type="order",
        subject_id=int(order.id),
        severity="WARNING",
        metadata={"from": current, "to": target, "reason": reason},
    )
    db.session.commit()
    logger.warning("order_status_forced order_id=%s from=%s to=%s admin_id=%s", int(order.id), current, target, int(admin.id))
    return order
