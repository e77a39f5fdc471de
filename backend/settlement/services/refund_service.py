from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError

from settlement.errors import (
    AuthorizationError,
    InvariantViolationError,
    NotFoundError,
    PolicyViolationError,
    SettlementError,
    StaleStateError,
    ValidationError,
)
from settlement.extensions import db
from settlement.models import Order, Payout, PayoutClawback, Refund, User
from settlement.services.ledger import compare_and_set, stage_audit
from settlement.services.listing_catalog import relist_after_refund
from settlement.services.notification_service import notify, notify_admins
from settlement.services.order_lifecycle import (
    OrderStatus,
    PayoutStatus,
    advance_payout_status,
    advance_status,
    get_order,
)
from settlement.services.settlement_service import cancel_payout_for_refund
from settlement.utils.env import refund_max_requests_per_day, refund_reason_min_length, refund_window
from settlement.utils.events import log_event

logger = logging.getLogger(__name__)


class RefundStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    REJECTED = "rejected"

    OPEN = (PENDING, PROCESSING)


class ClawbackStatus:
    OPEN = "open"
    RECOVERED = "recovered"
    WRITTEN_OFF = "written_off"


def _now():
    return datetime.utcnow()


def _clean_reason(reason: str | None) -> str:
    text = (reason or "").strip()
    minimum = refund_reason_min_length()
    if len(text) < minimum:
        raise ValidationError(f"reason must be at least {minimum} characters", code="REASON_TOO_SHORT")
    return text[:2000]


def _resolve_amount(order: Order, amount_minor) -> int:
    total = int(order.amount_minor or 0)
    if amount_minor is None:
        return total
    if isinstance(amount_minor, bool) or not isinstance(amount_minor, int):
        raise ValidationError("amount must be an integer number of minor units", code="INVALID_AMOUNT")
    if amount_minor <= 0 or amount_minor > total:
        raise ValidationError(
            "amount must be positive and no more than the order amount",
            code="INVALID_AMOUNT",
            details={"order_amount_minor": total},
        )
    return int(amount_minor)


def _open_refund(order_id: int) -> Refund | None:
    return Refund.query.filter(Refund.order_id == int(order_id), Refund.status.in_(RefundStatus.OPEN)).first()


def _get_refund(refund_id: int) -> Refund:
    refund = db.session.get(Refund, int(refund_id))
    if refund is None:
        raise NotFoundError("refund not found", code="REFUND_NOT_FOUND")
    return refund


def _check_refundable(order: Order) -> None:
    if order.status == OrderStatus.REFUNDED:
        raise PolicyViolationError("order is already refunded", code="ALREADY_REFUNDED")
    if order.status not in OrderStatus.REFUNDABLE:
        raise PolicyViolationError(f"order is {order.status} and cannot be refunded", code="ORDER_NOT_REFUNDABLE")
    if _open_refund(int(order.id)) is not None:
        raise PolicyViolationError("a refund is already open for this order", code="REFUND_ALREADY_OPEN")


def request_refund(
    order_id: int,
    *,
    requester_id: int,
    reason: str,
    amount_minor: int | None = None,
    now: datetime | None = None,
) -> Refund:
    """Buyer asks for money back. Nothing moves until an admin approves."""
    now = now or _now()
    text = _clean_reason(reason)
    order = get_order(order_id)
    amount = _resolve_amount(order, amount_minor)
    if int(order.buyer_id) != int(requester_id):
        raise AuthorizationError("only the buyer can request a refund for this order")
    if order.created_at and now - order.created_at > refund_window():
        raise PolicyViolationError(
            f"refunds must be requested within {refund_window().days} days of the order",
            code="REFUND_WINDOW_EXPIRED",
        )
    _check_refundable(order)
    recent = Refund.query.filter(
        Refund.requested_by == int(requester_id),
        Refund.created_at >= now - timedelta(hours=24),
    ).count()
    if recent >= refund_max_requests_per_day():
        raise PolicyViolationError("too many refund requests in the last 24 hours", code="REFUND_RATE_LIMITED")

    refund = Refund(
        order_id=int(order.id),
        buyer_id=int(order.buyer_id),
        seller_id=int(order.seller_id),
        amount_minor=amount,
        reason=text,
        status=RefundStatus.PENDING,
        requested_by=int(requester_id),
        requires_admin_approval=True,
        created_at=now,
    )
    try:
        db.session.add(refund)
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        raise PolicyViolationError("a refund is already open for this order", code="REFUND_ALREADY_OPEN")
    order.refund_status = "pending_approval"
    order.updated_at = _now()
    log_event(
        "refund_requested",
        actor_user_id=int(requester_id),
        subject_type="refund",
        subject_id=int(refund.id),
        metadata={"order_id": int(order.id), "amount_minor": amount},
    )
    db.session.commit()
    meta = {"order_id": int(order.id), "refund_id": int(refund.id)}
    notify(int(order.buyer_id), "Refund requested", f"Your refund request for order #{int(order.id)} is awaiting review.", meta)
    notify(int(order.seller_id), "Refund requested", f"The buyer of order #{int(order.id)} has requested a refund.", meta)
    return refund


def _settle_payout_side(order: Order, refund: Refund, amount: int, *, full: bool, actor: dict) -> dict:
    current = order.payout_status or PayoutStatus.NONE
    if current == PayoutStatus.COMPLETED:
        payout = Payout.query.filter_by(order_id=int(order.id)).first()
        owed = amount if payout is None else min(amount, int(payout.net_amount_minor or 0))
        clawback = PayoutClawback(
            order_id=int(order.id),
            payout_id=int(payout.id) if payout is not None else None,
            refund_id=int(refund.id),
            seller_id=int(order.seller_id),
            amount_minor=owed,
            status=ClawbackStatus.OPEN,
        )
        db.session.add(clawback)
        db.session.flush()
        log_event(
            "clawback_required",
            subject_type="order",
            subject_id=int(order.id),
            severity="WARNING",
            idempotency_key=f"clawback_required:{int(refund.id)}",
            metadata={"clawback_id": int(clawback.id), "amount_minor": owed},
        )
        return {"requires_manual_review": True, "manual_review_reason": "refund_after_payout", "clawback_id": int(clawback.id)}

    action = cancel_payout_for_refund(order, reason=f"refund:{int(refund.id)}", actor=actor)
    if not full and action == "cancelled":
        return {"requires_manual_review": True, "manual_review_reason": "partial_refund_settlement"}
    return {}


def _execute_refund(refund: Refund, *, admin_id: int, amount_minor: int | None, note: str | None) -> dict:
    order = get_order(refund.order_id)
    if order.status == OrderStatus.REFUNDED:
        log_event(
            "invariant_violation",
            actor_user_id=int(admin_id),
            subject_type="refund",
            subject_id=int(refund.id),
            severity="CRITICAL",
            metadata={"check": "refund_against_refunded_order", "order_id": int(order.id)},
        )
        db.session.commit()
        logger.critical("refund_against_refunded_order refund_id=%s order_id=%s", int(refund.id), int(order.id))
        raise InvariantViolationError(
            "order is already refunded",
            code="ORDER_ALREADY_REFUNDED",
            details={"refund_id": int(refund.id), "order_id": int(order.id)},
        )
    if order.status not in OrderStatus.REFUNDABLE:
        raise PolicyViolationError(f"order is {order.status} and cannot be refunded", code="ORDER_NOT_REFUNDABLE")
    if order.payout_status == PayoutStatus.PROCESSING:
        raise PolicyViolationError(
            "the payout for this order is already with the processor",
            code="PAYOUT_IN_FLIGHT",
            details={"order_id": int(order.id)},
        )
    amount = _resolve_amount(order, amount_minor if amount_minor is not None else int(refund.amount_minor))
    full = amount >= int(order.amount_minor or 0)
    target = OrderStatus.REFUNDED if full else OrderStatus.PARTIALLY_REFUNDED
    actor = {"type": "admin", "id": int(admin_id)}
    before = {"status": order.status, "payout_status": order.payout_status}

    try:
        if compare_and_set(
            Refund,
            int(refund.id),
            expected={"status": RefundStatus.PENDING},
            values={"status": RefundStatus.PROCESSING, "approved_by": int(admin_id)},
        ) == 0:
            raise StaleStateError(f"refund {int(refund.id)} is no longer pending", expected=RefundStatus.PENDING)

        review = _settle_payout_side(order, refund, amount, full=full, actor=actor)
        values = {
            "refund_amount_minor": amount,
            "refund_status": "approved",
        }
        if review.get("requires_manual_review"):
            values["requires_manual_review"] = True
            values["manual_review_reason"] = review["manual_review_reason"]
        advance_status(
            int(order.id),
            expected=before["status"],
            target=target,
            allowed=OrderStatus.REVERSAL,
            values=values,
            actor=actor,
            reason=f"refund:{int(refund.id)}",
            metadata={"amount_minor": amount},
        )
        if full:
            relist_after_refund(order.listing_id)

        compare_and_set(
            Refund,
            int(refund.id),
            expected={"status": RefundStatus.PROCESSING},
            values={
                "status": RefundStatus.COMPLETED,
                "amount_minor": amount,
                "processor_refund_id": f"REF-{uuid.uuid4().hex[:12].upper()}",
                "admin_note": (note or "").strip() or None,
                "processed_at": _now(),
            },
        )
        db.session.refresh(order)
        stage_audit(
            actor_id=int(admin_id),
            action="refund_approved",
            target_type="refund",
            target_id=int(refund.id),
            old_values=before,
            new_values={"status": order.status, "payout_status": order.payout_status, "amount_minor": amount},
            meta={"note": note or "", "clawback_id": review.get("clawback_id")},
        )
        log_event(
            "refund_completed",
            actor_user_id=int(admin_id),
            subject_type="refund",
            subject_id=int(refund.id),
            idempotency_key=f"refund_completed:{int(refund.id)}",
            metadata={"order_id": int(order.id), "amount_minor": amount, "full": full},
        )
    except SettlementError:
        db.session.rollback()
        raise
    return {"order": order, "amount_minor": amount, "full": full, "clawback_id": review.get("clawback_id")}


def _announce_refund(refund: Refund, result: dict) -> None:
    order = result["order"]
    meta = {"order_id": int(order.id), "refund_id": int(refund.id), "amount_minor": result["amount_minor"]}
    notify(int(order.buyer_id), "Refund approved", f"Your refund for order #{int(order.id)} has been approved.", meta)
    notify(int(order.seller_id), "Order refunded", f"Order #{int(order.id)} has been refunded to the buyer.", meta)
    if result.get("clawback_id"):
        notify_admins(
            "Clawback required",
            f"Order #{int(order.id)} was refunded after its payout completed; recover funds from the seller.",
            {**meta, "clawback_id": result["clawback_id"]},
        )


def approve_refund(refund_id: int, *, admin_id: int, amount_minor: int | None = None, note: str | None = None) -> Refund:
    refund = _get_refund(refund_id)
    if refund.status == RefundStatus.COMPLETED:
        return refund
    if refund.status == RefundStatus.REJECTED:
        raise PolicyViolationError("refund was rejected", code="REFUND_REJECTED")
    if refund.status != RefundStatus.PENDING:
        raise StaleStateError("refund is being processed", expected=RefundStatus.PENDING, actual=refund.status)
    result = _execute_refund(refund, admin_id=admin_id, amount_minor=amount_minor, note=note)
    db.session.commit()
    db.session.refresh(refund)
    _announce_refund(refund, result)
    return refund


def admin_refund_order(order_id: int, *, admin_id: int, reason: str, amount_minor: int | None = None) -> Refund:
    """Create and execute a refund in one step, without the buyer window or rate limit."""
    text = _clean_reason(reason)
    order = get_order(order_id)
    amount = _resolve_amount(order, amount_minor)
    _check_refundable(order)
    if order.payout_status == PayoutStatus.PROCESSING:
        raise PolicyViolationError(
            "the payout for this order is already with the processor",
            code="PAYOUT_IN_FLIGHT",
            details={"order_id": int(order.id)},
        )
    refund = Refund(
        order_id=int(order.id),
        buyer_id=int(order.buyer_id),
        seller_id=int(order.seller_id),
        amount_minor=amount,
        reason=text,
        status=RefundStatus.PENDING,
        requested_by=int(admin_id),
        requires_admin_approval=False,
    )
    try:
        db.session.add(refund)
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        raise PolicyViolationError("a refund is already open for this order", code="REFUND_ALREADY_OPEN")
    result = _execute_refund(refund, admin_id=admin_id, amount_minor=amount, note=text)
    db.session.commit()
    db.session.refresh(refund)
    _announce_refund(refund, result)
    return refund


def reject_refund(refund_id: int, *, admin_id: int, note: str = "") -> Refund:
    refund = _get_refund(refund_id)
    if refund.status == RefundStatus.REJECTED:
        return refund
    if refund.status != RefundStatus.PENDING:
        raise PolicyViolationError(f"refund is {refund.status}", code="REFUND_NOT_PENDING")
    if compare_and_set(
        Refund,
        int(refund.id),
        expected={"status": RefundStatus.PENDING},
        values={"status": RefundStatus.REJECTED, "approved_by": int(admin_id), "admin_note": (note or "").strip() or None, "processed_at": _now()},
    ) == 0:
        raise StaleStateError(f"refund {int(refund.id)} is no longer pending", expected=RefundStatus.PENDING)
    order = get_order(refund.order_id)
    order.refund_status = "rejected"
    order.updated_at = _now()
    stage_audit(
        actor_id=int(admin_id),
        action="refund_rejected",
        target_type="refund",
        target_id=int(refund.id),
        old_values={"status": RefundStatus.PENDING},
        new_values={"status": RefundStatus.REJECTED},
        meta={"note": note or ""},
    )
    log_event(
        "refund_rejected",
        actor_user_id=int(admin_id),
        subject_type="refund",
        subject_id=int(refund.id),
        metadata={"order_id": int(order.id)},
    )
    db.session.commit()
    db.session.refresh(refund)
    notify(
        int(refund.buyer_id),
        "Refund declined",
        f"Your refund request for order #{int(order.id)} was declined.",
        {"order_id": int(order.id), "refund_id": int(refund.id), "note": note or ""},
    )
    return refund


def cancel_unpaid_order(order_id: int, *, actor_user: User, reason: str = "") -> Order:
    order = get_order(order_id)
    if not actor_user.is_admin and int(order.buyer_id) != int(actor_user.id):
        raise AuthorizationError("only the buyer or an admin can cancel this order")
    if order.status != OrderStatus.PENDING:
        raise PolicyViolationError(f"order is {order.status}; only unpaid orders can be cancelled", code="ORDER_NOT_PENDING")
    actor = {"type": "admin" if actor_user.is_admin else "buyer", "id": int(actor_user.id)}
    try:
        advance_status(
            int(order.id),
            expected=OrderStatus.PENDING,
            target=OrderStatus.CANCELLED,
            allowed=OrderStatus.REVERSAL,
            actor=actor,
            reason=reason or "unpaid_cancelled",
        )
        if order.payout_status == PayoutStatus.NONE:
            advance_payout_status(
                int(order.id),
                expected=PayoutStatus.NONE,
                target=PayoutStatus.CANCELLED,
                actor=actor,
                reason="order_cancelled",
            )
        open_refund = _open_refund(int(order.id))
        if open_refund is not None:
            open_refund.status = RefundStatus.REJECTED
            open_refund.admin_note = "order_cancelled"
            open_refund.processed_at = _now()
            order.refund_status = "rejected"
        log_event(
            "order_cancelled",
            actor_user_id=int(actor_user.id),
            subject_type="order",
            subject_id=int(order.id),
            metadata={"reason": reason or ""},
        )
        db.session.commit()
    except SettlementError:
        db.session.rollback()
        raise
    meta = {"order_id": int(order.id)}
    notify(int(order.buyer_id), "Order cancelled", f"Order #{int(order.id)} has been cancelled.", meta)
    notify(int(order.seller_id), "Order cancelled", f"Order #{int(order.id)} was cancelled before payment.", meta)
    return order


def resolve_clawback(clawback_id: int, *, admin_id: int, status: str, note: str = "") -> PayoutClawback:
    status = (status or "").strip().lower()
    if status not in (ClawbackStatus.RECOVERED, ClawbackStatus.WRITTEN_OFF):
        raise ValidationError("status must be recovered or written_off", code="INVALID_CLAWBACK_STATUS")
    clawback = db.session.get(PayoutClawback, int(clawback_id))
    if clawback is None:
        raise NotFoundError("clawback not found", code="CLAWBACK_NOT_FOUND")
    if clawback.status != ClawbackStatus.OPEN:
        raise PolicyViolationError(f"clawback is already {clawback.status}", code="CLAWBACK_CLOSED")
    clawback.status = status
    clawback.resolved_by = int(admin_id)
    clawback.resolved_at = _now()
    clawback.note = (note or "").strip() or None
    stage_audit(
        actor_id=int(admin_id),
        action="clawback_resolved",
        target_type="payout_clawback",
        target_id=int(clawback.id),
        old_values={"status": ClawbackStatus.OPEN},
        new_values={"status": status},
        meta={"note": note or ""},
    )
    log_event(
        "clawback_resolved",
        actor_user_id=int(admin_id),
        subject_type="payout_clawback",
        subject_id=int(clawback.id),
        severity="WARNING" if status == ClawbackStatus.WRITTEN_OFF else "INFO",
        metadata={"order_id": int(clawback.order_id), "amount_minor": int(clawback.amount_minor), "status": status},
    )
    db.session.commit()
    return clawback
