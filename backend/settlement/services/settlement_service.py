"""Settlement (payout) engine.

Three idempotent sweeps move money for delivered orders:

  enqueue_eligible_payouts  delivered + payout none  -> Payout(pending)
  submit_pending            Payout pending           -> processing (batch id recorded)
  reconcile_processing      Payout processing        -> completed | failed

Every status change is a conditional update on the expected prior value, so
overlapping runs of the same sweep cannot double-advance a row. No ledger
lock is held across a processor call: `submit_pending` claims a row
(pending -> processing) and commits before talking to the processor.
"""
from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.exc import IntegrityError

from settlement.errors import (
    ExternalServiceError,
    NotFoundError,
    PolicyViolationError,
    StaleStateError,
)
from settlement.extensions import db
from settlement.integrations.payouts.base import PayoutProcessor
from settlement.integrations.payouts.factory import build_payout_processor
from settlement.models import Order, Payout, User
from settlement.services import risk_engine
from settlement.services.ledger import (
    adjust_pending_balance,
    atomic_add,
    compare_and_set,
    read_risk_profile,
    stage_audit,
)
from settlement.services.notification_service import notify, notify_admins
from settlement.services.order_lifecycle import OrderStatus, PayoutStatus, advance_payout_status
from settlement.services.payment_events import PayoutStatusChanged
from settlement.utils.env import (
    payout_claim_timeout,
    payout_currency,
    payout_poll_failure_limit,
    payout_scan_limit,
    payout_submit_failure_limit,
)
from settlement.utils.events import log_event
from settlement.utils.settings import get_settings

logger = logging.getLogger(__name__)

SYSTEM = {"type": "settlement_engine"}


def _now():
    return datetime.utcnow()


def _processor(processor: PayoutProcessor | None) -> PayoutProcessor:
    return processor if processor is not None else build_payout_processor(get_settings())


def payout_gate(seller_id: int) -> tuple[bool, str]:
    """The single check every payout must pass before money moves."""
    profile = read_risk_profile(int(seller_id))
    if profile is None:
        return False, "kyc_not_approved"
    if bool(profile.withdrawal_blocked):
        return False, "withdrawal_blocked"
    if (profile.kyc_status or "not_started") != "approved":
        return False, "kyc_not_approved"
    return True, ""


def _log_hold(order: Order, reason: str) -> None:
    day = _now().strftime("%Y%m%d")
    log_event(
        "payout_held",
        subject_type="order",
        subject_id=int(order.id),
        severity="WARNING",
        idempotency_key=f"payout_held:{int(order.id)}:{reason}:{day}",
        metadata={"seller_id": int(order.seller_id), "reason": reason},
    )
    db.session.commit()


def _set_payout(payout_id: int, *, expected: dict, values: dict) -> None:
    vals = dict(values)
    vals["updated_at"] = _now()
    if compare_and_set(Payout, payout_id, expected=expected, values=vals) == 0:
        current = (
            Payout.query.filter_by(id=int(payout_id))
            .execution_options(populate_existing=True)
            .first()
        )
        raise StaleStateError(
            f"payout {int(payout_id)} changed underneath",
            expected=str(expected.get("status") or ""),
            actual=current.status if current is not None else None,
        )


def _create_payout(order: Order) -> Payout | None:
    net = order.payout_amount_minor
    if net is None:
        log_event(
            "invariant_violation",
            subject_type="order",
            subject_id=int(order.id),
            severity="CRITICAL",
            idempotency_key=f"invariant:missing_payout_amount:{int(order.id)}",
            metadata={"check": "payout_amount_frozen_at_paid"},
        )
        db.session.commit()
        logger.critical("order_missing_payout_amount order_id=%s", int(order.id))
        return None

    if order.payout_status == PayoutStatus.NONE:
        advance_payout_status(
            int(order.id),
            expected=PayoutStatus.NONE,
            target=PayoutStatus.PENDING,
            guard={"status": OrderStatus.DELIVERED},
            actor=SYSTEM,
            reason="payout_enqueued",
        )
    payout = Payout(
        order_id=int(order.id),
        seller_id=int(order.seller_id),
        net_amount_minor=int(net),
        currency=(order.currency or payout_currency()).upper(),
        status=PayoutStatus.PENDING,
    )
    db.session.add(payout)
    db.session.flush()
    adjust_pending_balance(int(order.seller_id), int(net))
    log_event(
        "payout_enqueued",
        subject_type="payout",
        subject_id=int(payout.id),
        idempotency_key=f"payout_enqueued:{int(order.id)}",
        metadata={"order_id": int(order.id), "seller_id": int(order.seller_id), "net_amount_minor": int(net)},
    )
    db.session.commit()
    return payout


def enqueue_eligible_payouts(limit: int | None = None) -> dict:
    """Create a pending Payout for each delivered order that has none yet.

    Held sellers are skipped with the order left at `none`; the next run
    re-evaluates them.
    """
    limit = int(limit or payout_scan_limit())
    created = 0
    held = 0
    stale = 0
    errors = 0

    missing_payout = ~Order.id.in_(db.select(Payout.order_id))
    rows = (
        Order.query.filter(
            Order.status == OrderStatus.DELIVERED,
            db.or_(
                Order.payout_status == PayoutStatus.NONE,
                db.and_(Order.payout_status == PayoutStatus.PENDING, missing_payout),
            ),
        )
        .order_by(Order.id.asc())
        .limit(limit)
        .all()
    )
    for order in rows:
        order_id = int(order.id)
        seller_id = int(order.seller_id)
        try:
            ok, reason = payout_gate(seller_id)
            if not ok:
                _log_hold(order, reason)
                held += 1
                continue
            payout = _create_payout(order)
            if payout is None:
                errors += 1
                continue
            created += 1
        except (StaleStateError, IntegrityError):
            db.session.rollback()
            stale += 1
            continue
        except Exception:
            db.session.rollback()
            logger.exception("payout_enqueue_failed order_id=%s", order_id)
            errors += 1
            continue
        # Every new payout is a withdrawal request the velocity rule must see.
        try:
            risk_engine.check_withdrawal(seller_id)
        except Exception:
            db.session.rollback()
            logger.exception("withdrawal_check_failed seller_id=%s", seller_id)

    return {"scanned": len(rows), "created": created, "held": held, "stale": stale, "errors": errors}


def _claim(payout: Payout) -> None:
    _set_payout(
        int(payout.id),
        expected={"status": PayoutStatus.PENDING, "batch_id": None},
        values={"status": PayoutStatus.PROCESSING},
    )
    advance_payout_status(
        int(payout.order_id),
        expected=PayoutStatus.PENDING,
        target=PayoutStatus.PROCESSING,
        actor=SYSTEM,
        reason="payout_claimed",
    )
    db.session.commit()


def _release_claim(payout: Payout, error: str) -> int:
    _set_payout(
        int(payout.id),
        expected={"status": PayoutStatus.PROCESSING, "batch_id": None},
        values={"status": PayoutStatus.PENDING, "last_error": error[:1000]},
    )
    advance_payout_status(
        int(payout.order_id),
        expected=PayoutStatus.PROCESSING,
        target=PayoutStatus.PENDING,
        actor=SYSTEM,
        reason="payout_submit_failed",
        metadata={"error": error[:200]},
    )
    atomic_add(Payout, {"id": int(payout.id)}, "submit_failures", 1)
    db.session.commit()
    db.session.refresh(payout)
    return int(payout.submit_failures or 0)


def _mark_failed(payout: Payout, *, from_status: str, error: str, escalate: bool) -> None:
    _set_payout(
        int(payout.id),
        expected={"status": from_status},
        values={"status": PayoutStatus.FAILED, "last_error": error[:1000], "processed_at": _now()},
    )
    advance_payout_status(
        int(payout.order_id),
        expected=from_status,
        target=PayoutStatus.FAILED,
        actor=SYSTEM,
        reason="payout_failed",
        metadata={"error": error[:200]},
    )
    log_event(
        "payout_escalated" if escalate else "payout_failed",
        subject_type="payout",
        subject_id=int(payout.id),
        severity="CRITICAL" if escalate else "WARNING",
        idempotency_key=f"payout_failed:{int(payout.id)}:{int(payout.retry_generation or 0)}",
        metadata={"order_id": int(payout.order_id), "error": error[:200]},
    )
    db.session.commit()
    notify(
        int(payout.seller_id),
        "Payout failed",
        f"The payout for order #{int(payout.order_id)} could not be completed. Our team will follow up.",
        {"payout_id": int(payout.id), "order_id": int(payout.order_id)},
    )
    notify_admins(
        "Payout needs attention",
        f"Payout #{int(payout.id)} for order #{int(payout.order_id)} failed: {error[:120]}",
        {"payout_id": int(payout.id), "order_id": int(payout.order_id), "escalated": bool(escalate)},
    )


def _submit_one(payout: Payout, processor: PayoutProcessor) -> str:
    ok, reason = payout_gate(int(payout.seller_id))
    if not ok:
        log_event(
            "payout_submit_held",
            subject_type="payout",
            subject_id=int(payout.id),
            severity="WARNING",
            idempotency_key=f"payout_submit_held:{int(payout.id)}:{reason}:{_now().strftime('%Y%m%d')}",
            metadata={"seller_id": int(payout.seller_id), "reason": reason},
        )
        db.session.commit()
        return "held"
    seller = db.session.get(User, int(payout.seller_id))
    recipient = (getattr(seller, "payout_recipient_code", None) or "").strip()
    if not recipient:
        log_event(
            "payout_submit_held",
            subject_type="payout",
            subject_id=int(payout.id),
            severity="WARNING",
            idempotency_key=f"payout_submit_held:{int(payout.id)}:no_recipient:{_now().strftime('%Y%m%d')}",
            metadata={"seller_id": int(payout.seller_id), "reason": "no_recipient"},
        )
        db.session.commit()
        return "held"

    _claim(payout)
    try:
        result = processor.submit(
            idempotency_key=payout.idempotency_key,
            recipient=recipient,
            amount_minor=int(payout.net_amount_minor),
            currency=payout.currency or payout_currency(),
        )
    except ExternalServiceError as exc:
        failures = _release_claim(payout, exc.message)
        logger.warning("payout_submit_failed payout_id=%s failures=%s err=%s", int(payout.id), failures, exc.message)
        if failures >= payout_submit_failure_limit():
            _mark_failed(payout, from_status=PayoutStatus.PENDING, error=exc.message, escalate=True)
            return "failed"
        return "retry"

    _set_payout(
        int(payout.id),
        expected={"status": PayoutStatus.PROCESSING, "batch_id": None},
        values={
            "batch_id": (result.batch_id or "")[:128] or None,
            "submitted_at": _now(),
            "submit_failures": 0,
            "poll_failures": 0,
            "last_error": None,
        },
    )
    log_event(
        "payout_submitted",
        subject_type="payout",
        subject_id=int(payout.id),
        idempotency_key=f"payout_submitted:{payout.idempotency_key}",
        metadata={"order_id": int(payout.order_id), "batch_id": result.batch_id},
    )
    db.session.commit()
    return "submitted"


def submit_pending(limit: int | None = None, processor: PayoutProcessor | None = None) -> dict:
    processor = _processor(processor)
    limit = int(limit or payout_scan_limit())
    counts = {"submitted": 0, "held": 0, "retry": 0, "failed": 0, "stale": 0, "errors": 0}
    rows = (
        Payout.query.filter(Payout.status == PayoutStatus.PENDING, Payout.batch_id.is_(None))
        .order_by(Payout.id.asc())
        .limit(limit)
        .all()
    )
    for payout in rows:
        try:
            counts[_submit_one(payout, processor)] += 1
        except StaleStateError:
            db.session.rollback()
            counts["stale"] += 1
        except Exception:
            db.session.rollback()
            logger.exception("payout_submit_error payout_id=%s", int(payout.id))
            counts["errors"] += 1
    counts["scanned"] = len(rows)
    return counts


def _complete(payout: Payout) -> None:
    now = _now()
    _set_payout(
        int(payout.id),
        expected={"status": PayoutStatus.PROCESSING},
        values={"status": PayoutStatus.COMPLETED, "processed_at": now, "poll_failures": 0},
    )
    advance_payout_status(
        int(payout.order_id),
        expected=PayoutStatus.PROCESSING,
        target=PayoutStatus.COMPLETED,
        values={"payout_completed_at": now},
        actor=SYSTEM,
        reason="payout_completed",
    )
    adjust_pending_balance(int(payout.seller_id), -int(payout.net_amount_minor))
    log_event(
        "payout_completed",
        subject_type="payout",
        subject_id=int(payout.id),
        idempotency_key=f"payout_completed:{int(payout.id)}",
        metadata={"order_id": int(payout.order_id), "batch_id": payout.batch_id, "net_amount_minor": int(payout.net_amount_minor)},
    )
    db.session.commit()
    notify(
        int(payout.seller_id),
        "Payout sent",
        f"Your payout for order #{int(payout.order_id)} has been completed.",
        {"payout_id": int(payout.id), "order_id": int(payout.order_id), "net_amount_minor": int(payout.net_amount_minor)},
    )


def _apply_processor_status(payout: Payout, status: str) -> str:
    if status == "success":
        _complete(payout)
        return "completed"
    if status == "failed":
        _mark_failed(payout, from_status=PayoutStatus.PROCESSING, error="processor_reported_failure", escalate=False)
        return "failed"
    if int(payout.poll_failures or 0) > 0:
        _set_payout(int(payout.id), expected={"status": PayoutStatus.PROCESSING}, values={"poll_failures": 0})
        db.session.commit()
    return "pending"


def _poll_one(payout: Payout, processor: PayoutProcessor) -> str:
    try:
        status = processor.status(payout.batch_id)
    except ExternalServiceError as exc:
        atomic_add(Payout, {"id": int(payout.id), "status": PayoutStatus.PROCESSING}, "poll_failures", 1)
        db.session.commit()
        db.session.refresh(payout)
        failures = int(payout.poll_failures or 0)
        logger.warning("payout_poll_failed payout_id=%s failures=%s err=%s", int(payout.id), failures, exc.message)
        if failures >= payout_poll_failure_limit():
            _mark_failed(payout, from_status=PayoutStatus.PROCESSING, error=f"poll_failed:{exc.message}", escalate=True)
            return "failed"
        return "poll_error"
    return _apply_processor_status(payout, (status or "").strip().lower())


def _recover_abandoned_claims(cutoff: datetime) -> int:
    recovered = 0
    rows = (
        Payout.query.filter(
            Payout.status == PayoutStatus.PROCESSING,
            Payout.batch_id.is_(None),
            Payout.updated_at < cutoff,
        )
        .order_by(Payout.id.asc())
        .all()
    )
    for payout in rows:
        try:
            _set_payout(
                int(payout.id),
                expected={"status": PayoutStatus.PROCESSING, "batch_id": None},
                values={"status": PayoutStatus.PENDING, "last_error": "claim_abandoned"},
            )
            advance_payout_status(
                int(payout.order_id),
                expected=PayoutStatus.PROCESSING,
                target=PayoutStatus.PENDING,
                actor=SYSTEM,
                reason="claim_abandoned",
            )
            db.session.commit()
            recovered += 1
        except StaleStateError:
            db.session.rollback()
    return recovered


def reconcile_processing(limit: int | None = None, processor: PayoutProcessor | None = None) -> dict:
    processor = _processor(processor)
    limit = int(limit or payout_scan_limit())
    counts = {"completed": 0, "failed": 0, "pending": 0, "poll_error": 0, "stale": 0, "errors": 0}
    # A claim with no batch id past the timeout means the submitter died mid-call;
    # resubmitting under the same idempotency key is safe.
    counts["recovered"] = _recover_abandoned_claims(_now() - payout_claim_timeout())

    rows = (
        Payout.query.filter(Payout.status == PayoutStatus.PROCESSING, Payout.batch_id.isnot(None))
        .order_by(Payout.id.asc())
        .limit(limit)
        .all()
    )
    for payout in rows:
        try:
            counts[_poll_one(payout, processor)] += 1
        except StaleStateError:
            db.session.rollback()
            counts["stale"] += 1
        except Exception:
            db.session.rollback()
            logger.exception("payout_reconcile_error payout_id=%s", int(payout.id))
            counts["errors"] += 1
    counts["scanned"] = len(rows)
    return counts


def apply_payout_status_changed(event: PayoutStatusChanged) -> dict:
    """Processor push update, applied through the same guards as polling."""
    payout = Payout.query.filter_by(batch_id=event.batch_id).first()
    if payout is None:
        raise NotFoundError(f"no payout for batch {event.batch_id}", code="PAYOUT_NOT_FOUND")
    if payout.status != PayoutStatus.PROCESSING:
        return {"ok": True, "duplicate": True, "payout_id": int(payout.id), "status": payout.status}
    try:
        outcome = _apply_processor_status(payout, event.status)
    except StaleStateError:
        db.session.rollback()
        return {"ok": True, "duplicate": True, "payout_id": int(payout.id)}
    return {"ok": True, "payout_id": int(payout.id), "status": outcome}


def run_settlement_cycle(processor: PayoutProcessor | None = None) -> dict:
    processor = _processor(processor)
    return {
        "enqueue": enqueue_eligible_payouts(),
        "submit": submit_pending(processor=processor),
        "reconcile": reconcile_processing(processor=processor),
    }


def cancel_payout_for_refund(order: Order, *, reason: str, actor=None) -> str:
    """Stage the payout side of a refund. Returns the action taken; the caller commits.

    Money already with the processor cannot be pulled back from here, so a
    payout in `processing` refuses the refund.
    """
    current = order.payout_status or PayoutStatus.NONE
    if current in (PayoutStatus.COMPLETED, PayoutStatus.CANCELLED):
        return "none"
    if current == PayoutStatus.PROCESSING:
        raise PolicyViolationError(
            "the payout for this order is already with the processor",
            code="PAYOUT_IN_FLIGHT",
            details={"order_id": int(order.id)},
        )
    payout = Payout.query.filter_by(order_id=int(order.id)).first()
    if payout is not None and payout.status in (PayoutStatus.PENDING, PayoutStatus.FAILED):
        _set_payout(
            int(payout.id),
            expected={"status": payout.status, "batch_id": payout.batch_id},
            values={"status": PayoutStatus.CANCELLED, "cancelled_reason": (reason or "")[:120]},
        )
        adjust_pending_balance(int(payout.seller_id), -int(payout.net_amount_minor))
    advance_payout_status(
        int(order.id),
        expected=current,
        target=PayoutStatus.CANCELLED,
        actor=actor,
        reason=reason,
    )
    log_event(
        "payout_cancelled",
        subject_type="order",
        subject_id=int(order.id),
        idempotency_key=f"payout_cancelled:{int(order.id)}",
        metadata={"from": current, "reason": reason, "payout_id": int(payout.id) if payout else None},
    )
    return "cancelled"


def retry_payout(payout_id: int, *, admin_id: int) -> Payout:
    """Send a failed payout back through submission under a new processor key."""
    payout = db.session.get(Payout, int(payout_id))
    if payout is None:
        raise NotFoundError("payout not found", code="PAYOUT_NOT_FOUND")
    if payout.status != PayoutStatus.FAILED:
        raise PolicyViolationError(f"payout is {payout.status}, only failed payouts can be retried", code="PAYOUT_NOT_FAILED")
    order = db.session.get(Order, int(payout.order_id))
    if order is None or order.status != OrderStatus.DELIVERED:
        raise PolicyViolationError("the order is no longer payable", code="ORDER_NOT_PAYABLE")

    old = payout.to_dict()
    generation = int(payout.retry_generation or 0) + 1
    _set_payout(
        int(payout.id),
        expected={"status": PayoutStatus.FAILED, "retry_generation": int(payout.retry_generation or 0)},
        values={
            "status": PayoutStatus.PENDING,
            "retry_generation": generation,
            "batch_id": None,
            "submit_failures": 0,
            "poll_failures": 0,
            "last_error": None,
            "processed_at": None,
        },
    )
    advance_payout_status(
        int(order.id),
        expected=PayoutStatus.FAILED,
        target=PayoutStatus.PENDING,
        actor={"type": "admin", "id": int(admin_id)},
        reason="payout_retry",
    )
    db.session.refresh(payout)
    stage_audit(
        actor_id=int(admin_id),
        action="payout_retried",
        target_type="payout",
        target_id=int(payout.id),
        old_values={"status": old["status"], "idempotency_key": old["idempotency_key"]},
        new_values={"status": payout.status, "idempotency_key": payout.idempotency_key},
    )
    log_event(
        "payout_retried",
        actor_user_id=int(admin_id),
        subject_type="payout",
        subject_id=int(payout.id),
        severity="WARNING",
        metadata={"retry_generation": generation},
    )
    db.session.commit()
    return payout
