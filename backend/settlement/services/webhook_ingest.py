from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime

from sqlalchemy.exc import IntegrityError

from settlement.errors import NotFoundError, SettlementError
from settlement.extensions import db
from settlement.models import WebhookEvent
from settlement.services import order_lifecycle, settlement_service
from settlement.services.payment_events import (
    PaymentConfirmed,
    PaymentFailed,
    event_kind,
    parse_payment_event,
    parse_payout_event,
)
from settlement.utils.settings import get_settings

logger = logging.getLogger(__name__)

PAYMENTS = "payments"
PAYOUTS = "payouts"

_DONE = ("processed", "ignored")


def _event_id(payload: dict, raw: bytes) -> str:
    for key in ("id", "event_id"):
        value = payload.get(key)
        if value not in (None, ""):
            return str(value).strip()[:128]
    return f"sha256:{hashlib.sha256(raw or b'').hexdigest()}"[:128]


def record_webhook(
    provider: str,
    *,
    payload: dict,
    raw: bytes,
    signature_valid: bool,
    source_ip: str = "",
) -> tuple[WebhookEvent, bool]:
    """Persist the delivery. Returns (row, already_handled)."""
    event_id = _event_id(payload, raw)
    existing = WebhookEvent.query.filter_by(provider=provider, event_id=event_id).first()
    if existing is not None:
        return existing, existing.status in _DONE
    row = WebhookEvent(
        provider=provider,
        event_id=event_id,
        event_type=event_kind(payload)[:64] or None,
        signature_valid=bool(signature_valid),
        status="received",
        payload_hash=hashlib.sha256(raw or b"").hexdigest(),
        payload_json=json.dumps(payload, default=str)[:20000],
        source_ip=(source_ip or "")[:64] or None,
    )
    try:
        db.session.add(row)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        existing = WebhookEvent.query.filter_by(provider=provider, event_id=event_id).one()
        return existing, existing.status in _DONE
    return row, False


def _finish(row: WebhookEvent, status: str, error: str | None = None) -> None:
    row.status = status
    row.error = (error or "")[:2000] or None
    row.processed_at = datetime.utcnow()
    db.session.add(row)
    db.session.commit()


def _load(webhook_event_id: int) -> tuple[WebhookEvent, dict]:
    row = db.session.get(WebhookEvent, int(webhook_event_id))
    if row is None:
        raise NotFoundError("webhook event not found", code="WEBHOOK_EVENT_NOT_FOUND")
    try:
        payload = json.loads(row.payload_json or "{}")
    except ValueError:
        payload = {}
    return row, payload if isinstance(payload, dict) else {}


def _run(row: WebhookEvent, handler) -> dict:
    if row.status in _DONE:
        return {"ok": True, "replayed": True, "webhook_event_id": int(row.id)}
    try:
        result = handler()
    except SettlementError as exc:
        db.session.rollback()
        _finish(row, "failed", f"{exc.code}:{exc.message}")
        logger.warning("webhook_failed provider=%s event_id=%s code=%s", row.provider, row.event_id, exc.code)
        raise
    _finish(row, "ignored" if result.get("ignored") else "processed")
    result["webhook_event_id"] = int(row.id)
    return result


def process_payment_webhook(webhook_event_id: int) -> dict:
    row, payload = _load(webhook_event_id)

    def handler():
        event = parse_payment_event(payload)
        settings = get_settings()
        settings.last_payment_webhook_at = datetime.utcnow()
        db.session.add(settings)
        if isinstance(event, PaymentConfirmed):
            return order_lifecycle.apply_payment_confirmed(event)
        if isinstance(event, PaymentFailed):
            return order_lifecycle.apply_payment_failed(event)
        return {"ok": True, "ignored": True}

    return _run(row, handler)


def process_payout_webhook(webhook_event_id: int) -> dict:
    row, payload = _load(webhook_event_id)
    return _run(row, lambda: settlement_service.apply_payout_status_changed(parse_payout_event(payload)))
