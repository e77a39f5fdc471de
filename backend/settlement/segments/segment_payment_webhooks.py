from __future__ import annotations

import hashlib
import hmac
import os

from flask import Blueprint, current_app, jsonify, request

from settlement.errors import ValidationError
from settlement.services import webhook_ingest
from settlement.utils.observability import get_request_id
from settlement.utils.rate_limit import rate_limit, resolve_client_ip
from settlement.utils.settings import is_enabled

webhooks_bp = Blueprint("webhooks_bp", __name__, url_prefix="/api/webhooks")

SIGNATURE_HEADER = "X-Payment-Signature"


def _is_prod() -> bool:
    return (os.getenv("SETTLEMENT_ENV") or "dev").strip().lower() in ("prod", "production")


def signature_for(raw: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw or b"", hashlib.sha256).hexdigest()


def _verify_signature(raw: bytes) -> tuple[bool, bool]:
    """Returns (accepted, signature_valid)."""
    secret = (os.getenv("PAYMENT_WEBHOOK_SECRET") or "").strip()
    if not secret:
        return (not _is_prod()), False
    supplied = (request.headers.get(SIGNATURE_HEADER) or "").strip().lower()
    if not supplied:
        return False, False
    valid = hmac.compare_digest(supplied, signature_for(raw, secret))
    return valid, valid


def _ingest(provider: str, process, task_name: str):
    raw = request.get_data() or b""
    accepted, signature_valid = _verify_signature(raw)
    if not accepted:
        current_app.logger.warning("webhook_signature_rejected provider=%s", provider)
        return jsonify({
            "ok": False,
            "error": "INVALID_SIGNATURE",
            "message": "Webhook signature is missing or invalid",
            "status": 401,
            "trace_id": get_request_id(),
        }), 401
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValidationError("payload must be a JSON object", code="INVALID_PAYLOAD")

    row, handled = webhook_ingest.record_webhook(
        provider,
        payload=payload,
        raw=raw,
        signature_valid=signature_valid,
        source_ip=resolve_client_ip(),
    )
    if handled:
        return jsonify({"ok": True, "replayed": True, "webhook_event_id": int(row.id)}), 200

    if is_enabled("webhooks.queue_enabled", default=False):
        from settlement.tasks import settlement_tasks

        getattr(settlement_tasks, task_name).delay(webhook_event_id=int(row.id), trace_id=get_request_id())
        return jsonify({"ok": True, "queued": True, "webhook_event_id": int(row.id)}), 202

    return jsonify(process(int(row.id))), 200


@webhooks_bp.post("/payments")
@rate_limit("webhooks_payments", limit=100, per_seconds=60)
def payment_webhook():
    return _ingest(webhook_ingest.PAYMENTS, webhook_ingest.process_payment_webhook, "process_payment_webhook_task")


@webhooks_bp.post("/payouts")
@rate_limit("webhooks_payouts", limit=100, per_seconds=60)
def payout_webhook():
    return _ingest(webhook_ingest.PAYOUTS, webhook_ingest.process_payout_webhook, "process_payout_webhook_task")
