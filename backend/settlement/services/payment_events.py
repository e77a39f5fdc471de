"""Inbound events from the payment and payout collaborators.

Raw webhook payloads are parsed into one of a few frozen variants here, so
nothing duck-typed reaches the state machine.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar, Union

from settlement.errors import ValidationError


@dataclass(frozen=True)
class PaymentConfirmed:
    kind: ClassVar[str] = "payment.confirmed"

    order_id: int
    reference: str = ""
    amount_minor: int | None = None
    currency: str | None = None


@dataclass(frozen=True)
class PaymentFailed:
    kind: ClassVar[str] = "payment.failed"

    order_id: int
    reference: str = ""
    reason: str = ""


@dataclass(frozen=True)
class PayoutStatusChanged:
    kind: ClassVar[str] = "payout.status_changed"

    batch_id: str
    status: str  # pending | success | failed


PaymentEvent = Union[PaymentConfirmed, PaymentFailed]

PAYOUT_STATUSES = {"pending", "success", "failed"}

_PAYMENT_CONFIRMED_ALIASES = {"payment.confirmed", "payment.succeeded", "charge.success"}
_PAYMENT_FAILED_ALIASES = {"payment.failed", "charge.failed"}


def _positive_int(value, field: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a positive integer", code="INVALID_PAYLOAD")
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a positive integer", code="INVALID_PAYLOAD")
    if parsed <= 0:
        raise ValidationError(f"{field} must be a positive integer", code="INVALID_PAYLOAD")
    return parsed


def _optional_amount(value) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError("amount_minor must be a non-negative integer", code="INVALID_PAYLOAD")
    return value


def _body(payload: dict) -> dict:
    data = payload.get("data")
    if data is None:
        return payload
    if not isinstance(data, dict):
        raise ValidationError("data must be an object", code="INVALID_PAYLOAD")
    return data


def event_kind(payload: dict) -> str:
    raw = payload.get("type") or payload.get("event") or ""
    return str(raw).strip().lower()


def parse_payment_event(payload) -> PaymentEvent:
    """Accepts `{type, data: {...}}` envelopes and the bare `{order_id, status: "paid"}` form."""
    if not isinstance(payload, dict):
        raise ValidationError("payload must be an object", code="INVALID_PAYLOAD")
    kind = event_kind(payload)
    body = _body(payload)
    if not kind:
        status = str(body.get("status") or "").strip().lower()
        if status == "paid":
            kind = PaymentConfirmed.kind
        elif status == "failed":
            kind = PaymentFailed.kind
    if kind in _PAYMENT_CONFIRMED_ALIASES:
        currency = body.get("currency")
        return PaymentConfirmed(
            order_id=_positive_int(body.get("order_id"), "order_id"),
            reference=str(body.get("reference") or "").strip()[:128],
            amount_minor=_optional_amount(body.get("amount_minor")),
            currency=str(currency).strip().upper()[:8] if currency else None,
        )
    if kind in _PAYMENT_FAILED_ALIASES:
        return PaymentFailed(
            order_id=_positive_int(body.get("order_id"), "order_id"),
            reference=str(body.get("reference") or "").strip()[:128],
            reason=str(body.get("reason") or "").strip()[:240],
        )
    raise ValidationError(f"unsupported payment event '{kind or 'unknown'}'", code="UNSUPPORTED_EVENT")


def parse_payout_event(payload) -> PayoutStatusChanged:
    if not isinstance(payload, dict):
        raise ValidationError("payload must be an object", code="INVALID_PAYLOAD")
    kind = event_kind(payload)
    if kind and kind != PayoutStatusChanged.kind:
        raise ValidationError(f"unsupported payout event '{kind}'", code="UNSUPPORTED_EVENT")
    body = _body(payload)
    batch_id = str(body.get("batch_id") or "").strip()
    if not batch_id:
        raise ValidationError("batch_id is required", code="INVALID_PAYLOAD")
    status = str(body.get("status") or "").strip().lower()
    if status not in PAYOUT_STATUSES:
        raise ValidationError(f"status must be one of {sorted(PAYOUT_STATUSES)}", code="INVALID_PAYLOAD")
    return PayoutStatusChanged(batch_id=batch_id[:128], status=status)
