from __future__ import annotations

import json

from settlement.extensions import db
from settlement.models import SettlementSettings


DEFAULT_FLAGS: dict[str, bool] = {
    "jobs.payout_enqueue_enabled": True,
    "jobs.payout_submit_enabled": True,
    "jobs.payout_reconcile_enabled": True,
    "jobs.risk_sweep_enabled": True,
    "jobs.listing_moderation_enabled": True,
    "webhooks.queue_enabled": False,
}


def get_settings() -> SettlementSettings:
    row = SettlementSettings.query.order_by(SettlementSettings.id.asc()).first()
    if row is None:
        row = SettlementSettings()
        db.session.add(row)
        db.session.commit()
    return row


def _coerce_bool(value, default: bool = False) -> bool:
    if value is None:
        return bool(default)
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return int(value) == 1
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "y", "on")
    return bool(default)


def get_all_flags(settings: SettlementSettings | None = None) -> dict[str, bool]:
    s = settings or get_settings()
    try:
        parsed = json.loads(s.feature_flags_json or "{}")
    except ValueError:
        parsed = {}
    flags = dict(DEFAULT_FLAGS)
    if isinstance(parsed, dict):
        flags.update({str(k): _coerce_bool(v) for k, v in parsed.items()})
    # Kill switches on the row win over individual job flags.
    if not bool(s.payouts_enabled):
        for key in ("jobs.payout_enqueue_enabled", "jobs.payout_submit_enabled", "jobs.payout_reconcile_enabled"):
            flags[key] = False
    if not bool(s.risk_sweep_enabled):
        flags["jobs.risk_sweep_enabled"] = False
    return flags


def is_enabled(key: str, *, default: bool = False, settings: SettlementSettings | None = None) -> bool:
    flags = get_all_flags(settings)
    if key not in flags:
        return bool(default)
    return _coerce_bool(flags.get(key), default)


def update_flags(updates: dict, *, updated_by: int | None = None) -> dict[str, bool]:
    s = get_settings()
    try:
        current = json.loads(s.feature_flags_json or "{}")
    except ValueError:
        current = {}
    if not isinstance(current, dict):
        current = {}
    for key, value in updates.items():
        k = str(key).strip()
        if k:
            current[k] = _coerce_bool(value)
    s.feature_flags_json = json.dumps(current)
    if updated_by is not None:
        s.updated_by = int(updated_by)
    db.session.add(s)
    db.session.commit()
    return get_all_flags(s)
