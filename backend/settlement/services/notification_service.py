from __future__ import annotations

import json
import logging
from datetime import datetime

from settlement.extensions import db
from settlement.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from settlement.integrations.messaging.factory import build_messaging_provider
from settlement.models import Notification, User
from settlement.utils.settings import get_settings

logger = logging.getLogger(__name__)


def _send_sms(user: User, title: str, message: str, meta: str) -> None:
    phone = (user.phone or "").strip()
    if not phone:
        return
    try:
        provider = build_messaging_provider(get_settings())
    except IntegrationDisabledError:
        return
    except IntegrationMisconfiguredError as exc:
        logger.warning("sms_provider_misconfigured user_id=%s err=%s", int(user.id), exc)
        return
    row = Notification(
        user_id=int(user.id),
        channel="sms",
        title=title[:160],
        message=message,
        status="queued",
        provider=provider.name,
        meta=meta,
    )
    db.session.add(row)
    db.session.flush()
    result = provider.send_sms(to=phone, message=f"{title}: {message}"[:480], reference=f"notif:{int(row.id)}")
    if result.ok:
        row.status = "sent"
        row.sent_at = datetime.utcnow()
        row.provider_ref = str((result.raw or {}).get("message_id") or "")[:120] or None
    else:
        row.status = "failed"
        row.error = f"{result.code}:{result.message}"[:500]


def notify(user_id: int, title: str, message: str, metadata: dict | None = None) -> Notification | None:
    """Tell a user about a ledger change.

    Runs after the ledger transaction has committed. Delivery problems are
    logged and never undo or block the change being announced.
    """
    try:
        user = db.session.get(User, int(user_id))
        if user is None:
            return None
        meta = json.dumps(metadata or {}, default=str)[:3000]
        row = Notification(
            user_id=int(user.id),
            channel="in_app",
            title=(title or "")[:160],
            message=message or "",
            status="sent",
            provider="in_app",
            sent_at=datetime.utcnow(),
            meta=meta,
        )
        db.session.add(row)
        _send_sms(user, title or "", message or "", meta)
        db.session.commit()
        return row
    except Exception as exc:
        db.session.rollback()
        logger.warning("notify_failed user_id=%s title=%s err=%s", user_id, title, exc)
        return None


def notify_admins(title: str, message: str, metadata: dict | None = None) -> int:
    admins = User.query.filter_by(role="admin", is_active=True).order_by(User.id.asc()).all()
    sent = 0
    for admin in admins:
        if notify(int(admin.id), title, message, metadata) is not None:
            sent += 1
    return sent
