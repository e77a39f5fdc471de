"""Listing catalog side of risk enforcement.

Alerts only *request* listing deactivation; this module owns the listing rows
and applies each request exactly once.
"""
from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.exc import IntegrityError

from settlement.extensions import db
from settlement.models import FraudAlert, Listing, ListingModeration
from settlement.services.risk_engine import AlertStatus, AutoAction
from settlement.utils.events import log_event

logger = logging.getLogger(__name__)


def _target_listings(alert: FraudAlert) -> list[int]:
    ids = set()
    if alert.listing_id is not None:
        ids.add(int(alert.listing_id))
    for raw in alert.evidence().get("listing_ids") or []:
        try:
            ids.add(int(raw))
        except (TypeError, ValueError):
            continue
    return sorted(ids)


def is_under_moderation(listing_id: int) -> bool:
    return (
        db.session.query(ListingModeration.id)
        .join(FraudAlert, FraudAlert.id == ListingModeration.fraud_alert_id)
        .filter(
            ListingModeration.listing_id == int(listing_id),
            FraudAlert.status != AlertStatus.DISMISSED,
        )
        .first()
        is not None
    )


def apply_moderation_requests(limit: int = 200) -> dict:
    applied = 0
    skipped = 0
    done = db.select(ListingModeration.fraud_alert_id)
    alerts = (
        FraudAlert.query.filter(
            FraudAlert.auto_action_taken.in_(sorted(AutoAction.LISTING_ACTIONS)),
            FraudAlert.status != AlertStatus.DISMISSED,
            ~FraudAlert.id.in_(done),
        )
        .order_by(FraudAlert.id.asc())
        .limit(int(limit))
        .all()
    )
    for alert in alerts:
        for listing_id in _target_listings(alert):
            listing = db.session.get(Listing, listing_id)
            if listing is None:
                skipped += 1
                continue
            try:
                db.session.add(
                    ListingModeration(
                        fraud_alert_id=int(alert.id),
                        listing_id=listing_id,
                        action=alert.auto_action_taken,
                    )
                )
                listing.is_active = False
                listing.updated_at = datetime.utcnow()
                log_event(
                    "listing_moderated",
                    subject_type="listing",
                    subject_id=listing_id,
                    severity="WARNING",
                    idempotency_key=f"listing_moderated:{int(alert.id)}:{listing_id}",
                    metadata={"alert_id": int(alert.id), "action": alert.auto_action_taken},
                )
                db.session.commit()
                applied += 1
            except IntegrityError:
                db.session.rollback()
                skipped += 1
    return {"alerts": len(alerts), "applied": applied, "skipped": skipped}


def relist_after_refund(listing_id: int | None) -> bool:
    """Stage the listing going back on sale. The caller commits."""
    if listing_id is None:
        return False
    listing = db.session.get(Listing, int(listing_id))
    if listing is None:
        return False
    listing.is_sold = False
    listing.is_active = not is_under_moderation(int(listing.id))
    listing.updated_at = datetime.utcnow()
    return True
