"""Rule-based risk evaluation.

Rules only read ledger and account data. The engine's writes are limited to
FraudAlert rows and the score / withdrawal hold columns of the seller's risk
profile; listing deactivation is requested through the alert's
`auto_action_taken` and applied by the listing catalog.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError

from settlement.errors import NotFoundError
from settlement.extensions import db
from settlement.models import (
    AccessEvent,
    Bid,
    FraudAlert,
    Listing,
    Order,
    Payout,
    PriceHistory,
    ProhibitedKeyword,
    SellerRiskProfile,
    User,
)
from settlement.services.ledger import atomic_add, compare_and_set, ensure_risk_profile
from settlement.services.order_lifecycle import OrderStatus
from settlement.utils import env
from settlement.utils.events import log_event
from settlement.utils.keyword_match import find_keyword_matches
from settlement.utils.observability import hash_ip

logger = logging.getLogger(__name__)

ORIGIN_LOOKBACK = timedelta(days=30)


class AlertSeverity:
    WARNING = "warning"
    CRITICAL = "critical"

    WEIGHTS = {WARNING: 10, CRITICAL: 25}


class AlertType:
    MULTIPLE_ACCOUNTS = "multiple_accounts"
    SPAM_LISTINGS = "spam_listings"
    SHILL_BIDDING = "shill_bidding"
    PROHIBITED_ITEM = "prohibited_item"
    PRICE_MANIPULATION = "price_manipulation"
    SUSPICIOUS_WITHDRAWAL = "suspicious_withdrawal"
    NEW_ACCOUNT_HIGH_BALANCE = "new_account_high_balance"
    STUCK_ORDER = "stuck_order"


class AutoAction:
    NONE = "none"
    LISTING_SUSPENDED = "listing_suspended"
    WITHDRAWAL_BLOCKED = "withdrawal_blocked"
    LISTING_DEACTIVATED = "listing_deactivated"

    LISTING_ACTIONS = {LISTING_SUSPENDED, LISTING_DEACTIVATED}


class AlertStatus:
    PENDING = "pending"
    REVIEWED = "reviewed"
    DISMISSED = "dismissed"


@dataclass
class RuleHit:
    alert_type: str
    severity: str
    title: str
    description: str
    dedupe_key: str
    evidence: dict = field(default_factory=dict)
    listing_id: int | None = None
    related_user_ids: list[int] = field(default_factory=list)
    auto_action: str = AutoAction.NONE


def _now():
    return datetime.utcnow()


def origin_hash(ip_address: str) -> str:
    return hash_ip((ip_address or "").strip(), env.env_str("RISK_IP_SALT", "settlement"))


def record_access(user_id: int, ip_address: str, *, action: str = "") -> AccessEvent | None:
    """Store the hashed origin of an account action; raw addresses are never kept."""
    if not (ip_address or "").strip():
        return None
    row = AccessEvent(user_id=int(user_id), ip_address=origin_hash(ip_address), action=(action or "")[:64] or None)
    db.session.add(row)
    db.session.commit()
    return row


# Rules


def _rule_shared_origin(user_id: int, origin: str, now: datetime) -> RuleHit | None:
    since = now - ORIGIN_LOOKBACK
    rows = (
        db.session.query(AccessEvent.user_id)
        .filter(AccessEvent.ip_address == origin, AccessEvent.created_at >= since)
        .distinct()
        .all()
    )
    accounts = {int(r[0]) for r in rows}
    accounts.add(int(user_id))
    if len(accounts) < env.risk_shared_origin_min_accounts():
        return None
    related = sorted(a for a in accounts if a != int(user_id))
    return RuleHit(
        alert_type=AlertType.MULTIPLE_ACCOUNTS,
        severity=AlertSeverity.CRITICAL,
        title="Multiple accounts from one network origin",
        description=f"Account shares a network origin with {len(related)} other account(s)",
        dedupe_key=f"multiple_accounts:{int(user_id)}:{origin}:{','.join(str(r) for r in related)}"[:180],
        evidence={"origin": origin, "account_count": len(accounts)},
        related_user_ids=related,
    )


def _rule_burst_listings(user_id: int, now: datetime) -> RuleHit | None:
    since = now - timedelta(hours=1)
    count = Listing.query.filter(Listing.seller_id == int(user_id), Listing.created_at >= since).count()
    if count <= env.risk_burst_listings_per_hour():
        return None
    return RuleHit(
        alert_type=AlertType.SPAM_LISTINGS,
        severity=AlertSeverity.WARNING,
        title="Burst listing creation",
        description=f"{count} listings created in the last hour",
        dedupe_key=f"spam_listings:{int(user_id)}:{now.strftime('%Y%m%d%H')}",
        evidence={"listings_last_hour": count},
    )


def _rule_shill_bidding(seller_id: int, listing_ids: list[int] | None = None) -> RuleHit | None:
    q = (
        db.session.query(Bid.listing_id)
        .join(Listing, Listing.id == Bid.listing_id)
        .filter(Listing.seller_id == int(seller_id), Bid.bidder_id == int(seller_id))
    )
    if listing_ids is not None:
        q = q.filter(Listing.id.in_([int(x) for x in listing_ids]))
    implicated = sorted({int(r[0]) for r in q.distinct().all()})
    if not implicated:
        return None
    return RuleHit(
        alert_type=AlertType.SHILL_BIDDING,
        severity=AlertSeverity.CRITICAL,
        title="Seller bidding on own listing",
        description=f"Seller placed bids on {len(implicated)} of their own listing(s)",
        dedupe_key=f"shill_bidding:{int(seller_id)}:{','.join(str(i) for i in implicated)}"[:180],
        evidence={"listing_ids": implicated},
        listing_id=implicated[0] if len(implicated) == 1 else None,
        auto_action=AutoAction.LISTING_DEACTIVATED,
    )


def _rule_prohibited_content(listing: Listing) -> RuleHit | None:
    keywords = ProhibitedKeyword.query.filter_by(is_active=True).all()
    if not keywords:
        return None
    by_word = {(k.keyword or "").strip().lower(): (k.severity or AlertSeverity.WARNING) for k in keywords}
    matches = find_keyword_matches(f"{listing.title or ''} {listing.description or ''}", by_word.keys())
    if not matches:
        return None
    severity = AlertSeverity.CRITICAL if any(by_word.get(m) == AlertSeverity.CRITICAL for m in matches) else AlertSeverity.WARNING
    return RuleHit(
        alert_type=AlertType.PROHIBITED_ITEM,
        severity=severity,
        title="Prohibited content in listing",
        description=f"Listing matches prohibited keyword(s): {', '.join(matches)}",
        dedupe_key=f"prohibited_item:{int(listing.id)}:{','.join(sorted(matches))}"[:180],
        evidence={"keywords": matches},
        listing_id=int(listing.id),
        auto_action=AutoAction.LISTING_DEACTIVATED,
    )


def _rule_price_swing(listing: Listing) -> RuleHit | None:
    rows = (
        PriceHistory.query.filter_by(listing_id=int(listing.id))
        .order_by(PriceHistory.recorded_at.desc(), PriceHistory.id.desc())
        .limit(2)
        .all()
    )
    if len(rows) < 2:
        return None
    latest, previous = rows[0], rows[1]
    before = int(previous.price_minor or 0)
    after = int(latest.price_minor or 0)
    if before <= 0:
        return None
    change_pct = abs(after - before) * 100.0 / before
    if change_pct <= env.risk_price_swing_pct():
        return None
    return RuleHit(
        alert_type=AlertType.PRICE_MANIPULATION,
        severity=AlertSeverity.WARNING,
        title="Abnormal price swing",
        description=f"Price moved {change_pct:.0f}% between consecutive records",
        dedupe_key=f"price_manipulation:{int(listing.id)}:{int(latest.id)}",
        evidence={"previous_minor": before, "latest_minor": after, "change_pct": round(change_pct, 2)},
        listing_id=int(listing.id),
    )


def _rule_withdrawal_velocity(user_id: int, profile: SellerRiskProfile, now: datetime) -> RuleHit | None:
    if bool(profile.withdrawal_blocked):
        return None
    since = now - timedelta(hours=24)
    recent = (
        Payout.query.filter(Payout.seller_id == int(user_id), Payout.created_at >= since)
        .order_by(Payout.id.desc())
        .all()
    )
    if len(recent) <= env.risk_withdrawals_per_day():
        return None
    total = sum(int(p.net_amount_minor or 0) for p in recent)
    return RuleHit(
        alert_type=AlertType.SUSPICIOUS_WITHDRAWAL,
        severity=AlertSeverity.CRITICAL,
        title="Withdrawal velocity",
        description=f"{len(recent)} payout requests in 24h totalling {total} minor units",
        dedupe_key=f"suspicious_withdrawal:{int(user_id)}:{int(recent[0].id)}",
        evidence={"payout_ids": [int(p.id) for p in recent[:10]], "total_minor": total},
        auto_action=AutoAction.WITHDRAWAL_BLOCKED,
    )


def _rule_new_account_balance(user: User, profile: SellerRiskProfile, now: datetime) -> RuleHit | None:
    created = user.created_at or now
    if now - created >= env.risk_new_account_age():
        return None
    balance = int(profile.pending_balance_minor or 0)
    if balance <= env.risk_new_account_balance_minor():
        return None
    return RuleHit(
        alert_type=AlertType.NEW_ACCOUNT_HIGH_BALANCE,
        severity=AlertSeverity.WARNING,
        title="New account with high balance",
        description=f"Account is {(now - created).days} day(s) old with {balance} minor units pending",
        dedupe_key=f"new_account_high_balance:{int(user.id)}",
        evidence={"account_age_days": (now - created).days, "pending_balance_minor": balance},
    )


def _rule_stuck_order(order: Order) -> RuleHit:
    return RuleHit(
        alert_type=AlertType.STUCK_ORDER,
        severity=AlertSeverity.WARNING,
        title="Order stuck in pending",
        description=f"Order #{int(order.id)} has been pending since {order.created_at.isoformat() if order.created_at else 'unknown'}",
        dedupe_key=f"stuck_order:{int(order.id)}",
        evidence={"order_id": int(order.id), "buyer_id": int(order.buyer_id)},
        listing_id=int(order.listing_id) if order.listing_id is not None else None,
    )


# Emission


def _emit(user_id: int, hit: RuleHit) -> FraudAlert | None:
    profile = ensure_risk_profile(int(user_id))
    if FraudAlert.query.filter_by(dedupe_key=hit.dedupe_key).first() is not None:
        return None
    weight = AlertSeverity.WEIGHTS.get(hit.severity, 0)
    alert = FraudAlert(
        user_id=int(user_id),
        listing_id=hit.listing_id,
        alert_type=hit.alert_type,
        severity=hit.severity,
        score_weight=weight,
        title=hit.title[:200],
        description=hit.description,
        evidence_json=json.dumps(hit.evidence, default=str),
        related_user_ids_json=json.dumps(hit.related_user_ids),
        auto_action_taken=hit.auto_action,
        dedupe_key=hit.dedupe_key,
        status=AlertStatus.PENDING,
    )
    try:
        db.session.add(alert)
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        return None
    atomic_add(SellerRiskProfile, {"user_id": int(user_id)}, "fraud_score", weight)
    if hit.auto_action == AutoAction.WITHDRAWAL_BLOCKED:
        compare_and_set(
            SellerRiskProfile,
            int(profile.id),
            expected={"withdrawal_blocked": False},
            values={
                "withdrawal_blocked": True,
                "withdrawal_blocked_reason": f"{hit.alert_type}: pending review",
                "withdrawal_blocked_at": _now(),
                "updated_at": _now(),
            },
        )
    log_event(
        "fraud_alert_raised",
        subject_type="user",
        subject_id=int(user_id),
        severity="CRITICAL" if hit.severity == AlertSeverity.CRITICAL else "WARNING",
        idempotency_key=f"fraud_alert:{hit.dedupe_key}"[:180],
        metadata={
            "alert_id": int(alert.id),
            "alert_type": hit.alert_type,
            "auto_action": hit.auto_action,
            "listing_id": hit.listing_id,
        },
    )
    db.session.commit()
    logger.info(
        "fraud_alert alert_id=%s user_id=%s type=%s severity=%s action=%s",
        int(alert.id), int(user_id), hit.alert_type, hit.severity, hit.auto_action,
    )
    return alert


def _emit_all(user_id: int, hits) -> list[FraudAlert]:
    out = []
    for hit in hits:
        if hit is None:
            continue
        alert = _emit(user_id, hit)
        if alert is not None:
            out.append(alert)
    return out


# Entry points


def check_user(user_id: int, *, ip_address: str | None = None, now: datetime | None = None) -> list[FraudAlert]:
    now = now or _now()
    user = db.session.get(User, int(user_id))
    if user is None:
        raise NotFoundError("user not found", code="USER_NOT_FOUND")
    hits = []
    if ip_address:
        origins = [origin_hash(ip_address)]
    else:
        rows = (
            db.session.query(AccessEvent.ip_address)
            .filter(AccessEvent.user_id == int(user.id), AccessEvent.created_at >= now - ORIGIN_LOOKBACK)
            .distinct()
            .all()
        )
        origins = sorted({r[0] for r in rows if r[0]})
    for origin in origins:
        hits.append(_rule_shared_origin(int(user.id), origin, now))
    hits.append(_rule_burst_listings(int(user.id), now))
    hits.append(_rule_shill_bidding(int(user.id)))
    return _emit_all(int(user.id), hits)


def check_listing(listing_id: int) -> list[FraudAlert]:
    listing = db.session.get(Listing, int(listing_id))
    if listing is None:
        raise NotFoundError("listing not found", code="LISTING_NOT_FOUND")
    hits = [
        _rule_prohibited_content(listing),
        _rule_price_swing(listing),
        _rule_shill_bidding(int(listing.seller_id), [int(listing.id)]),
    ]
    return _emit_all(int(listing.seller_id), hits)


def check_withdrawal(user_id: int, *, now: datetime | None = None) -> list[FraudAlert]:
    now = now or _now()
    user = db.session.get(User, int(user_id))
    if user is None:
        raise NotFoundError("user not found", code="USER_NOT_FOUND")
    alerts = []
    profile = ensure_risk_profile(int(user.id))
    db.session.refresh(profile)
    hit = _rule_withdrawal_velocity(int(user.id), profile, now)
    if hit is not None:
        alerts.extend(_emit_all(int(user.id), [hit]))
    db.session.refresh(profile)
    alerts.extend(_emit_all(int(user.id), [_rule_new_account_balance(user, profile, now)]))
    return alerts


def scan_platform(now: datetime | None = None, *, limit: int | None = None) -> dict:
    """Platform-wide sweep over recent activity plus stuck unpaid orders."""
    now = now or _now()
    limit = int(limit or env.payout_scan_limit())
    alerts: list[FraudAlert] = []
    errors = 0

    stuck = (
        Order.query.filter(Order.status == OrderStatus.PENDING, Order.created_at < now - env.risk_stuck_order_age())
        .order_by(Order.id.asc())
        .limit(limit)
        .all()
    )
    for order in stuck:
        order_id = int(order.id)
        try:
            alerts.extend(_emit_all(int(order.seller_id), [_rule_stuck_order(order)]))
        except Exception:
            db.session.rollback()
            logger.exception("risk_scan_stuck_order_failed order_id=%s", order_id)
            errors += 1

    day_ago = now - timedelta(hours=24)
    seller_ids = {
        int(r[0])
        for r in db.session.query(Payout.seller_id).filter(Payout.created_at >= day_ago).distinct().limit(limit).all()
    }
    active_seller_ids = {
        int(r[0])
        for r in db.session.query(Listing.seller_id).filter(Listing.created_at >= now - timedelta(hours=1)).distinct().limit(limit).all()
    }
    listing_ids = {
        int(r[0])
        for r in db.session.query(PriceHistory.listing_id).filter(PriceHistory.recorded_at >= day_ago).distinct().limit(limit).all()
    }
    listing_ids |= {
        int(r[0])
        for r in db.session.query(Listing.id).filter(Listing.updated_at >= day_ago, Listing.is_active.is_(True)).limit(limit).all()
    }
    bid_listing_ids = {
        int(r[0])
        for r in db.session.query(Bid.listing_id).filter(Bid.created_at >= day_ago).distinct().limit(limit).all()
    }

    for seller_id in sorted(seller_ids):
        try:
            alerts.extend(check_withdrawal(seller_id, now=now))
        except Exception:
            db.session.rollback()
            logger.exception("risk_scan_withdrawal_failed user_id=%s", seller_id)
            errors += 1
    for seller_id in sorted(active_seller_ids):
        try:
            alerts.extend(check_user(seller_id, now=now))
        except Exception:
            db.session.rollback()
            logger.exception("risk_scan_user_failed user_id=%s", seller_id)
            errors += 1
    for listing_id in sorted(listing_ids | bid_listing_ids):
        try:
            alerts.extend(check_listing(listing_id))
        except Exception:
            db.session.rollback()
            logger.exception("risk_scan_listing_failed listing_id=%s", listing_id)
            errors += 1

    by_type: dict[str, int] = {}
    for alert in alerts:
        by_type[alert.alert_type] = by_type.get(alert.alert_type, 0) + 1
    return {
        "alerts": len(alerts),
        "by_type": by_type,
        "stuck_orders": len(stuck),
        "sellers_checked": len(seller_ids | active_seller_ids),
        "listings_checked": len(listing_ids | bid_listing_ids),
        "errors": errors,
    }
