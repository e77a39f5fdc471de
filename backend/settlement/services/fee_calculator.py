from __future__ import annotations

import logging
from dataclasses import dataclass, asdict
from datetime import datetime

from settlement.errors import ValidationError
from settlement.extensions import db
from settlement.models import FeeSchedule
from settlement.services.ledger import stage_audit
from settlement.utils.events import log_event
from settlement.utils.money import bps_of_minor_half_up

logger = logging.getLogger(__name__)


class FeeType:
    BUYER_FEE = "buyer_fee"
    SELLER_COMMISSION = "seller_commission"

    ALL = {BUYER_FEE, SELLER_COMMISSION}


@dataclass(frozen=True)
class FeeRule:
    fee_type: str
    value: int = 0
    is_percentage: bool = False
    version: int = 0

    def apply(self, amount_minor: int) -> int:
        if self.is_percentage:
            return bps_of_minor_half_up(amount_minor, self.value)
        return max(0, int(self.value))


@dataclass(frozen=True)
class FeeScheduleSnapshot:
    """The fee configuration as read once, at the moment an order is paid."""

    buyer_fee: FeeRule
    seller_commission: FeeRule

    @property
    def version(self) -> str:
        return f"bf:{self.buyer_fee.version}/sc:{self.seller_commission.version}"

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "buyer_fee": asdict(self.buyer_fee),
            "seller_commission": asdict(self.seller_commission),
        }


@dataclass(frozen=True)
class FeeBreakdown:
    amount_minor: int
    buyer_fee_minor: int
    seller_commission_minor: int
    net_payout_minor: int
    buyer_total_minor: int
    schedule_version: str

    def to_dict(self) -> dict:
        return asdict(self)


def compute_fees(amount_minor: int, schedule: FeeScheduleSnapshot) -> FeeBreakdown:
    """Pure fee split. The buyer fee is charged on top; only commission reduces the payout."""
    if isinstance(amount_minor, bool) or not isinstance(amount_minor, int):
        raise ValidationError("amount must be an integer number of minor units", code="INVALID_AMOUNT")
    if amount_minor < 0:
        raise ValidationError("amount must not be negative", code="INVALID_AMOUNT")
    buyer_fee = schedule.buyer_fee.apply(amount_minor)
    commission = min(schedule.seller_commission.apply(amount_minor), amount_minor)
    return FeeBreakdown(
        amount_minor=amount_minor,
        buyer_fee_minor=buyer_fee,
        seller_commission_minor=commission,
        net_payout_minor=amount_minor - commission,
        buyer_total_minor=amount_minor + buyer_fee,
        schedule_version=schedule.version,
    )


def _rule_from_row(fee_type: str, row: FeeSchedule | None) -> FeeRule:
    if row is None:
        return FeeRule(fee_type=fee_type)
    return FeeRule(
        fee_type=fee_type,
        value=int(row.value or 0),
        is_percentage=bool(row.is_percentage),
        version=int(row.id),
    )


def active_fee_schedule() -> FeeScheduleSnapshot:
    rules = {}
    for fee_type in (FeeType.BUYER_FEE, FeeType.SELLER_COMMISSION):
        rows = (
            FeeSchedule.query.filter_by(fee_type=fee_type, is_active=True)
            .order_by(FeeSchedule.id.desc())
            .all()
        )
        if len(rows) > 1:
            logger.warning("multiple_active_fee_rows fee_type=%s ids=%s", fee_type, [int(r.id) for r in rows])
        rules[fee_type] = _rule_from_row(fee_type, rows[0] if rows else None)
    return FeeScheduleSnapshot(
        buyer_fee=rules[FeeType.BUYER_FEE],
        seller_commission=rules[FeeType.SELLER_COMMISSION],
    )


def activate_fee(fee_type: str, value: int, *, is_percentage: bool, admin_id: int | None = None) -> FeeSchedule:
    """Replace the active row for `fee_type` in a single transaction."""
    fee_type = (fee_type or "").strip().lower()
    if fee_type not in FeeType.ALL:
        raise ValidationError(f"fee_type must be one of {sorted(FeeType.ALL)}", code="INVALID_FEE_TYPE")
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError("value must be a non-negative integer", code="INVALID_FEE_VALUE")
    if is_percentage and value > 10000:
        raise ValidationError("percentage fees are basis points and cannot exceed 10000", code="INVALID_FEE_VALUE")

    previous = FeeSchedule.query.filter_by(fee_type=fee_type, is_active=True).all()
    now = datetime.utcnow()
    for row in previous:
        row.is_active = False
        row.deactivated_at = now
    fresh = FeeSchedule(
        fee_type=fee_type,
        value=int(value),
        is_percentage=bool(is_percentage),
        is_active=True,
        created_by=admin_id,
    )
    db.session.add(fresh)
    db.session.flush()
    stage_audit(
        actor_id=admin_id,
        action="fee_schedule_activated",
        target_type="fee_schedule",
        target_id=int(fresh.id),
        old_values={"active": [r.to_dict() for r in previous]},
        new_values=fresh.to_dict(),
    )
    log_event(
        "fee_schedule_activated",
        actor_user_id=admin_id,
        subject_type="fee_schedule",
        subject_id=int(fresh.id),
        metadata={"fee_type": fee_type, "value": int(value), "is_percentage": bool(is_percentage)},
    )
    db.session.commit()
    return fresh
