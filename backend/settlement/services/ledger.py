"""Row-level primitives every ledger writer goes through.

`compare_and_set` is the only way order and payout status columns change:
the UPDATE carries the expected prior values in its WHERE clause, so two
writers racing on the same row cannot both succeed. Counters move through
`atomic_add`, which pushes the arithmetic into SQL instead of doing a
read-modify-write in Python.
"""
from __future__ import annotations

import json
from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError

from settlement.extensions import db
from settlement.models import AuditLog, SellerRiskProfile


def _where(model, expected: dict):
    clauses = []
    for name, value in expected.items():
        col = getattr(model, name)
        clauses.append(col.is_(None) if value is None else col == value)
    return clauses


def compare_and_set(model, row_id: int, *, expected: dict, values: dict) -> int:
    """Conditionally update one row; returns the number of rows changed (0 or 1)."""
    stmt = (
        sa.update(model)
        .where(model.id == int(row_id), *_where(model, expected))
        .values(**values)
    )
    result = db.session.execute(stmt)
    return int(result.rowcount or 0)


def atomic_add(model, match: dict, column: str, delta: int, *, floor: int | None = None) -> int:
    col = getattr(model, column)
    expr = col + int(delta)
    if floor is not None:
        expr = sa.case((col + int(delta) < int(floor), int(floor)), else_=col + int(delta))
    values = {column: expr}
    if hasattr(model, "updated_at"):
        values["updated_at"] = datetime.utcnow()
    stmt = sa.update(model).where(*_where(model, match)).values(**values)
    result = db.session.execute(stmt)
    return int(result.rowcount or 0)


def ensure_risk_profile(user_id: int) -> SellerRiskProfile:
    """Fetch or create the seller's risk projection in its own short transaction.

    Call before staging other changes: the create path commits.
    """
    row = SellerRiskProfile.query.filter_by(user_id=int(user_id)).first()
    if row is not None:
        return row
    try:
        row = SellerRiskProfile(user_id=int(user_id))
        db.session.add(row)
        db.session.commit()
        return row
    except IntegrityError:
        db.session.rollback()
        return SellerRiskProfile.query.filter_by(user_id=int(user_id)).one()


def read_risk_profile(user_id: int) -> SellerRiskProfile | None:
    return (
        SellerRiskProfile.query.filter_by(user_id=int(user_id))
        .execution_options(populate_existing=True)
        .first()
    )


def adjust_pending_balance(seller_id: int, delta_minor: int) -> None:
    # Profiles exist for any seller that has passed the payout gate.
    atomic_add(SellerRiskProfile, {"user_id": int(seller_id)}, "pending_balance_minor", int(delta_minor), floor=0)


def stage_audit(
    *,
    actor_id: int | None,
    action: str,
    target_type: str,
    target_id: int | None,
    old_values: dict | None = None,
    new_values: dict | None = None,
    meta: dict | None = None,
) -> AuditLog:
    row = AuditLog(
        actor_user_id=int(actor_id) if actor_id is not None else None,
        action=(action or "")[:120],
        target_type=(target_type or "")[:64],
        target_id=int(target_id) if target_id is not None else None,
        old_values_json=json.dumps(old_values or {}, default=str),
        new_values_json=json.dumps(new_values or {}, default=str),
        meta=json.dumps(meta or {}, default=str)[:3000],
    )
    db.session.add(row)
    return row
