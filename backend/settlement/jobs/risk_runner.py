from __future__ import annotations

import logging
from datetime import datetime

from settlement.extensions import db
from settlement.services import listing_catalog, risk_engine
from settlement.utils.job_runs import record_job_run
from settlement.utils.settings import get_settings, is_enabled

logger = logging.getLogger(__name__)


def run_risk_sweep(*, now: datetime | None = None) -> dict:
    started_at = datetime.utcnow()
    if not is_enabled("jobs.risk_sweep_enabled", default=True, settings=get_settings()):
        record_job_run(job_name="risk_sweep", ok=False, started_at=started_at, error="disabled_by_flag")
        return {"ok": False, "disabled": True}
    try:
        summary = risk_engine.scan_platform(now=now)
    except Exception as exc:
        db.session.rollback()
        record_job_run(job_name="risk_sweep", ok=False, started_at=started_at, error=str(exc))
        logger.exception("risk_sweep_failed")
        raise
    record_job_run(job_name="risk_sweep", ok=True, started_at=started_at, summary=summary)
    return {"ok": True, **summary}


def run_listing_moderation(*, limit: int = 200) -> dict:
    started_at = datetime.utcnow()
    if not is_enabled("jobs.listing_moderation_enabled", default=True, settings=get_settings()):
        record_job_run(job_name="listing_moderation", ok=False, started_at=started_at, error="disabled_by_flag")
        return {"ok": False, "disabled": True}
    try:
        summary = listing_catalog.apply_moderation_requests(limit=limit)
    except Exception as exc:
        db.session.rollback()
        record_job_run(job_name="listing_moderation", ok=False, started_at=started_at, error=str(exc))
        logger.exception("listing_moderation_failed")
        raise
    record_job_run(job_name="listing_moderation", ok=True, started_at=started_at, summary=summary)
    return {"ok": True, **summary}
