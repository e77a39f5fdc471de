from __future__ import annotations

import logging
from datetime import datetime

from settlement.extensions import db
from settlement.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from settlement.integrations.payouts.factory import build_payout_processor
from settlement.services import settlement_service
from settlement.utils.job_runs import record_job_run
from settlement.utils.settings import get_settings, is_enabled

logger = logging.getLogger(__name__)


def _now():
    return datetime.utcnow()


def _run(job_name: str, flag: str, work) -> dict:
    started_at = _now()
    settings = get_settings()
    if not is_enabled(flag, default=True, settings=settings):
        record_job_run(job_name=job_name, ok=False, started_at=started_at, error="disabled_by_flag")
        return {"ok": False, "disabled": True, "job": job_name}
    try:
        summary = work(settings)
    except (IntegrationDisabledError, IntegrationMisconfiguredError) as exc:
        db.session.rollback()
        record_job_run(job_name=job_name, ok=False, started_at=started_at, error=str(exc))
        logger.warning("job_skipped job=%s err=%s", job_name, exc)
        return {"ok": False, "job": job_name, "error": str(exc)}
    except Exception as exc:
        db.session.rollback()
        record_job_run(job_name=job_name, ok=False, started_at=started_at, error=str(exc))
        logger.exception("job_failed job=%s", job_name)
        raise
    record_job_run(job_name=job_name, ok=True, started_at=started_at, summary=summary)
    return {"ok": True, "job": job_name, **summary}


def run_payout_enqueue(*, limit: int | None = None) -> dict:
    return _run(
        "payout_enqueue",
        "jobs.payout_enqueue_enabled",
        lambda settings: settlement_service.enqueue_eligible_payouts(limit=limit),
    )


def run_payout_submit(*, limit: int | None = None, processor=None) -> dict:
    return _run(
        "payout_submit",
        "jobs.payout_submit_enabled",
        lambda settings: settlement_service.submit_pending(
            limit=limit, processor=processor or build_payout_processor(settings)
        ),
    )


def run_payout_reconcile(*, limit: int | None = None, processor=None) -> dict:
    return _run(
        "payout_reconcile",
        "jobs.payout_reconcile_enabled",
        lambda settings: settlement_service.reconcile_processing(
            limit=limit, processor=processor or build_payout_processor(settings)
        ),
    )


def run_settlement_cycle(*, processor=None) -> dict:
    result = {
        "enqueue": run_payout_enqueue(),
        "submit": run_payout_submit(processor=processor),
        "reconcile": run_payout_reconcile(processor=processor),
    }
    settings = get_settings()
    settings.last_settlement_run_at = _now()
    db.session.add(settings)
    db.session.commit()
    return result
