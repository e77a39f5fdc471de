from __future__ import annotations

import json
import time
from datetime import datetime

from celery import shared_task
from flask import current_app

from settlement.errors import SettlementError
from settlement.jobs import risk_runner, settlement_runner
from settlement.services import webhook_ingest


def _task_log(task_name: str, *, status: str, started_at: float, trace_id: str = "", **extra):
    duration_ms = int(max(0.0, (time.perf_counter() - float(started_at))) * 1000.0)
    payload = {
        "task_name": task_name,
        "status": status,
        "duration_ms": duration_ms,
        "trace_id": str(trace_id or ""),
        "timestamp": datetime.utcnow().isoformat(),
    }
    payload.update(extra or {})
    current_app.logger.info(json.dumps(payload, default=str))


def _retry_countdown(retries: int) -> int:
    # Exponential backoff with cap.
    return int(min(900, max(5, 5 * (2 ** int(max(0, retries))))))


def _run_with_retry(task, name: str, work, *, trace_id: str = ""):
    started = time.perf_counter()
    try:
        result = work()
    except SettlementError as exc:
        # Domain rejections are final; retrying cannot change the outcome.
        _task_log(name, status="rejected", started_at=started, trace_id=trace_id, error=exc.code)
        return {"ok": False, "error": exc.code, "message": exc.message}
    except Exception as exc:
        if int(task.request.retries or 0) < int(task.max_retries or 0):
            countdown = _retry_countdown(int(task.request.retries or 0))
            _task_log(name, status="retrying", started_at=started, trace_id=trace_id, detail=str(exc), countdown=countdown)
            raise task.retry(exc=exc, countdown=countdown)
        _task_log(name, status="failed", started_at=started, trace_id=trace_id, detail=str(exc))
        raise
    _task_log(name, status="ok", started_at=started, trace_id=trace_id, result=result)
    return result


@shared_task(bind=True, name="settlement.tasks.settlement_tasks.enqueue_eligible_payouts", max_retries=3)
def enqueue_eligible_payouts_task(self, trace_id: str = ""):
    return _run_with_retry(self, "enqueue_eligible_payouts", settlement_runner.run_payout_enqueue, trace_id=trace_id)


@shared_task(bind=True, name="settlement.tasks.settlement_tasks.submit_pending_payouts", max_retries=3)
def submit_pending_payouts_task(self, trace_id: str = ""):
    return _run_with_retry(self, "submit_pending_payouts", settlement_runner.run_payout_submit, trace_id=trace_id)


@shared_task(bind=True, name="settlement.tasks.settlement_tasks.reconcile_processing_payouts", max_retries=3)
def reconcile_processing_payouts_task(self, trace_id: str = ""):
    return _run_with_retry(self, "reconcile_processing_payouts", settlement_runner.run_payout_reconcile, trace_id=trace_id)


@shared_task(bind=True, name="settlement.tasks.settlement_tasks.risk_sweep", max_retries=2)
def risk_sweep_task(self, trace_id: str = ""):
    return _run_with_retry(self, "risk_sweep", risk_runner.run_risk_sweep, trace_id=trace_id)


@shared_task(bind=True, name="settlement.tasks.settlement_tasks.apply_listing_moderation", max_retries=3)
def apply_listing_moderation_task(self, trace_id: str = ""):
    return _run_with_retry(self, "apply_listing_moderation", risk_runner.run_listing_moderation, trace_id=trace_id)


@shared_task(bind=True, name="settlement.tasks.settlement_tasks.process_payment_webhook", max_retries=5)
def process_payment_webhook_task(self, *, webhook_event_id: int, trace_id: str = ""):
    return _run_with_retry(
        self,
        "process_payment_webhook",
        lambda: webhook_ingest.process_payment_webhook(int(webhook_event_id)),
        trace_id=trace_id,
    )


@shared_task(bind=True, name="settlement.tasks.settlement_tasks.process_payout_webhook", max_retries=5)
def process_payout_webhook_task(self, *, webhook_event_id: int, trace_id: str = ""):
    return _run_with_retry(
        self,
        "process_payout_webhook",
        lambda: webhook_ingest.process_payout_webhook(int(webhook_event_id)),
        trace_id=trace_id,
    )
