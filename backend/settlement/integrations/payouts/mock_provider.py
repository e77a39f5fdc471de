from __future__ import annotations

import os
import threading
import uuid

from settlement.errors import ExternalServiceError
from settlement.integrations.payouts.base import PayoutProcessor, PayoutSubmitResult


class MockPayoutProcessor(PayoutProcessor):
    """In-process processor for local runs and tests.

    State lives on the class so every instance built by the factory sees the
    same batches.
    """

    name = "mock"

    _lock = threading.Lock()
    _by_key: dict[str, str] = {}
    _batches: dict[str, dict] = {}
    _submit_failures_left = 0
    _poll_failures_left = 0
    submit_calls = 0

    @classmethod
    def reset(cls) -> None:
        with cls._lock:
            cls._by_key = {}
            cls._batches = {}
            cls._submit_failures_left = 0
            cls._poll_failures_left = 0
            cls.submit_calls = 0

    @classmethod
    def fail_next_submits(cls, count: int = 1) -> None:
        with cls._lock:
            cls._submit_failures_left = max(0, int(count))

    @classmethod
    def fail_next_polls(cls, count: int = 1) -> None:
        with cls._lock:
            cls._poll_failures_left = max(0, int(count))

    @classmethod
    def set_batch_status(cls, batch_id: str, status: str) -> None:
        with cls._lock:
            if batch_id in cls._batches:
                cls._batches[batch_id]["status"] = status

    @classmethod
    def batch_for_key(cls, idempotency_key: str) -> dict | None:
        with cls._lock:
            batch_id = cls._by_key.get(idempotency_key)
            return dict(cls._batches[batch_id]) if batch_id else None

    def _default_status(self) -> str:
        raw = (os.getenv("MOCK_PAYOUT_DEFAULT_STATUS") or "success").strip().lower()
        return raw if raw in ("pending", "success", "failed") else "success"

    def submit(self, *, idempotency_key: str, recipient: str, amount_minor: int, currency: str) -> PayoutSubmitResult:
        cls = type(self)
        with cls._lock:
            cls.submit_calls += 1
            if cls._submit_failures_left > 0:
                cls._submit_failures_left -= 1
                raise ExternalServiceError("mock processor unavailable", code="PAYOUT_SUBMIT_FAILED")
            existing = cls._by_key.get(idempotency_key)
            if existing:
                return PayoutSubmitResult(batch_id=existing, raw={"replayed": True})
            batch_id = f"MOCK-{uuid.uuid4().hex[:16].upper()}"
            cls._by_key[idempotency_key] = batch_id
            cls._batches[batch_id] = {
                "batch_id": batch_id,
                "idempotency_key": idempotency_key,
                "recipient": recipient,
                "amount_minor": int(amount_minor),
                "currency": currency,
                "status": self._default_status(),
            }
        return PayoutSubmitResult(batch_id=batch_id, raw={"replayed": False})

    def status(self, batch_id: str) -> str:
        cls = type(self)
        with cls._lock:
            if cls._poll_failures_left > 0:
                cls._poll_failures_left -= 1
                raise ExternalServiceError("mock processor unavailable", code="PAYOUT_POLL_FAILED")
            batch = cls._batches.get(batch_id)
        if batch is None:
            raise ExternalServiceError(f"unknown batch {batch_id}", code="PAYOUT_UNKNOWN_BATCH")
        return batch["status"]
