from __future__ import annotations

from dataclasses import dataclass


@dataclass
class PayoutSubmitResult:
    batch_id: str
    raw: dict | None = None


class PayoutProcessor:
    """External payout processor.

    `submit` must be idempotent on `idempotency_key`: resubmitting the same key
    returns the original batch instead of paying twice. `status` answers one of
    "pending", "success" or "failed". Transport problems raise
    ExternalServiceError.
    """

    name = "unknown"

    def submit(self, *, idempotency_key: str, recipient: str, amount_minor: int, currency: str) -> PayoutSubmitResult:
        raise NotImplementedError

    def status(self, batch_id: str) -> str:
        raise NotImplementedError
