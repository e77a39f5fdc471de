from __future__ import annotations

import requests

from settlement.errors import ExternalServiceError
from settlement.integrations.payouts.base import PayoutProcessor, PayoutSubmitResult
from settlement.utils.env import payout_http_timeout


PAYSTACK_BASE = "https://api.paystack.co"

_FAILED = {"failed", "reversed", "abandoned", "rejected"}


class PaystackPayoutProcessor(PayoutProcessor):
    name = "paystack"

    def __init__(self, secret_key: str, *, timeout: int | None = None):
        self.secret_key = secret_key
        self.timeout = timeout or payout_http_timeout()

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    def _call(self, method: str, path: str, *, payload: dict | None = None) -> tuple[int, dict]:
        try:
            r = requests.request(method, f"{PAYSTACK_BASE}{path}", headers=self._headers(), json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            raise ExternalServiceError(f"paystack unreachable: {exc}"[:200], code="PAYOUT_PROVIDER_DOWN") from exc
        try:
            j = r.json() if r.content else {}
        except ValueError:
            j = {}
        return r.status_code, j if isinstance(j, dict) else {"payload": j}

    def submit(self, *, idempotency_key: str, recipient: str, amount_minor: int, currency: str) -> PayoutSubmitResult:
        payload = {
            "source": "balance",
            "amount": int(amount_minor),
            "currency": (currency or "").upper(),
            "recipient": recipient,
            "reference": idempotency_key,
            "reason": "marketplace payout",
        }
        status, j = self._call("POST", "/transfer", payload=payload)
        if 200 <= status < 300 and j.get("status") is True:
            data = j.get("data") or {}
            return PayoutSubmitResult(batch_id=str(data.get("transfer_code") or "").strip(), raw=j)
        msg = str(j.get("message") or f"HTTP {status}").strip()
        if "duplicate" in msg.lower() or "reference" in msg.lower():
            # Reference already used: the transfer exists, look it up instead of paying again.
            vstatus, vj = self._call("GET", f"/transfer/verify/{idempotency_key}")
            if 200 <= vstatus < 300 and vj.get("status") is True:
                data = vj.get("data") or {}
                return PayoutSubmitResult(batch_id=str(data.get("transfer_code") or "").strip(), raw=vj)
        raise ExternalServiceError(f"PAYSTACK_TRANSFER_FAILED:{msg}"[:200], code="PAYOUT_SUBMIT_FAILED")

    def status(self, batch_id: str) -> str:
        code = (batch_id or "").strip()
        status, j = self._call("GET", f"/transfer/{code}")
        if status < 200 or status >= 300 or j.get("status") is not True:
            msg = str(j.get("message") or f"HTTP {status}").strip()
            raise ExternalServiceError(f"PAYSTACK_STATUS_FAILED:{msg}"[:200], code="PAYOUT_POLL_FAILED")
        raw = str((j.get("data") or {}).get("status") or "").strip().lower()
        if raw == "success":
            return "success"
        if raw in _FAILED:
            return "failed"
        return "pending"
