from __future__ import annotations

import os
import requests

from settlement.integrations.messaging.base import MessagingProvider, MessageResult


TERMII_BASE = "https://api.ng.termii.com/api"


def _map_termii_error(status: int, message: str) -> str:
    msg = (message or "").lower()
    if status in (401, 403):
        return "TERMII_AUTH_FAILED"
    if status == 429:
        return "TERMII_RATE_LIMITED"
    if status in (400, 422):
        if "sender" in msg:
            return "TERMII_INVALID_SENDER"
        return "TERMII_INVALID_RECIPIENT"
    return "TERMII_PROVIDER_DOWN"


class TermiiMessagingProvider(MessagingProvider):
    name = "termii"

    def __init__(self, *, api_key: str, sender_id: str):
        self.api_key = api_key
        self.sender_id = sender_id

    def send_sms(self, *, to: str, message: str, reference: str = "") -> MessageResult:
        payload = {
            "to": (to or "").strip(),
            "from": self.sender_id,
            "sms": message,
            "type": "plain",
            "channel": "generic",
            "api_key": self.api_key,
        }
        if reference:
            payload["custom_uid"] = reference[:48]
        try:
            r = requests.post(f"{TERMII_BASE}/sms/send", json=payload, timeout=12)
            data = r.json() if r.content else {}
        except requests.Timeout:
            return MessageResult(ok=False, code="TERMII_PROVIDER_DOWN", message="timeout")
        except (requests.RequestException, ValueError) as e:
            return MessageResult(ok=False, code="TERMII_PROVIDER_DOWN", message=str(e)[:200])
        raw = data if isinstance(data, dict) else {"payload": data}
        if 200 <= r.status_code < 300:
            return MessageResult(ok=True, code="OK", message="sent", raw=raw)
        detail = str(raw.get("message") or raw.get("error") or "")
        return MessageResult(
            ok=False,
            code=_map_termii_error(r.status_code, detail),
            message=(detail or f"http_{r.status_code}")[:200],
            raw=raw,
        )


def termii_health() -> dict:
    missing = []
    if not (os.getenv("TERMII_API_KEY") or "").strip():
        missing.append("TERMII_API_KEY")
    if not (os.getenv("TERMII_SENDER_ID") or "").strip():
        missing.append("TERMII_SENDER_ID")
    return {"missing": missing}
