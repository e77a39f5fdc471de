from __future__ import annotations

import os

from settlement.integrations.messaging.base import MessagingProvider, MessageResult


class MockMessagingProvider(MessagingProvider):
    name = "mock"

    sent: list[dict] = []

    def send_sms(self, *, to: str, message: str, reference: str = "") -> MessageResult:
        msg = (message or "").lower()
        if "[fail]" in msg or (os.getenv("MOCK_NOTIFY_FORCE_FAIL") or "").strip() == "1":
            return MessageResult(ok=False, code="PROVIDER_DOWN", message="mock forced failure")
        type(self).sent.append({"to": to, "message": message, "reference": reference})
        return MessageResult(ok=True, code="OK", message="mock_sent", raw={"to": to, "reference": reference})
