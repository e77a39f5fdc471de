from __future__ import annotations

import os

from settlement.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from settlement.integrations.messaging.base import MessagingProvider
from settlement.integrations.messaging.mock_provider import MockMessagingProvider
from settlement.integrations.messaging.termii_provider import TermiiMessagingProvider, termii_health


def _provider_name(settings) -> str:
    override = (os.getenv("MESSAGING_PROVIDER") or "").strip().lower()
    if override:
        return override
    return (getattr(settings, "messaging_provider", "disabled") or "disabled").strip().lower()


def build_messaging_provider(settings) -> MessagingProvider:
    provider = _provider_name(settings)
    if provider == "disabled":
        raise IntegrationDisabledError("INTEGRATION_DISABLED:sms")
    if provider == "mock":
        return MockMessagingProvider()
    if provider != "termii":
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:messaging_provider={provider}")

    api_key = (os.getenv("TERMII_API_KEY") or "").strip()
    sender = (os.getenv("TERMII_SENDER_ID") or "").strip()
    missing = termii_health().get("missing", [])
    if missing:
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:missing {', '.join(missing)}")
    return TermiiMessagingProvider(api_key=api_key, sender_id=sender)


def messaging_health(settings) -> dict:
    provider = _provider_name(settings)
    missing = termii_health().get("missing", []) if provider == "termii" else []
    if provider == "disabled":
        status = "disabled"
    elif missing or provider not in ("mock", "termii"):
        status = "misconfigured"
    else:
        status = "configured"
    return {"status": status, "provider": provider, "missing": missing}
