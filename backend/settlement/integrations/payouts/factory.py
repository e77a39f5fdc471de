from __future__ import annotations

import os

from settlement.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from settlement.integrations.payouts.base import PayoutProcessor
from settlement.integrations.payouts.mock_provider import MockPayoutProcessor
from settlement.integrations.payouts.paystack_provider import PaystackPayoutProcessor


def _provider_name(settings) -> str:
    override = (os.getenv("PAYOUTS_PROVIDER") or "").strip().lower()
    if override:
        return override
    return (getattr(settings, "payouts_provider", "mock") or "mock").strip().lower()


def build_payout_processor(settings) -> PayoutProcessor:
    if not bool(getattr(settings, "payouts_enabled", True)):
        raise IntegrationDisabledError("INTEGRATION_DISABLED:payouts")

    provider = _provider_name(settings)
    if provider == "mock":
        return MockPayoutProcessor()
    if provider != "paystack":
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:payouts_provider={provider}")

    secret_key = (os.getenv("PAYSTACK_SECRET_KEY") or "").strip()
    if not secret_key:
        raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:missing PAYSTACK_SECRET_KEY")
    return PaystackPayoutProcessor(secret_key=secret_key)


def payout_health(settings) -> dict:
    enabled = bool(getattr(settings, "payouts_enabled", True))
    provider = _provider_name(settings)
    missing = []
    if enabled and provider == "paystack" and not (os.getenv("PAYSTACK_SECRET_KEY") or "").strip():
        missing.append("PAYSTACK_SECRET_KEY")
    if not enabled:
        status = "disabled"
    elif missing or provider not in ("mock", "paystack"):
        status = "misconfigured"
    else:
        status = "configured"
    return {"status": status, "provider": provider, "enabled": enabled, "missing": missing}
