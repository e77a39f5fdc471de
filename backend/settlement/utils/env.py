from __future__ import annotations

import os
from datetime import timedelta


def env_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or "").strip() or default


def env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in ("1", "true", "yes", "on")


def env_int(name: str, default: int, *, minimum: int = 0, maximum: int | None = None) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        value = int(default)
    else:
        try:
            value = int(raw)
        except Exception:
            value = int(default)
    if value < minimum:
        value = minimum
    if maximum is not None and value > maximum:
        value = maximum
    return value


# Refund policy

def refund_window() -> timedelta:
    return timedelta(days=env_int("REFUND_WINDOW_DAYS", 14, minimum=1, maximum=365))


def refund_max_requests_per_day() -> int:
    return env_int("REFUND_MAX_REQUESTS_PER_DAY", 3, minimum=1, maximum=100)


def refund_reason_min_length() -> int:
    return env_int("REFUND_REASON_MIN_LENGTH", 10, minimum=1, maximum=500)


# Payout policy

def payout_currency() -> str:
    return env_str("PAYOUT_CURRENCY", "GBP").upper()


def payout_poll_failure_limit() -> int:
    return env_int("PAYOUT_POLL_FAILURE_LIMIT", 3, minimum=1, maximum=50)


def payout_submit_failure_limit() -> int:
    return env_int("PAYOUT_SUBMIT_FAILURE_LIMIT", 5, minimum=1, maximum=50)


def payout_scan_limit() -> int:
    return env_int("PAYOUT_SCAN_LIMIT", 200, minimum=1, maximum=5000)


def payout_http_timeout() -> int:
    return env_int("PAYOUT_HTTP_TIMEOUT_SECONDS", 10, minimum=1, maximum=60)


def payout_claim_timeout() -> timedelta:
    return timedelta(seconds=env_int("PAYOUT_CLAIM_TIMEOUT_SECONDS", 600, minimum=30, maximum=86400))


# Risk thresholds

def risk_shared_origin_min_accounts() -> int:
    return env_int("RISK_SHARED_ORIGIN_MIN_ACCOUNTS", 3, minimum=2, maximum=100)


def risk_burst_listings_per_hour() -> int:
    return env_int("RISK_BURST_LISTINGS_PER_HOUR", 10, minimum=1, maximum=10000)


def risk_price_swing_pct() -> int:
    return env_int("RISK_PRICE_SWING_PCT", 80, minimum=1, maximum=10000)


def risk_withdrawals_per_day() -> int:
    return env_int("RISK_WITHDRAWALS_PER_DAY", 5, minimum=1, maximum=1000)


def risk_new_account_age() -> timedelta:
    return timedelta(days=env_int("RISK_NEW_ACCOUNT_DAYS", 7, minimum=1, maximum=365))


def risk_new_account_balance_minor() -> int:
    return env_int("RISK_NEW_ACCOUNT_BALANCE_MINOR", 50000, minimum=0)


def risk_stuck_order_age() -> timedelta:
    return timedelta(days=env_int("RISK_STUCK_ORDER_DAYS", 7, minimum=1, maximum=365))
