from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP

from settlement.errors import ValidationError


def _clamp_minor(value: int | float | Decimal | None) -> int:
    try:
        parsed = int(value or 0)
    except (TypeError, ValueError):
        parsed = 0
    return parsed if parsed > 0 else 0


def bps_of_minor_half_up(amount_minor: int, bps: int) -> int:
    amt = Decimal(_clamp_minor(amount_minor))
    rate = Decimal(int(max(0, bps)))
    raw = (amt * rate) / Decimal("10000")
    return _clamp_minor(int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP)))


def parse_minor_amount(value) -> int | None:
    """Accept an integer minor-unit amount from untrusted JSON input."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


def optional_minor_amount(data: dict, key: str = "amount_minor") -> int | None:
    if data.get(key) is None:
        return None
    parsed = parse_minor_amount(data.get(key))
    if parsed is None:
        raise ValidationError(f"{key} must be an integer number of minor units", code="INVALID_AMOUNT")
    return parsed
