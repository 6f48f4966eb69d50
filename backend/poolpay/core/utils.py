"""
Utility functions for the application.
"""
from typing import Any
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from zoneinfo import ZoneInfo
import hashlib

from poolpay.core.config import settings

ZERO = Decimal("0")


def to_decimal(value: Any) -> Decimal:
    """Convert DB numerics, floats and strings to Decimal without float noise."""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def quantize_down(value: Decimal, scale: int) -> Decimal:
    """Truncate to a fixed number of decimal places."""
    return to_decimal(value).quantize(Decimal(1).scaleb(-scale), rounding=ROUND_DOWN)


def quantize_half_up(value: Decimal, scale: int) -> Decimal:
    """Round half-up to a fixed number of decimal places."""
    return to_decimal(value).quantize(Decimal(1).scaleb(-scale), rounding=ROUND_HALF_UP)


def now_local() -> datetime:
    """Naive wall-clock time in the settlement timezone."""
    return datetime.now(ZoneInfo(settings.SETTLEMENT_TIMEZONE)).replace(tzinfo=None)


def truncate_to_hour(value: datetime) -> datetime:
    return value.replace(minute=0, second=0, microsecond=0)


def hourly_window(now: datetime, hours_back: int = 0):
    """Return the closed hour [start, end) that ended `hours_back` hours before now's hour."""
    end = truncate_to_hour(now) - timedelta(hours=hours_back)
    return end - timedelta(hours=1), end


def window_token(kind: str, account: str, coin: str, window_start: datetime) -> str:
    """Deterministic reference token shared by every ledger row a window produces."""
    raw = f"{kind}:{account}:{coin.upper()}:{window_start.isoformat()}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()
