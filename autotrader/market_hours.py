"""Exchange-local clock helpers."""

from __future__ import annotations

from datetime import datetime, time, timezone
from zoneinfo import ZoneInfo

from autotrader.config import MARKET_CLOSE, MARKET_OPEN, MARKET_TIMEZONE

MARKET_TZ = ZoneInfo(MARKET_TIMEZONE)


def parse_hhmm(value: str) -> time:
    """'15:15' -> time(15, 15). Raises ValueError on anything else."""
    hours, minutes = value.strip().split(":")
    return time(int(hours), int(minutes))


def market_now() -> datetime:
    return datetime.now(timezone.utc).astimezone(MARKET_TZ)


def local_day_start(now: datetime) -> datetime:
    """Midnight of `now`'s exchange-local date, as an aware UTC datetime."""
    local = now.astimezone(MARKET_TZ)
    midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight.astimezone(timezone.utc)


def within(now: datetime, start: str, end: str) -> bool:
    local = now.astimezone(MARKET_TZ).time()
    return parse_hhmm(start) <= local <= parse_hhmm(end)


def is_market_open(now: datetime) -> bool:
    """Weekday and inside the regular session."""
    local = now.astimezone(MARKET_TZ)
    if local.weekday() >= 5:
        return False
    return within(local, MARKET_OPEN, MARKET_CLOSE)
