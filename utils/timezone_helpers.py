from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo

EAST_AFRICA_TZ = ZoneInfo("Africa/Nairobi")


def utcnow() -> datetime:
    """Naive UTC now, the convention for every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_east_africa(value: Any) -> datetime | None:
    """Convert the provided value to an East Africa timezone-aware datetime."""
    if not value:
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            return None
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(EAST_AFRICA_TZ)


def format_east_africa(value: Any, fmt: str = "%Y-%m-%d %H:%M") -> str:
    """Return the provided datetime formatted for East Africa in a 24-hour clock."""
    dt = to_east_africa(value)
    if dt:
        return dt.strftime(fmt)
    if isinstance(value, str):
        return value
    return ""


def east_africa_today() -> date:
    return datetime.now(EAST_AFRICA_TZ).date()


def parse_mpesa_timestamp(value: Any) -> datetime | None:
    """Daraja sends TransactionDate as local time digits, e.g. 20191219102115.

    Returns naive UTC to match stored timestamps.
    """
    raw = str(value or "").strip()
    if len(raw) != 14 or not raw.isdigit():
        return None
    try:
        local = datetime.strptime(raw, "%Y%m%d%H%M%S").replace(tzinfo=EAST_AFRICA_TZ)
    except ValueError:
        return None
    return local.astimezone(timezone.utc).replace(tzinfo=None)
