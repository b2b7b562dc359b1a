# FILE: app/utils/timezone.py
from __future__ import annotations

from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

IST = ZoneInfo("Asia/Kolkata")


def now_ist() -> datetime:
    """
    Returns a *naive* datetime representing IST time.
    All billing DateTime columns are naive IST.
    """
    return datetime.now(IST).replace(tzinfo=None)


def today_ist() -> date:
    return now_ist().date()


def to_naive_ist(dt: Optional[datetime]) -> Optional[datetime]:
    """Aware datetimes are converted to IST; naive ones are assumed IST."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(IST).replace(tzinfo=None)
