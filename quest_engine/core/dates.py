"""Calendar helpers. All day math is done in the tz of the caller's `now`."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Tuple


def ensure_aware(moment: Optional[datetime]) -> datetime:
    """Default to now (UTC); treat naive datetimes as UTC."""
    if moment is None:
        return datetime.now(timezone.utc)
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def local_date(moment: datetime, reference: datetime) -> date:
    """Calendar date of `moment` as seen from `reference`'s timezone."""
    return ensure_aware(moment).astimezone(ensure_aware(reference).tzinfo).date()


def local_day_bounds(now: datetime) -> Tuple[datetime, datetime]:
    """[00:00:00, 23:59:59.999999] of `now`'s local calendar day."""
    aware = ensure_aware(now)
    start = datetime.combine(aware.date(), time.min, tzinfo=aware.tzinfo)
    end = datetime.combine(aware.date(), time.max, tzinfo=aware.tzinfo)
    return start, end


def calendar_days_between(earlier: datetime, now: datetime) -> int:
    """Whole calendar days between two instants, midnight-normalized (not 24h windows)."""
    aware_now = ensure_aware(now)
    return (aware_now.date() - local_date(earlier, aware_now)).days


def week_window(moment: datetime) -> Tuple[datetime, datetime]:
    """Monday-aligned [start, end) week containing `moment`, in `moment`'s tz."""
    aware = ensure_aware(moment)
    monday = aware.date() - timedelta(days=aware.weekday())
    start = datetime.combine(monday, time.min, tzinfo=aware.tzinfo)
    return start, start + timedelta(days=7)


def utc_iso(moment: datetime) -> str:
    return ensure_aware(moment).astimezone(timezone.utc).isoformat()
