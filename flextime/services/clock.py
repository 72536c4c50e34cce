from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from functools import lru_cache
import re
from zoneinfo import ZoneInfo

from flextime.settings import get_settings

DEFAULT_TIMEZONE_NAME = "Asia/Seoul"
_EXTENDED_CLOCK_RE = re.compile(r"^(\d{1,3}):([0-5]\d)(?::([0-5]\d))?$")


@lru_cache
def attendance_timezone() -> ZoneInfo:
    raw_name = (get_settings().attendance_timezone or "").strip() or DEFAULT_TIMEZONE_NAME
    try:
        return ZoneInfo(raw_name)
    except Exception:
        return ZoneInfo(DEFAULT_TIMEZONE_NAME)


def as_utc(ts: datetime) -> datetime:
    """Return ``ts`` as an aware UTC instant; naive values are stored UTC."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def localize_input(ts: datetime, tz: ZoneInfo | None = None) -> datetime:
    """Interpret producer input: naive values are wall-clock attendance time."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=tz or attendance_timezone()).astimezone(timezone.utc)
    return ts.astimezone(timezone.utc)


def local_date(ts: datetime, tz: ZoneInfo | None = None) -> date:
    return as_utc(ts).astimezone(tz or attendance_timezone()).date()


def round_hours(value: float) -> float:
    return float(Decimal(str(value)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


def round_amount(value: float) -> float:
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def format_extended_clock(ts: datetime, work_date: date, tz: ZoneInfo) -> str:
    """Render ``ts`` relative to midnight of ``work_date``: next-day 04:45 is ``28:45``."""
    local = as_utc(ts).astimezone(tz)
    day_offset = (local.date() - work_date).days
    hours = local.hour + 24 * day_offset
    return f"{hours:02d}:{local.minute:02d}"


def parse_extended_clock(value: str) -> timedelta:
    """Parse ``HH:MM[:SS]`` where HH may exceed 23 (``30:00`` is next-day 06:00)."""
    match = _EXTENDED_CLOCK_RE.match(value.strip())
    if match is None:
        raise ValueError(f"Invalid clock value: {value!r}")
    hours = int(match.group(1))
    minutes = int(match.group(2))
    seconds = int(match.group(3) or 0)
    return timedelta(hours=hours, minutes=minutes, seconds=seconds)


def combine_extended_clock(work_date: date, value: str, tz: ZoneInfo) -> datetime:
    offset = parse_extended_clock(value)
    local_midnight = datetime.combine(work_date, time.min, tzinfo=tz)
    naive_local = local_midnight.replace(tzinfo=None) + offset
    return naive_local.replace(tzinfo=tz).astimezone(timezone.utc)
