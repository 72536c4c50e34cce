from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from flextime.errors import InvalidTimeRange
from flextime.services.clock import as_utc, attendance_timezone, format_extended_clock, round_hours
from flextime.services.policy import DEFAULT_POLICY, PolicySnapshot

ONE_HOUR = timedelta(hours=1)


@dataclass(frozen=True)
class NightPeriod:
    start_clock: str
    end_clock: str
    hours: float


@dataclass(frozen=True)
class DayBreakdown:
    status: str
    total_stay_hours: float | None = None
    break_hours: float | None = None
    net_work_hours: float | None = None
    night_hours: float | None = None
    regular_hours: float | None = None
    overtime_hours: float | None = None
    check_in_clock: str | None = None
    check_out_clock: str | None = None
    dinner_break_applied: bool = False
    daily_max_exceeded: bool = False
    night_periods: tuple[NightPeriod, ...] = field(default=())


def _hours(delta: timedelta) -> float:
    return delta.total_seconds() / 3600


def is_night_hour(hour: int, policy: PolicySnapshot = DEFAULT_POLICY) -> bool:
    start, end = policy.night_start_hour, policy.night_end_hour
    if start == end:
        return False
    if start > end:
        return hour >= start or hour < end
    return start <= hour < end


def count_night_hours(
    check_in: datetime,
    check_out: datetime,
    *,
    policy: PolicySnapshot = DEFAULT_POLICY,
    tz: ZoneInfo | None = None,
) -> int:
    """Count one-hour slices, stepping from check-in, whose local hour is a night hour.

    A slice that starts before check-out counts in full.
    """
    zone = tz or attendance_timezone()
    cursor = as_utc(check_in)
    end = as_utc(check_out)
    night = 0
    while cursor < end:
        if is_night_hour(cursor.astimezone(zone).hour, policy):
            night += 1
        cursor += ONE_HOUR
    return night


def night_periods(
    check_in: datetime,
    check_out: datetime,
    *,
    work_date: date,
    policy: PolicySnapshot = DEFAULT_POLICY,
    tz: ZoneInfo | None = None,
) -> list[NightPeriod]:
    """Exact overlaps of the stay with each night window, in extended clock notation."""
    zone = tz or attendance_timezone()
    start_utc, end_utc = as_utc(check_in), as_utc(check_out)
    if policy.night_start_hour == policy.night_end_hour or end_utc <= start_utc:
        return []

    first_day = start_utc.astimezone(zone).date() - timedelta(days=1)
    last_day = end_utc.astimezone(zone).date()
    periods: list[NightPeriod] = []
    day = first_day
    while day <= last_day:
        window_start = datetime.combine(day, time(policy.night_start_hour), tzinfo=zone)
        end_day = day + timedelta(days=1) if policy.night_start_hour > policy.night_end_hour else day
        window_end = datetime.combine(end_day, time(policy.night_end_hour), tzinfo=zone)
        overlap_start = max(start_utc, as_utc(window_start))
        overlap_end = min(end_utc, as_utc(window_end))
        if overlap_start < overlap_end:
            periods.append(
                NightPeriod(
                    start_clock=format_extended_clock(overlap_start, work_date, zone),
                    end_clock=format_extended_clock(overlap_end, work_date, zone),
                    hours=round_hours(_hours(overlap_end - overlap_start)),
                )
            )
        day += timedelta(days=1)
    return periods


def spans_dinner_cutoff(
    check_in: datetime,
    check_out: datetime,
    *,
    policy: PolicySnapshot = DEFAULT_POLICY,
    tz: ZoneInfo | None = None,
) -> bool:
    zone = tz or attendance_timezone()
    start_utc, end_utc = as_utc(check_in), as_utc(check_out)
    in_day = start_utc.astimezone(zone).date()
    for offset in (0, 1):
        cutoff = as_utc(datetime.combine(in_day + timedelta(days=offset), time(policy.dinner_cutoff_hour), tzinfo=zone))
        if start_utc <= cutoff < end_utc:
            return True
    return False


def should_deduct_dinner(
    check_in: datetime,
    check_out: datetime,
    had_dinner_break: bool | None,
    *,
    policy: PolicySnapshot = DEFAULT_POLICY,
    tz: ZoneInfo | None = None,
) -> bool:
    if not spans_dinner_cutoff(check_in, check_out, policy=policy, tz=tz):
        return False
    if had_dinner_break is not None:
        return had_dinner_break
    stay = as_utc(check_out) - as_utc(check_in)
    after_base = stay - timedelta(minutes=policy.base_break_minutes)
    return after_base >= timedelta(hours=policy.dinner_fallback_min_hours)


def calculate_day_breakdown(
    *,
    work_date: date,
    check_in_ts: datetime | None,
    check_out_ts: datetime | None,
    had_dinner_break: bool | None = None,
    policy: PolicySnapshot = DEFAULT_POLICY,
    tz: ZoneInfo | None = None,
) -> DayBreakdown:
    zone = tz or attendance_timezone()
    if check_in_ts is None or check_out_ts is None:
        return DayBreakdown(
            status="INCOMPLETE",
            check_in_clock=format_extended_clock(check_in_ts, work_date, zone) if check_in_ts else None,
            check_out_clock=format_extended_clock(check_out_ts, work_date, zone) if check_out_ts else None,
        )

    check_in = as_utc(check_in_ts)
    check_out = as_utc(check_out_ts)
    if check_out < check_in:
        raise InvalidTimeRange(
            "Check-out precedes check-in.",
            work_date=work_date.isoformat(),
            check_in_ts=check_in.isoformat(),
            check_out_ts=check_out.isoformat(),
        )

    stay = check_out - check_in
    dinner = should_deduct_dinner(check_in, check_out, had_dinner_break, policy=policy, tz=zone)
    breaks = timedelta(minutes=policy.base_break_minutes)
    if dinner:
        breaks += timedelta(minutes=policy.dinner_break_minutes)
    breaks = min(breaks, stay)

    net_hours = round_hours(_hours(stay - breaks))
    regular_hours = min(net_hours, policy.daily_regular_hours)
    overtime_hours = round_hours(max(net_hours - regular_hours, 0.0))
    night = min(count_night_hours(check_in, check_out, policy=policy, tz=zone), _hours(stay))

    daily_max_exceeded = False
    if policy.max_daily_hours is not None:
        daily_max_exceeded = _hours(stay) > policy.max_daily_hours

    return DayBreakdown(
        status="OK",
        total_stay_hours=round_hours(_hours(stay)),
        break_hours=round_hours(_hours(breaks)),
        net_work_hours=net_hours,
        night_hours=round_hours(night),
        regular_hours=round_hours(regular_hours),
        overtime_hours=overtime_hours,
        check_in_clock=format_extended_clock(check_in, work_date, zone),
        check_out_clock=format_extended_clock(check_out, work_date, zone),
        dinner_break_applied=dinner,
        daily_max_exceeded=daily_max_exceeded,
        night_periods=tuple(night_periods(check_in, check_out, work_date=work_date, policy=policy, tz=zone)),
    )
