from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Protocol

from flextime.errors import IncompleteDayRecord, MissingPolicyConfig
from flextime.services.clock import round_amount, round_hours
from flextime.services.policy import DEFAULT_POLICY, PolicySnapshot


@dataclass(frozen=True)
class DaySnapshot:
    work_date: date
    net_work_hours: float
    night_hours: float


@dataclass(frozen=True)
class BlockingDay:
    work_date: date
    reason: str


@dataclass(frozen=True)
class MonthlyDetail:
    month: str
    work_days: int
    work_hours: float
    night_hours: float


@dataclass(frozen=True)
class EmployeeSettlement:
    employee_id: int
    work_days: int
    total_actual_hours: float
    number_of_weeks: float
    weekly_average_hours: float
    standard_weekly_hours: float
    excess_hours: float
    total_night_hours: float
    overtime_allowance_hours: float
    hourly_rate: float
    overtime_multiplier: float
    overtime_allowance_amount: float
    estimated_night_allowance_amount: float
    monthly: tuple[MonthlyDetail, ...] = field(default=())


class SettlementLike(Protocol):
    weekly_average_hours: float
    total_night_hours: float
    overtime_allowance_hours: float
    overtime_allowance_amount: float
    estimated_night_allowance_amount: float


@dataclass(frozen=True)
class PeriodSummary:
    total_employees: int
    employees_with_allowance: int
    total_allowance_amount: float
    average_weekly_hours: float
    total_night_hours: float
    estimated_night_allowance_amount: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_employees": self.total_employees,
            "employees_with_allowance": self.employees_with_allowance,
            "total_allowance_amount": self.total_allowance_amount,
            "average_weekly_hours": self.average_weekly_hours,
            "total_night_hours": self.total_night_hours,
            "estimated_night_allowance_amount": self.estimated_night_allowance_amount,
        }


def _month_end(year: int, month: int) -> date:
    if month == 12:
        return date(year, 12, 31)
    return date(year, month + 1, 1) - timedelta(days=1)


def is_full_quarter(start_date: date, end_date: date) -> bool:
    """True when the range covers three whole months, e.g. Jun 1 to Aug 31."""
    if start_date.day != 1:
        return False
    month_index = start_date.year * 12 + start_date.month - 1 + 2
    return end_date == _month_end(month_index // 12, month_index % 12 + 1)


def settlement_weeks(start_date: date, end_date: date, *, quarter_weeks: int = 12) -> float:
    """Number of weeks the weekly average is taken over.

    Three whole months count as ``quarter_weeks``. Any other range is its
    whole weeks plus the remaining days prorated over seven.
    """
    if end_date < start_date:
        raise ValueError("Period end precedes its start.")
    if is_full_quarter(start_date, end_date):
        return float(quarter_weeks)
    days = (end_date - start_date).days + 1
    whole_weeks, remaining_days = divmod(days, 7)
    return whole_weeks + remaining_days / 7


def resolve_hourly_rate(employee_rate: float | None, policy: PolicySnapshot, *, employee_id: int | None = None) -> float:
    rate = employee_rate if employee_rate is not None else policy.hourly_rate
    if rate is None:
        raise MissingPolicyConfig(
            "hourly_rate is not configured.",
            field="hourly_rate",
            employee_id=employee_id,
            policy_id=policy.policy_id,
        )
    return float(rate)


def monthly_breakdown(days: Iterable[DaySnapshot]) -> list[MonthlyDetail]:
    buckets: dict[str, list[DaySnapshot]] = {}
    for day in days:
        buckets.setdefault(f"{day.work_date.year:04d}-{day.work_date.month:02d}", []).append(day)
    return [
        MonthlyDetail(
            month=month,
            work_days=len(items),
            work_hours=round_hours(sum(item.net_work_hours for item in items)),
            night_hours=round_hours(sum(item.night_hours for item in items)),
        )
        for month, items in sorted(buckets.items())
    ]


def calculate_employee_settlement(
    *,
    employee_id: int,
    days: Sequence[DaySnapshot],
    start_date: date,
    end_date: date,
    standard_weekly_hours: float,
    hourly_rate: float,
    policy: PolicySnapshot = DEFAULT_POLICY,
    blocking: Sequence[BlockingDay] = (),
) -> EmployeeSettlement:
    """Settle one employee for one period.

    Hours already paid as night allowance are subtracted once from the excess
    before the overtime multiplier is applied.
    """
    if blocking:
        raise IncompleteDayRecord(
            f"{len(blocking)} day(s) need review before settlement.",
            employee_id=employee_id,
            work_dates=[item.work_date.isoformat() for item in blocking],
            reasons=sorted({item.reason for item in blocking}),
        )

    in_period = [day for day in days if start_date <= day.work_date <= end_date]
    total_hours = sum(day.net_work_hours for day in in_period)
    night_hours = sum(day.night_hours for day in in_period)
    weeks = settlement_weeks(start_date, end_date, quarter_weeks=policy.quarter_weeks)
    weekly_average = total_hours / weeks
    excess = max(weekly_average - standard_weekly_hours, 0.0) * weeks
    allowance_hours = max(excess - night_hours, 0.0)

    return EmployeeSettlement(
        employee_id=employee_id,
        work_days=len(in_period),
        total_actual_hours=round_hours(total_hours),
        number_of_weeks=round(weeks, 4),
        weekly_average_hours=round_amount(weekly_average),
        standard_weekly_hours=float(standard_weekly_hours),
        excess_hours=round_hours(excess),
        total_night_hours=round_hours(night_hours),
        overtime_allowance_hours=round_hours(allowance_hours),
        hourly_rate=hourly_rate,
        overtime_multiplier=policy.overtime_multiplier,
        overtime_allowance_amount=round_amount(allowance_hours * hourly_rate * policy.overtime_multiplier),
        estimated_night_allowance_amount=round_amount(night_hours * hourly_rate * policy.night_allowance_rate),
        monthly=tuple(monthly_breakdown(in_period)),
    )


def summarize_settlements(results: Sequence[SettlementLike]) -> PeriodSummary:
    if not results:
        return PeriodSummary(0, 0, 0.0, 0.0, 0.0, 0.0)
    return PeriodSummary(
        total_employees=len(results),
        employees_with_allowance=sum(1 for item in results if item.overtime_allowance_hours > 0),
        total_allowance_amount=round_amount(sum(item.overtime_allowance_amount for item in results)),
        average_weekly_hours=round_amount(sum(item.weekly_average_hours for item in results) / len(results)),
        total_night_hours=round_hours(sum(item.total_night_hours for item in results)),
        estimated_night_allowance_amount=round_amount(
            sum(item.estimated_night_allowance_amount for item in results)
        ),
    )
