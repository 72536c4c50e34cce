from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from flextime.audit import log_audit
from flextime.errors import ApiError, EngineError, MissingPolicyConfig, SettlementBlocked, SettlementLocked
from flextime.models import (
    AuditActorType,
    BreakdownStatus,
    CanonicalDayRecord,
    DayCompleteness,
    Employee,
    PeriodStatus,
    ReviewQueueItem,
    SettlementPeriod,
    SettlementResult,
    WorkHourBreakdown,
)
from flextime.services.clock import as_utc
from flextime.services.daily import DAY_LEVEL_REVIEW_KINDS, sweep_stale_open_days
from flextime.services.policy import PolicySnapshot, PolicyStore
from flextime.services.settlement_calc import (
    BlockingDay,
    DaySnapshot,
    EmployeeSettlement,
    MonthlyDetail,
    calculate_employee_settlement,
    resolve_hourly_rate,
)
from flextime.settings import get_settings

logger = logging.getLogger("flextime.settlement")


@dataclass
class EmployeeWork:
    employee_id: int
    full_name: str
    hourly_rate: float | None
    days: list[DaySnapshot] = field(default_factory=list)
    blocking: list[BlockingDay] = field(default_factory=list)


@dataclass
class RecomputeOutcome:
    period_id: int
    results: list[SettlementResult] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)


def _now_utc(now: datetime | None) -> datetime:
    return as_utc(now) if now is not None else datetime.now(timezone.utc)


def _result_rows(db: Session, period_id: int) -> list[SettlementResult]:
    return list(db.scalars(select(SettlementResult).where(SettlementResult.period_id == period_id)).all())


def get_period(db: Session, period_id: int, *, for_update: bool = False) -> SettlementPeriod:
    stmt = select(SettlementPeriod).where(SettlementPeriod.id == period_id)
    if for_update:
        stmt = stmt.with_for_update()
    period = db.scalar(stmt)
    if period is None:
        raise ApiError(status_code=404, code="PERIOD_NOT_FOUND", message="Settlement period not found.")
    return period


def create_period(
    db: Session,
    *,
    name: str,
    start_date: date,
    end_date: date,
    standard_weekly_hours: float | None = None,
    max_daily_hours: float | None = None,
    max_weekly_hours: float | None = None,
    actor_id: str,
) -> SettlementPeriod:
    if end_date < start_date:
        raise ApiError(status_code=422, code="INVALID_PERIOD_RANGE", message="end_date must not precede start_date.")
    period = SettlementPeriod(
        name=name,
        start_date=start_date,
        end_date=end_date,
        standard_weekly_hours=standard_weekly_hours,
        max_daily_hours=max_daily_hours,
        max_weekly_hours=max_weekly_hours,
        status=PeriodStatus.PLANNED,
    )
    db.add(period)
    db.flush()
    log_audit(
        db,
        actor_type=AuditActorType.ADMIN,
        actor_id=actor_id,
        action="SETTLEMENT_PERIOD_CREATED",
        success=True,
        entity_type="settlement_period",
        entity_id=str(period.id),
        details={"name": name, "start_date": start_date.isoformat(), "end_date": end_date.isoformat()},
    )
    db.commit()
    db.refresh(period)
    return period


def activate_period(db: Session, period_id: int, *, actor_id: str) -> SettlementPeriod:
    period = get_period(db, period_id, for_update=True)
    if period.status == PeriodStatus.COMPLETED:
        raise SettlementLocked("Completed periods must be reopened, not activated.", period_id=period.id)
    if period.status != PeriodStatus.ACTIVE:
        period.status = PeriodStatus.ACTIVE
        log_audit(
            db,
            actor_type=AuditActorType.ADMIN,
            actor_id=actor_id,
            action="SETTLEMENT_PERIOD_ACTIVATED",
            success=True,
            entity_type="settlement_period",
            entity_id=str(period.id),
        )
    db.commit()
    db.refresh(period)
    return period


def load_employee_work(db: Session, period: SettlementPeriod) -> list[EmployeeWork]:
    """Snapshot every employee with attendance inside the period."""
    in_range = (
        CanonicalDayRecord.work_date >= period.start_date,
        CanonicalDayRecord.work_date <= period.end_date,
    )
    employee_rows = db.execute(
        select(Employee)
        .join(CanonicalDayRecord, CanonicalDayRecord.employee_id == Employee.id)
        .where(*in_range)
        .distinct()
        .order_by(Employee.id.asc())
    ).scalars().all()
    works = {
        employee.id: EmployeeWork(
            employee_id=employee.id,
            full_name=employee.full_name,
            hourly_rate=employee.hourly_rate,
        )
        for employee in employee_rows
    }

    breakdowns = db.scalars(
        select(WorkHourBreakdown).where(
            WorkHourBreakdown.work_date >= period.start_date,
            WorkHourBreakdown.work_date <= period.end_date,
            WorkHourBreakdown.status == BreakdownStatus.OK,
        )
    ).all()
    for row in breakdowns:
        work = works.get(row.employee_id)
        if work is None:
            continue
        work.days.append(
            DaySnapshot(
                work_date=row.work_date,
                net_work_hours=row.net_work_hours or 0.0,
                night_hours=row.night_hours or 0.0,
            )
        )

    open_days = db.scalars(
        select(CanonicalDayRecord).where(*in_range, CanonicalDayRecord.completeness == DayCompleteness.OPEN)
    ).all()
    for record in open_days:
        if record.employee_id in works:
            works[record.employee_id].blocking.append(BlockingDay(record.work_date, DayCompleteness.OPEN.value))

    review_items = db.scalars(
        select(ReviewQueueItem).where(
            ReviewQueueItem.kind.in_(DAY_LEVEL_REVIEW_KINDS),
            ReviewQueueItem.resolved.is_(False),
            ReviewQueueItem.work_date >= period.start_date,
            ReviewQueueItem.work_date <= period.end_date,
        )
    ).all()
    for item in review_items:
        if item.employee_id in works and item.work_date is not None:
            works[item.employee_id].blocking.append(BlockingDay(item.work_date, item.kind.value))

    for work in works.values():
        work.days.sort(key=lambda day: day.work_date)
        work.blocking.sort(key=lambda day: day.work_date)
    return list(works.values())


def _settle_one(
    work: EmployeeWork,
    *,
    start_date: date,
    end_date: date,
    standard_weekly_hours: float,
    hourly_rate: float,
    policy: PolicySnapshot,
) -> EmployeeSettlement:
    return calculate_employee_settlement(
        employee_id=work.employee_id,
        days=work.days,
        start_date=start_date,
        end_date=end_date,
        standard_weekly_hours=standard_weekly_hours,
        hourly_rate=hourly_rate,
        policy=policy,
        blocking=work.blocking,
    )


def _write_result(row: SettlementResult, settled: EmployeeSettlement, computed_at: datetime) -> None:
    row.work_days = settled.work_days
    row.total_actual_hours = settled.total_actual_hours
    row.number_of_weeks = settled.number_of_weeks
    row.weekly_average_hours = settled.weekly_average_hours
    row.standard_weekly_hours = settled.standard_weekly_hours
    row.excess_hours = settled.excess_hours
    row.total_night_hours = settled.total_night_hours
    row.overtime_allowance_hours = settled.overtime_allowance_hours
    row.hourly_rate = settled.hourly_rate
    row.overtime_multiplier = settled.overtime_multiplier
    row.overtime_allowance_amount = settled.overtime_allowance_amount
    row.estimated_night_allowance_amount = settled.estimated_night_allowance_amount
    row.monthly_details = [
        {
            "month": item.month,
            "work_days": item.work_days,
            "work_hours": item.work_hours,
            "night_hours": item.night_hours,
        }
        for item in settled.monthly
    ]
    row.computed_at = computed_at


def recompute_period(
    db: Session,
    period_id: int,
    *,
    policy_store: PolicyStore,
    max_workers: int | None = None,
    now: datetime | None = None,
) -> RecomputeOutcome:
    """Recompute every employee's result for a period that is not COMPLETED.

    Employees are settled in a worker pool over an in-memory snapshot. An
    employee whose days still need review lands in ``errors`` and keeps no
    result row; everybody else is upserted.
    """
    period = get_period(db, period_id, for_update=True)
    if period.status == PeriodStatus.COMPLETED:
        raise SettlementLocked("Period is completed; reopen it before recomputing.", period_id=period.id)

    sweep_stale_open_days(db, policy_store, start_date=period.start_date, end_date=period.end_date, now=now)

    policy = policy_store.policy_for(period.start_date)
    standard_weekly_hours = policy.require_standard_weekly_hours(period.standard_weekly_hours)
    works = load_employee_work(db, period)

    rates: dict[int, float] = {}
    missing_rates: list[int] = []
    for work in works:
        try:
            rates[work.employee_id] = resolve_hourly_rate(work.hourly_rate, policy, employee_id=work.employee_id)
        except MissingPolicyConfig:
            missing_rates.append(work.employee_id)
    if missing_rates:
        raise MissingPolicyConfig(
            "hourly_rate is not configured for some employees.",
            field="hourly_rate",
            period_id=period.id,
            employee_ids=missing_rates,
        )

    workers = max_workers or get_settings().settlement_max_workers
    settled: dict[int, EmployeeSettlement] = {}
    errors: list[dict[str, Any]] = []
    if works:
        with ThreadPoolExecutor(max_workers=max(1, workers)) as pool:
            futures = {
                work.employee_id: (
                    work,
                    pool.submit(
                        _settle_one,
                        work,
                        start_date=period.start_date,
                        end_date=period.end_date,
                        standard_weekly_hours=standard_weekly_hours,
                        hourly_rate=rates[work.employee_id],
                        policy=policy,
                    ),
                )
                for work in works
            }
            for employee_id, (work, future) in futures.items():
                try:
                    settled[employee_id] = future.result()
                except EngineError as exc:
                    errors.append({"employee_id": employee_id, "full_name": work.full_name, **exc.to_dict()})

    computed_at = _now_utc(now)
    existing = {row.employee_id: row for row in _result_rows(db, period.id)}
    outcome = RecomputeOutcome(period_id=period.id, errors=errors)
    for employee_id, result in settled.items():
        row = existing.pop(employee_id, None)
        if row is None:
            row = SettlementResult(period_id=period.id, employee_id=employee_id)
            db.add(row)
        _write_result(row, result, computed_at)
        row.finalized = False
        outcome.results.append(row)
    for stale in existing.values():
        db.delete(stale)

    db.commit()
    logger.info(
        "settlement_recomputed",
        extra={
            "period_id": period.id,
            "employees": len(works),
            "settled": len(settled),
            "errors": len(errors),
        },
    )
    return outcome


def finalize_period(
    db: Session,
    period_id: int,
    *,
    policy_store: PolicyStore,
    actor_id: str,
    now: datetime | None = None,
) -> SettlementPeriod:
    outcome = recompute_period(db, period_id, policy_store=policy_store, now=now)
    if outcome.errors:
        log_audit(
            db,
            actor_type=AuditActorType.ADMIN,
            actor_id=actor_id,
            action="SETTLEMENT_FINALIZE_BLOCKED",
            success=False,
            entity_type="settlement_period",
            entity_id=str(period_id),
            details={"affected_employees": [item["employee_id"] for item in outcome.errors]},
            commit=True,
        )
        raise SettlementBlocked(
            f"{len(outcome.errors)} employee(s) have days that need review.",
            affected_employees=outcome.errors,
            period_id=period_id,
        )

    period = get_period(db, period_id, for_update=True)
    finalized_at = _now_utc(now)
    rows = _result_rows(db, period.id)
    for row in rows:
        row.finalized = True
        row.finalized_by = actor_id
        row.finalized_at = finalized_at
    period.status = PeriodStatus.COMPLETED
    period.completed_by = actor_id
    period.completed_at = finalized_at
    log_audit(
        db,
        actor_type=AuditActorType.ADMIN,
        actor_id=actor_id,
        action="SETTLEMENT_FINALIZED",
        success=True,
        entity_type="settlement_period",
        entity_id=str(period.id),
        details={"result_count": len(rows)},
    )
    db.commit()
    db.refresh(period)
    return period


def reopen_period(
    db: Session,
    period_id: int,
    *,
    actor_id: str,
    reason: str | None = None,
    now: datetime | None = None,
) -> SettlementPeriod:
    period = get_period(db, period_id, for_update=True)
    if period.status != PeriodStatus.COMPLETED:
        raise ApiError(status_code=409, code="PERIOD_NOT_COMPLETED", message="Only completed periods can be reopened.")

    reopened_at = _now_utc(now)
    rows = _result_rows(db, period.id)
    for row in rows:
        row.finalized = False
        row.reopened_by = actor_id
        row.reopened_at = reopened_at
    period.status = PeriodStatus.ACTIVE
    period.completed_by = None
    period.completed_at = None
    log_audit(
        db,
        actor_type=AuditActorType.ADMIN,
        actor_id=actor_id,
        action="SETTLEMENT_REOPENED",
        success=True,
        entity_type="settlement_period",
        entity_id=str(period.id),
        details={"reason": reason, "result_count": len(rows)},
    )
    db.commit()
    db.refresh(period)
    return period


def period_results(db: Session, period_id: int) -> list[tuple[SettlementResult, Employee]]:
    get_period(db, period_id)
    rows = db.execute(
        select(SettlementResult, Employee)
        .join(Employee, Employee.id == SettlementResult.employee_id)
        .where(SettlementResult.period_id == period_id)
        .order_by(Employee.full_name.asc(), Employee.id.asc())
    ).all()
    return [(result, employee) for result, employee in rows]


def stored_monthly_details(result: SettlementResult) -> list[MonthlyDetail]:
    """Monthly figures frozen with the result when it was last computed."""
    return [MonthlyDetail(**item) for item in result.monthly_details or []]


def employee_settlements(db: Session, employee_id: int) -> list[tuple[SettlementResult, SettlementPeriod]]:
    if db.get(Employee, employee_id) is None:
        raise ApiError(status_code=404, code="EMPLOYEE_NOT_FOUND", message="Employee not found.")
    rows = db.execute(
        select(SettlementResult, SettlementPeriod)
        .join(SettlementPeriod, SettlementPeriod.id == SettlementResult.period_id)
        .where(SettlementResult.employee_id == employee_id)
        .order_by(SettlementPeriod.start_date.desc())
    ).all()
    return [(result, period) for result, period in rows]
