from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from flextime.errors import InvalidTimeRange
from flextime.models import (
    BreakdownStatus,
    CanonicalDayRecord,
    DayCompleteness,
    ReviewKind,
    ReviewQueueItem,
    WorkHourBreakdown,
)
from flextime.services.clock import as_utc, attendance_timezone
from flextime.services.day_calc import DayBreakdown, calculate_day_breakdown
from flextime.services.policy import PolicySnapshot, PolicyStore
from flextime.settings import get_settings

logger = logging.getLogger("flextime.daily")

DAY_LEVEL_REVIEW_KINDS = (ReviewKind.INCOMPLETE_DAY, ReviewKind.INVALID_TIME_RANGE)


def evaluate_completeness(
    record: CanonicalDayRecord,
    *,
    now: datetime,
    grace_hours: float,
) -> DayCompleteness:
    if record.check_in_ts is not None and record.check_out_ts is not None:
        return DayCompleteness.COMPLETE
    if record.check_in_ts is not None:
        if as_utc(now) - as_utc(record.check_in_ts) <= timedelta(hours=grace_hours):
            return DayCompleteness.OPEN
    return DayCompleteness.INCOMPLETE


def open_review_item(
    db: Session,
    *,
    kind: ReviewKind,
    employee_id: int,
    work_date: date | None,
    detail: str,
    punch_event_id: int | None = None,
) -> ReviewQueueItem:
    """Queue an item for manual review; day-level kinds keep one open item per day."""
    if kind in DAY_LEVEL_REVIEW_KINDS:
        existing = db.scalar(
            select(ReviewQueueItem).where(
                ReviewQueueItem.kind == kind,
                ReviewQueueItem.employee_id == employee_id,
                ReviewQueueItem.work_date == work_date,
                ReviewQueueItem.resolved.is_(False),
            )
        )
        if existing is not None:
            existing.detail = detail
            return existing

    item = ReviewQueueItem(
        kind=kind,
        employee_id=employee_id,
        work_date=work_date,
        punch_event_id=punch_event_id,
        detail=detail,
        resolved=False,
        created_at=datetime.now(timezone.utc),
    )
    db.add(item)
    db.flush()
    logger.warning(
        "review_item_opened",
        extra={
            "review_item_id": item.id,
            "kind": kind.value,
            "employee_id": employee_id,
            "work_date": work_date.isoformat() if work_date else None,
        },
    )
    return item


def resolve_review_items(
    db: Session,
    *,
    employee_id: int,
    work_date: date,
    kinds: Iterable[ReviewKind] = DAY_LEVEL_REVIEW_KINDS,
    resolved_by: str = "system",
    note: str,
) -> int:
    items = db.scalars(
        select(ReviewQueueItem).where(
            ReviewQueueItem.employee_id == employee_id,
            ReviewQueueItem.work_date == work_date,
            ReviewQueueItem.kind.in_(list(kinds)),
            ReviewQueueItem.resolved.is_(False),
        )
    ).all()
    now_utc = datetime.now(timezone.utc)
    for item in items:
        item.resolved = True
        item.resolved_by = resolved_by
        item.resolved_at = now_utc
        item.resolution_note = note
    return len(items)


def _apply_breakdown(row: WorkHourBreakdown, result: DayBreakdown) -> None:
    row.total_stay_hours = result.total_stay_hours
    row.break_hours = result.break_hours
    row.net_work_hours = result.net_work_hours
    row.night_hours = result.night_hours
    row.regular_hours = result.regular_hours
    row.overtime_hours = result.overtime_hours
    row.check_in_clock = result.check_in_clock
    row.check_out_clock = result.check_out_clock
    row.dinner_break_applied = result.dinner_break_applied
    row.daily_max_exceeded = result.daily_max_exceeded
    row.night_periods = [
        {"start_clock": item.start_clock, "end_clock": item.end_clock, "hours": item.hours}
        for item in result.night_periods
    ]


def recompute_day(
    db: Session,
    record: CanonicalDayRecord,
    *,
    policy: PolicySnapshot,
    now: datetime | None = None,
) -> WorkHourBreakdown:
    """Refresh completeness and the hour breakdown after the day record changed."""
    settings = get_settings()
    now_utc = as_utc(now) if now is not None else datetime.now(timezone.utc)
    record.completeness = evaluate_completeness(
        record,
        now=now_utc,
        grace_hours=settings.open_shift_grace_hours,
    )

    row = db.scalar(
        select(WorkHourBreakdown).where(
            WorkHourBreakdown.employee_id == record.employee_id,
            WorkHourBreakdown.work_date == record.work_date,
        )
    )
    if row is None:
        row = WorkHourBreakdown(
            employee_id=record.employee_id,
            work_date=record.work_date,
            day_record_id=record.id,
            status=BreakdownStatus.INCOMPLETE,
            source_record_version=record.version,
            computed_at=now_utc,
        )
        db.add(row)

    row.error_code = None
    try:
        result = calculate_day_breakdown(
            work_date=record.work_date,
            check_in_ts=record.check_in_ts,
            check_out_ts=record.check_out_ts,
            had_dinner_break=record.had_dinner_break,
            policy=policy,
            tz=attendance_timezone(),
        )
    except InvalidTimeRange as exc:
        _apply_breakdown(row, DayBreakdown(status=BreakdownStatus.ERROR.value))
        row.status = BreakdownStatus.ERROR
        row.error_code = exc.code
        open_review_item(
            db,
            kind=ReviewKind.INVALID_TIME_RANGE,
            employee_id=record.employee_id,
            work_date=record.work_date,
            detail=exc.message,
        )
        logger.warning(
            "day_breakdown_invalid_range",
            extra={"employee_id": record.employee_id, "work_date": record.work_date, **exc.context},
        )
    else:
        _apply_breakdown(row, result)
        row.status = BreakdownStatus(result.status)
        if row.status == BreakdownStatus.OK:
            resolved = resolve_review_items(
                db,
                employee_id=record.employee_id,
                work_date=record.work_date,
                note="Day record completed.",
            )
            if resolved:
                logger.info(
                    "review_items_auto_resolved",
                    extra={"employee_id": record.employee_id, "work_date": record.work_date, "count": resolved},
                )

    if record.completeness == DayCompleteness.INCOMPLETE:
        missing = "check-in" if record.check_in_ts is None else "check-out"
        open_review_item(
            db,
            kind=ReviewKind.INCOMPLETE_DAY,
            employee_id=record.employee_id,
            work_date=record.work_date,
            detail=f"Day has no {missing}.",
        )

    row.day_record_id = record.id
    row.source_record_version = record.version
    row.computed_at = now_utc
    db.flush()
    return row


def sweep_stale_open_days(
    db: Session,
    policy_store: PolicyStore,
    *,
    start_date: date | None = None,
    end_date: date | None = None,
    now: datetime | None = None,
) -> int:
    """Close OPEN days whose check-out never arrived within the grace period."""
    stmt = select(CanonicalDayRecord).where(CanonicalDayRecord.completeness == DayCompleteness.OPEN)
    if start_date is not None:
        stmt = stmt.where(CanonicalDayRecord.work_date >= start_date)
    if end_date is not None:
        stmt = stmt.where(CanonicalDayRecord.work_date <= end_date)

    closed = 0
    for record in db.scalars(stmt).all():
        recompute_day(db, record, policy=policy_store.policy_for(record.work_date), now=now)
        if record.completeness == DayCompleteness.INCOMPLETE:
            closed += 1
    if closed:
        logger.info("stale_open_days_closed", extra={"count": closed})
    return closed


def list_employee_days(
    db: Session,
    *,
    employee_id: int,
    start_date: date | None = None,
    end_date: date | None = None,
) -> list[tuple[CanonicalDayRecord, WorkHourBreakdown | None]]:
    stmt = (
        select(CanonicalDayRecord, WorkHourBreakdown)
        .outerjoin(
            WorkHourBreakdown,
            (WorkHourBreakdown.employee_id == CanonicalDayRecord.employee_id)
            & (WorkHourBreakdown.work_date == CanonicalDayRecord.work_date),
        )
        .where(CanonicalDayRecord.employee_id == employee_id)
        .order_by(CanonicalDayRecord.work_date.asc())
    )
    if start_date is not None:
        stmt = stmt.where(CanonicalDayRecord.work_date >= start_date)
    if end_date is not None:
        stmt = stmt.where(CanonicalDayRecord.work_date <= end_date)
    return [(record, breakdown) for record, breakdown in db.execute(stmt).all()]
