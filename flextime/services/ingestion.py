from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from flextime.audit import log_audit
from flextime.errors import ApiError, DuplicateDetected, UnmappedActionCode
from flextime.models import (
    AuditActorType,
    CanonicalAction,
    CanonicalDayRecord,
    Employee,
    PunchEvent,
    PunchOutcome,
    PunchSource,
    ReviewKind,
)
from flextime.services.clock import as_utc, attendance_timezone, local_date, localize_input
from flextime.services.daily import open_review_item, recompute_day
from flextime.services.dedup import PUNCH_LOCKS, DayRecordRace, apply_punch, punch_lock_key
from flextime.services.normalizer import NormalizedPunch, PunchInput, normalize_punch
from flextime.services.policy import PolicyStore
from flextime.services.terminal_feed import BatchValidationReport, validate_batch
from flextime.settings import get_settings

logger = logging.getLogger("flextime.ingestion")

_RACE_RETRIES = 2


@dataclass
class IngestVerdict:
    accepted: bool
    outcome: PunchOutcome | None
    reason: str | None = None
    work_date: date | None = None
    day_record_id: int | None = None
    punch_event_id: int | None = None
    conflicting_record: dict[str, Any] | None = None
    review_item_id: int | None = None
    supplementary: bool = False


@dataclass
class BatchResult:
    validation: BatchValidationReport
    verdicts: list[IngestVerdict] = field(default_factory=list)

    @property
    def accepted_count(self) -> int:
        return sum(1 for verdict in self.verdicts if verdict.accepted)

    @property
    def rejected_count(self) -> int:
        return len(self.verdicts) - self.accepted_count


def _day_record(db: Session, employee_id: int, work_date: date) -> CanonicalDayRecord | None:
    return db.scalar(
        select(CanonicalDayRecord).where(
            CanonicalDayRecord.employee_id == employee_id,
            CanonicalDayRecord.work_date == work_date,
        )
    )


def resolve_work_date(
    db: Session,
    *,
    employee_id: int,
    action: CanonicalAction,
    ts_utc: datetime,
    overnight_window_hours: float | None = None,
) -> date:
    """Pick the work date a punch belongs to.

    Check-ins belong to their local calendar date. A check-out is attributed
    to the previous date when today has no earlier check-in and yesterday's
    shift is still running (or already ended after midnight) with a check-in
    inside the overnight window.
    """
    tz = attendance_timezone()
    ts = as_utc(ts_utc)
    today = local_date(ts, tz)
    if action != CanonicalAction.CHECK_OUT:
        return today

    same_day = _day_record(db, employee_id, today)
    if same_day is not None and same_day.check_in_ts is not None and as_utc(same_day.check_in_ts) <= ts:
        return today

    window_hours = overnight_window_hours
    if window_hours is None:
        window_hours = get_settings().overnight_checkout_window_hours
    previous_date = today - timedelta(days=1)
    previous = _day_record(db, employee_id, previous_date)
    if previous is None or previous.check_in_ts is None:
        return today

    elapsed = ts - as_utc(previous.check_in_ts)
    if not timedelta(0) <= elapsed <= timedelta(hours=window_hours):
        return today
    if previous.check_out_ts is not None and local_date(previous.check_out_ts, tz) <= previous_date:
        return today
    return previous_date


def _existing_delivery(db: Session, *, employee_id: int, source: PunchSource, raw_action_code: str, ts_utc: datetime) -> PunchEvent | None:
    return db.scalar(
        select(PunchEvent).where(
            PunchEvent.employee_id == employee_id,
            PunchEvent.source == source,
            PunchEvent.raw_action_code == raw_action_code,
            PunchEvent.ts_utc == ts_utc,
        )
    )


def _redelivery_verdict(event: PunchEvent) -> IngestVerdict:
    return IngestVerdict(
        accepted=False,
        outcome=PunchOutcome.DUPLICATE_DETECTED,
        reason=f"Punch already received as event #{event.id}.",
        work_date=event.work_date,
        day_record_id=event.day_record_id,
        punch_event_id=event.id,
        conflicting_record={"record_type": "punch_event", "record_id": event.id, "outcome": event.outcome.value},
    )


def _new_event(payload: PunchInput, ts_utc: datetime, outcome: PunchOutcome) -> PunchEvent:
    return PunchEvent(
        employee_id=payload.employee_id,
        source=payload.source,
        raw_action_code=payload.raw_action_code,
        ts_utc=ts_utc,
        had_dinner=payload.had_dinner,
        outcome=outcome,
        received_at=datetime.now(timezone.utc),
    )


def _store_unreconciled(
    db: Session,
    payload: PunchInput,
    ts_utc: datetime,
    *,
    outcome: PunchOutcome,
    action: CanonicalAction | None,
    note: str,
) -> PunchEvent | IngestVerdict:
    event = _new_event(payload, ts_utc, outcome)
    event.action = action
    event.work_date = payload.work_date or local_date(ts_utc)
    event.note = note
    db.add(event)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        existing = _existing_delivery(
            db,
            employee_id=payload.employee_id,
            source=payload.source,
            raw_action_code=payload.raw_action_code,
            ts_utc=ts_utc,
        )
        if existing is None:
            raise
        return _redelivery_verdict(existing)
    return event


def _reconcile(
    db: Session,
    payload: PunchInput,
    punch: NormalizedPunch,
    *,
    policy_store: PolicyStore,
    now: datetime | None,
) -> IngestVerdict:
    work_date = payload.work_date or resolve_work_date(
        db,
        employee_id=punch.employee_id,
        action=punch.action,
        ts_utc=punch.ts_utc,
    )
    policy = policy_store.policy_for(work_date)

    with PUNCH_LOCKS.hold(punch_lock_key(punch.employee_id, work_date, punch.action)):
        event = _new_event(payload, punch.ts_utc, PunchOutcome.INSERTED)
        event.action = punch.action
        event.work_date = work_date
        db.add(event)
        try:
            db.flush()
        except IntegrityError:
            db.rollback()
            existing = _existing_delivery(
                db,
                employee_id=punch.employee_id,
                source=punch.source,
                raw_action_code=punch.raw_action_code,
                ts_utc=punch.ts_utc,
            )
            if existing is None:
                raise
            return _redelivery_verdict(existing)

        try:
            result = apply_punch(db, punch, work_date=work_date, policy=policy, punch_event_id=event.id)
        except DuplicateDetected as exc:
            db.rollback()
            logger.info(
                "punch_duplicate_detected",
                extra={
                    "employee_id": punch.employee_id,
                    "work_date": work_date,
                    "action": punch.action.value,
                    "source": punch.source.value,
                    "conflicting_record": exc.conflicting_record,
                },
            )
            return IngestVerdict(
                accepted=False,
                outcome=PunchOutcome.DUPLICATE_DETECTED,
                reason=exc.message,
                work_date=work_date,
                day_record_id=exc.context.get("day_record_id"),
                conflicting_record=exc.conflicting_record,
            )

        record = result.day_record
        event.outcome = result.outcome
        event.day_record_id = record.id
        event.note = result.note

        if result.outcome == PunchOutcome.MERGED and result.replaced is not None:
            log_audit(
                db,
                actor_type=AuditActorType.SYSTEM,
                actor_id="ingestion",
                action="PUNCH_MERGED",
                success=True,
                entity_type="canonical_day_record",
                entity_id=str(record.id),
                details={
                    "work_date": work_date.isoformat(),
                    "action": punch.action.value,
                    "replaced": result.replaced.to_ref(),
                    "replacement": {
                        "punch_event_id": event.id,
                        "ts_utc": punch.ts_utc.isoformat(),
                        "source": punch.source.value,
                    },
                    "version": record.version,
                },
            )

        recompute_day(db, record, policy=policy, now=now)
        db.commit()

    return IngestVerdict(
        accepted=True,
        outcome=result.outcome,
        reason=result.note,
        work_date=work_date,
        day_record_id=record.id,
        punch_event_id=event.id,
        supplementary=result.supplementary_punch is not None,
    )


def ingest_punch(
    db: Session,
    payload: PunchInput,
    *,
    policy_store: PolicyStore,
    now: datetime | None = None,
) -> IngestVerdict:
    """Normalize, reconcile and persist one punch; the verdict is safe to return to producers."""
    employee = db.get(Employee, payload.employee_id)
    if employee is None or not employee.is_active:
        raise ApiError(status_code=404, code="EMPLOYEE_NOT_FOUND", message="Employee not found.")

    ts_utc = localize_input(payload.ts)
    existing = _existing_delivery(
        db,
        employee_id=payload.employee_id,
        source=payload.source,
        raw_action_code=payload.raw_action_code,
        ts_utc=ts_utc,
    )
    if existing is not None:
        return _redelivery_verdict(existing)

    try:
        punch = normalize_punch(
            employee_id=payload.employee_id,
            ts_utc=ts_utc,
            source=payload.source,
            raw_action_code=payload.raw_action_code,
            had_dinner=payload.had_dinner,
        )
    except UnmappedActionCode as exc:
        stored = _store_unreconciled(
            db,
            payload,
            ts_utc,
            outcome=PunchOutcome.UNMAPPED,
            action=None,
            note=exc.message,
        )
        if isinstance(stored, IngestVerdict):
            return stored
        item = open_review_item(
            db,
            kind=ReviewKind.UNMAPPED_ACTION_CODE,
            employee_id=payload.employee_id,
            work_date=stored.work_date,
            punch_event_id=stored.id,
            detail=exc.message,
        )
        db.commit()
        return IngestVerdict(
            accepted=False,
            outcome=PunchOutcome.UNMAPPED,
            reason=exc.message,
            work_date=stored.work_date,
            punch_event_id=stored.id,
            review_item_id=item.id,
        )

    if punch.is_ignored:
        stored = _store_unreconciled(
            db,
            payload,
            ts_utc,
            outcome=PunchOutcome.IGNORED,
            action=CanonicalAction.IGNORED,
            note="Non-attendance action code.",
        )
        if isinstance(stored, IngestVerdict):
            return stored
        db.commit()
        return IngestVerdict(
            accepted=True,
            outcome=PunchOutcome.IGNORED,
            reason=stored.note,
            work_date=stored.work_date,
            punch_event_id=stored.id,
        )

    attempt = 1
    while True:
        try:
            return _reconcile(db, payload, punch, policy_store=policy_store, now=now)
        except DayRecordRace:
            if attempt >= _RACE_RETRIES:
                raise
            logger.warning(
                "day_record_race_retry",
                extra={"employee_id": punch.employee_id, "attempt": attempt},
            )
            attempt += 1


def ingest_batch(
    db: Session,
    payloads: Sequence[PunchInput],
    *,
    policy_store: PolicyStore,
    now: datetime | None = None,
) -> BatchResult:
    """Validate then ingest a batch in timestamp order; verdicts keep input order."""
    report = validate_batch(payloads, now=now)
    rejected = report.rejected_indexes()
    verdicts: list[IngestVerdict | None] = [None] * len(payloads)

    for index in rejected:
        verdicts[index] = IngestVerdict(
            accepted=False,
            outcome=None,
            reason="; ".join(issue.message for issue in report.issues_for(index, level="error")),
        )

    order = sorted(
        (index for index in range(len(payloads)) if index not in rejected),
        key=lambda index: localize_input(payloads[index].ts),
    )
    for index in order:
        try:
            verdicts[index] = ingest_punch(db, payloads[index], policy_store=policy_store, now=now)
        except ApiError as exc:
            db.rollback()
            verdicts[index] = IngestVerdict(accepted=False, outcome=None, reason=exc.message)

    result = BatchResult(validation=report, verdicts=[verdict for verdict in verdicts if verdict is not None])
    logger.info(
        "punch_batch_ingested",
        extra={
            "batch_size": len(payloads),
            "accepted": result.accepted_count,
            "rejected": result.rejected_count,
            "warnings": len(report.warnings),
        },
    )
    return result
