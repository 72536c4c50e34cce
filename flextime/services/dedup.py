from __future__ import annotations

import logging
import threading
from collections.abc import Hashable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Literal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from flextime.errors import DuplicateDetected
from flextime.models import (
    CanonicalAction,
    CanonicalDayRecord,
    PunchOutcome,
    PunchSource,
    SupplementaryPunch,
)
from flextime.services.clock import as_utc
from flextime.services.normalizer import NormalizedPunch
from flextime.services.policy import PolicySnapshot

logger = logging.getLogger("flextime.dedup")

RecordType = Literal["canonical", "supplementary"]


class KeyedLocks:
    """Process-local mutual exclusion per key; idle keys are dropped."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[Hashable, list[Any]] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._entries[key] = entry
            entry[1] += 1
        lock: threading.Lock = entry[0]
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


PUNCH_LOCKS = KeyedLocks()


def punch_lock_key(employee_id: int, work_date: date, action: CanonicalAction) -> tuple[int, date, str]:
    return (employee_id, work_date, action.value)


@dataclass(frozen=True)
class ExistingPunch:
    ts_utc: datetime
    source: PunchSource
    record_type: RecordType
    record_id: int | None

    def to_ref(self) -> dict[str, Any]:
        return {
            "record_type": self.record_type,
            "record_id": self.record_id,
            "ts_utc": self.ts_utc.isoformat(),
            "source": self.source.value,
        }


@dataclass(frozen=True)
class MergeDecision:
    outcome: PunchOutcome
    supplementary: bool = False
    conflicting: ExistingPunch | None = None
    distance: timedelta | None = None
    note: str | None = None

    @property
    def duplicate_of(self) -> ExistingPunch | None:
        """The recorded punch this one repeats, set only for duplicates."""
        if self.outcome != PunchOutcome.DUPLICATE_DETECTED:
            return None
        return self.conflicting


def decide_merge(
    incoming: NormalizedPunch,
    *,
    canonical: ExistingPunch | None,
    supplementary: Sequence[ExistingPunch] = (),
    policy: PolicySnapshot,
) -> MergeDecision:
    """Reconcile one punch against what is already recorded for its key.

    The key is (employee, work date, action). A strictly stronger source
    replaces the canonical punch. Anything else within the proximity window of
    a recorded punch is the same physical event seen twice. Beyond the window
    it is kept apart as a supplementary record.
    """
    if canonical is None:
        return MergeDecision(outcome=PunchOutcome.INSERTED)

    incoming_rank = policy.source_rank(incoming.source)
    canonical_rank = policy.source_rank(canonical.source)
    distance = abs(as_utc(incoming.ts_utc) - canonical.ts_utc)

    if incoming_rank > canonical_rank:
        return MergeDecision(
            outcome=PunchOutcome.MERGED,
            conflicting=canonical,
            distance=distance,
            note=f"Replaced {canonical.source.value} punch with higher priority {incoming.source.value} punch.",
        )

    window = policy.dedup_window
    if distance <= window:
        return MergeDecision(
            outcome=PunchOutcome.DUPLICATE_DETECTED,
            conflicting=canonical,
            distance=distance,
        )

    for existing in supplementary:
        supplementary_distance = abs(as_utc(incoming.ts_utc) - existing.ts_utc)
        if supplementary_distance <= window:
            return MergeDecision(
                outcome=PunchOutcome.DUPLICATE_DETECTED,
                conflicting=existing,
                distance=supplementary_distance,
            )

    minutes_apart = int(distance.total_seconds() // 60)
    return MergeDecision(
        outcome=PunchOutcome.INSERTED,
        supplementary=True,
        conflicting=canonical,
        distance=distance,
        note=(
            f"Kept as a separate {incoming.action.value} record: {minutes_apart} min away from the "
            f"{canonical.source.value} punch, beyond the {policy.dedup_window_minutes} min window."
        ),
    )


@dataclass
class MergeResult:
    outcome: PunchOutcome
    day_record: CanonicalDayRecord
    supplementary_punch: SupplementaryPunch | None = None
    replaced: ExistingPunch | None = None
    note: str | None = None


def _canonical_punch(record: CanonicalDayRecord, action: CanonicalAction) -> ExistingPunch | None:
    if action == CanonicalAction.CHECK_IN:
        ts, source = record.check_in_ts, record.check_in_source
    else:
        ts, source = record.check_out_ts, record.check_out_source
    if ts is None or source is None:
        return None
    return ExistingPunch(ts_utc=as_utc(ts), source=source, record_type="canonical", record_id=record.id)


def _supplementary_punches(record: CanonicalDayRecord, action: CanonicalAction) -> list[ExistingPunch]:
    return [
        ExistingPunch(
            ts_utc=as_utc(item.ts_utc),
            source=item.source,
            record_type="supplementary",
            record_id=item.id,
        )
        for item in record.supplementary_punches
        if item.action == action
    ]


def _day_record_query(employee_id: int, work_date: date):  # type: ignore[no-untyped-def]
    return (
        select(CanonicalDayRecord)
        .where(
            CanonicalDayRecord.employee_id == employee_id,
            CanonicalDayRecord.work_date == work_date,
        )
        .with_for_update()
    )


class DayRecordRace(Exception):
    """Another writer created the same day record first; the unit of work was rolled back."""


def lock_day_record(db: Session, *, employee_id: int, work_date: date) -> CanonicalDayRecord:
    """Fetch the day record under a row lock, creating it on first punch."""
    record = db.scalar(_day_record_query(employee_id, work_date))
    if record is not None:
        return record

    record = CanonicalDayRecord(employee_id=employee_id, work_date=work_date, version=0)
    db.add(record)
    try:
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        raise DayRecordRace(f"Day record {employee_id}/{work_date} was created concurrently.") from exc
    return record


def apply_punch(
    db: Session,
    punch: NormalizedPunch,
    *,
    work_date: date,
    policy: PolicySnapshot,
    punch_event_id: int | None = None,
) -> MergeResult:
    """Apply a normalized punch to its canonical day record.

    Callers hold ``PUNCH_LOCKS`` for ``punch_lock_key(...)`` until they commit.
    Raises ``DuplicateDetected`` without touching the record when the punch is
    already represented, and ``DayRecordRace`` when the whole unit of work
    must be retried.
    """
    if punch.is_ignored:
        raise ValueError("Ignored punches never reach the merger.")

    record = lock_day_record(db, employee_id=punch.employee_id, work_date=work_date)
    decision = decide_merge(
        punch,
        canonical=_canonical_punch(record, punch.action),
        supplementary=_supplementary_punches(record, punch.action),
        policy=policy,
    )

    duplicate_of = decision.duplicate_of
    if duplicate_of is not None:
        distance_seconds = int(decision.distance.total_seconds()) if decision.distance else 0
        raise DuplicateDetected(
            f"Already recorded by {duplicate_of.source.value} "
            f"({distance_seconds // 60} min apart).",
            conflicting_record=duplicate_of.to_ref(),
            day_record_id=record.id,
            distance_seconds=distance_seconds,
        )

    ts_utc = as_utc(punch.ts_utc)
    supplementary_punch: SupplementaryPunch | None = None
    if decision.supplementary:
        supplementary_punch = SupplementaryPunch(
            day_record=record,
            employee_id=punch.employee_id,
            work_date=work_date,
            action=punch.action,
            ts_utc=ts_utc,
            source=punch.source,
            punch_event_id=punch_event_id,
            note=decision.note or "",
        )
        db.add(supplementary_punch)
    elif punch.action == CanonicalAction.CHECK_IN:
        record.check_in_ts = ts_utc
        record.check_in_source = punch.source
        record.check_in_punch_id = punch_event_id
    else:
        record.check_out_ts = ts_utc
        record.check_out_source = punch.source
        record.check_out_punch_id = punch_event_id

    if punch.had_dinner is not None and not decision.supplementary:
        record.had_dinner_break = punch.had_dinner
    if not decision.supplementary:
        record.version = (record.version or 0) + 1
    db.flush()

    logger.info(
        "punch_applied",
        extra={
            "employee_id": punch.employee_id,
            "work_date": work_date.isoformat(),
            "action": punch.action.value,
            "source": punch.source.value,
            "outcome": decision.outcome.value,
            "supplementary": decision.supplementary,
            "day_record_id": record.id,
        },
    )
    return MergeResult(
        outcome=decision.outcome,
        day_record=record,
        supplementary_punch=supplementary_punch,
        replaced=decision.conflicting if decision.outcome == PunchOutcome.MERGED else None,
        note=decision.note,
    )
