from __future__ import annotations

import unittest
from datetime import date, datetime, timezone

from sqlalchemy import func, select

from _db_support import add_employee, make_engine, make_session_factory, policy_store
from flextime.errors import ApiError
from flextime.models import (
    AuditLog,
    BreakdownStatus,
    CanonicalDayRecord,
    DayCompleteness,
    PunchEvent,
    PunchOutcome,
    PunchSource,
    ReviewKind,
    ReviewQueueItem,
    SupplementaryPunch,
    WorkHourBreakdown,
)
from flextime.services.clock import as_utc
from flextime.services.ingestion import ingest_batch, ingest_punch
from flextime.services.normalizer import PunchInput

NOW = datetime(2026, 3, 10, 0, 0, tzinfo=timezone.utc)


def _punch(employee_id: int, day: int, hour: int, minute: int, source: PunchSource, code: str, **extra) -> PunchInput:  # type: ignore[no-untyped-def]
    # Naive timestamps are attendance wall-clock time (Asia/Seoul).
    return PunchInput(
        employee_id=employee_id,
        ts=datetime(2026, 3, day, hour, minute),
        source=source,
        raw_action_code=code,
        **extra,
    )


class IngestionServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        self.SessionLocal = make_session_factory(self.engine)
        self.db = self.SessionLocal()
        self.store = policy_store()
        self.employee = add_employee(self.db)

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def _ingest(self, payload: PunchInput, now: datetime = NOW):  # type: ignore[no-untyped-def]
        return ingest_punch(self.db, payload, policy_store=self.store, now=now)

    def _day(self, work_date: date) -> CanonicalDayRecord:
        self.db.expire_all()
        record = self.db.scalar(
            select(CanonicalDayRecord).where(
                CanonicalDayRecord.employee_id == self.employee.id,
                CanonicalDayRecord.work_date == work_date,
            )
        )
        assert record is not None
        return record

    def test_terminal_then_web_within_window_is_duplicate(self) -> None:
        first = self._ingest(_punch(self.employee.id, 2, 9, 0, PunchSource.TERMINAL, "RELEASE"))
        second = self._ingest(_punch(self.employee.id, 2, 9, 2, PunchSource.WEB_CLIENT, "CHECK_IN"))

        self.assertTrue(first.accepted)
        self.assertEqual(first.outcome, PunchOutcome.INSERTED)
        self.assertFalse(second.accepted)
        self.assertEqual(second.outcome, PunchOutcome.DUPLICATE_DETECTED)
        self.assertEqual(second.conflicting_record["source"], "TERMINAL")
        self.assertEqual(second.conflicting_record["record_type"], "canonical")

        record = self._day(date(2026, 3, 2))
        self.assertEqual(record.check_in_source, PunchSource.TERMINAL)
        self.assertEqual(as_utc(record.check_in_ts), datetime(2026, 3, 2, 0, 0, tzinfo=timezone.utc))
        self.assertEqual(record.version, 1)
        event_count = self.db.scalar(select(func.count()).select_from(PunchEvent))
        self.assertEqual(event_count, 1)

    def test_redelivery_is_idempotent(self) -> None:
        payload = _punch(self.employee.id, 2, 9, 0, PunchSource.TERMINAL, "RELEASE")
        first = self._ingest(payload)
        again = self._ingest(payload)

        self.assertFalse(again.accepted)
        self.assertEqual(again.outcome, PunchOutcome.DUPLICATE_DETECTED)
        self.assertEqual(again.punch_event_id, first.punch_event_id)
        self.assertEqual(again.conflicting_record["record_type"], "punch_event")
        self.assertEqual(self.db.scalar(select(func.count()).select_from(PunchEvent)), 1)
        self.assertEqual(self._day(date(2026, 3, 2)).version, 1)

    def test_higher_priority_source_replaces_and_is_audited(self) -> None:
        self._ingest(_punch(self.employee.id, 2, 9, 2, PunchSource.WEB_CLIENT, "CHECK_IN"))
        merged = self._ingest(_punch(self.employee.id, 2, 9, 0, PunchSource.TERMINAL, "RELEASE"))

        self.assertTrue(merged.accepted)
        self.assertEqual(merged.outcome, PunchOutcome.MERGED)
        record = self._day(date(2026, 3, 2))
        self.assertEqual(record.check_in_source, PunchSource.TERMINAL)
        self.assertEqual(as_utc(record.check_in_ts), datetime(2026, 3, 2, 0, 0, tzinfo=timezone.utc))
        self.assertEqual(record.version, 2)

        audit = self.db.scalar(select(AuditLog).where(AuditLog.action == "PUNCH_MERGED"))
        self.assertIsNotNone(audit)
        self.assertEqual(audit.details["replaced"]["source"], "WEB_CLIENT")
        self.assertEqual(audit.details["replacement"]["source"], "TERMINAL")

    def test_distant_same_action_is_kept_as_supplementary(self) -> None:
        self._ingest(_punch(self.employee.id, 2, 9, 0, PunchSource.TERMINAL, "RELEASE"))
        verdict = self._ingest(_punch(self.employee.id, 2, 13, 0, PunchSource.WEB_CLIENT, "CHECK_IN"))

        self.assertTrue(verdict.accepted)
        self.assertEqual(verdict.outcome, PunchOutcome.INSERTED)
        self.assertTrue(verdict.supplementary)
        self.assertIn("beyond the 5 min window", verdict.reason)

        record = self._day(date(2026, 3, 2))
        self.assertEqual(record.check_in_source, PunchSource.TERMINAL)
        self.assertEqual(record.version, 1)
        extra = self.db.scalars(select(SupplementaryPunch)).all()
        self.assertEqual(len(extra), 1)
        self.assertEqual(extra[0].source, PunchSource.WEB_CLIENT)

    def test_unmapped_code_is_queued_for_review(self) -> None:
        verdict = self._ingest(_punch(self.employee.id, 2, 9, 0, PunchSource.TERMINAL, "ALARM"))

        self.assertFalse(verdict.accepted)
        self.assertEqual(verdict.outcome, PunchOutcome.UNMAPPED)
        item = self.db.get(ReviewQueueItem, verdict.review_item_id)
        self.assertEqual(item.kind, ReviewKind.UNMAPPED_ACTION_CODE)
        self.assertEqual(item.punch_event_id, verdict.punch_event_id)
        self.assertIsNone(self.db.scalar(select(CanonicalDayRecord)))

    def test_ignored_code_never_touches_day_record(self) -> None:
        verdict = self._ingest(_punch(self.employee.id, 2, 12, 30, PunchSource.TERMINAL, "PASSAGE"))

        self.assertTrue(verdict.accepted)
        self.assertEqual(verdict.outcome, PunchOutcome.IGNORED)
        self.assertIsNone(self.db.scalar(select(CanonicalDayRecord)))
        event = self.db.get(PunchEvent, verdict.punch_event_id)
        self.assertEqual(event.outcome, PunchOutcome.IGNORED)

    def test_unknown_employee_raises_not_found(self) -> None:
        with self.assertRaises(ApiError) as ctx:
            self._ingest(_punch(999, 2, 9, 0, PunchSource.TERMINAL, "RELEASE"))
        self.assertEqual(ctx.exception.status_code, 404)
        self.assertEqual(ctx.exception.code, "EMPLOYEE_NOT_FOUND")

    def test_overnight_check_out_belongs_to_previous_day(self) -> None:
        self._ingest(_punch(self.employee.id, 2, 22, 0, PunchSource.TERMINAL, "RELEASE"))
        verdict = self._ingest(_punch(self.employee.id, 3, 6, 0, PunchSource.TERMINAL, "SET"))

        self.assertEqual(verdict.work_date, date(2026, 3, 2))
        record = self._day(date(2026, 3, 2))
        self.assertEqual(record.completeness, DayCompleteness.COMPLETE)

        breakdown = self.db.scalar(select(WorkHourBreakdown).where(WorkHourBreakdown.day_record_id == record.id))
        self.assertEqual(breakdown.status, BreakdownStatus.OK)
        self.assertEqual(breakdown.night_hours, 8.0)
        self.assertEqual(breakdown.net_work_hours, 7.0)
        self.assertEqual(breakdown.check_out_clock, "30:00")

    def test_morning_check_out_after_same_day_check_in_stays_on_that_day(self) -> None:
        self._ingest(_punch(self.employee.id, 3, 0, 30, PunchSource.WEB_CLIENT, "CHECK_IN"))
        verdict = self._ingest(_punch(self.employee.id, 3, 6, 0, PunchSource.WEB_CLIENT, "CHECK_OUT"))
        self.assertEqual(verdict.work_date, date(2026, 3, 3))

    def test_incomplete_day_is_queued_then_resolved_by_check_out(self) -> None:
        self._ingest(_punch(self.employee.id, 2, 9, 0, PunchSource.TERMINAL, "RELEASE"))
        record = self._day(date(2026, 3, 2))
        self.assertEqual(record.completeness, DayCompleteness.INCOMPLETE)
        open_items = self.db.scalars(
            select(ReviewQueueItem).where(ReviewQueueItem.kind == ReviewKind.INCOMPLETE_DAY)
        ).all()
        self.assertEqual(len(open_items), 1)

        self._ingest(_punch(self.employee.id, 2, 18, 0, PunchSource.TERMINAL, "SET"))
        item = self.db.scalar(select(ReviewQueueItem).where(ReviewQueueItem.kind == ReviewKind.INCOMPLETE_DAY))
        self.assertTrue(item.resolved)
        self.assertEqual(item.resolved_by, "system")

    def test_recent_check_in_stays_open(self) -> None:
        now = datetime(2026, 3, 2, 3, 0, tzinfo=timezone.utc)
        self._ingest(_punch(self.employee.id, 2, 9, 0, PunchSource.TERMINAL, "RELEASE"), now=now)

        self.assertEqual(self._day(date(2026, 3, 2)).completeness, DayCompleteness.OPEN)
        self.assertIsNone(self.db.scalar(select(ReviewQueueItem)))

    def test_dinner_flag_is_carried_to_day_record(self) -> None:
        self._ingest(_punch(self.employee.id, 2, 9, 0, PunchSource.TERMINAL, "RELEASE"))
        self._ingest(_punch(self.employee.id, 2, 21, 0, PunchSource.TERMINAL, "SET", had_dinner=False))

        record = self._day(date(2026, 3, 2))
        self.assertFalse(record.had_dinner_break)
        breakdown = self.db.scalar(select(WorkHourBreakdown).where(WorkHourBreakdown.day_record_id == record.id))
        self.assertEqual(breakdown.net_work_hours, 11.0)
        self.assertFalse(breakdown.dinner_break_applied)


class IngestBatchTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        self.SessionLocal = make_session_factory(self.engine)
        self.db = self.SessionLocal()
        self.store = policy_store()
        self.employee = add_employee(self.db)

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def test_batch_keeps_input_order_and_rejects_invalid_rows(self) -> None:
        payloads = [
            _punch(self.employee.id, 2, 18, 0, PunchSource.TERMINAL, "SET"),
            _punch(self.employee.id, 2, 9, 0, PunchSource.TERMINAL, ""),
            _punch(self.employee.id, 2, 9, 0, PunchSource.TERMINAL, "RELEASE"),
            _punch(404, 2, 9, 0, PunchSource.TERMINAL, "RELEASE"),
        ]

        result = ingest_batch(self.db, payloads, policy_store=self.store, now=NOW)

        self.assertEqual(len(result.verdicts), 4)
        self.assertTrue(result.verdicts[0].accepted)
        self.assertEqual(result.verdicts[0].work_date, date(2026, 3, 2))
        self.assertFalse(result.verdicts[1].accepted)
        self.assertIsNone(result.verdicts[1].outcome)
        self.assertIn("action code is required", result.verdicts[1].reason)
        self.assertTrue(result.verdicts[2].accepted)
        self.assertFalse(result.verdicts[3].accepted)
        self.assertEqual(result.verdicts[3].reason, "Employee not found.")
        self.assertEqual(result.accepted_count, 2)
        self.assertEqual(result.rejected_count, 2)
        self.assertEqual(result.validation.valid_count, 3)

        record = self.db.scalar(select(CanonicalDayRecord))
        self.assertEqual(record.completeness, DayCompleteness.COMPLETE)


if __name__ == "__main__":
    unittest.main()
