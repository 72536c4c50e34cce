from __future__ import annotations

import os
import tempfile
import threading
import unittest
from datetime import date, datetime, timezone
from unittest.mock import patch

from sqlalchemy import false, func, select

from _db_support import add_employee, make_engine, make_file_engine, make_session_factory, policy_store
from flextime.models import CanonicalDayRecord, PunchEvent, PunchOutcome, PunchSource, SupplementaryPunch
from flextime.services import dedup
from flextime.services.dedup import DayRecordRace
from flextime.services.ingestion import IngestVerdict, ingest_punch
from flextime.services.normalizer import PunchInput

NOW = datetime(2026, 3, 10, 0, 0, tzinfo=timezone.utc)
WORK_DATE = date(2026, 3, 2)


def _check_in(employee_id: int, minute: int, source: PunchSource, code: str) -> PunchInput:
    return PunchInput(
        employee_id=employee_id,
        ts=datetime(2026, 3, 2, 9, minute),
        source=source,
        raw_action_code=code,
    )


class SimultaneousArrivalTests(unittest.TestCase):
    def setUp(self) -> None:
        workdir = tempfile.TemporaryDirectory()
        self.addCleanup(workdir.cleanup)
        self.engine = make_file_engine(os.path.join(workdir.name, "flextime.db"))
        self.addCleanup(self.engine.dispose)
        self.SessionLocal = make_session_factory(self.engine)
        self.store = policy_store()
        with self.SessionLocal() as db:
            self.employee_id = add_employee(db).id

    def _arrive_together(self, payloads: list[PunchInput]) -> list[IngestVerdict]:
        barrier = threading.Barrier(len(payloads))
        verdicts: list[IngestVerdict | None] = [None] * len(payloads)
        failures: list[BaseException] = []

        def worker(index: int) -> None:
            with self.SessionLocal() as db:
                barrier.wait()
                try:
                    verdicts[index] = ingest_punch(db, payloads[index], policy_store=self.store, now=NOW)
                except Exception as exc:  # surfaced through the assertion below
                    failures.append(exc)

        threads = [threading.Thread(target=worker, args=(index,)) for index in range(len(payloads))]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        self.assertEqual(failures, [])
        self.assertTrue(all(verdict is not None for verdict in verdicts))
        return [verdict for verdict in verdicts if verdict is not None]

    def test_terminal_and_web_check_in_at_once_keep_one_canonical_punch(self) -> None:
        terminal, web = self._arrive_together(
            [
                _check_in(self.employee_id, 0, PunchSource.TERMINAL, "RELEASE"),
                _check_in(self.employee_id, 1, PunchSource.WEB_CLIENT, "CHECK_IN"),
            ]
        )

        # Whichever thread won the lock, the terminal punch ends up canonical.
        self.assertTrue(terminal.accepted)
        self.assertIn(
            {terminal.outcome, web.outcome},
            [
                {PunchOutcome.INSERTED, PunchOutcome.DUPLICATE_DETECTED},
                {PunchOutcome.INSERTED, PunchOutcome.MERGED},
            ],
        )
        if web.outcome == PunchOutcome.DUPLICATE_DETECTED:
            self.assertEqual(web.conflicting_record["source"], "TERMINAL")
        else:
            self.assertEqual(terminal.outcome, PunchOutcome.MERGED)

        with self.SessionLocal() as db:
            records = db.scalars(
                select(CanonicalDayRecord).where(CanonicalDayRecord.employee_id == self.employee_id)
            ).all()
            self.assertEqual(len(records), 1)
            self.assertEqual(records[0].work_date, WORK_DATE)
            self.assertEqual(records[0].check_in_source, PunchSource.TERMINAL)
            self.assertEqual(db.scalar(select(func.count()).select_from(SupplementaryPunch)), 0)

    def test_same_source_twice_at_once_is_inserted_once(self) -> None:
        verdicts = self._arrive_together(
            [
                _check_in(self.employee_id, 0, PunchSource.TERMINAL, "RELEASE"),
                _check_in(self.employee_id, 2, PunchSource.TERMINAL, "RELEASE"),
            ]
        )

        self.assertEqual(
            sorted(verdict.outcome.value for verdict in verdicts),
            ["DUPLICATE_DETECTED", "INSERTED"],
        )
        with self.SessionLocal() as db:
            record = db.scalar(select(CanonicalDayRecord))
            self.assertEqual(record.version, 1)


class DayRecordRaceRetryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        self.SessionLocal = make_session_factory(self.engine)
        self.db = self.SessionLocal()
        self.store = policy_store()
        self.employee = add_employee(self.db)
        self.lock_calls = 0

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def _racing_lock(self, *, races: int):  # type: ignore[no-untyped-def]
        real_lock_day_record = dedup.lock_day_record

        def lock_day_record(db, *, employee_id, work_date):  # type: ignore[no-untyped-def]
            self.lock_calls += 1
            if self.lock_calls > races:
                return real_lock_day_record(db, employee_id=employee_id, work_date=work_date)
            # Another writer inserts the same day between our lookup and our insert.
            db.add(CanonicalDayRecord(employee_id=employee_id, work_date=work_date, version=0))
            db.flush()
            with patch.object(dedup, "_day_record_query", lambda *_: select(CanonicalDayRecord).where(false())):
                return real_lock_day_record(db, employee_id=employee_id, work_date=work_date)

        return patch.object(dedup, "lock_day_record", side_effect=lock_day_record)

    def test_unit_of_work_is_retried_after_race(self) -> None:
        payload = _check_in(self.employee.id, 0, PunchSource.TERMINAL, "RELEASE")

        with self._racing_lock(races=1), self.assertLogs("flextime.ingestion", level="WARNING") as logs:
            verdict = ingest_punch(self.db, payload, policy_store=self.store, now=NOW)

        self.assertEqual(self.lock_calls, 2)
        self.assertTrue(verdict.accepted)
        self.assertEqual(verdict.outcome, PunchOutcome.INSERTED)
        self.assertTrue(any("day_record_race_retry" in line for line in logs.output))
        self.assertEqual(self.db.scalar(select(func.count()).select_from(CanonicalDayRecord)), 1)
        self.assertEqual(self.db.scalar(select(func.count()).select_from(PunchEvent)), 1)
        record = self.db.scalar(select(CanonicalDayRecord))
        self.assertEqual(record.check_in_source, PunchSource.TERMINAL)
        self.assertEqual(record.version, 1)

    def test_race_that_keeps_losing_gives_up(self) -> None:
        payload = _check_in(self.employee.id, 0, PunchSource.TERMINAL, "RELEASE")

        with self._racing_lock(races=5), self.assertRaises(DayRecordRace):
            ingest_punch(self.db, payload, policy_store=self.store, now=NOW)

        self.assertEqual(self.lock_calls, 2)
        self.assertEqual(self.db.scalar(select(func.count()).select_from(PunchEvent)), 0)
        self.assertEqual(self.db.scalar(select(func.count()).select_from(CanonicalDayRecord)), 0)


if __name__ == "__main__":
    unittest.main()
