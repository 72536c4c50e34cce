from datetime import datetime, timezone
import unittest
from zoneinfo import ZoneInfo

from flextime.models import PunchSource
from flextime.services.normalizer import PunchInput
from flextime.services.terminal_feed import TerminalFeedLayout, parse_terminal_export, validate_batch

SEOUL = ZoneInfo("Asia/Seoul")
NOW = datetime(2026, 3, 10, 0, 0, tzinfo=timezone.utc)

EXPORT = """\
# date      time   emp  code     dinner
2026-03-02  09:00  12   RELEASE
2026.03.02  25:30  12   SET      N

2026/03/03  08:55  14   RELEASE  Y
2026-03-03  8h55   14   RELEASE
2026-03-03  09:00  abc  RELEASE
2026-03-03  09:00  14   RELEASE  maybe
2026-03-03  09:00
"""


class TerminalFeedParseTests(unittest.TestCase):
    def test_parses_valid_lines_and_reports_bad_ones(self) -> None:
        feed = parse_terminal_export(EXPORT, tz=SEOUL)

        self.assertEqual(len(feed.punches), 3)
        self.assertEqual(feed.skipped_lines, 2)
        self.assertEqual([error.line_number for error in feed.errors], [6, 7, 8, 9])
        self.assertIn("Invalid timestamp", feed.errors[0].message)
        self.assertEqual(feed.errors[1].message, "Employee id must be an integer.")
        self.assertEqual(feed.errors[3].message, "Too few columns.")

    def test_extended_clock_rolls_into_next_day(self) -> None:
        feed = parse_terminal_export(EXPORT, tz=SEOUL)
        check_out = feed.punches[1]

        self.assertEqual(check_out.employee_id, 12)
        self.assertEqual(check_out.raw_action_code, "SET")
        self.assertEqual(check_out.ts, datetime(2026, 3, 3, 1, 30, tzinfo=SEOUL).astimezone(timezone.utc))
        self.assertFalse(check_out.had_dinner)

    def test_dinner_flag_and_source(self) -> None:
        feed = parse_terminal_export(EXPORT, tz=SEOUL, source=PunchSource.MANUAL)

        self.assertIsNone(feed.punches[0].had_dinner)
        self.assertTrue(feed.punches[2].had_dinner)
        self.assertTrue(all(punch.source == PunchSource.MANUAL for punch in feed.punches))

    def test_custom_layout(self) -> None:
        text = "12 RELEASE 2026-03-02 09:00\n"
        layout = TerminalFeedLayout(employee_column=0, code_column=1, date_column=2, time_column=3, dinner_column=None)

        feed = parse_terminal_export(text, layout=layout, tz=SEOUL)

        self.assertEqual(len(feed.punches), 1)
        self.assertEqual(feed.punches[0].employee_id, 12)


class BatchValidationTests(unittest.TestCase):
    def _payload(self, **overrides) -> PunchInput:  # type: ignore[no-untyped-def]
        values = {
            "employee_id": 1,
            "ts": datetime(2026, 3, 2, 9, 0, tzinfo=SEOUL),
            "source": PunchSource.TERMINAL,
            "raw_action_code": "RELEASE",
        }
        values.update(overrides)
        return PunchInput(**values)

    def test_missing_fields_are_errors(self) -> None:
        report = validate_batch(
            [self._payload(employee_id=0), self._payload(raw_action_code="  "), self._payload(ts=None)],
            now=NOW,
            tz=SEOUL,
        )

        self.assertFalse(report.is_valid)
        self.assertEqual(
            [issue.code for issue in report.errors],
            ["MISSING_EMPLOYEE", "MISSING_ACTION_CODE", "MISSING_TIMESTAMP"],
        )
        self.assertEqual(report.rejected_indexes(), {0, 1, 2})
        self.assertEqual(report.valid_count, 0)

    def test_warnings_do_not_reject(self) -> None:
        report = validate_batch(
            [
                self._payload(),
                self._payload(),
                self._payload(ts=datetime(2026, 3, 20, 9, 0, tzinfo=SEOUL)),
                self._payload(ts=datetime(2024, 1, 2, 9, 0, tzinfo=SEOUL)),
                self._payload(ts=datetime(2026, 3, 3, 3, 15, tzinfo=SEOUL)),
            ],
            now=NOW,
            tz=SEOUL,
        )

        self.assertTrue(report.is_valid)
        self.assertEqual(report.valid_count, 5)
        codes = {issue.index: issue.code for issue in report.warnings}
        self.assertEqual(
            codes,
            {1: "DUPLICATE_IN_BATCH", 2: "FUTURE_TIMESTAMP", 3: "STALE_RECORD", 4: "NIGHT_SHIFT_CHECK"},
        )
        self.assertIn("row 1", report.issues_for(1)[0].message)


if __name__ == "__main__":
    unittest.main()
