from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Literal
from zoneinfo import ZoneInfo

from flextime.models import PunchSource
from flextime.services.clock import as_utc, attendance_timezone, combine_extended_clock, localize_input
from flextime.services.normalizer import PunchInput

_COLUMN_SPLIT_RE = re.compile(r"\s+")
_DATE_SEPARATORS_RE = re.compile(r"[./]")

_TRUE_FLAGS = {"Y", "YES", "TRUE", "1", "O"}
_FALSE_FLAGS = {"N", "NO", "FALSE", "0", "X"}

# Punches logged between these local hours are flagged for a night-shift check.
NIGHT_CHECK_START_HOUR = 2
NIGHT_CHECK_END_HOUR = 6
STALE_AFTER = timedelta(days=365)

IssueLevel = Literal["error", "warning"]


@dataclass(frozen=True)
class TerminalFeedLayout:
    date_column: int = 0
    time_column: int = 1
    employee_column: int = 2
    code_column: int = 3
    dinner_column: int | None = 4


@dataclass(frozen=True)
class FeedLineError:
    line_number: int
    line: str
    message: str


@dataclass
class ParsedFeed:
    punches: list[PunchInput] = field(default_factory=list)
    errors: list[FeedLineError] = field(default_factory=list)
    skipped_lines: int = 0


def _parse_date(raw: str) -> date:
    return date.fromisoformat(_DATE_SEPARATORS_RE.sub("-", raw.strip()))


def _parse_dinner_flag(raw: str) -> bool | None:
    value = raw.strip().upper()
    if value in _TRUE_FLAGS:
        return True
    if value in _FALSE_FLAGS:
        return False
    raise ValueError(f"Unrecognized dinner flag {raw!r}")


def parse_terminal_export(
    text: str,
    *,
    layout: TerminalFeedLayout = TerminalFeedLayout(),
    source: PunchSource = PunchSource.TERMINAL,
    tz: ZoneInfo | None = None,
) -> ParsedFeed:
    """Parse a terminal export (``date time employee_id code [dinner]`` per line).

    Clock values past midnight may use extended notation (``25:30``) relative
    to the row's date. Blank and ``#`` lines are skipped; malformed lines are
    reported and never abort the whole feed.
    """
    zone = tz or attendance_timezone()
    required = max(layout.date_column, layout.time_column, layout.employee_column, layout.code_column)
    feed = ParsedFeed()

    for line_number, line in enumerate(text.splitlines(), start=1):
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            feed.skipped_lines += 1
            continue

        columns = [column for column in _COLUMN_SPLIT_RE.split(stripped) if column]
        if len(columns) <= required:
            feed.errors.append(FeedLineError(line_number, stripped, "Too few columns."))
            continue

        try:
            day = _parse_date(columns[layout.date_column])
            ts_utc = combine_extended_clock(day, columns[layout.time_column], zone)
        except ValueError as exc:
            feed.errors.append(FeedLineError(line_number, stripped, f"Invalid timestamp: {exc}"))
            continue

        try:
            employee_id = int(columns[layout.employee_column])
        except ValueError:
            feed.errors.append(FeedLineError(line_number, stripped, "Employee id must be an integer."))
            continue

        had_dinner: bool | None = None
        if layout.dinner_column is not None and len(columns) > layout.dinner_column:
            try:
                had_dinner = _parse_dinner_flag(columns[layout.dinner_column])
            except ValueError as exc:
                feed.errors.append(FeedLineError(line_number, stripped, str(exc)))
                continue

        feed.punches.append(
            PunchInput(
                employee_id=employee_id,
                ts=ts_utc,
                source=source,
                raw_action_code=columns[layout.code_column],
                had_dinner=had_dinner,
            )
        )
    return feed


@dataclass(frozen=True)
class ValidationIssue:
    index: int
    level: IssueLevel
    code: str
    message: str


@dataclass
class BatchValidationReport:
    total: int
    issues: list[ValidationIssue] = field(default_factory=list)

    @property
    def errors(self) -> list[ValidationIssue]:
        return [issue for issue in self.issues if issue.level == "error"]

    @property
    def warnings(self) -> list[ValidationIssue]:
        return [issue for issue in self.issues if issue.level == "warning"]

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def rejected_indexes(self) -> set[int]:
        return {issue.index for issue in self.errors}

    def issues_for(self, index: int, *, level: IssueLevel | None = None) -> list[ValidationIssue]:
        return [
            issue
            for issue in self.issues
            if issue.index == index and (level is None or issue.level == level)
        ]

    @property
    def valid_count(self) -> int:
        return self.total - len(self.rejected_indexes())


def validate_batch(
    payloads: Sequence[PunchInput],
    *,
    now: datetime | None = None,
    tz: ZoneInfo | None = None,
) -> BatchValidationReport:
    """Check an upload before ingestion.

    Missing fields are errors and reject the row. Repeats inside the batch,
    future or year-old timestamps and punches in the small hours are warnings
    only.
    """
    zone = tz or attendance_timezone()
    now_utc = as_utc(now) if now is not None else datetime.now(timezone.utc)
    report = BatchValidationReport(total=len(payloads))
    seen: dict[tuple[int, str, str, datetime], int] = {}

    def add(index: int, level: IssueLevel, code: str, message: str) -> None:
        report.issues.append(ValidationIssue(index=index, level=level, code=code, message=f"Row {index + 1}: {message}"))

    for index, payload in enumerate(payloads):
        if not payload.employee_id or payload.employee_id <= 0:
            add(index, "error", "MISSING_EMPLOYEE", "employee id is required.")
        if not (payload.raw_action_code or "").strip():
            add(index, "error", "MISSING_ACTION_CODE", "action code is required.")
        if payload.ts is None:
            add(index, "error", "MISSING_TIMESTAMP", "timestamp is required.")
        if report.issues_for(index, level="error"):
            continue

        ts_utc = localize_input(payload.ts, zone)
        if ts_utc > now_utc:
            add(index, "warning", "FUTURE_TIMESTAMP", "timestamp is in the future.")
        elif now_utc - ts_utc > STALE_AFTER:
            add(index, "warning", "STALE_RECORD", "timestamp is more than a year old.")

        local_hour = ts_utc.astimezone(zone).hour
        if NIGHT_CHECK_START_HOUR <= local_hour < NIGHT_CHECK_END_HOUR:
            add(index, "warning", "NIGHT_SHIFT_CHECK", f"punch at {local_hour:02d}h local time, verify night shift.")

        key = (payload.employee_id, payload.source.value, payload.raw_action_code.strip().upper(), ts_utc)
        first = seen.get(key)
        if first is not None:
            add(index, "warning", "DUPLICATE_IN_BATCH", f"same punch as row {first + 1}.")
        else:
            seen[key] = index

    return report
