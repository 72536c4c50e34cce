from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime

from flextime.errors import UnmappedActionCode
from flextime.models import CanonicalAction, PunchSource

# Badge terminals report alarm-panel states: disarming the panel on arrival is
# a check-in, arming it on departure is a check-out, and a plain door passage
# is building access only.
TERMINAL_ACTION_CODES: dict[str, CanonicalAction] = {
    "RELEASE": CanonicalAction.CHECK_IN,
    "SET": CanonicalAction.CHECK_OUT,
    "PASSAGE": CanonicalAction.IGNORED,
    "CHECK_IN": CanonicalAction.CHECK_IN,
    "CHECK_OUT": CanonicalAction.CHECK_OUT,
    "해제": CanonicalAction.CHECK_IN,
    "세트": CanonicalAction.CHECK_OUT,
    "출입": CanonicalAction.IGNORED,
    "출근": CanonicalAction.CHECK_IN,
    "퇴근": CanonicalAction.CHECK_OUT,
}

DIRECT_ACTION_CODES: dict[str, CanonicalAction] = {
    "CHECK_IN": CanonicalAction.CHECK_IN,
    "CHECK_OUT": CanonicalAction.CHECK_OUT,
    "출근": CanonicalAction.CHECK_IN,
    "퇴근": CanonicalAction.CHECK_OUT,
}

DEFAULT_ACTION_TABLES: dict[PunchSource, dict[str, CanonicalAction]] = {
    PunchSource.TERMINAL: TERMINAL_ACTION_CODES,
    PunchSource.WEB_CLIENT: DIRECT_ACTION_CODES,
    PunchSource.MANUAL: DIRECT_ACTION_CODES,
}


@dataclass
class PunchInput:
    """A punch as delivered by a producer; naive ``ts`` is attendance wall-clock time."""

    employee_id: int
    ts: datetime
    source: PunchSource
    raw_action_code: str
    had_dinner: bool | None = None
    work_date: date | None = None


@dataclass(frozen=True)
class NormalizedPunch:
    employee_id: int
    ts_utc: datetime
    source: PunchSource
    raw_action_code: str
    action: CanonicalAction
    had_dinner: bool | None = None

    @property
    def is_ignored(self) -> bool:
        return self.action == CanonicalAction.IGNORED


def _clean_code(raw_action_code: str) -> str:
    return raw_action_code.strip().upper()


def map_action_code(
    source: PunchSource,
    raw_action_code: str,
    *,
    tables: Mapping[PunchSource, Mapping[str, CanonicalAction]] = DEFAULT_ACTION_TABLES,
) -> CanonicalAction:
    table = tables.get(source) or {}
    action = table.get(_clean_code(raw_action_code))
    if action is None:
        raise UnmappedActionCode(
            f"Action code {raw_action_code!r} is not mapped for source {source.value}.",
            source=source.value,
            raw_action_code=raw_action_code,
        )
    return action


def normalize_punch(
    *,
    employee_id: int,
    ts_utc: datetime,
    source: PunchSource,
    raw_action_code: str,
    had_dinner: bool | None = None,
    tables: Mapping[PunchSource, Mapping[str, CanonicalAction]] = DEFAULT_ACTION_TABLES,
) -> NormalizedPunch:
    action = map_action_code(source, raw_action_code, tables=tables)
    return NormalizedPunch(
        employee_id=employee_id,
        ts_utc=ts_utc,
        source=source,
        raw_action_code=raw_action_code,
        action=action,
        had_dinner=had_dinner,
    )
