from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from flextime.errors import MissingPolicyConfig
from flextime.models import PunchSource, WorkPolicy

logger = logging.getLogger("flextime.policy")

DEFAULT_SOURCE_PRIORITY: tuple[PunchSource, ...] = (
    PunchSource.TERMINAL,
    PunchSource.WEB_CLIENT,
    PunchSource.MANUAL,
)


@dataclass(frozen=True)
class PolicySnapshot:
    policy_id: int | None = None
    name: str = "DEFAULT"
    effective_from: date | None = None
    effective_to: date | None = None
    standard_weekly_hours: float | None = None
    max_daily_hours: float | None = None
    max_weekly_hours: float | None = None
    night_start_hour: int = 22
    night_end_hour: int = 6
    base_break_minutes: int = 60
    dinner_break_minutes: int = 60
    dinner_cutoff_hour: int = 19
    dinner_fallback_min_hours: float = 8.0
    daily_regular_hours: float = 8.0
    overtime_multiplier: float = 1.5
    night_allowance_rate: float = 0.5
    hourly_rate: float | None = None
    source_priority: tuple[PunchSource, ...] = field(default=DEFAULT_SOURCE_PRIORITY)
    dedup_window_minutes: int = 5
    quarter_weeks: int = 12

    @property
    def dedup_window(self) -> timedelta:
        return timedelta(minutes=self.dedup_window_minutes)

    def source_rank(self, source: PunchSource) -> int:
        """Higher is stronger. Sources missing from the order rank below all listed ones."""
        try:
            return len(self.source_priority) - self.source_priority.index(source)
        except ValueError:
            return 0

    def covers(self, day: date) -> bool:
        if self.effective_from is not None and day < self.effective_from:
            return False
        if self.effective_to is not None and day > self.effective_to:
            return False
        return True

    def require_standard_weekly_hours(self, override: float | None = None) -> float:
        value = override if override is not None else self.standard_weekly_hours
        if value is None:
            raise MissingPolicyConfig(
                "standard_weekly_hours is not configured.",
                field="standard_weekly_hours",
                policy_id=self.policy_id,
            )
        return float(value)

    def to_dict(self) -> dict[str, Any]:
        return {
            "policy_id": self.policy_id,
            "name": self.name,
            "effective_from": self.effective_from.isoformat() if self.effective_from else None,
            "effective_to": self.effective_to.isoformat() if self.effective_to else None,
            "standard_weekly_hours": self.standard_weekly_hours,
            "overtime_multiplier": self.overtime_multiplier,
            "hourly_rate": self.hourly_rate,
            "source_priority": [item.value for item in self.source_priority],
            "dedup_window_minutes": self.dedup_window_minutes,
        }


DEFAULT_POLICY = PolicySnapshot()


def parse_source_priority(raw: str | None) -> tuple[PunchSource, ...]:
    if not raw:
        return DEFAULT_SOURCE_PRIORITY
    order: list[PunchSource] = []
    for chunk in raw.split(","):
        name = chunk.strip().upper()
        if not name:
            continue
        try:
            source = PunchSource(name)
        except ValueError:
            logger.warning("policy_unknown_source_in_priority", extra={"source": name})
            continue
        if source not in order:
            order.append(source)
    return tuple(order) or DEFAULT_SOURCE_PRIORITY


def snapshot_from_row(row: WorkPolicy) -> PolicySnapshot:
    return PolicySnapshot(
        policy_id=row.id,
        name=row.name,
        effective_from=row.effective_from,
        effective_to=row.effective_to,
        standard_weekly_hours=row.standard_weekly_hours,
        max_daily_hours=row.max_daily_hours,
        max_weekly_hours=row.max_weekly_hours,
        night_start_hour=row.night_start_hour,
        night_end_hour=row.night_end_hour,
        base_break_minutes=row.base_break_minutes,
        dinner_break_minutes=row.dinner_break_minutes,
        dinner_cutoff_hour=row.dinner_cutoff_hour,
        dinner_fallback_min_hours=row.dinner_fallback_min_hours,
        daily_regular_hours=row.daily_regular_hours,
        overtime_multiplier=row.overtime_multiplier,
        night_allowance_rate=row.night_allowance_rate,
        hourly_rate=row.hourly_rate,
        source_priority=parse_source_priority(row.source_priority),
        dedup_window_minutes=row.dedup_window_minutes,
        quarter_weeks=row.quarter_weeks,
    )


class PolicyStore:
    """Effective-dated work policies, loaded once and refreshed after a TTL.

    The store is created at application start and handed to the services that
    need policy values. Writers call ``invalidate`` so edits are visible on the
    next lookup without a redeploy.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] | None,
        *,
        ttl_seconds: float | None = 300,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session_factory = session_factory
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._policies: list[PolicySnapshot] = []
        self._loaded_at: float | None = None

    @classmethod
    def from_snapshots(cls, policies: Iterable[PolicySnapshot]) -> PolicyStore:
        store = cls(None, ttl_seconds=None)
        store._policies = sorted(policies, key=_sort_key, reverse=True)
        store._loaded_at = store._clock()
        return store

    def load(self) -> None:
        if self._session_factory is None:
            return
        with self._session_factory() as db:
            rows = list(db.scalars(select(WorkPolicy).order_by(WorkPolicy.effective_from.desc())).all())
            policies = [snapshot_from_row(row) for row in rows]
        with self._lock:
            self._policies = sorted(policies, key=_sort_key, reverse=True)
            self._loaded_at = self._clock()
        logger.info("policy_store_loaded", extra={"policy_count": len(policies)})

    def invalidate(self) -> None:
        with self._lock:
            if self._session_factory is not None:
                self._loaded_at = None

    def _is_stale(self) -> bool:
        if self._loaded_at is None:
            return True
        if self._ttl_seconds is None:
            return False
        return self._clock() - self._loaded_at >= self._ttl_seconds

    def policies(self) -> list[PolicySnapshot]:
        if self._session_factory is not None and self._is_stale():
            self.load()
        with self._lock:
            return list(self._policies)

    def policy_for(self, day: date) -> PolicySnapshot:
        for policy in self.policies():
            if policy.covers(day):
                return policy
        return DEFAULT_POLICY


def _sort_key(policy: PolicySnapshot) -> tuple[date, int]:
    return (policy.effective_from or date.min, policy.policy_id or 0)
