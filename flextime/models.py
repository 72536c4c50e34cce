from __future__ import annotations

import enum
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from flextime.db import Base

JSON_DOCUMENT = JSON().with_variant(JSONB(), "postgresql")


class PunchSource(str, enum.Enum):
    TERMINAL = "TERMINAL"
    WEB_CLIENT = "WEB_CLIENT"
    MANUAL = "MANUAL"


class CanonicalAction(str, enum.Enum):
    CHECK_IN = "CHECK_IN"
    CHECK_OUT = "CHECK_OUT"
    IGNORED = "IGNORED"


class PunchOutcome(str, enum.Enum):
    INSERTED = "INSERTED"
    MERGED = "MERGED"
    DUPLICATE_DETECTED = "DUPLICATE_DETECTED"
    IGNORED = "IGNORED"
    UNMAPPED = "UNMAPPED"


class DayCompleteness(str, enum.Enum):
    OPEN = "OPEN"
    COMPLETE = "COMPLETE"
    INCOMPLETE = "INCOMPLETE"


class BreakdownStatus(str, enum.Enum):
    OK = "OK"
    INCOMPLETE = "INCOMPLETE"
    ERROR = "ERROR"


class PeriodStatus(str, enum.Enum):
    PLANNED = "PLANNED"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"


class ReviewKind(str, enum.Enum):
    UNMAPPED_ACTION_CODE = "UNMAPPED_ACTION_CODE"
    INCOMPLETE_DAY = "INCOMPLETE_DAY"
    INVALID_TIME_RANGE = "INVALID_TIME_RANGE"


class AuditActorType(str, enum.Enum):
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"


class Employee(Base):
    __tablename__ = "employees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    hourly_rate: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    day_records: Mapped[list[CanonicalDayRecord]] = relationship(back_populates="employee")


class PunchEvent(Base):
    __tablename__ = "punch_events"
    __table_args__ = (
        UniqueConstraint(
            "employee_id",
            "source",
            "raw_action_code",
            "ts_utc",
            name="uq_punch_events_delivery",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    source: Mapped[PunchSource] = mapped_column(Enum(PunchSource, name="punch_source"), nullable=False)
    raw_action_code: Mapped[str] = mapped_column(String(64), nullable=False)
    ts_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    had_dinner: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    action: Mapped[CanonicalAction | None] = mapped_column(
        Enum(CanonicalAction, name="canonical_action"),
        nullable=True,
    )
    work_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    outcome: Mapped[PunchOutcome] = mapped_column(Enum(PunchOutcome, name="punch_outcome"), nullable=False)
    note: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    day_record_id: Mapped[int | None] = mapped_column(
        ForeignKey("canonical_day_records.id", ondelete="SET NULL"),
        nullable=True,
    )
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class CanonicalDayRecord(Base):
    __tablename__ = "canonical_day_records"
    __table_args__ = (
        UniqueConstraint("employee_id", "work_date", name="uq_canonical_day_records_employee_day"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    work_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    check_in_ts: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    check_in_source: Mapped[PunchSource | None] = mapped_column(
        Enum(PunchSource, name="punch_source"),
        nullable=True,
    )
    check_in_punch_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    check_out_ts: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    check_out_source: Mapped[PunchSource | None] = mapped_column(
        Enum(PunchSource, name="punch_source"),
        nullable=True,
    )
    check_out_punch_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    had_dinner_break: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    completeness: Mapped[DayCompleteness] = mapped_column(
        Enum(DayCompleteness, name="day_completeness"),
        nullable=False,
        default=DayCompleteness.OPEN,
        server_default=text("'OPEN'"),
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default=text("1"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    employee: Mapped[Employee] = relationship(back_populates="day_records")
    supplementary_punches: Mapped[list[SupplementaryPunch]] = relationship(
        back_populates="day_record",
        order_by="SupplementaryPunch.ts_utc",
    )


class SupplementaryPunch(Base):
    __tablename__ = "supplementary_punches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    day_record_id: Mapped[int] = mapped_column(
        ForeignKey("canonical_day_records.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    employee_id: Mapped[int] = mapped_column(Integer, nullable=False)
    work_date: Mapped[date] = mapped_column(Date, nullable=False)
    action: Mapped[CanonicalAction] = mapped_column(Enum(CanonicalAction, name="canonical_action"), nullable=False)
    ts_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    source: Mapped[PunchSource] = mapped_column(Enum(PunchSource, name="punch_source"), nullable=False)
    punch_event_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    note: Mapped[str] = mapped_column(String(1000), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    day_record: Mapped[CanonicalDayRecord] = relationship(back_populates="supplementary_punches")


class WorkHourBreakdown(Base):
    __tablename__ = "work_hour_breakdowns"
    __table_args__ = (
        UniqueConstraint("employee_id", "work_date", name="uq_work_hour_breakdowns_employee_day"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    work_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    day_record_id: Mapped[int] = mapped_column(
        ForeignKey("canonical_day_records.id", ondelete="CASCADE"),
        nullable=False,
    )
    status: Mapped[BreakdownStatus] = mapped_column(
        Enum(BreakdownStatus, name="breakdown_status"),
        nullable=False,
    )
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    total_stay_hours: Mapped[float | None] = mapped_column(Float, nullable=True)
    break_hours: Mapped[float | None] = mapped_column(Float, nullable=True)
    net_work_hours: Mapped[float | None] = mapped_column(Float, nullable=True)
    night_hours: Mapped[float | None] = mapped_column(Float, nullable=True)
    regular_hours: Mapped[float | None] = mapped_column(Float, nullable=True)
    overtime_hours: Mapped[float | None] = mapped_column(Float, nullable=True)
    check_in_clock: Mapped[str | None] = mapped_column(String(8), nullable=True)
    check_out_clock: Mapped[str | None] = mapped_column(String(8), nullable=True)
    dinner_break_applied: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
    )
    daily_max_exceeded: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
    )
    night_periods: Mapped[list[dict[str, Any]]] = mapped_column(JSON_DOCUMENT, nullable=False, default=list)
    source_record_version: Mapped[int] = mapped_column(Integer, nullable=False)
    computed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class WorkPolicy(Base):
    __tablename__ = "work_policies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    effective_from: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    effective_to: Mapped[date | None] = mapped_column(Date, nullable=True)
    standard_weekly_hours: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_daily_hours: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_weekly_hours: Mapped[float | None] = mapped_column(Float, nullable=True)
    night_start_hour: Mapped[int] = mapped_column(Integer, nullable=False, default=22, server_default=text("22"))
    night_end_hour: Mapped[int] = mapped_column(Integer, nullable=False, default=6, server_default=text("6"))
    base_break_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=60, server_default=text("60"))
    dinner_break_minutes: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=60,
        server_default=text("60"),
    )
    dinner_cutoff_hour: Mapped[int] = mapped_column(Integer, nullable=False, default=19, server_default=text("19"))
    dinner_fallback_min_hours: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        default=8.0,
        server_default=text("8.0"),
    )
    daily_regular_hours: Mapped[float] = mapped_column(Float, nullable=False, default=8.0, server_default=text("8.0"))
    overtime_multiplier: Mapped[float] = mapped_column(Float, nullable=False, default=1.5, server_default=text("1.5"))
    night_allowance_rate: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        default=0.5,
        server_default=text("0.5"),
    )
    hourly_rate: Mapped[float | None] = mapped_column(Float, nullable=True)
    source_priority: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        default="TERMINAL,WEB_CLIENT,MANUAL",
        server_default=text("'TERMINAL,WEB_CLIENT,MANUAL'"),
    )
    dedup_window_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=5, server_default=text("5"))
    quarter_weeks: Mapped[int] = mapped_column(Integer, nullable=False, default=12, server_default=text("12"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=lambda: datetime.now(timezone.utc),
    )


class SettlementPeriod(Base):
    __tablename__ = "settlement_periods"
    __table_args__ = (CheckConstraint("end_date >= start_date", name="ck_settlement_periods_range"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    standard_weekly_hours: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_daily_hours: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_weekly_hours: Mapped[float | None] = mapped_column(Float, nullable=True)
    status: Mapped[PeriodStatus] = mapped_column(
        Enum(PeriodStatus, name="settlement_period_status"),
        nullable=False,
        default=PeriodStatus.PLANNED,
        server_default=text("'PLANNED'"),
    )
    completed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    results: Mapped[list[SettlementResult]] = relationship(back_populates="period")


class SettlementResult(Base):
    __tablename__ = "settlement_results"
    __table_args__ = (
        UniqueConstraint("period_id", "employee_id", name="uq_settlement_results_period_employee"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    period_id: Mapped[int] = mapped_column(
        ForeignKey("settlement_periods.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    work_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_actual_hours: Mapped[float] = mapped_column(Float, nullable=False)
    number_of_weeks: Mapped[float] = mapped_column(Float, nullable=False)
    weekly_average_hours: Mapped[float] = mapped_column(Float, nullable=False)
    standard_weekly_hours: Mapped[float] = mapped_column(Float, nullable=False)
    excess_hours: Mapped[float] = mapped_column(Float, nullable=False)
    total_night_hours: Mapped[float] = mapped_column(Float, nullable=False)
    overtime_allowance_hours: Mapped[float] = mapped_column(Float, nullable=False)
    hourly_rate: Mapped[float] = mapped_column(Float, nullable=False)
    overtime_multiplier: Mapped[float] = mapped_column(Float, nullable=False)
    overtime_allowance_amount: Mapped[float] = mapped_column(Float, nullable=False)
    estimated_night_allowance_amount: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    monthly_details: Mapped[list[dict[str, Any]]] = mapped_column(JSON_DOCUMENT, nullable=False, default=list)
    computed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finalized: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    finalized_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    finalized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reopened_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reopened_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    period: Mapped[SettlementPeriod] = relationship(back_populates="results")


class ReviewQueueItem(Base):
    __tablename__ = "review_queue_items"
    __table_args__ = (
        Index(
            "ix_review_queue_items_open",
            "employee_id",
            "work_date",
            postgresql_where=text("resolved = false"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    kind: Mapped[ReviewKind] = mapped_column(Enum(ReviewKind, name="review_kind"), nullable=False, index=True)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    work_date: Mapped[date | None] = mapped_column(Date, nullable=True, index=True)
    punch_event_id: Mapped[int | None] = mapped_column(
        ForeignKey("punch_events.id", ondelete="SET NULL"),
        nullable=True,
    )
    detail: Mapped[str] = mapped_column(String(1000), nullable=False)
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    resolved_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolution_note: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ts_utc: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        index=True,
    )
    actor_type: Mapped[AuditActorType] = mapped_column(
        Enum(AuditActorType, name="audit_actor_type"),
        nullable=False,
    )
    actor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(255), nullable=False)
    entity_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    details: Mapped[dict[str, Any]] = mapped_column(JSON_DOCUMENT, nullable=False, default=dict)
