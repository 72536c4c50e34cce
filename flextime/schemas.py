from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from flextime.models import (
    BreakdownStatus,
    CanonicalAction,
    DayCompleteness,
    PeriodStatus,
    PunchOutcome,
    PunchSource,
    ReviewKind,
)


class PunchCreate(BaseModel):
    employee_id: int = Field(ge=1)
    ts: datetime
    source: PunchSource
    raw_action_code: str = Field(min_length=1, max_length=64)
    had_dinner: bool | None = None
    work_date: date | None = None


class PunchVerdictRead(BaseModel):
    accepted: bool
    outcome: PunchOutcome | None
    reason: str | None = None
    work_date: date | None = None
    day_record_id: int | None = None
    punch_event_id: int | None = None
    conflicting_record: dict[str, Any] | None = None
    review_item_id: int | None = None
    supplementary: bool = False

    model_config = ConfigDict(from_attributes=True)


class PunchBatchCreate(BaseModel):
    punches: list[PunchCreate] = Field(min_length=1, max_length=5000)


class ValidationIssueRead(BaseModel):
    index: int
    level: Literal["error", "warning"]
    code: str
    message: str

    model_config = ConfigDict(from_attributes=True)


class BatchValidationRead(BaseModel):
    total: int
    valid_count: int
    errors: list[ValidationIssueRead] = Field(default_factory=list)
    warnings: list[ValidationIssueRead] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class PunchBatchResponse(BaseModel):
    validation: BatchValidationRead
    verdicts: list[PunchVerdictRead] = Field(default_factory=list)
    accepted_count: int
    rejected_count: int

    model_config = ConfigDict(from_attributes=True)


class TerminalFeedCreate(BaseModel):
    text: str = Field(min_length=1)
    source: PunchSource = PunchSource.TERMINAL


class FeedLineErrorRead(BaseModel):
    line_number: int
    line: str
    message: str

    model_config = ConfigDict(from_attributes=True)


class TerminalFeedResponse(BaseModel):
    parsed_count: int
    skipped_lines: int
    parse_errors: list[FeedLineErrorRead] = Field(default_factory=list)
    batch: PunchBatchResponse | None = None


class EmployeeCreate(BaseModel):
    full_name: str = Field(min_length=1, max_length=255)
    is_active: bool = True
    hourly_rate: float | None = Field(default=None, gt=0)


class EmployeeRead(BaseModel):
    id: int
    full_name: str
    is_active: bool
    hourly_rate: float | None

    model_config = ConfigDict(from_attributes=True)


class SupplementaryPunchRead(BaseModel):
    id: int
    action: CanonicalAction
    ts_utc: datetime
    source: PunchSource
    note: str

    model_config = ConfigDict(from_attributes=True)


class NightPeriodRead(BaseModel):
    start_clock: str
    end_clock: str
    hours: float


class WorkHourBreakdownRead(BaseModel):
    status: BreakdownStatus
    error_code: str | None = None
    total_stay_hours: float | None = None
    break_hours: float | None = None
    net_work_hours: float | None = None
    night_hours: float | None = None
    regular_hours: float | None = None
    overtime_hours: float | None = None
    check_in_clock: str | None = None
    check_out_clock: str | None = None
    dinner_break_applied: bool = False
    daily_max_exceeded: bool = False
    night_periods: list[NightPeriodRead] = Field(default_factory=list)
    source_record_version: int
    computed_at: datetime

    model_config = ConfigDict(from_attributes=True)


class DayRecordRead(BaseModel):
    id: int
    employee_id: int
    work_date: date
    check_in_ts: datetime | None
    check_in_source: PunchSource | None
    check_out_ts: datetime | None
    check_out_source: PunchSource | None
    had_dinner_break: bool | None
    completeness: DayCompleteness
    version: int
    supplementary_punches: list[SupplementaryPunchRead] = Field(default_factory=list)
    breakdown: WorkHourBreakdownRead | None = None

    model_config = ConfigDict(from_attributes=True)


class WorkPolicyCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    effective_from: date
    effective_to: date | None = None
    standard_weekly_hours: float | None = Field(default=None, gt=0)
    max_daily_hours: float | None = Field(default=None, gt=0)
    max_weekly_hours: float | None = Field(default=None, gt=0)
    night_start_hour: int = Field(default=22, ge=0, le=23)
    night_end_hour: int = Field(default=6, ge=0, le=23)
    base_break_minutes: int = Field(default=60, ge=0)
    dinner_break_minutes: int = Field(default=60, ge=0)
    dinner_cutoff_hour: int = Field(default=19, ge=0, le=23)
    dinner_fallback_min_hours: float = Field(default=8.0, ge=0)
    daily_regular_hours: float = Field(default=8.0, gt=0)
    overtime_multiplier: float = Field(default=1.5, gt=0)
    night_allowance_rate: float = Field(default=0.5, ge=0)
    hourly_rate: float | None = Field(default=None, gt=0)
    source_priority: list[PunchSource] = Field(
        default_factory=lambda: [PunchSource.TERMINAL, PunchSource.WEB_CLIENT, PunchSource.MANUAL],
        min_length=1,
    )
    dedup_window_minutes: int = Field(default=5, ge=0, le=240)
    quarter_weeks: int = Field(default=12, ge=1)

    @field_validator("source_priority")
    @classmethod
    def _unique_sources(cls, value: list[PunchSource]) -> list[PunchSource]:
        if len(set(value)) != len(value):
            raise ValueError("source_priority must not repeat a source")
        return value

    @model_validator(mode="after")
    def _check_range(self) -> "WorkPolicyCreate":
        if self.effective_to is not None and self.effective_to < self.effective_from:
            raise ValueError("effective_to must not precede effective_from")
        return self


class WorkPolicyRead(BaseModel):
    id: int
    name: str
    effective_from: date
    effective_to: date | None
    standard_weekly_hours: float | None
    max_daily_hours: float | None
    max_weekly_hours: float | None
    night_start_hour: int
    night_end_hour: int
    base_break_minutes: int
    dinner_break_minutes: int
    dinner_cutoff_hour: int
    dinner_fallback_min_hours: float
    daily_regular_hours: float
    overtime_multiplier: float
    night_allowance_rate: float
    hourly_rate: float | None
    source_priority: str
    dedup_window_minutes: int
    quarter_weeks: int

    model_config = ConfigDict(from_attributes=True)


class SettlementPeriodCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    start_date: date
    end_date: date
    standard_weekly_hours: float | None = Field(default=None, gt=0)
    max_daily_hours: float | None = Field(default=None, gt=0)
    max_weekly_hours: float | None = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _check_range(self) -> "SettlementPeriodCreate":
        if self.end_date < self.start_date:
            raise ValueError("end_date must not precede start_date")
        return self


class SettlementPeriodRead(BaseModel):
    id: int
    name: str
    start_date: date
    end_date: date
    standard_weekly_hours: float | None
    max_daily_hours: float | None
    max_weekly_hours: float | None
    status: PeriodStatus
    completed_by: str | None
    completed_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class PeriodReopenRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=1000)


class MonthlyDetailRead(BaseModel):
    month: str
    work_days: int
    work_hours: float
    night_hours: float

    model_config = ConfigDict(from_attributes=True)


class SettlementResultRead(BaseModel):
    id: int
    period_id: int
    employee_id: int
    employee_full_name: str | None = None
    work_days: int
    total_actual_hours: float
    number_of_weeks: float
    weekly_average_hours: float
    standard_weekly_hours: float
    excess_hours: float
    total_night_hours: float
    overtime_allowance_hours: float
    hourly_rate: float
    overtime_multiplier: float
    overtime_allowance_amount: float
    estimated_night_allowance_amount: float
    computed_at: datetime
    finalized: bool
    finalized_by: str | None
    finalized_at: datetime | None
    reopened_by: str | None = None
    reopened_at: datetime | None = None
    monthly: list[MonthlyDetailRead] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class EmployeeSettlementRead(SettlementResultRead):
    period_name: str
    period_start_date: date
    period_end_date: date
    period_status: PeriodStatus


class SettlementErrorRead(BaseModel):
    employee_id: int
    full_name: str | None = None
    code: str
    message: str
    work_dates: list[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="allow")


class PeriodRecomputeResponse(BaseModel):
    period: SettlementPeriodRead
    results: list[SettlementResultRead] = Field(default_factory=list)
    errors: list[SettlementErrorRead] = Field(default_factory=list)


class PeriodSummaryRead(BaseModel):
    period: SettlementPeriodRead
    total_employees: int
    employees_with_allowance: int
    total_allowance_amount: float
    average_weekly_hours: float
    total_night_hours: float
    estimated_night_allowance_amount: float


class ReviewItemRead(BaseModel):
    id: int
    kind: ReviewKind
    employee_id: int
    work_date: date | None
    punch_event_id: int | None
    detail: str
    resolved: bool
    resolved_by: str | None
    resolved_at: datetime | None
    resolution_note: str | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ReviewResolveRequest(BaseModel):
    note: str = Field(min_length=1, max_length=1000)
