"""Initial reconciliation and settlement schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

punch_source = postgresql.ENUM("TERMINAL", "WEB_CLIENT", "MANUAL", name="punch_source", create_type=False)
canonical_action = postgresql.ENUM("CHECK_IN", "CHECK_OUT", "IGNORED", name="canonical_action", create_type=False)
punch_outcome = postgresql.ENUM(
    "INSERTED",
    "MERGED",
    "DUPLICATE_DETECTED",
    "IGNORED",
    "UNMAPPED",
    name="punch_outcome",
    create_type=False,
)
day_completeness = postgresql.ENUM("OPEN", "COMPLETE", "INCOMPLETE", name="day_completeness", create_type=False)
breakdown_status = postgresql.ENUM("OK", "INCOMPLETE", "ERROR", name="breakdown_status", create_type=False)
settlement_period_status = postgresql.ENUM(
    "PLANNED",
    "ACTIVE",
    "COMPLETED",
    name="settlement_period_status",
    create_type=False,
)
review_kind = postgresql.ENUM(
    "UNMAPPED_ACTION_CODE",
    "INCOMPLETE_DAY",
    "INVALID_TIME_RANGE",
    name="review_kind",
    create_type=False,
)
audit_actor_type = postgresql.ENUM("ADMIN", "SYSTEM", name="audit_actor_type", create_type=False)

ENUMS = (
    punch_source,
    canonical_action,
    punch_outcome,
    day_completeness,
    breakdown_status,
    settlement_period_status,
    review_kind,
    audit_actor_type,
)


def _timestamp(name: str) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()"))


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "employees",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("hourly_rate", sa.Float(), nullable=True),
        _timestamp("created_at"),
    )

    op.create_table(
        "canonical_day_records",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("work_date", sa.Date(), nullable=False),
        sa.Column("check_in_ts", sa.DateTime(timezone=True), nullable=True),
        sa.Column("check_in_source", punch_source, nullable=True),
        sa.Column("check_in_punch_id", sa.Integer(), nullable=True),
        sa.Column("check_out_ts", sa.DateTime(timezone=True), nullable=True),
        sa.Column("check_out_source", punch_source, nullable=True),
        sa.Column("check_out_punch_id", sa.Integer(), nullable=True),
        sa.Column("had_dinner_break", sa.Boolean(), nullable=True),
        sa.Column("completeness", day_completeness, nullable=False, server_default=sa.text("'OPEN'")),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("employee_id", "work_date", name="uq_canonical_day_records_employee_day"),
    )
    op.create_index("ix_canonical_day_records_employee_id", "canonical_day_records", ["employee_id"])
    op.create_index("ix_canonical_day_records_work_date", "canonical_day_records", ["work_date"])

    op.create_table(
        "punch_events",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("source", punch_source, nullable=False),
        sa.Column("raw_action_code", sa.String(length=64), nullable=False),
        sa.Column("ts_utc", sa.DateTime(timezone=True), nullable=False),
        sa.Column("had_dinner", sa.Boolean(), nullable=True),
        sa.Column("action", canonical_action, nullable=True),
        sa.Column("work_date", sa.Date(), nullable=True),
        sa.Column("outcome", punch_outcome, nullable=False),
        sa.Column("note", sa.String(length=1000), nullable=True),
        sa.Column("day_record_id", sa.Integer(), nullable=True),
        _timestamp("received_at"),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["day_record_id"], ["canonical_day_records.id"], ondelete="SET NULL"),
        sa.UniqueConstraint(
            "employee_id",
            "source",
            "raw_action_code",
            "ts_utc",
            name="uq_punch_events_delivery",
        ),
    )
    op.create_index("ix_punch_events_employee_id", "punch_events", ["employee_id"])
    op.create_index("ix_punch_events_ts_utc", "punch_events", ["ts_utc"])

    op.create_table(
        "supplementary_punches",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("day_record_id", sa.Integer(), nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("work_date", sa.Date(), nullable=False),
        sa.Column("action", canonical_action, nullable=False),
        sa.Column("ts_utc", sa.DateTime(timezone=True), nullable=False),
        sa.Column("source", punch_source, nullable=False),
        sa.Column("punch_event_id", sa.Integer(), nullable=True),
        sa.Column("note", sa.String(length=1000), nullable=False),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["day_record_id"], ["canonical_day_records.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_supplementary_punches_day_record_id", "supplementary_punches", ["day_record_id"])

    op.create_table(
        "work_hour_breakdowns",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("work_date", sa.Date(), nullable=False),
        sa.Column("day_record_id", sa.Integer(), nullable=False),
        sa.Column("status", breakdown_status, nullable=False),
        sa.Column("error_code", sa.String(length=64), nullable=True),
        sa.Column("total_stay_hours", sa.Float(), nullable=True),
        sa.Column("break_hours", sa.Float(), nullable=True),
        sa.Column("net_work_hours", sa.Float(), nullable=True),
        sa.Column("night_hours", sa.Float(), nullable=True),
        sa.Column("regular_hours", sa.Float(), nullable=True),
        sa.Column("overtime_hours", sa.Float(), nullable=True),
        sa.Column("check_in_clock", sa.String(length=8), nullable=True),
        sa.Column("check_out_clock", sa.String(length=8), nullable=True),
        sa.Column("dinner_break_applied", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("daily_max_exceeded", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("source_record_version", sa.Integer(), nullable=False),
        sa.Column("computed_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["day_record_id"], ["canonical_day_records.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("employee_id", "work_date", name="uq_work_hour_breakdowns_employee_day"),
    )
    op.create_index("ix_work_hour_breakdowns_employee_id", "work_hour_breakdowns", ["employee_id"])
    op.create_index("ix_work_hour_breakdowns_work_date", "work_hour_breakdowns", ["work_date"])

    op.create_table(
        "work_policies",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("effective_from", sa.Date(), nullable=False),
        sa.Column("effective_to", sa.Date(), nullable=True),
        sa.Column("standard_weekly_hours", sa.Float(), nullable=True),
        sa.Column("max_daily_hours", sa.Float(), nullable=True),
        sa.Column("max_weekly_hours", sa.Float(), nullable=True),
        sa.Column("night_start_hour", sa.Integer(), nullable=False, server_default=sa.text("22")),
        sa.Column("night_end_hour", sa.Integer(), nullable=False, server_default=sa.text("6")),
        sa.Column("base_break_minutes", sa.Integer(), nullable=False, server_default=sa.text("60")),
        sa.Column("dinner_break_minutes", sa.Integer(), nullable=False, server_default=sa.text("60")),
        sa.Column("dinner_cutoff_hour", sa.Integer(), nullable=False, server_default=sa.text("19")),
        sa.Column("dinner_fallback_min_hours", sa.Float(), nullable=False, server_default=sa.text("8.0")),
        sa.Column("daily_regular_hours", sa.Float(), nullable=False, server_default=sa.text("8.0")),
        sa.Column("overtime_multiplier", sa.Float(), nullable=False, server_default=sa.text("1.5")),
        sa.Column("night_allowance_rate", sa.Float(), nullable=False, server_default=sa.text("0.5")),
        sa.Column("hourly_rate", sa.Float(), nullable=True),
        sa.Column(
            "source_priority",
            sa.String(length=255),
            nullable=False,
            server_default=sa.text("'TERMINAL,WEB_CLIENT,MANUAL'"),
        ),
        sa.Column("dedup_window_minutes", sa.Integer(), nullable=False, server_default=sa.text("5")),
        sa.Column("quarter_weeks", sa.Integer(), nullable=False, server_default=sa.text("12")),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("ix_work_policies_effective_from", "work_policies", ["effective_from"])

    op.create_table(
        "settlement_periods",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("standard_weekly_hours", sa.Float(), nullable=True),
        sa.Column("max_daily_hours", sa.Float(), nullable=True),
        sa.Column("max_weekly_hours", sa.Float(), nullable=True),
        sa.Column("status", settlement_period_status, nullable=False, server_default=sa.text("'PLANNED'")),
        sa.Column("completed_by", sa.String(length=255), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint("end_date >= start_date", name="ck_settlement_periods_range"),
    )

    op.create_table(
        "settlement_results",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("period_id", sa.Integer(), nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("work_days", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_actual_hours", sa.Float(), nullable=False),
        sa.Column("number_of_weeks", sa.Float(), nullable=False),
        sa.Column("weekly_average_hours", sa.Float(), nullable=False),
        sa.Column("standard_weekly_hours", sa.Float(), nullable=False),
        sa.Column("excess_hours", sa.Float(), nullable=False),
        sa.Column("total_night_hours", sa.Float(), nullable=False),
        sa.Column("overtime_allowance_hours", sa.Float(), nullable=False),
        sa.Column("hourly_rate", sa.Float(), nullable=False),
        sa.Column("overtime_multiplier", sa.Float(), nullable=False),
        sa.Column("overtime_allowance_amount", sa.Float(), nullable=False),
        sa.Column("estimated_night_allowance_amount", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("computed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finalized", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("finalized_by", sa.String(length=255), nullable=True),
        sa.Column("finalized_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reopened_by", sa.String(length=255), nullable=True),
        sa.Column("reopened_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["period_id"], ["settlement_periods.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("period_id", "employee_id", name="uq_settlement_results_period_employee"),
    )
    op.create_index("ix_settlement_results_period_id", "settlement_results", ["period_id"])
    op.create_index("ix_settlement_results_employee_id", "settlement_results", ["employee_id"])

    op.create_table(
        "review_queue_items",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("kind", review_kind, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("work_date", sa.Date(), nullable=True),
        sa.Column("punch_event_id", sa.Integer(), nullable=True),
        sa.Column("detail", sa.String(length=1000), nullable=False),
        sa.Column("resolved", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("resolved_by", sa.String(length=255), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolution_note", sa.String(length=1000), nullable=True),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["punch_event_id"], ["punch_events.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_review_queue_items_kind", "review_queue_items", ["kind"])
    op.create_index("ix_review_queue_items_employee_id", "review_queue_items", ["employee_id"])
    op.create_index("ix_review_queue_items_work_date", "review_queue_items", ["work_date"])
    op.create_index(
        "ix_review_queue_items_open",
        "review_queue_items",
        ["employee_id", "work_date"],
        postgresql_where=sa.text("resolved = false"),
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        _timestamp("ts_utc"),
        sa.Column("actor_type", audit_actor_type, nullable=False),
        sa.Column("actor_id", sa.String(length=255), nullable=False),
        sa.Column("action", sa.String(length=255), nullable=False),
        sa.Column("entity_type", sa.String(length=255), nullable=True),
        sa.Column("entity_id", sa.String(length=255), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "details",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
    )
    op.create_index("ix_audit_logs_ts_utc", "audit_logs", ["ts_utc"])


def downgrade() -> None:
    op.drop_index("ix_audit_logs_ts_utc", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_table("review_queue_items")
    op.drop_table("settlement_results")
    op.drop_table("settlement_periods")
    op.drop_table("work_policies")
    op.drop_table("work_hour_breakdowns")
    op.drop_table("supplementary_punches")
    op.drop_table("punch_events")
    op.drop_table("canonical_day_records")
    op.drop_table("employees")

    bind = op.get_bind()
    for enum_type in reversed(ENUMS):
        enum_type.drop(bind, checkfirst=True)
