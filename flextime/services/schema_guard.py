from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError


@dataclass(frozen=True, slots=True)
class SchemaGuardResult:
    ok: bool
    checked_at_utc: datetime
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "checked_at_utc": self.checked_at_utc.isoformat(),
            "issues": list(self.issues),
            "warnings": list(self.warnings),
            "issue_count": len(self.issues),
            "warning_count": len(self.warnings),
        }


REQUIRED_TABLE_COLUMNS: dict[str, set[str]] = {
    "employees": {"id", "hourly_rate"},
    "punch_events": {"id", "source", "raw_action_code", "ts_utc", "outcome"},
    "canonical_day_records": {"id", "work_date", "check_in_ts", "check_out_ts", "completeness", "version"},
    "supplementary_punches": {"id", "day_record_id", "ts_utc"},
    "work_hour_breakdowns": {"id", "status", "net_work_hours", "night_hours", "night_periods"},
    "work_policies": {"id", "effective_from", "source_priority", "dedup_window_minutes"},
    "settlement_periods": {"id", "status"},
    "settlement_results": {"id", "period_id", "employee_id", "finalized", "monthly_details"},
    "review_queue_items": {"id", "kind", "resolved"},
    "audit_logs": {"id", "action", "details"},
    "alembic_version": {"version_num"},
}

REQUIRED_ENUM_VALUES: dict[str, set[str]] = {
    "punch_source": {"TERMINAL", "WEB_CLIENT", "MANUAL"},
    "punch_outcome": {"INSERTED", "MERGED", "DUPLICATE_DETECTED", "IGNORED", "UNMAPPED"},
    "settlement_period_status": {"PLANNED", "ACTIVE", "COMPLETED"},
}


def verify_runtime_schema(engine: Engine, *, check_alembic: bool = True) -> SchemaGuardResult:
    issues: list[str] = []
    warnings: list[str] = []
    checked_at_utc = datetime.now(timezone.utc)
    inspector = inspect(engine)
    existing_tables = set(inspector.get_table_names())

    for table_name, required_columns in REQUIRED_TABLE_COLUMNS.items():
        if table_name == "alembic_version" and not check_alembic:
            continue
        if table_name not in existing_tables:
            issues.append(f"MISSING_TABLE:{table_name}")
            continue
        column_names = {str(item.get("name")) for item in inspector.get_columns(table_name)}
        missing_columns = sorted(item for item in required_columns if item not in column_names)
        if missing_columns:
            issues.append(f"MISSING_COLUMNS:{table_name}:{','.join(missing_columns)}")

    # Only dialects with native enum types expose get_enums.
    enums: list[dict[str, Any]] = []
    if hasattr(inspector, "get_enums"):
        try:
            enums = list(inspector.get_enums() or [])
        except SQLAlchemyError as exc:
            warnings.append(f"ENUM_INSPECTION_FAILED:{exc.__class__.__name__}")

    enum_values_by_name: dict[str, set[str]] = {}
    for enum_item in enums:
        name = str(enum_item.get("name") or "").strip()
        labels = enum_item.get("labels")
        if name and isinstance(labels, list):
            enum_values_by_name[name] = {str(label) for label in labels}

    if enum_values_by_name:
        for enum_name, required_values in REQUIRED_ENUM_VALUES.items():
            if enum_name not in enum_values_by_name:
                warnings.append(f"ENUM_NOT_FOUND:{enum_name}")
                continue
            missing_values = sorted(item for item in required_values if item not in enum_values_by_name[enum_name])
            if missing_values:
                issues.append(f"MISSING_ENUM_VALUES:{enum_name}:{','.join(missing_values)}")

    if check_alembic and "alembic_version" in existing_tables:
        try:
            with engine.connect() as connection:
                row = connection.execute(text("SELECT version_num FROM alembic_version LIMIT 1")).scalar()
                if not (str(row).strip() if row is not None else ""):
                    issues.append("ALEMBIC_VERSION_EMPTY")
        except SQLAlchemyError as exc:
            issues.append(f"ALEMBIC_VERSION_CHECK_FAILED:{exc.__class__.__name__}")

    return SchemaGuardResult(
        ok=len(issues) == 0,
        checked_at_utc=checked_at_utc,
        issues=issues,
        warnings=warnings,
    )
