from datetime import date, datetime, timezone

from fastapi import APIRouter, Depends, Query, Request, Response, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from flextime.audit import log_audit
from flextime.db import get_db
from flextime.dependencies import get_actor_id, get_policy_store, get_request_id
from flextime.errors import ApiError
from flextime.models import (
    AuditActorType,
    CanonicalDayRecord,
    Employee,
    ReviewKind,
    ReviewQueueItem,
    SettlementPeriod,
    SettlementResult,
    WorkHourBreakdown,
    WorkPolicy,
)
from flextime.schemas import (
    DayRecordRead,
    EmployeeCreate,
    EmployeeRead,
    EmployeeSettlementRead,
    MonthlyDetailRead,
    PeriodRecomputeResponse,
    PeriodReopenRequest,
    PeriodSummaryRead,
    ReviewItemRead,
    ReviewResolveRequest,
    SettlementErrorRead,
    SettlementPeriodCreate,
    SettlementPeriodRead,
    SettlementResultRead,
    SupplementaryPunchRead,
    WorkHourBreakdownRead,
    WorkPolicyCreate,
    WorkPolicyRead,
)
from flextime.services.daily import list_employee_days
from flextime.services.exports import build_period_xlsx_bytes
from flextime.services.policy import PolicyStore
from flextime.services.settlement import (
    activate_period,
    create_period,
    employee_settlements,
    finalize_period,
    get_period,
    period_results,
    recompute_period,
    reopen_period,
)
from flextime.services.settlement_calc import summarize_settlements

router = APIRouter(tags=["admin"])


def _get_employee(db: Session, employee_id: int) -> Employee:
    employee = db.get(Employee, employee_id)
    if employee is None:
        raise ApiError(status_code=404, code="EMPLOYEE_NOT_FOUND", message="Employee not found.")
    return employee


def _day_read(record: CanonicalDayRecord, breakdown: WorkHourBreakdown | None) -> DayRecordRead:
    return DayRecordRead(
        id=record.id,
        employee_id=record.employee_id,
        work_date=record.work_date,
        check_in_ts=record.check_in_ts,
        check_in_source=record.check_in_source,
        check_out_ts=record.check_out_ts,
        check_out_source=record.check_out_source,
        had_dinner_break=record.had_dinner_break,
        completeness=record.completeness,
        version=record.version,
        supplementary_punches=[SupplementaryPunchRead.model_validate(item) for item in record.supplementary_punches],
        breakdown=WorkHourBreakdownRead.model_validate(breakdown) if breakdown is not None else None,
    )


def _result_read(result: SettlementResult, *, employee: Employee | None = None) -> SettlementResultRead:
    read = SettlementResultRead.model_validate(result)
    if employee is not None:
        read.employee_full_name = employee.full_name
    read.monthly = [MonthlyDetailRead.model_validate(item) for item in result.monthly_details or []]
    return read


@router.get("/api/admin/employees", response_model=list[EmployeeRead])
def list_employees(
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
) -> list[EmployeeRead]:
    stmt = select(Employee).order_by(Employee.id.asc())
    if not include_inactive:
        stmt = stmt.where(Employee.is_active.is_(True))
    return list(db.scalars(stmt).all())


@router.post("/api/admin/employees", response_model=EmployeeRead, status_code=status.HTTP_201_CREATED)
def create_employee(
    payload: EmployeeCreate,
    request: Request,
    actor_id: str = Depends(get_actor_id),
    db: Session = Depends(get_db),
) -> EmployeeRead:
    employee = Employee(
        full_name=payload.full_name.strip(),
        is_active=payload.is_active,
        hourly_rate=payload.hourly_rate,
        created_at=datetime.now(timezone.utc),
    )
    db.add(employee)
    db.flush()
    log_audit(
        db,
        actor_type=AuditActorType.ADMIN,
        actor_id=actor_id,
        action="EMPLOYEE_CREATED",
        success=True,
        entity_type="employee",
        entity_id=str(employee.id),
        details={"full_name": employee.full_name, "hourly_rate": employee.hourly_rate},
        request_id=get_request_id(request),
    )
    db.commit()
    db.refresh(employee)
    return employee


@router.get("/api/admin/employees/{employee_id}/days", response_model=list[DayRecordRead])
def get_employee_days(
    employee_id: int,
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    db: Session = Depends(get_db),
) -> list[DayRecordRead]:
    _get_employee(db, employee_id)
    if start_date is not None and end_date is not None and end_date < start_date:
        raise ApiError(status_code=422, code="INVALID_DATE_RANGE", message="end_date must not precede start_date.")
    rows = list_employee_days(db, employee_id=employee_id, start_date=start_date, end_date=end_date)
    return [_day_read(record, breakdown) for record, breakdown in rows]


@router.get("/api/admin/employees/{employee_id}/settlements", response_model=list[EmployeeSettlementRead])
def get_employee_settlements(
    employee_id: int,
    db: Session = Depends(get_db),
) -> list[EmployeeSettlementRead]:
    items: list[EmployeeSettlementRead] = []
    for result, period in employee_settlements(db, employee_id):
        base = _result_read(result)
        items.append(
            EmployeeSettlementRead(
                **base.model_dump(),
                period_name=period.name,
                period_start_date=period.start_date,
                period_end_date=period.end_date,
                period_status=period.status,
            )
        )
    return items


@router.get("/api/admin/policies", response_model=list[WorkPolicyRead])
def list_policies(db: Session = Depends(get_db)) -> list[WorkPolicyRead]:
    return list(db.scalars(select(WorkPolicy).order_by(WorkPolicy.effective_from.desc(), WorkPolicy.id.desc())).all())


@router.post("/api/admin/policies", response_model=WorkPolicyRead, status_code=status.HTTP_201_CREATED)
def create_policy(
    payload: WorkPolicyCreate,
    request: Request,
    actor_id: str = Depends(get_actor_id),
    policy_store: PolicyStore = Depends(get_policy_store),
    db: Session = Depends(get_db),
) -> WorkPolicyRead:
    values = payload.model_dump()
    values["source_priority"] = ",".join(source.value for source in payload.source_priority)
    now_utc = datetime.now(timezone.utc)
    policy = WorkPolicy(**values, created_at=now_utc, updated_at=now_utc)
    db.add(policy)
    db.flush()
    log_audit(
        db,
        actor_type=AuditActorType.ADMIN,
        actor_id=actor_id,
        action="WORK_POLICY_CREATED",
        success=True,
        entity_type="work_policy",
        entity_id=str(policy.id),
        details={
            "name": policy.name,
            "effective_from": policy.effective_from.isoformat(),
            "source_priority": policy.source_priority,
        },
        request_id=get_request_id(request),
    )
    db.commit()
    db.refresh(policy)
    policy_store.invalidate()
    return policy


@router.get("/api/admin/exceptions", response_model=list[ReviewItemRead])
def list_exceptions(
    resolved: bool = Query(default=False),
    kind: ReviewKind | None = Query(default=None),
    employee_id: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
) -> list[ReviewItemRead]:
    stmt = select(ReviewQueueItem).where(ReviewQueueItem.resolved.is_(resolved))
    if kind is not None:
        stmt = stmt.where(ReviewQueueItem.kind == kind)
    if employee_id is not None:
        stmt = stmt.where(ReviewQueueItem.employee_id == employee_id)
    return list(db.scalars(stmt.order_by(ReviewQueueItem.created_at.asc(), ReviewQueueItem.id.asc())).all())


@router.post("/api/admin/exceptions/{item_id}/resolve", response_model=ReviewItemRead)
def resolve_exception(
    item_id: int,
    payload: ReviewResolveRequest,
    request: Request,
    actor_id: str = Depends(get_actor_id),
    db: Session = Depends(get_db),
) -> ReviewItemRead:
    item = db.get(ReviewQueueItem, item_id)
    if item is None:
        raise ApiError(status_code=404, code="REVIEW_ITEM_NOT_FOUND", message="Review item not found.")
    if item.resolved:
        raise ApiError(status_code=409, code="REVIEW_ITEM_ALREADY_RESOLVED", message="Review item is already resolved.")

    item.resolved = True
    item.resolved_by = actor_id
    item.resolved_at = datetime.now(timezone.utc)
    item.resolution_note = payload.note
    log_audit(
        db,
        actor_type=AuditActorType.ADMIN,
        actor_id=actor_id,
        action="REVIEW_ITEM_RESOLVED",
        success=True,
        entity_type="review_queue_item",
        entity_id=str(item.id),
        details={"kind": item.kind.value, "note": payload.note},
        request_id=get_request_id(request),
    )
    db.commit()
    db.refresh(item)
    return item


@router.get("/api/admin/periods", response_model=list[SettlementPeriodRead])
def list_periods(db: Session = Depends(get_db)) -> list[SettlementPeriodRead]:
    return list(db.scalars(select(SettlementPeriod).order_by(SettlementPeriod.start_date.desc())).all())


@router.post("/api/admin/periods", response_model=SettlementPeriodRead, status_code=status.HTTP_201_CREATED)
def create_settlement_period(
    payload: SettlementPeriodCreate,
    actor_id: str = Depends(get_actor_id),
    db: Session = Depends(get_db),
) -> SettlementPeriodRead:
    return create_period(
        db,
        name=payload.name,
        start_date=payload.start_date,
        end_date=payload.end_date,
        standard_weekly_hours=payload.standard_weekly_hours,
        max_daily_hours=payload.max_daily_hours,
        max_weekly_hours=payload.max_weekly_hours,
        actor_id=actor_id,
    )


@router.post("/api/admin/periods/{period_id}/activate", response_model=SettlementPeriodRead)
def activate_settlement_period(
    period_id: int,
    actor_id: str = Depends(get_actor_id),
    db: Session = Depends(get_db),
) -> SettlementPeriodRead:
    return activate_period(db, period_id, actor_id=actor_id)


@router.post("/api/admin/periods/{period_id}/recompute", response_model=PeriodRecomputeResponse)
def recompute_settlement_period(
    period_id: int,
    policy_store: PolicyStore = Depends(get_policy_store),
    db: Session = Depends(get_db),
) -> PeriodRecomputeResponse:
    outcome = recompute_period(db, period_id, policy_store=policy_store)
    period = get_period(db, period_id)
    return PeriodRecomputeResponse(
        period=SettlementPeriodRead.model_validate(period),
        results=[_result_read(result) for result in outcome.results],
        errors=[SettlementErrorRead.model_validate(item) for item in outcome.errors],
    )


@router.post("/api/admin/periods/{period_id}/finalize", response_model=SettlementPeriodRead)
def finalize_settlement_period(
    period_id: int,
    actor_id: str = Depends(get_actor_id),
    policy_store: PolicyStore = Depends(get_policy_store),
    db: Session = Depends(get_db),
) -> SettlementPeriodRead:
    return finalize_period(db, period_id, policy_store=policy_store, actor_id=actor_id)


@router.post("/api/admin/periods/{period_id}/reopen", response_model=SettlementPeriodRead)
def reopen_settlement_period(
    period_id: int,
    payload: PeriodReopenRequest,
    actor_id: str = Depends(get_actor_id),
    db: Session = Depends(get_db),
) -> SettlementPeriodRead:
    return reopen_period(db, period_id, actor_id=actor_id, reason=payload.reason)


@router.get("/api/admin/periods/{period_id}/results", response_model=list[SettlementResultRead])
def get_period_results(
    period_id: int,
    db: Session = Depends(get_db),
) -> list[SettlementResultRead]:
    return [_result_read(result, employee=employee) for result, employee in period_results(db, period_id)]


@router.get("/api/admin/periods/{period_id}/summary", response_model=PeriodSummaryRead)
def get_period_summary(
    period_id: int,
    db: Session = Depends(get_db),
) -> PeriodSummaryRead:
    period = get_period(db, period_id)
    summary = summarize_settlements([result for result, _ in period_results(db, period_id)])
    return PeriodSummaryRead(period=SettlementPeriodRead.model_validate(period), **summary.to_dict())


@router.get("/api/admin/periods/{period_id}/export.xlsx")
def export_period_xlsx(
    period_id: int,
    db: Session = Depends(get_db),
) -> Response:
    content = build_period_xlsx_bytes(db, period_id=period_id)
    filename = f"settlement-{period_id}.xlsx"
    return Response(
        content=content,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
