from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from flextime.db import get_db
from flextime.dependencies import get_policy_store
from flextime.schemas import (
    BatchValidationRead,
    FeedLineErrorRead,
    PunchBatchCreate,
    PunchBatchResponse,
    PunchCreate,
    PunchVerdictRead,
    TerminalFeedCreate,
    TerminalFeedResponse,
    ValidationIssueRead,
)
from flextime.services.ingestion import BatchResult, ingest_batch, ingest_punch
from flextime.services.normalizer import PunchInput
from flextime.services.policy import PolicyStore
from flextime.services.terminal_feed import parse_terminal_export

router = APIRouter(tags=["punches"])


def _to_input(payload: PunchCreate) -> PunchInput:
    return PunchInput(
        employee_id=payload.employee_id,
        ts=payload.ts,
        source=payload.source,
        raw_action_code=payload.raw_action_code,
        had_dinner=payload.had_dinner,
        work_date=payload.work_date,
    )


def _batch_response(result: BatchResult) -> PunchBatchResponse:
    report = result.validation
    return PunchBatchResponse(
        validation=BatchValidationRead(
            total=report.total,
            valid_count=report.valid_count,
            errors=[ValidationIssueRead.model_validate(issue) for issue in report.errors],
            warnings=[ValidationIssueRead.model_validate(issue) for issue in report.warnings],
        ),
        verdicts=[PunchVerdictRead.model_validate(verdict) for verdict in result.verdicts],
        accepted_count=result.accepted_count,
        rejected_count=result.rejected_count,
    )


@router.post("/api/punches", response_model=PunchVerdictRead)
def create_punch(
    payload: PunchCreate,
    db: Session = Depends(get_db),
    policy_store: PolicyStore = Depends(get_policy_store),
) -> PunchVerdictRead:
    verdict = ingest_punch(db, _to_input(payload), policy_store=policy_store)
    return PunchVerdictRead.model_validate(verdict)


@router.post("/api/punches/batch", response_model=PunchBatchResponse)
def create_punch_batch(
    payload: PunchBatchCreate,
    db: Session = Depends(get_db),
    policy_store: PolicyStore = Depends(get_policy_store),
) -> PunchBatchResponse:
    result = ingest_batch(db, [_to_input(item) for item in payload.punches], policy_store=policy_store)
    return _batch_response(result)


@router.post(
    "/api/punches/terminal-feed",
    response_model=TerminalFeedResponse,
    status_code=status.HTTP_200_OK,
)
def upload_terminal_feed(
    payload: TerminalFeedCreate,
    db: Session = Depends(get_db),
    policy_store: PolicyStore = Depends(get_policy_store),
) -> TerminalFeedResponse:
    feed = parse_terminal_export(payload.text, source=payload.source)
    batch = None
    if feed.punches:
        batch = _batch_response(ingest_batch(db, feed.punches, policy_store=policy_store))
    return TerminalFeedResponse(
        parsed_count=len(feed.punches),
        skipped_lines=feed.skipped_lines,
        parse_errors=[FeedLineErrorRead.model_validate(error) for error in feed.errors],
        batch=batch,
    )
