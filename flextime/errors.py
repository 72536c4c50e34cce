from __future__ import annotations

from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse


class ApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


class EngineError(Exception):
    """Base class for reconciliation and settlement failures.

    Each subclass carries a stable machine code and the HTTP status used when
    it escapes to an API caller. ``context`` holds the identifiers needed to
    route the failure to the exceptions queue.
    """

    code = "ENGINE_ERROR"
    status_code = 422

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.context}


class UnmappedActionCode(EngineError):
    code = "UNMAPPED_ACTION_CODE"


class DuplicateDetected(EngineError):
    code = "DUPLICATE_DETECTED"
    status_code = 409

    def __init__(self, message: str, *, conflicting_record: dict[str, Any], **context: Any) -> None:
        super().__init__(message, conflicting_record=conflicting_record, **context)
        self.conflicting_record = conflicting_record


class InvalidTimeRange(EngineError):
    code = "INVALID_TIME_RANGE"


class IncompleteDayRecord(EngineError):
    code = "INCOMPLETE_DAY_RECORD"


class MissingPolicyConfig(EngineError):
    code = "MISSING_POLICY_CONFIG"


class SettlementLocked(EngineError):
    code = "SETTLEMENT_LOCKED"
    status_code = 409


class SettlementBlocked(EngineError):
    code = "SETTLEMENT_BLOCKED"
    status_code = 409

    def __init__(self, message: str, *, affected_employees: list[dict[str, Any]], **context: Any) -> None:
        super().__init__(message, affected_employees=affected_employees, **context)
        self.affected_employees = affected_employees


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return "unknown"


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    payload: dict[str, Any] = {
        "error": {
            "code": code,
            "message": message,
            "request_id": get_request_id(request),
        }
    }
    if details:
        payload["error"]["details"] = details
    return JSONResponse(status_code=status_code, content=jsonable_encoder(payload))
