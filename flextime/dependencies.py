from __future__ import annotations

from fastapi import Request

from flextime.errors import ApiError
from flextime.services.policy import PolicyStore

ACTOR_HEADER = "X-Actor-Id"
DEFAULT_ACTOR_ID = "admin"


def get_policy_store(request: Request) -> PolicyStore:
    store = getattr(request.app.state, "policy_store", None)
    if store is None:
        raise ApiError(status_code=503, code="POLICY_STORE_UNAVAILABLE", message="Policy store is not initialised.")
    return store


def get_actor_id(request: Request) -> str:
    actor_id = getattr(request.state, "actor_id", None)
    return str(actor_id) if actor_id else DEFAULT_ACTOR_ID


def get_request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)
