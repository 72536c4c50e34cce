from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.orm import Session

from flextime.models import AuditActorType, AuditLog

logger = logging.getLogger("flextime.audit")


def log_audit(
    db: Session,
    *,
    actor_type: AuditActorType,
    actor_id: str,
    action: str,
    success: bool,
    entity_type: str | None = None,
    entity_id: str | None = None,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
    commit: bool = False,
) -> None:
    """Record an audit row in the current unit of work.

    With ``commit=False`` the row rides along with the caller's transaction so
    that the audited change and its trail are persisted together.
    """
    audit = AuditLog(
        ts_utc=datetime.now(timezone.utc),
        actor_type=actor_type,
        actor_id=actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        success=success,
        details=details or {},
    )
    db.add(audit)
    if commit:
        try:
            db.commit()
        except Exception:
            db.rollback()
            logger.exception(
                "audit_log_write_failed",
                extra={
                    "request_id": request_id,
                    "action": action,
                    "actor_type": actor_type.value,
                    "actor_id": actor_id,
                    "success": success,
                },
            )
            return

    logger.info(
        "audit_event",
        extra={
            "request_id": request_id,
            "action": action,
            "actor_type": actor_type.value,
            "actor_id": actor_id,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "success": success,
            "details": details or {},
        },
    )
