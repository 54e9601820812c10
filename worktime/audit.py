from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from worktime.models import AuditLog
from worktime.security import Actor

logger = logging.getLogger("worktime.audit")


def _request_id(request: Request | None) -> str | None:
    if request is None:
        return None
    return getattr(request.state, "request_id", None)


def record_audit(
    db: Session,
    actor: Actor,
    *,
    action: str,
    entity_type: str,
    entity_id: str | int | None = None,
    details: dict[str, Any] | None = None,
    request: Request | None = None,
    success: bool = True,
) -> AuditLog | None:
    """Persist one audit row for a change that has already been committed.

    Returns ``None`` when the row could not be written.
    """
    request_id = _request_id(request)
    payload = dict(details or {})
    if request_id is not None:
        payload.setdefault("request_id", request_id)

    entry = AuditLog(
        ts_utc=datetime.now(timezone.utc),
        actor_type=actor.actor_type,
        actor_id=actor.actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=None if entity_id is None else str(entity_id),
        success=success,
        details=payload,
    )
    db.add(entry)
    try:
        db.commit()
    except SQLAlchemyError:
        # The audited change is already committed; a lost audit row must not undo it.
        db.rollback()
        logger.exception(
            "audit_log_write_failed",
            extra={"request_id": request_id, "action": action, "actor_id": actor.actor_id},
        )
        return None

    logger.info(
        "audit_event",
        extra={
            "request_id": request_id,
            "action": action,
            "actor_type": actor.actor_type,
            "actor_id": actor.actor_id,
            "entity_type": entity_type,
            "entity_id": entry.entity_id,
            "success": success,
        },
    )
    return entry
