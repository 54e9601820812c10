from __future__ import annotations

import logging
from collections.abc import Callable

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from worktime.errors import ConflictError, StorageError

logger = logging.getLogger("worktime.storage")

DEFAULT_CONFLICT_MESSAGE = "Record conflicts with existing data."


def _run_or_raise(
    db: Session,
    operation: Callable[[], None],
    *,
    event: str,
    conflict_code: str,
    conflict_message: str,
) -> None:
    try:
        operation()
    except IntegrityError as exc:
        db.rollback()
        logger.warning(
            "integrity_conflict",
            extra={"conflict_code": conflict_code, "detail": str(exc.orig)[:500]},
        )
        raise ConflictError(code=conflict_code, message=conflict_message) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception(event, extra={"conflict_code": conflict_code})
        raise StorageError() from exc


def commit_or_raise(
    db: Session,
    *,
    conflict_code: str = "CONFLICT",
    conflict_message: str = DEFAULT_CONFLICT_MESSAGE,
) -> None:
    """Commit the unit of work, mapping constraint violations to ConflictError.

    Any other persistence failure rolls back and surfaces as StorageError.
    """
    _run_or_raise(
        db,
        db.commit,
        event="storage_commit_failed",
        conflict_code=conflict_code,
        conflict_message=conflict_message,
    )


def flush_or_raise(
    db: Session,
    *,
    conflict_code: str = "CONFLICT",
    conflict_message: str = DEFAULT_CONFLICT_MESSAGE,
) -> None:
    _run_or_raise(
        db,
        db.flush,
        event="storage_flush_failed",
        conflict_code=conflict_code,
        conflict_message=conflict_message,
    )
