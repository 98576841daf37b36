"""Transaction scope shared by the service layer."""

import logging
from contextlib import contextmanager
from typing import TYPE_CHECKING, Iterator, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from safee.core.errors import ConflictError, OperationFailed, SafeeError

if TYPE_CHECKING:
    from safee.services.audit import AuditEventEmitter

logger = logging.getLogger(__name__)


@contextmanager
def unit_of_work(
    db: Session,
    operation: str,
    *,
    audit: Optional["AuditEventEmitter"] = None,
) -> Iterator[Session]:
    """
    Commit on success, roll back on any error.

    Domain errors propagate unchanged. Integrity violations become
    ConflictError; other database errors become OperationFailed.

    When ``audit`` is given, its queued sink events are delivered after
    the commit and dropped on rollback.
    """
    try:
        yield db
        db.commit()
    except Exception as e:
        db.rollback()
        if audit is not None:
            audit.discard()
        if isinstance(e, SafeeError):
            raise
        if isinstance(e, IntegrityError):
            logger.warning(f"Integrity error during {operation}: {e.orig}")
            raise ConflictError(f"Could not {operation}: conflicting change") from e
        if isinstance(e, SQLAlchemyError):
            logger.exception(f"Database error during {operation}")
            raise OperationFailed(f"Could not {operation}") from e
        raise

    if audit is not None:
        audit.deliver()
