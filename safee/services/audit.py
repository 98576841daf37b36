"""Audit event emission.

Every approval and key lifecycle transition is written as an immutable
``AuditLog`` row in the caller's transaction, so the event is persisted
exactly when the transition is. Sink copies are queued with the row and
only delivered once the transaction commits (see ``unit_of_work``); a
failing sink is logged and never breaks the caller.
"""

import logging
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from safee.db.base import utcnow
from safee.db.models.audit import AuditLog, AuditSeverity

logger = logging.getLogger(__name__)

# Sensitive fields to redact from audit records
SENSITIVE_FIELDS = {
    "passphrase",
    "password",
    "secret",
    "token",
    "api_key",
    "wrapped_org_key",
    "wrapped_file_key",
    "org_key",
    "file_key",
    "private_key",
    "salt",
}

AuditSink = Callable[[Dict[str, Any]], None]


def redact_sensitive(data: Any) -> Any:
    """Redact sensitive fields from data."""
    if isinstance(data, dict):
        return {
            k: "[REDACTED]" if str(k).lower() in SENSITIVE_FIELDS else redact_sensitive(v)
            for k, v in data.items()
        }
    elif isinstance(data, list):
        return [redact_sensitive(item) for item in data]
    return data


class AuditEventEmitter:
    """Writes audit entries and fans them out to in-process sinks."""

    def __init__(self, db: Session, sinks: Optional[List[AuditSink]] = None):
        self.db = db
        self._sinks: List[AuditSink] = list(sinks or [])
        self._queued: List[Dict[str, Any]] = []

    def add_sink(self, sink: AuditSink) -> None:
        self._sinks.append(sink)

    def emit(
        self,
        organization_id: UUID,
        entity_type: str,
        entity_id: Any,
        action: str,
        actor_id: Optional[UUID] = None,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
        details: Optional[Dict[str, Any]] = None,
        *,
        severity: AuditSeverity = AuditSeverity.INFO,
    ) -> AuditLog:
        """
        Stage an audit entry in the current transaction.

        Args:
            organization_id: Organization scope
            entity_type: Audited entity kind (approval_request, encryption_key, ...)
            entity_id: Audited entity ID
            action: Dotted action name (e.g. 'approval.step.approved')
            actor_id: Acting user, None for system transitions
            before: State before the transition
            after: State after the transition
            details: Additional context

        Returns:
            The staged AuditLog row
        """
        entry = AuditLog.create_entry(
            organization_id,
            action,
            entity_type,
            entity_id=entity_id,
            actor_id=actor_id,
            changes_before=redact_sensitive(before) if before is not None else None,
            changes_after=redact_sensitive(after) if after is not None else None,
            details=redact_sensitive(details) if details is not None else None,
            severity=severity,
        )
        self.db.add(entry)

        event = {
            "organization_id": str(organization_id),
            "entity_type": entity_type,
            "entity_id": str(entity_id) if entity_id is not None else None,
            "action": action,
            "actor_id": str(actor_id) if actor_id else None,
            "changes_before": entry.changes_before,
            "changes_after": entry.changes_after,
            "details": entry.details,
            "severity": entry.severity,
            "timestamp": utcnow().isoformat(),
        }
        if self._sinks:
            self._queued.append(event)

        return entry

    def deliver(self) -> None:
        """Hand queued events to the sinks; called after the commit."""
        events, self._queued = self._queued, []
        for event in events:
            for sink in self._sinks:
                try:
                    sink(event)
                except Exception:
                    logger.exception(
                        f"Audit sink failed for {event['action']} on {event['entity_type']}:{event['entity_id']}"
                    )

    def discard(self) -> None:
        """Drop queued events of a rolled-back transaction."""
        self._queued = []
