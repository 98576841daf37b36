"""Audit log model for Safee Core.

This table is append-only: the migration installs triggers that reject
UPDATE and DELETE on PostgreSQL. Entries are permanent for compliance.
"""

import uuid
from enum import Enum
from typing import Optional, Dict, Any
from sqlalchemy import Column, String, DateTime, JSON, ForeignKey
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from safee.db.base import Base, utcnow


class AuditSeverity(str, Enum):
    """Severity levels for audit log entries."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"  # Security-relevant events (key unwrap failures, rotations)


class AuditLog(Base):
    """
    Immutable audit log entry.

    One row per state transition of an approval request/step, and per
    encryption key lifecycle event.
    """
    __tablename__ = "audit_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False, index=True)

    # Actor (None for system actions)
    actor_id = Column(UUID(as_uuid=True), nullable=True, index=True)

    # What happened, to what
    action = Column(String(100), nullable=False, index=True)
    entity_type = Column(String(100), nullable=False, index=True)
    entity_id = Column(String(255), nullable=True, index=True)

    # Change tracking
    changes_before = Column(JSON, nullable=True)
    changes_after = Column(JSON, nullable=True)
    details = Column(JSON, nullable=True)

    severity = Column(String(20), nullable=False, default="info", index=True)
    created_at = Column(DateTime, default=utcnow, index=True)

    organization = relationship("Organization", back_populates="audit_logs")

    def __repr__(self) -> str:
        return f"<AuditLog {self.action} on {self.entity_type}:{self.entity_id} by {self.actor_id}>"

    @classmethod
    def create_entry(
        cls,
        organization_id: uuid.UUID,
        action: str,
        entity_type: str,
        *,
        entity_id: Optional[str] = None,
        actor_id: Optional[uuid.UUID] = None,
        changes_before: Optional[Dict[str, Any]] = None,
        changes_after: Optional[Dict[str, Any]] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: AuditSeverity = AuditSeverity.INFO,
    ) -> "AuditLog":
        """
        Factory method to create a new audit log entry.

        Args:
            organization_id: Organization ID
            action: Action performed (e.g. 'approval.step.approve')
            entity_type: Type of entity (e.g. 'invoice', 'encryption_key')
            entity_id: ID of the affected entity
            actor_id: ID of the acting user (None for system actions)
            changes_before: State before the transition
            changes_after: State after the transition
            details: Additional context
            severity: Log severity level
        """
        return cls(
            organization_id=organization_id,
            action=action,
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
            actor_id=actor_id,
            changes_before=changes_before,
            changes_after=changes_after,
            details=details,
            severity=severity.value if isinstance(severity, AuditSeverity) else severity,
        )
