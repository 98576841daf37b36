"""Database models for Safee Core."""

from safee.db.models.org import Organization, User, Member, Team, TeamMember
from safee.db.models.audit import AuditLog, AuditSeverity
from safee.db.models.approval import (
    ApprovalWorkflow,
    ApprovalWorkflowStep,
    ApprovalRule,
    ApprovalRequest,
    ApprovalStep,
    ApprovalHistory,
)
from safee.db.models.encryption import EncryptionKey, FileEncryptionMetadata, AuditorAccess

__all__ = [
    "Organization",
    "User",
    "Member",
    "Team",
    "TeamMember",
    "AuditLog",
    "AuditSeverity",
    "ApprovalWorkflow",
    "ApprovalWorkflowStep",
    "ApprovalRule",
    "ApprovalRequest",
    "ApprovalStep",
    "ApprovalHistory",
    "EncryptionKey",
    "FileEncryptionMetadata",
    "AuditorAccess",
]
