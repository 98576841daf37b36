"""Notification events produced by approval transitions.

The engine only describes what happened and who should hear about it;
delivery belongs to the notification collaborator.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol
from uuid import UUID


class ApprovalEventType(str, Enum):
    PENDING = "approval.pending"        # Approvers have a step to act on
    APPROVED = "approval.approved"
    REJECTED = "approval.rejected"
    CANCELLED = "approval.cancelled"
    DELEGATED = "approval.delegated"


@dataclass
class ApprovalEvent:
    event_type: ApprovalEventType
    organization_id: UUID
    request_id: UUID
    entity_type: str
    entity_id: str
    recipients: List[UUID] = field(default_factory=list)
    actor_id: Optional[UUID] = None
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": self.event_type.value,
            "organization_id": str(self.organization_id),
            "request_id": str(self.request_id),
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "recipients": [str(r) for r in self.recipients],
            "actor_id": str(self.actor_id) if self.actor_id else None,
            "context": self.context,
        }


class ApprovalNotifier(Protocol):
    def notify(self, event: ApprovalEvent) -> Any:
        ...
