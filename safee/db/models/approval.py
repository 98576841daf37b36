"""Approval workflow database models.

Workflows and rules are per-organization configuration; requests and
steps are the runtime instances, and history records every transition.
"""

import uuid
from sqlalchemy import (
    Column, String, DateTime, JSON, ForeignKey, Text, Integer, Boolean,
    Index, UniqueConstraint, text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from safee.db.base import Base, utcnow


class ApprovalWorkflow(Base):
    """Named, ordered set of approval steps for one entity type."""
    __tablename__ = "approval_workflows"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    entity_type = Column(String(50), nullable=False, index=True)  # invoice, audit_plan, ...
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    steps = relationship(
        "ApprovalWorkflowStep",
        back_populates="workflow",
        order_by="ApprovalWorkflowStep.step_order",
        cascade="all, delete-orphan",
    )
    rules = relationship("ApprovalRule", back_populates="workflow")

    def __repr__(self) -> str:
        return f"<ApprovalWorkflow {self.name} [{self.entity_type}]>"


class ApprovalWorkflowStep(Base):
    __tablename__ = "approval_workflow_steps"
    __table_args__ = (
        UniqueConstraint("workflow_id", "step_order", name="uq_workflow_steps_order"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workflow_id = Column(UUID(as_uuid=True), ForeignKey("approval_workflows.id", ondelete="CASCADE"), nullable=False, index=True)
    step_order = Column(Integer, nullable=False)
    step_type = Column(String(20), nullable=False, default="single")  # single, parallel, any
    approver_type = Column(String(20), nullable=False, default="user")  # role, team, user
    approver_ids = Column(JSON, nullable=False, default=list)  # user ids, team ids or role names
    min_approvals = Column(Integer, nullable=False, default=1)
    required_approvers = Column(Integer, nullable=True)

    workflow = relationship("ApprovalWorkflow", back_populates="steps")

    def __repr__(self) -> str:
        return f"<ApprovalWorkflowStep {self.step_order} {self.step_type}/{self.approver_type}>"


class ApprovalRule(Base):
    """Maps entity attributes to a workflow; highest priority match wins."""
    __tablename__ = "approval_rules"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False, index=True)
    entity_type = Column(String(50), nullable=False, index=True)
    workflow_id = Column(UUID(as_uuid=True), ForeignKey("approval_workflows.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(255), nullable=True)
    conditions = Column(JSON, nullable=False, default=dict)
    priority = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow, index=True)

    workflow = relationship("ApprovalWorkflow", back_populates="rules")

    def __repr__(self) -> str:
        return f"<ApprovalRule {self.entity_type} p={self.priority}>"


class ApprovalRequest(Base):
    """
    Runtime approval of one entity.

    At most one request per (organization_id, entity_type, entity_id) may be
    pending.
    """
    __tablename__ = "approval_requests"
    __table_args__ = (
        Index(
            "uq_approval_requests_pending_entity",
            "organization_id",
            "entity_type",
            "entity_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False, index=True)
    workflow_id = Column(UUID(as_uuid=True), ForeignKey("approval_workflows.id"), nullable=False)
    rule_id = Column(UUID(as_uuid=True), ForeignKey("approval_rules.id", ondelete="SET NULL"), nullable=True)

    # Entity identification
    entity_type = Column(String(50), nullable=False, index=True)
    entity_id = Column(String(255), nullable=False, index=True)
    entity_data = Column(JSON, nullable=False, default=dict)

    # Workflow state
    status = Column(String(20), nullable=False, default="pending", index=True)
    current_step_order = Column(Integer, nullable=False, default=1)

    requested_by = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    cancelled_by = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    cancel_reason = Column(Text, nullable=True)

    # Timestamps
    submitted_at = Column(DateTime, default=utcnow, index=True)
    completed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    workflow = relationship("ApprovalWorkflow")
    steps = relationship(
        "ApprovalStep",
        back_populates="request",
        order_by="ApprovalStep.step_order",
        cascade="all, delete-orphan",
    )
    history = relationship("ApprovalHistory", back_populates="request", order_by="ApprovalHistory.created_at")

    def __repr__(self) -> str:
        return f"<ApprovalRequest {self.entity_type}:{self.entity_id} [{self.status}]>"


class ApprovalStep(Base):
    """One approver's vote within a step group of a request."""
    __tablename__ = "approval_steps"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    request_id = Column(UUID(as_uuid=True), ForeignKey("approval_requests.id", ondelete="CASCADE"), nullable=False, index=True)
    workflow_step_id = Column(UUID(as_uuid=True), ForeignKey("approval_workflow_steps.id", ondelete="SET NULL"), nullable=True)
    step_order = Column(Integer, nullable=False)
    approver_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)

    # Group policy, copied from the workflow step at submission
    step_type = Column(String(20), nullable=False, default="single")
    min_approvals = Column(Integer, nullable=False, default=1)

    status = Column(String(20), nullable=False, default="pending", index=True)
    is_active = Column(Boolean, nullable=False, default=False)  # latent until its group activates

    # Delegation (single pointer, never chained)
    delegated_to = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True, index=True)
    delegated_at = Column(DateTime, nullable=True)

    comments = Column(Text, nullable=True)
    acted_by = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)
    action_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    request = relationship("ApprovalRequest", back_populates="steps")
    workflow_step = relationship("ApprovalWorkflowStep")

    def __repr__(self) -> str:
        return f"<ApprovalStep {self.step_order} {self.approver_id} [{self.status}]>"


class ApprovalHistory(Base):
    """
    Records all state transitions for approval requests and their steps.

    Provides a complete audit trail of the approval workflow.
    """
    __tablename__ = "approval_history"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    request_id = Column(UUID(as_uuid=True), ForeignKey("approval_requests.id", ondelete="CASCADE"), nullable=False, index=True)
    step_id = Column(UUID(as_uuid=True), ForeignKey("approval_steps.id", ondelete="SET NULL"), nullable=True)

    # Transition details
    action = Column(String(50), nullable=False)
    from_status = Column(String(20), nullable=True)
    to_status = Column(String(20), nullable=False)

    # Actor
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    comment = Column(Text, nullable=True)
    extra_data = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime, default=utcnow, index=True)

    request = relationship("ApprovalRequest", back_populates="history")

    def __repr__(self) -> str:
        return f"<ApprovalHistory {self.action}: {self.from_status} -> {self.to_status}>"
