"""Approval workflow API endpoints."""

from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from safee.api.deps import ActorContext, PermissionDependency, get_approval_service
from safee.core.approval import ApprovalService

router = APIRouter(prefix="/approvals", tags=["approvals"])


# Schemas
class ApprovalStepResponse(BaseModel):
    id: UUID
    step_order: int
    step_type: str
    approver_id: UUID
    status: str
    is_active: bool
    delegated_to: Optional[UUID] = None
    acted_by: Optional[UUID] = None
    comments: Optional[str] = None
    action_at: Optional[str] = None


class ApprovalHistoryResponse(BaseModel):
    action: str
    from_status: Optional[str] = None
    to_status: str
    step_id: Optional[UUID] = None
    user_id: Optional[UUID] = None
    comment: Optional[str] = None
    extra_data: Optional[Dict[str, Any]] = None
    created_at: Optional[str] = None


class ApprovalRequestResponse(BaseModel):
    id: UUID
    organization_id: UUID
    workflow_id: UUID
    rule_id: Optional[UUID] = None
    entity_type: str
    entity_id: str
    status: str
    current_step_order: int
    requested_by: Optional[UUID] = None
    cancelled_by: Optional[UUID] = None
    cancel_reason: Optional[str] = None
    submitted_at: Optional[str] = None
    completed_at: Optional[str] = None
    steps: List[ApprovalStepResponse] = []
    history: Optional[List[ApprovalHistoryResponse]] = None
    step: Optional[ApprovalStepResponse] = None


class SubmitRequest(BaseModel):
    entity_type: str = Field(..., min_length=1, max_length=50)
    entity_id: str = Field(..., min_length=1, max_length=255)
    attributes: Dict[str, Any] = {}


class SubmitResponse(BaseModel):
    requires_approval: bool
    request: Optional[ApprovalRequestResponse] = None
    match: Optional[Dict[str, Any]] = None


class StepActionRequest(BaseModel):
    comments: Optional[str] = None


class DelegateRequest(BaseModel):
    delegate_to: UUID
    comments: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class WorkflowStepRequest(BaseModel):
    step_order: int = Field(..., ge=1)
    step_type: str = "single"
    approver_type: str = "user"
    approver_ids: List[str]
    min_approvals: int = 1
    required_approvers: Optional[int] = None


class WorkflowRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    entity_type: str = Field(..., min_length=1, max_length=50)
    description: Optional[str] = None
    steps: List[WorkflowStepRequest]


class RuleRequest(BaseModel):
    entity_type: str = Field(..., min_length=1, max_length=50)
    workflow_id: UUID
    conditions: Dict[str, Any]
    priority: int = 0
    name: Optional[str] = None


# Configuration
@router.post("/workflows", status_code=status.HTTP_201_CREATED)
def define_workflow(
    body: WorkflowRequest,
    actor: ActorContext = Depends(PermissionDependency("workflows:manage", "workflows:create")),
    service: ApprovalService = Depends(get_approval_service),
) -> Dict[str, Any]:
    """Create an approval workflow with its ordered steps."""
    return service.define_workflow(
        body.name,
        body.entity_type,
        [step.model_dump() for step in body.steps],
        description=body.description,
        actor_id=actor.user_id,
    )


@router.post("/rules", status_code=status.HTTP_201_CREATED)
def create_rule(
    body: RuleRequest,
    actor: ActorContext = Depends(PermissionDependency("workflows:manage", "workflows:create")),
    service: ApprovalService = Depends(get_approval_service),
) -> Dict[str, Any]:
    """Create a rule routing matching entities to a workflow."""
    return service.create_rule(
        body.entity_type,
        body.workflow_id,
        body.conditions,
        priority=body.priority,
        name=body.name,
        actor_id=actor.user_id,
    )


# Requests
@router.post("/submit", response_model=SubmitResponse)
def submit_for_approval(
    body: SubmitRequest,
    actor: ActorContext = Depends(PermissionDependency("approvals:submit")),
    service: ApprovalService = Depends(get_approval_service),
):
    """Submit an entity; responds with requires_approval=false when no rule matches."""
    attributes = dict(body.attributes)
    if actor.role:
        attributes.setdefault("user_roles", [actor.role])
    result = service.submit_for_approval(body.entity_type, body.entity_id, attributes, actor.user_id)
    return SubmitResponse(
        requires_approval=result.requires_approval,
        request=result.request,
        match=result.match,
    )


@router.get("", response_model=List[ApprovalRequestResponse])
def list_my_pending(
    actor: ActorContext = Depends(PermissionDependency("approvals:list")),
    service: ApprovalService = Depends(get_approval_service),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    """List requests waiting on the current user."""
    return service.list_pending_for_approver(actor.user_id, limit=limit, offset=offset)


@router.get("/history/{entity_type}/{entity_id}", response_model=List[ApprovalRequestResponse])
def get_history(
    entity_type: str,
    entity_id: str,
    actor: ActorContext = Depends(PermissionDependency("approvals:read")),
    service: ApprovalService = Depends(get_approval_service),
):
    """Every approval request opened for an entity, newest first."""
    return service.get_history_by_entity(entity_type, entity_id)


@router.get("/{request_id}", response_model=ApprovalRequestResponse)
def get_approval(
    request_id: UUID,
    actor: ActorContext = Depends(PermissionDependency("approvals:read")),
    service: ApprovalService = Depends(get_approval_service),
):
    """Get an approval request with its steps and history."""
    return service.get_request(request_id)


@router.post("/{request_id}/approve", response_model=ApprovalRequestResponse)
def approve(
    request_id: UUID,
    body: StepActionRequest,
    actor: ActorContext = Depends(PermissionDependency("approvals:approve")),
    service: ApprovalService = Depends(get_approval_service),
):
    """Approve the current user's step."""
    return service.approve(request_id, actor.user_id, body.comments)


@router.post("/{request_id}/reject", response_model=ApprovalRequestResponse)
def reject(
    request_id: UUID,
    body: StepActionRequest,
    actor: ActorContext = Depends(PermissionDependency("approvals:reject")),
    service: ApprovalService = Depends(get_approval_service),
):
    """Reject the current user's step."""
    return service.reject(request_id, actor.user_id, body.comments)


@router.post("/{request_id}/delegate", response_model=ApprovalRequestResponse)
def delegate(
    request_id: UUID,
    body: DelegateRequest,
    actor: ActorContext = Depends(PermissionDependency("approvals:delegate")),
    service: ApprovalService = Depends(get_approval_service),
):
    """Delegate the current user's step to another member."""
    return service.delegate(request_id, actor.user_id, body.delegate_to, body.comments)


@router.post("/{request_id}/cancel", response_model=ApprovalRequestResponse)
def cancel(
    request_id: UUID,
    body: CancelRequest,
    actor: ActorContext = Depends(PermissionDependency("approvals:cancel")),
    service: ApprovalService = Depends(get_approval_service),
):
    """Cancel a pending request (administrative)."""
    return service.cancel(request_id, actor.user_id, body.reason, user_permissions=actor.permissions)

