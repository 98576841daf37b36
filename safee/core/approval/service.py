"""Approval service for multi-step approval workflows.

Provides the high-level API over the rule resolver, the request state
machine and step-group policy, including persistence, audit events and
notifications.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Optional, Dict, Any, List, Iterator
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from safee.core.errors import (
    ConflictError,
    NotFoundError,
    ValidationError,
)
from safee.core.rbac import load_member_permissions
from safee.core.rules import ApprovalRuleResolver
from safee.db.base import json_safe, utcnow
from safee.db.transaction import unit_of_work
from safee.db.models import (
    ApprovalHistory,
    ApprovalRequest,
    ApprovalRule,
    ApprovalStep,
    ApprovalWorkflow,
    ApprovalWorkflowStep,
    Member,
    Team,
    TeamMember,
)
from safee.services.audit import AuditEventEmitter
from .events import ApprovalEvent, ApprovalEventType, ApprovalNotifier
from .groups import GroupOutcome, evaluate_group
from .machine import ApprovalStateMachine
from .states import (
    ApproverType,
    RequestStatus,
    RequestTransition,
    StepAction,
    StepStatus,
    StepType,
    ACTIONABLE_STEP_STATES,
    get_step_target,
)

logger = logging.getLogger(__name__)


TERMINAL_EVENTS = {
    RequestStatus.APPROVED: ApprovalEventType.APPROVED,
    RequestStatus.REJECTED: ApprovalEventType.REJECTED,
    RequestStatus.CANCELLED: ApprovalEventType.CANCELLED,
}


@dataclass
class SubmissionResult:
    """Outcome of submitting an entity; ``request`` is None when no rule matched."""
    request: Optional[Dict[str, Any]] = None
    match: Optional[Dict[str, Any]] = None

    @property
    def requires_approval(self) -> bool:
        return self.request is not None


class ApprovalService:
    """
    High-level service for managing approval requests.

    Handles:
    - Workflow and rule definition
    - Submitting entities (rule resolution and step creation)
    - Step actions: approve, reject, delegate
    - Group completion and step-order advancement
    - Administrative cancellation
    - Querying requests and history

    Every mutating operation is one transaction: it commits on success
    and rolls back entirely on any error.
    """

    def __init__(
        self,
        db: Session,
        org_id: UUID,
        *,
        audit: Optional[AuditEventEmitter] = None,
        notifier: Optional[ApprovalNotifier] = None,
        resolver: Optional[ApprovalRuleResolver] = None,
    ):
        """
        Initialize the approval service.

        Args:
            db: Database session
            org_id: Organization ID for scoping
            audit: Audit emitter (defaults to one bound to ``db``)
            notifier: Receives approval events after commit
            resolver: Rule resolver (defaults to one bound to ``db``)
        """
        self.db = db
        self.org_id = org_id
        self.audit = audit or AuditEventEmitter(db)
        self.notifier = notifier
        self.resolver = resolver or ApprovalRuleResolver(db)
        self._outbox: List[ApprovalEvent] = []

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def define_workflow(
        self,
        name: str,
        entity_type: str,
        steps: List[Dict[str, Any]],
        *,
        description: Optional[str] = None,
        actor_id: Optional[UUID] = None,
    ) -> Dict[str, Any]:
        """
        Create a workflow with its ordered steps.

        Each step is a dict with ``step_order``, ``step_type``,
        ``approver_type``, ``approver_ids`` and optionally
        ``min_approvals`` and ``required_approvers``.

        Raises:
            ValidationError: Unsupported step configuration
        """
        normalized = self._validate_steps(steps)

        with self._unit_of_work(f"define workflow {name}"):
            workflow = ApprovalWorkflow(
                organization_id=self.org_id,
                name=name,
                description=description,
                entity_type=entity_type,
                is_active=True,
            )
            workflow.steps = [ApprovalWorkflowStep(**step) for step in normalized]
            self.db.add(workflow)
            self.db.flush()

            result = self._workflow_to_dict(workflow)
            self.audit.emit(
                self.org_id, "approval_workflow", workflow.id, "approval.workflow.created",
                actor_id, after=result,
            )

        logger.info(f"Defined approval workflow {workflow.id} ({name}) for {entity_type}")
        return result

    def create_rule(
        self,
        entity_type: str,
        workflow_id: UUID,
        conditions: Dict[str, Any],
        *,
        priority: int = 0,
        name: Optional[str] = None,
        actor_id: Optional[UUID] = None,
    ) -> Dict[str, Any]:
        """
        Create a rule routing matching entities to a workflow.

        Raises:
            ValidationError: Malformed conditions or entity type mismatch
            NotFoundError: Workflow not found in this organization
        """
        with self._unit_of_work(f"create rule for {entity_type}"):
            rule = self.resolver.create_rule(
                self.org_id, entity_type, workflow_id, conditions,
                priority=priority, name=name,
            )
            result = self._rule_to_dict(rule)
            self.audit.emit(
                self.org_id, "approval_rule", rule.id, "approval.rule.created",
                actor_id, after=result,
            )
        return result

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit_for_approval(
        self,
        entity_type: str,
        entity_id: Any,
        attributes: Dict[str, Any],
        requested_by: Optional[UUID] = None,
    ) -> SubmissionResult:
        """
        Resolve the workflow for an entity and open an approval request.

        Creates one step per expanded approver for every workflow step;
        only the first step group is active.

        Returns:
            SubmissionResult; ``request`` is None when no rule matched

        Raises:
            ConflictError: The entity already has a pending request
            ValidationError: A workflow step cannot be staffed
        """
        entity_id = str(entity_id)
        match = self.resolver.resolve(self.org_id, entity_type, attributes)
        if match is None:
            return SubmissionResult(request=None)

        with self._unit_of_work(f"submit {entity_type}:{entity_id}"):
            existing = self._pending_request_for(entity_type, entity_id)
            if existing:
                raise ConflictError(
                    f"{entity_type} {entity_id} already has a pending approval request",
                    details={"request_id": str(existing.id)},
                )

            workflow = match.workflow
            if not workflow.steps:
                raise ValidationError(f"Workflow {workflow.id} has no steps")

            request = ApprovalRequest(
                organization_id=self.org_id,
                workflow_id=workflow.id,
                rule_id=match.rule.id,
                entity_type=entity_type,
                entity_id=entity_id,
                entity_data=json_safe(attributes),
                status=RequestStatus.PENDING.value,
                current_step_order=1,
                requested_by=requested_by,
            )

            for wf_step in workflow.steps:
                approvers = self._expand_approvers(wf_step)
                self._check_staffing(wf_step, approvers)
                for approver_id in approvers:
                    request.steps.append(ApprovalStep(
                        workflow_step_id=wf_step.id,
                        step_order=wf_step.step_order,
                        approver_id=approver_id,
                        step_type=wf_step.step_type,
                        min_approvals=wf_step.min_approvals,
                        status=StepStatus.PENDING.value,
                        is_active=wf_step.step_order == 1,
                    ))

            self.db.add(request)
            try:
                self.db.flush()
            except IntegrityError as e:
                raise ConflictError(
                    f"{entity_type} {entity_id} already has a pending approval request"
                ) from e

            self._record_history(request, "submitted", None, RequestStatus.PENDING.value, requested_by,
                                 extra_data={"rule_id": str(match.rule.id), "workflow_id": str(workflow.id)})
            result = self._request_to_dict(request)
            self.audit.emit(
                self.org_id, "approval_request", request.id, "approval.submitted", requested_by,
                after={"status": request.status, "current_step_order": 1},
                details={"entity_type": entity_type, "entity_id": entity_id, "match": match.to_dict()},
            )
            self._queue_pending(request, 1)

        logger.info(
            f"Opened approval request {request.id} for {entity_type}:{entity_id} "
            f"with {len(request.steps)} steps"
        )
        return SubmissionResult(request=result, match=match.to_dict())

    # ------------------------------------------------------------------
    # Step actions
    # ------------------------------------------------------------------

    def approve(self, request_id: UUID, actor_id: UUID, comments: Optional[str] = None) -> Dict[str, Any]:
        """Approve the actor's step in the active step group."""
        return self._act(request_id, actor_id, StepAction.APPROVE, comments=comments)

    def reject(self, request_id: UUID, actor_id: UUID, comments: Optional[str] = None) -> Dict[str, Any]:
        """Reject the actor's step in the active step group."""
        return self._act(request_id, actor_id, StepAction.REJECT, comments=comments)

    def delegate(
        self,
        request_id: UUID,
        actor_id: UUID,
        delegate_to: UUID,
        comments: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Hand the actor's step to another member.

        The delegate inherits approve/reject rights for that step only.
        A delegated step cannot be delegated again.
        """
        return self._act(request_id, actor_id, StepAction.DELEGATE, comments=comments, delegate_to=delegate_to)

    def cancel(
        self,
        request_id: UUID,
        actor_id: UUID,
        reason: Optional[str] = None,
        *,
        user_permissions: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """
        Cancel a pending request (administrative).

        Args:
            user_permissions: Actor's permissions; loaded from their
                membership role when omitted

        Raises:
            ConflictError: Request already terminal
            PermissionDeniedError: Actor lacks approvals:cancel
        """
        if user_permissions is None:
            user_permissions = load_member_permissions(self.db, self.org_id, actor_id)

        with self._unit_of_work(f"cancel request {request_id}"):
            request = self._get_request_for_update(request_id)
            self._finish(
                request,
                RequestTransition.CANCEL,
                actor_id,
                comment=reason,
                user_permissions=user_permissions,
            )
            self._close_steps(request, [s for s in request.steps if s.is_active])
            result = self._request_to_dict(request)
        return result

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_request(self, request_id: UUID) -> Dict[str, Any]:
        """Get an approval request with its steps and history."""
        request = self._load_request(request_id)
        return self._request_to_dict(request, include_history=True)

    def get_active_request(self, entity_type: str, entity_id: Any) -> Optional[Dict[str, Any]]:
        """Get the pending request for an entity, if any."""
        request = self._pending_request_for(entity_type, str(entity_id))
        return self._request_to_dict(request) if request else None

    def list_pending_for_approver(
        self,
        user_id: UUID,
        *,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        """Requests waiting on the user, directly or by delegation."""
        steps = (
            self.db.query(ApprovalStep)
            .join(ApprovalRequest, ApprovalStep.request_id == ApprovalRequest.id)
            .filter(
                ApprovalRequest.organization_id == self.org_id,
                ApprovalRequest.status == RequestStatus.PENDING.value,
                ApprovalStep.is_active == True,
                (
                    (ApprovalStep.approver_id == user_id)
                    & (ApprovalStep.status == StepStatus.PENDING.value)
                )
                | (
                    (ApprovalStep.delegated_to == user_id)
                    & (ApprovalStep.status == StepStatus.DELEGATED.value)
                ),
            )
            .order_by(ApprovalRequest.submitted_at.asc())
            .offset(offset)
            .limit(limit)
            .all()
        )

        results = []
        for step in steps:
            item = self._request_to_dict(step.request)
            item["step"] = self._step_to_dict(step)
            results.append(item)
        return results

    def get_history_by_entity(self, entity_type: str, entity_id: Any) -> List[Dict[str, Any]]:
        """Every request ever opened for an entity, newest first, with history."""
        requests = (
            self.db.query(ApprovalRequest)
            .filter(
                ApprovalRequest.organization_id == self.org_id,
                ApprovalRequest.entity_type == entity_type,
                ApprovalRequest.entity_id == str(entity_id),
            )
            .order_by(ApprovalRequest.submitted_at.desc())
            .all()
        )
        return [self._request_to_dict(r, include_history=True) for r in requests]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @contextmanager
    def _unit_of_work(self, operation: str) -> Iterator[None]:
        """Run one transaction; queued notifications go out only after commit."""
        self._outbox = []
        try:
            with unit_of_work(self.db, operation, audit=self.audit):
                yield
        except Exception:
            self._outbox = []
            raise
        self._dispatch_events()

    def _dispatch_events(self) -> None:
        events, self._outbox = self._outbox, []
        if self.notifier is None:
            return
        for event in events:
            try:
                self.notifier.notify(event)
            except Exception:
                logger.exception(f"Notification failed for {event.event_type.value} on request {event.request_id}")

    def _act(
        self,
        request_id: UUID,
        actor_id: UUID,
        action: StepAction,
        *,
        comments: Optional[str] = None,
        delegate_to: Optional[UUID] = None,
    ) -> Dict[str, Any]:
        with self._unit_of_work(f"{action.value} request {request_id}"):
            request = self._get_request_for_update(request_id)
            if request.status != RequestStatus.PENDING.value:
                raise ConflictError(
                    f"Approval request {request_id} is already {request.status}",
                    details={"status": request.status},
                )

            step = self._find_actionable_step(request, actor_id)
            from_status = StepStatus(step.status)
            target = get_step_target(from_status, action)
            if target is None:
                raise ConflictError(
                    f"Cannot {action.value} a step that is {from_status.value}",
                    details={"step_id": str(step.id), "status": from_status.value},
                )

            values: Dict[str, Any] = {"status": target.value, "comments": comments}
            if action == StepAction.DELEGATE:
                self._check_delegate(request, step, actor_id, delegate_to)
                values.update({"delegated_to": delegate_to, "delegated_at": utcnow()})
            else:
                values.update({"acted_by": actor_id, "action_at": utcnow()})

            self._transition_step(step, from_status, values)
            self._record_history(request, f"step.{action.value}", from_status.value, target.value,
                                 actor_id, step=step, comment=comments,
                                 extra_data={"delegated_to": str(delegate_to)} if delegate_to else None)
            self.audit.emit(
                self.org_id, "approval_step", step.id, f"approval.step.{target.value}", actor_id,
                before={"status": from_status.value},
                after={"status": target.value, "delegated_to": str(delegate_to) if delegate_to else None},
                details={"request_id": str(request.id), "step_order": step.step_order},
            )

            if action == StepAction.DELEGATE:
                self._outbox.append(self._event(
                    request, ApprovalEventType.DELEGATED, [delegate_to], actor_id,
                    step_order=step.step_order, comments=comments,
                ))
            else:
                self._advance(request, actor_id, comments)

            result = self._request_to_dict(request)
        return result

    def _find_actionable_step(self, request: ApprovalRequest, actor_id: UUID) -> ApprovalStep:
        group = self._group(request, request.current_step_order)
        for step in group:
            if not step.is_active:
                continue
            if step.status == StepStatus.PENDING.value and step.approver_id == actor_id:
                return step
            if step.status == StepStatus.DELEGATED.value and step.delegated_to == actor_id:
                return step

        for step in group:
            if actor_id in (step.approver_id, step.delegated_to):
                state = "delegated" if step.status == StepStatus.DELEGATED.value else "resolved"
                raise ConflictError(
                    f"Approval step {step.id} is already {state}",
                    details={"step_id": str(step.id), "status": step.status},
                )

        raise NotFoundError(f"No actionable approval step for user {actor_id} on request {request.id}")

    def _check_delegate(
        self,
        request: ApprovalRequest,
        step: ApprovalStep,
        actor_id: UUID,
        delegate_to: Optional[UUID],
    ) -> None:
        if delegate_to is None:
            raise ValidationError("delegate_to is required")
        if delegate_to == actor_id or delegate_to == step.approver_id:
            raise ValidationError("Cannot delegate a step to its own approver")

        member = self.db.query(Member).filter(
            Member.organization_id == self.org_id,
            Member.user_id == delegate_to,
        ).first()
        if not member:
            raise ValidationError(f"User {delegate_to} is not a member of this organization")

        for other in self._group(request, step.step_order):
            if other.id != step.id and delegate_to in (other.approver_id, other.delegated_to):
                raise ValidationError(f"User {delegate_to} already holds a step in this step group")

    def _transition_step(self, step: ApprovalStep, expected: StepStatus, values: Dict[str, Any]) -> None:
        """Conditionally update a step; losing a race raises ConflictError."""
        result = self.db.execute(
            update(ApprovalStep)
            .where(
                ApprovalStep.id == step.id,
                ApprovalStep.status == expected.value,
                ApprovalStep.is_active == True,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError(
                f"Approval step {step.id} was modified concurrently",
                details={"step_id": str(step.id)},
            )
        for key, value in values.items():
            set_committed_value(step, key, value)

    def _update_request(self, request: ApprovalRequest, values: Dict[str, Any]) -> None:
        """Conditionally update a pending request at its current step order."""
        values = dict(values, updated_at=utcnow())
        result = self.db.execute(
            update(ApprovalRequest)
            .where(
                ApprovalRequest.id == request.id,
                ApprovalRequest.status == RequestStatus.PENDING.value,
                ApprovalRequest.current_step_order == request.current_step_order,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError(
                f"Approval request {request.id} was modified concurrently",
                details={"request_id": str(request.id)},
            )
        for key, value in values.items():
            set_committed_value(request, key, value)

    def _advance(self, request: ApprovalRequest, actor_id: UUID, comments: Optional[str]) -> None:
        """Evaluate the active group and move the request forward if it resolved."""
        order = request.current_step_order
        group = self._group(request, order)
        head = group[0]
        outcome = evaluate_group(
            StepType(head.step_type),
            head.min_approvals,
            [StepStatus(s.status) for s in group],
        )

        if outcome == GroupOutcome.OPEN:
            return

        self._close_steps(request, group)

        if outcome == GroupOutcome.FAILED:
            logger.info(f"Step group {order} of request {request.id} failed")
            self._finish(request, RequestTransition.REJECT, actor_id, comment=comments)
            return

        next_group = self._group(request, order + 1)
        if not next_group:
            self._finish(request, RequestTransition.APPROVE, actor_id, comment=comments)
            return

        self._update_request(request, {"current_step_order": order + 1})
        self.db.execute(
            update(ApprovalStep)
            .where(ApprovalStep.id.in_([s.id for s in next_group]))
            .values(is_active=True)
            .execution_options(synchronize_session=False)
        )
        for step in next_group:
            set_committed_value(step, "is_active", True)

        self._record_history(request, "step_group.activated", RequestStatus.PENDING.value,
                             RequestStatus.PENDING.value, actor_id,
                             extra_data={"completed_step_order": order, "step_order": order + 1})
        self.audit.emit(
            self.org_id, "approval_request", request.id, "approval.step_group.activated", actor_id,
            before={"current_step_order": order},
            after={"current_step_order": order + 1},
        )
        self._queue_pending(request, order + 1)

    def _close_steps(self, request: ApprovalRequest, steps: List[ApprovalStep]) -> None:
        """Deactivate the still-outstanding steps of a resolved group."""
        outstanding = [
            s for s in steps
            if s.is_active and StepStatus(s.status) in ACTIONABLE_STEP_STATES
        ]
        if not outstanding:
            return
        self.db.execute(
            update(ApprovalStep)
            .where(ApprovalStep.id.in_([s.id for s in outstanding]))
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        for step in outstanding:
            set_committed_value(step, "is_active", False)

    def _finish(
        self,
        request: ApprovalRequest,
        transition: RequestTransition,
        actor_id: Optional[UUID],
        *,
        comment: Optional[str] = None,
        user_permissions: Optional[List[str]] = None,
    ) -> None:
        """Move a request to a terminal state through the state machine."""
        machine = ApprovalStateMachine(
            request.id,
            RequestStatus(request.status),
            self.org_id,
            user_permissions=user_permissions,
        )
        machine.register_callback(transition, lambda record: self._queue_terminal(request, record))
        from_status = request.status
        new_state = machine.transition(transition, comment=comment, user_id=actor_id)

        values: Dict[str, Any] = {"status": new_state.value, "completed_at": utcnow()}
        if transition == RequestTransition.CANCEL:
            values.update({"cancelled_by": actor_id, "cancel_reason": comment})
        self._update_request(request, values)

        self._record_history(request, transition.value, from_status, new_state.value, actor_id, comment=comment)
        self.audit.emit(
            self.org_id, "approval_request", request.id, f"approval.{new_state.value}", actor_id,
            before={"status": from_status},
            after={"status": new_state.value},
            details={"entity_type": request.entity_type, "entity_id": request.entity_id, "comment": comment},
        )

        logger.info(f"Approval request {request.id} is {new_state.value}")

    def _queue_terminal(self, request: ApprovalRequest, record: Dict[str, Any]) -> None:
        """State machine callback: notify the requester of the outcome."""
        recipients = [request.requested_by] if request.requested_by else []
        context_key = "reason" if record["transition"] == RequestTransition.CANCEL.value else "comments"
        self._outbox.append(self._event(
            request,
            TERMINAL_EVENTS[RequestStatus(record["to_state"])],
            recipients,
            record["user_id"],
            **{context_key: record["comment"]},
        ))

    def _queue_pending(self, request: ApprovalRequest, order: int) -> None:
        approvers = [s.approver_id for s in self._group(request, order)]
        self._outbox.append(self._event(
            request, ApprovalEventType.PENDING, approvers, request.requested_by, step_order=order,
        ))

    def _event(
        self,
        request: ApprovalRequest,
        event_type: ApprovalEventType,
        recipients: List[UUID],
        actor_id: Optional[UUID],
        **context: Any,
    ) -> ApprovalEvent:
        return ApprovalEvent(
            event_type=event_type,
            organization_id=self.org_id,
            request_id=request.id,
            entity_type=request.entity_type,
            entity_id=request.entity_id,
            recipients=recipients,
            actor_id=actor_id,
            context=context,
        )

    def _record_history(
        self,
        request: ApprovalRequest,
        action: str,
        from_status: Optional[str],
        to_status: str,
        user_id: Optional[UUID],
        *,
        step: Optional[ApprovalStep] = None,
        comment: Optional[str] = None,
        extra_data: Optional[Dict[str, Any]] = None,
    ) -> None:
        request.history.append(ApprovalHistory(
            request_id=request.id,
            step_id=step.id if step else None,
            action=action,
            from_status=from_status,
            to_status=to_status,
            user_id=user_id,
            comment=comment,
            extra_data=extra_data or {},
        ))

    def _group(self, request: ApprovalRequest, order: int) -> List[ApprovalStep]:
        return [s for s in request.steps if s.step_order == order]

    def _load_request(self, request_id: UUID) -> ApprovalRequest:
        request = self.db.query(ApprovalRequest).filter(
            ApprovalRequest.id == request_id,
            ApprovalRequest.organization_id == self.org_id,
        ).first()
        if not request:
            raise NotFoundError(f"Approval request {request_id} not found")
        return request

    def _get_request_for_update(self, request_id: UUID) -> ApprovalRequest:
        request = self.db.query(ApprovalRequest).filter(
            ApprovalRequest.id == request_id,
            ApprovalRequest.organization_id == self.org_id,
        ).with_for_update().first()
        if not request:
            raise NotFoundError(f"Approval request {request_id} not found")
        return request

    def _pending_request_for(self, entity_type: str, entity_id: str) -> Optional[ApprovalRequest]:
        return self.db.query(ApprovalRequest).filter(
            ApprovalRequest.organization_id == self.org_id,
            ApprovalRequest.entity_type == entity_type,
            ApprovalRequest.entity_id == entity_id,
            ApprovalRequest.status == RequestStatus.PENDING.value,
        ).first()

    # ------------------------------------------------------------------
    # Approver expansion and validation
    # ------------------------------------------------------------------

    def _expand_approvers(self, wf_step: ApprovalWorkflowStep) -> List[UUID]:
        """Resolve a workflow step's approver configuration to distinct user IDs, in order."""
        approver_type = ApproverType(wf_step.approver_type)
        ids = list(wf_step.approver_ids or [])

        if approver_type == ApproverType.USER:
            users = [_as_uuid(i) for i in ids]
        elif approver_type == ApproverType.TEAM:
            team_ids = [_as_uuid(i) for i in ids]
            rows = (
                self.db.query(TeamMember.user_id)
                .join(Team, TeamMember.team_id == Team.id)
                .filter(Team.organization_id == self.org_id, Team.id.in_(team_ids))
                .order_by(TeamMember.created_at.asc())
                .all()
            )
            users = [row.user_id for row in rows]
        else:
            rows = (
                self.db.query(Member.user_id)
                .filter(Member.organization_id == self.org_id, Member.role.in_([str(r) for r in ids]))
                .order_by(Member.created_at.asc())
                .all()
            )
            users = [row.user_id for row in rows]

        seen = set()
        approvers = []
        for user_id in users:
            if user_id not in seen:
                seen.add(user_id)
                approvers.append(user_id)
        return approvers

    def _check_staffing(self, wf_step: ApprovalWorkflowStep, approvers: List[UUID]) -> None:
        order = wf_step.step_order
        if not approvers:
            raise ValidationError(f"Workflow step {order} has no approvers")
        if len(approvers) < wf_step.min_approvals:
            raise ValidationError(
                f"Workflow step {order} needs {wf_step.min_approvals} approvals "
                f"but only {len(approvers)} approvers are assigned"
            )
        if wf_step.required_approvers and len(approvers) < wf_step.required_approvers:
            raise ValidationError(
                f"Workflow step {order} requires {wf_step.required_approvers} approvers, "
                f"found {len(approvers)}"
            )

    def _validate_steps(self, steps: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        if not steps:
            raise ValidationError("A workflow needs at least one step")

        normalized = []
        for raw in steps:
            try:
                step_type = StepType(raw.get("step_type", StepType.SINGLE.value))
                approver_type = ApproverType(raw.get("approver_type", ApproverType.USER.value))
                order = int(raw["step_order"])
                min_approvals = int(raw.get("min_approvals", 1))
            except (KeyError, TypeError, ValueError) as e:
                raise ValidationError(f"Invalid workflow step {raw!r}: {e}") from e

            required = raw.get("required_approvers")
            approver_ids = raw.get("approver_ids") or []
            if not isinstance(approver_ids, list) or not approver_ids:
                raise ValidationError(f"Workflow step {order} needs a non-empty approver_ids list")
            if min_approvals < 1:
                raise ValidationError(f"Workflow step {order}: min_approvals must be at least 1")
            if step_type != StepType.PARALLEL and min_approvals != 1:
                raise ValidationError(f"Workflow step {order}: {step_type.value} steps take exactly one approval")
            if required is not None and int(required) < min_approvals:
                raise ValidationError(f"Workflow step {order}: min_approvals exceeds required_approvers")
            if approver_type != ApproverType.ROLE:
                try:
                    approver_ids = [str(_as_uuid(i)) for i in approver_ids]
                except ValueError as e:
                    raise ValidationError(f"Workflow step {order}: approver ids must be UUIDs") from e

            normalized.append({
                "step_order": order,
                "step_type": step_type.value,
                "approver_type": approver_type.value,
                "approver_ids": approver_ids,
                "min_approvals": min_approvals,
                "required_approvers": int(required) if required is not None else None,
            })

        orders = sorted(s["step_order"] for s in normalized)
        if orders != list(range(1, len(orders) + 1)):
            raise ValidationError(f"Step orders must be contiguous from 1, got {orders}")

        return sorted(normalized, key=lambda s: s["step_order"])

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def _request_to_dict(self, request: ApprovalRequest, *, include_history: bool = False) -> Dict[str, Any]:
        """Convert an ApprovalRequest model to dictionary."""
        data = {
            "id": str(request.id),
            "organization_id": str(request.organization_id),
            "workflow_id": str(request.workflow_id),
            "rule_id": str(request.rule_id) if request.rule_id else None,
            "entity_type": request.entity_type,
            "entity_id": request.entity_id,
            "status": request.status,
            "current_step_order": request.current_step_order,
            "requested_by": str(request.requested_by) if request.requested_by else None,
            "cancelled_by": str(request.cancelled_by) if request.cancelled_by else None,
            "cancel_reason": request.cancel_reason,
            "submitted_at": request.submitted_at.isoformat() if request.submitted_at else None,
            "completed_at": request.completed_at.isoformat() if request.completed_at else None,
            "steps": [self._step_to_dict(s) for s in request.steps],
        }
        if include_history:
            data["history"] = [
                {
                    "action": h.action,
                    "from_status": h.from_status,
                    "to_status": h.to_status,
                    "step_id": str(h.step_id) if h.step_id else None,
                    "user_id": str(h.user_id) if h.user_id else None,
                    "comment": h.comment,
                    "extra_data": h.extra_data,
                    "created_at": h.created_at.isoformat() if h.created_at else None,
                }
                for h in request.history
            ]
        return data

    def _step_to_dict(self, step: ApprovalStep) -> Dict[str, Any]:
        return {
            "id": str(step.id),
            "step_order": step.step_order,
            "step_type": step.step_type,
            "approver_id": str(step.approver_id),
            "status": step.status,
            "is_active": step.is_active,
            "delegated_to": str(step.delegated_to) if step.delegated_to else None,
            "acted_by": str(step.acted_by) if step.acted_by else None,
            "comments": step.comments,
            "action_at": step.action_at.isoformat() if step.action_at else None,
        }

    def _workflow_to_dict(self, workflow: ApprovalWorkflow) -> Dict[str, Any]:
        return {
            "id": str(workflow.id),
            "name": workflow.name,
            "entity_type": workflow.entity_type,
            "is_active": workflow.is_active,
            "steps": [
                {
                    "id": str(s.id),
                    "step_order": s.step_order,
                    "step_type": s.step_type,
                    "approver_type": s.approver_type,
                    "approver_ids": s.approver_ids,
                    "min_approvals": s.min_approvals,
                    "required_approvers": s.required_approvers,
                }
                for s in workflow.steps
            ],
        }

    def _rule_to_dict(self, rule: ApprovalRule) -> Dict[str, Any]:
        return {
            "id": str(rule.id),
            "name": rule.name,
            "entity_type": rule.entity_type,
            "workflow_id": str(rule.workflow_id),
            "conditions": rule.conditions,
            "priority": rule.priority,
            "is_active": rule.is_active,
        }


def _as_uuid(value: Any) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))
