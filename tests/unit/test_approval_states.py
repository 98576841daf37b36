"""Tests for approval request states and the request state machine."""

import pytest
from uuid import uuid4

from safee.core.approval.states import (
    RequestStatus, RequestTransition, StepStatus, StepAction,
    TERMINAL_STATES, ACTIONABLE_STEP_STATES,
    can_transition, get_target_state, get_transition_rule, get_step_target,
)
from safee.core.approval.machine import ApprovalStateMachine, TransitionError
from safee.core.errors import ConflictError, PermissionDeniedError


class TestRequestStates:
    """Test request state definitions."""

    def test_terminal_states(self):
        """Only pending requests can still change."""
        assert RequestStatus.APPROVED in TERMINAL_STATES
        assert RequestStatus.REJECTED in TERMINAL_STATES
        assert RequestStatus.CANCELLED in TERMINAL_STATES
        assert RequestStatus.PENDING not in TERMINAL_STATES

    def test_actionable_step_states(self):
        """Delegated steps still await a vote."""
        assert StepStatus.PENDING in ACTIONABLE_STEP_STATES
        assert StepStatus.DELEGATED in ACTIONABLE_STEP_STATES
        assert StepStatus.APPROVED not in ACTIONABLE_STEP_STATES


class TestRequestTransitions:
    """Test valid request transitions."""

    def test_pending_transitions(self):
        """All transitions leave from pending."""
        for transition in RequestTransition:
            assert can_transition(RequestStatus.PENDING, transition)

    @pytest.mark.parametrize("state", sorted(TERMINAL_STATES, key=lambda s: s.value))
    def test_terminal_states_no_outgoing(self, state):
        """Terminal states accept no transition."""
        for transition in RequestTransition:
            assert not can_transition(state, transition)

    def test_get_target_state(self):
        """Test getting target state from transition."""
        assert get_target_state(RequestStatus.PENDING, RequestTransition.APPROVE) == RequestStatus.APPROVED
        assert get_target_state(RequestStatus.PENDING, RequestTransition.CANCEL) == RequestStatus.CANCELLED
        assert get_target_state(RequestStatus.APPROVED, RequestTransition.CANCEL) is None

    def test_cancel_requires_permission(self):
        """Cancellation is the only protected transition."""
        rule = get_transition_rule(RequestStatus.PENDING, RequestTransition.CANCEL)
        assert rule.requires_permission == "approvals:cancel"

        rule = get_transition_rule(RequestStatus.PENDING, RequestTransition.APPROVE)
        assert rule.requires_permission is None


class TestStepTransitions:
    """Test per-approver step transitions."""

    def test_pending_step(self):
        assert get_step_target(StepStatus.PENDING, StepAction.APPROVE) == StepStatus.APPROVED
        assert get_step_target(StepStatus.PENDING, StepAction.REJECT) == StepStatus.REJECTED
        assert get_step_target(StepStatus.PENDING, StepAction.DELEGATE) == StepStatus.DELEGATED

    def test_delegated_step_cannot_be_delegated_again(self):
        assert get_step_target(StepStatus.DELEGATED, StepAction.APPROVE) == StepStatus.APPROVED
        assert get_step_target(StepStatus.DELEGATED, StepAction.DELEGATE) is None

    @pytest.mark.parametrize("status", [StepStatus.APPROVED, StepStatus.REJECTED])
    def test_resolved_step_is_final(self, status):
        for action in StepAction:
            assert get_step_target(status, action) is None


class TestApprovalStateMachine:
    """Test the request state machine."""

    @pytest.fixture
    def machine(self):
        return ApprovalStateMachine(uuid4(), RequestStatus.PENDING, uuid4())

    def test_system_transition_without_permissions(self, machine):
        """Approve and reject are driven by the engine and need no permission."""
        assert machine.transition(RequestTransition.APPROVE) == RequestStatus.APPROVED
        assert machine.is_terminal

    def test_cancel_without_permission(self, machine):
        """Cancelling without approvals:cancel is denied."""
        with pytest.raises(PermissionDeniedError) as exc_info:
            machine.transition(RequestTransition.CANCEL, user_id=uuid4())
        assert exc_info.value.required_permission == "approvals:cancel"
        assert machine.state == RequestStatus.PENDING

    @pytest.mark.parametrize("permissions", [["approvals:cancel"], ["approvals:*"], ["*:*"]])
    def test_cancel_with_permission(self, permissions):
        machine = ApprovalStateMachine(uuid4(), RequestStatus.PENDING, uuid4(), user_permissions=permissions)
        assert machine.transition(RequestTransition.CANCEL, comment="duplicate") == RequestStatus.CANCELLED

    def test_transition_from_terminal_state(self):
        """A decided request cannot be cancelled."""
        machine = ApprovalStateMachine(
            uuid4(), RequestStatus.APPROVED, uuid4(), user_permissions=["approvals:cancel"],
        )
        with pytest.raises(TransitionError) as exc_info:
            machine.transition(RequestTransition.CANCEL)
        assert isinstance(exc_info.value, ConflictError)
        assert exc_info.value.details == {"from_state": "approved", "transition": "cancel"}

    def test_available_transitions(self, machine):
        """Cancel is hidden from actors who may not perform it."""
        available = machine.get_available_transitions()
        assert RequestTransition.APPROVE in available
        assert RequestTransition.CANCEL not in available

    def test_callbacks_receive_record(self, machine):
        """Hooks for a transition receive its record; other hooks stay silent."""
        approved = []
        machine.register_callback(RequestTransition.APPROVE, approved.append)
        seen = []
        machine.register_callback(RequestTransition.REJECT, seen.append)
        actor = uuid4()

        machine.transition(RequestTransition.REJECT, user_id=actor, comment="no budget")

        assert approved == []
        assert len(seen) == 1
        assert seen[0]["from_state"] == "pending"
        assert seen[0]["to_state"] == "rejected"
        assert seen[0]["user_id"] == actor
        assert seen[0]["comment"] == "no budget"

    def test_failing_callback_does_not_undo_transition(self, machine):
        def boom(record):
            raise RuntimeError("hook failed")

        machine.register_callback(RequestTransition.APPROVE, boom)
        assert machine.transition(RequestTransition.APPROVE) == RequestStatus.APPROVED
