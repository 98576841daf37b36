"""Approval workflow states and transitions.

Request lifecycle:

    ┌──────────┐  final group satisfied   ┌──────────┐
    │ PENDING  │─────────────────────────►│ APPROVED │
    └────┬─┬───┘                          └──────────┘
         │ │   any group fails            ┌──────────┐
         │ └─────────────────────────────►│ REJECTED │
         │                                └──────────┘
         │     administrative cancel      ┌───────────┐
         └───────────────────────────────►│ CANCELLED │
                                          └───────────┘

Step lifecycle (one row per approver):

    PENDING ──approve──► APPROVED
    PENDING ──reject───► REJECTED
    PENDING ──delegate─► DELEGATED ──approve/reject (by delegate)──► APPROVED/REJECTED

A DELEGATED step is still awaiting a vote; it cannot be delegated again.
"""

from enum import Enum
from typing import Set, Dict, Optional, NamedTuple


class RequestStatus(str, Enum):
    """States of an approval request."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class StepStatus(str, Enum):
    """States of a single approver's step."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    DELEGATED = "delegated"


class StepType(str, Enum):
    """How a step group is satisfied."""

    SINGLE = "single"        # The one approver decides
    PARALLEL = "parallel"    # min_approvals of the assigned approvers
    ANY = "any"              # First approval from the approver set


class ApproverType(str, Enum):
    """How a workflow step names its approvers."""

    ROLE = "role"
    TEAM = "team"
    USER = "user"


class RequestTransition(str, Enum):
    """Actions that change a request's status."""

    APPROVE = "approve"    # Final step group satisfied (system)
    REJECT = "reject"      # A step group failed (system)
    CANCEL = "cancel"      # Administrative cancellation


class StepAction(str, Enum):
    """Actions an approver (or delegate) takes on a step."""

    APPROVE = "approve"
    REJECT = "reject"
    DELEGATE = "delegate"


class TransitionRule(NamedTuple):
    """Defines a valid request transition."""
    from_state: RequestStatus
    to_state: RequestStatus
    transition: RequestTransition
    requires_permission: Optional[str] = None
    requires_comment: bool = False


TRANSITION_RULES: list[TransitionRule] = [
    TransitionRule(RequestStatus.PENDING, RequestStatus.APPROVED, RequestTransition.APPROVE),
    TransitionRule(RequestStatus.PENDING, RequestStatus.REJECTED, RequestTransition.REJECT),
    TransitionRule(RequestStatus.PENDING, RequestStatus.CANCELLED, RequestTransition.CANCEL,
                   "approvals:cancel"),
]

VALID_TRANSITIONS: Dict[RequestStatus, Set[RequestTransition]] = {}
TRANSITION_TARGETS: Dict[tuple[RequestStatus, RequestTransition], TransitionRule] = {}

for rule in TRANSITION_RULES:
    if rule.from_state not in VALID_TRANSITIONS:
        VALID_TRANSITIONS[rule.from_state] = set()
    VALID_TRANSITIONS[rule.from_state].add(rule.transition)
    TRANSITION_TARGETS[(rule.from_state, rule.transition)] = rule


STEP_TRANSITIONS: Dict[tuple[StepStatus, StepAction], StepStatus] = {
    (StepStatus.PENDING, StepAction.APPROVE): StepStatus.APPROVED,
    (StepStatus.PENDING, StepAction.REJECT): StepStatus.REJECTED,
    (StepStatus.PENDING, StepAction.DELEGATE): StepStatus.DELEGATED,
    (StepStatus.DELEGATED, StepAction.APPROVE): StepStatus.APPROVED,
    (StepStatus.DELEGATED, StepAction.REJECT): StepStatus.REJECTED,
}


TERMINAL_STATES: Set[RequestStatus] = {
    RequestStatus.APPROVED,
    RequestStatus.REJECTED,
    RequestStatus.CANCELLED,
}

# Steps that still await a vote
ACTIONABLE_STEP_STATES: Set[StepStatus] = {
    StepStatus.PENDING,
    StepStatus.DELEGATED,
}


def can_transition(from_state: RequestStatus, transition: RequestTransition) -> bool:
    """Check if a transition is valid from the given state."""
    valid = VALID_TRANSITIONS.get(from_state, set())
    return transition in valid


def get_transition_rule(from_state: RequestStatus, transition: RequestTransition) -> Optional[TransitionRule]:
    """Get the transition rule for a state/action combination."""
    return TRANSITION_TARGETS.get((from_state, transition))


def get_target_state(from_state: RequestStatus, transition: RequestTransition) -> Optional[RequestStatus]:
    """Get the target state for a transition."""
    rule = get_transition_rule(from_state, transition)
    return rule.to_state if rule else None


def get_step_target(from_status: StepStatus, action: StepAction) -> Optional[StepStatus]:
    """Get the target status of a step action, or None if not allowed."""
    return STEP_TRANSITIONS.get((from_status, action))
