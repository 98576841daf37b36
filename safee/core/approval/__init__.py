"""Approval workflow engine for Safee Core."""

from .states import (
    RequestStatus,
    StepStatus,
    StepType,
    ApproverType,
    RequestTransition,
    StepAction,
    TERMINAL_STATES,
)
from .groups import GroupOutcome, evaluate_group
from .machine import ApprovalStateMachine, TransitionError
from .events import ApprovalEvent, ApprovalEventType
from .service import ApprovalService, SubmissionResult

__all__ = [
    "RequestStatus",
    "StepStatus",
    "StepType",
    "ApproverType",
    "RequestTransition",
    "StepAction",
    "TERMINAL_STATES",
    "GroupOutcome",
    "evaluate_group",
    "ApprovalStateMachine",
    "TransitionError",
    "ApprovalEvent",
    "ApprovalEventType",
    "ApprovalService",
    "SubmissionResult",
]
