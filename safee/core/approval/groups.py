"""Step group completion policy.

A step group is every ApprovalStep sharing one step order. Its outcome is
computed from the statuses of those steps:

- ``single``: satisfied by an approval, failed by a rejection.
- ``parallel``: satisfied once ``min_approvals`` approvals are in; a
  rejection only fails the group when ``min_approvals`` can no longer be
  reached by the votes still outstanding.
- ``any``: satisfied by the first approval, failed once every approver
  has rejected.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from .states import StepStatus, StepType, ACTIONABLE_STEP_STATES


class GroupOutcome(str, Enum):
    OPEN = "open"
    SATISFIED = "satisfied"
    FAILED = "failed"


@dataclass(frozen=True)
class GroupTally:
    approvals: int
    rejections: int
    outstanding: int

    @property
    def total(self) -> int:
        return self.approvals + self.rejections + self.outstanding


def tally(statuses: Iterable[StepStatus]) -> GroupTally:
    """Count approvals, rejections and votes still awaited."""
    approvals = rejections = outstanding = 0
    for status in statuses:
        status = StepStatus(status)
        if status == StepStatus.APPROVED:
            approvals += 1
        elif status == StepStatus.REJECTED:
            rejections += 1
        elif status in ACTIONABLE_STEP_STATES:
            outstanding += 1
    return GroupTally(approvals, rejections, outstanding)


def evaluate_group(step_type: StepType, min_approvals: int, statuses: Iterable[StepStatus]) -> GroupOutcome:
    """
    Decide whether a step group is satisfied, failed or still open.

    Args:
        step_type: single, parallel or any
        min_approvals: Approvals needed by a parallel group
        statuses: Status of every step in the group

    Returns:
        GroupOutcome
    """
    step_type = StepType(step_type)
    counts = tally(statuses)

    if step_type == StepType.SINGLE:
        if counts.rejections:
            return GroupOutcome.FAILED
        if counts.approvals:
            return GroupOutcome.SATISFIED
        return GroupOutcome.OPEN

    if step_type == StepType.ANY:
        if counts.approvals:
            return GroupOutcome.SATISFIED
        if counts.total and counts.rejections == counts.total:
            return GroupOutcome.FAILED
        return GroupOutcome.OPEN

    needed = max(1, min_approvals)
    if counts.approvals >= needed:
        return GroupOutcome.SATISFIED
    if counts.approvals + counts.outstanding < needed:
        return GroupOutcome.FAILED
    return GroupOutcome.OPEN
