"""Request-level state machine.

Only the three terminal moves exist (approve, reject, cancel), all from
``pending``. Approve and reject are driven by the engine when a step
group resolves; cancel is an administrative action gated on
``approvals:cancel``.
"""

import logging
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID, uuid4

from safee.core.errors import ConflictError, PermissionDeniedError
from safee.core.rbac import PermissionChecker
from safee.db.base import utcnow
from .states import (
    TERMINAL_STATES,
    RequestStatus,
    RequestTransition,
    TransitionRule,
    get_transition_rule,
)

logger = logging.getLogger(__name__)

TransitionCallback = Callable[[Dict[str, Any]], None]


class TransitionError(ConflictError):
    """The request's current state does not allow this transition."""

    def __init__(self, message: str, from_state: RequestStatus, transition: RequestTransition):
        super().__init__(message, details={
            "from_state": from_state.value,
            "transition": transition.value,
        })
        self.from_state = from_state
        self.transition = transition


@dataclass
class TransitionRecord:
    request_id: UUID
    from_state: str
    to_state: str
    transition: str
    user_id: Optional[UUID] = None
    comment: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: UUID = field(default_factory=uuid4)
    timestamp: datetime = field(default_factory=utcnow)


class ApprovalStateMachine:
    """
    Validates and applies transitions for one approval request.

    The machine holds no database state; the caller persists the new
    status and its own history row. Callbacks receive the transition
    record as a dict once the new state is set.
    """

    def __init__(
        self,
        request_id: UUID,
        current_state: RequestStatus,
        org_id: UUID,
        *,
        user_permissions: Optional[List[str]] = None,
    ):
        self.request_id = request_id
        self.org_id = org_id
        self._state = current_state
        self.checker = PermissionChecker(user_permissions or [], org_id=org_id)
        self._callbacks: Dict[RequestTransition, List[TransitionCallback]] = defaultdict(list)

    @property
    def state(self) -> RequestStatus:
        return self._state

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    def _rule_for(self, transition: RequestTransition) -> TransitionRule:
        rule = get_transition_rule(self._state, transition)
        if rule is None:
            raise TransitionError(
                f"Cannot {transition.value} a request that is {self._state.value}",
                self._state,
                transition,
            )
        return rule

    def can_perform(self, transition: RequestTransition) -> bool:
        rule = get_transition_rule(self._state, transition)
        if rule is None:
            return False
        return not rule.requires_permission or self.checker.has_permission(rule.requires_permission)

    def get_available_transitions(self) -> List[RequestTransition]:
        return [t for t in RequestTransition if self.can_perform(t)]

    def transition(
        self,
        transition: RequestTransition,
        *,
        comment: Optional[str] = None,
        user_id: Optional[UUID] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> RequestStatus:
        """
        Apply a transition and return the new state.

        Raises:
            TransitionError: Not allowed from the current state, or a
                required comment is missing
            PermissionDeniedError: Actor lacks the rule's permission
        """
        rule = self._rule_for(transition)

        if rule.requires_permission and not self.checker.has_permission(rule.requires_permission):
            raise PermissionDeniedError(rule.requires_permission)
        if rule.requires_comment and not comment:
            raise TransitionError(f"{transition.value} requires a comment", self._state, transition)

        record = TransitionRecord(
            request_id=self.request_id,
            from_state=self._state.value,
            to_state=rule.to_state.value,
            transition=transition.value,
            user_id=user_id,
            comment=comment,
            metadata=metadata or {},
        )
        self._state = rule.to_state

        for callback in self._callbacks[transition]:
            try:
                callback(asdict(record))
            except Exception:
                # The transition stands even if a hook fails
                logger.exception(f"Callback error for {transition.value} on request {self.request_id}")

        return self._state

    def register_callback(self, transition: RequestTransition, callback: TransitionCallback) -> None:
        """Call ``callback`` with the record dict after each ``transition``."""
        self._callbacks[transition].append(callback)
