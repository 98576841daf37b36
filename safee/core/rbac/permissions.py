"""Permissions are ``resource:action`` strings.

Roles hold these strings (plus ``resource:*`` and ``*:*`` wildcards); the
enums and matrix below define which combinations exist at all.
"""

from enum import Enum
from typing import Dict, FrozenSet, NamedTuple


class Resource(str, Enum):
    APPROVALS = "approvals"
    WORKFLOWS = "workflows"
    ENCRYPTION = "encryption"
    AUDIT_LOGS = "audit_logs"
    ORGANIZATION = "organization"


class Action(str, Enum):
    # generic
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    LIST = "list"
    MANAGE = "manage"
    EXPORT = "export"
    # approval requests
    SUBMIT = "submit"
    APPROVE = "approve"
    REJECT = "reject"
    DELEGATE = "delegate"
    CANCEL = "cancel"
    # organization keys and auditor grants
    ROTATE = "rotate"
    GRANT = "grant"
    REVOKE = "revoke"


class Permission(NamedTuple):
    resource: Resource
    action: Action

    def __str__(self) -> str:
        return f"{self.resource.value}:{self.action.value}"

    @classmethod
    def from_string(cls, perm_str: str) -> "Permission":
        """
        Parse ``approvals:approve`` style strings.

        Raises:
            ValueError: Not two colon-separated parts, or an unknown
                resource or action
        """
        resource, sep, action = perm_str.partition(":")
        if not sep or ":" in action:
            raise ValueError(f"Invalid permission format: {perm_str}")
        return cls(Resource(resource), Action(action))


_A = Action

PERMISSION_MATRIX: Dict[Resource, FrozenSet[Action]] = {
    Resource.APPROVALS: frozenset({
        _A.READ, _A.LIST, _A.SUBMIT, _A.APPROVE, _A.REJECT, _A.DELEGATE, _A.CANCEL,
    }),
    Resource.WORKFLOWS: frozenset({_A.CREATE, _A.READ, _A.UPDATE, _A.LIST, _A.MANAGE}),
    Resource.ENCRYPTION: frozenset({_A.READ, _A.MANAGE, _A.ROTATE, _A.GRANT, _A.REVOKE}),
    Resource.AUDIT_LOGS: frozenset({_A.READ, _A.LIST, _A.EXPORT}),
    Resource.ORGANIZATION: frozenset({_A.READ, _A.UPDATE}),
}

PERMISSION_DEFINITIONS: Dict[str, Permission] = {
    str(Permission(resource, action)): Permission(resource, action)
    for resource, actions in PERMISSION_MATRIX.items()
    for action in actions
}


def is_valid_permission(perm_str: str) -> bool:
    return perm_str in PERMISSION_DEFINITIONS
