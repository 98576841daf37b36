"""Default member roles for Safee Core.

``members.role`` holds one of these keys. Role names are also used as
approver sets by workflow steps with ``approver_type == "role"``, so an
organization may assign other role strings; those carry no permissions.
"""

import logging
from typing import Dict, List
from .permissions import Resource, Action, Permission

logger = logging.getLogger(__name__)


def _build_permissions(*perms: tuple) -> List[str]:
    """Build permission strings from (Resource, Action) tuples."""
    return [str(Permission(r, a)) for r, a in perms]


# Owner: Full access to everything
OWNER_PERMISSIONS = [
    "*:*"
]

ADMIN_PERMISSIONS = [
    "approvals:*",
    "workflows:*",
    "encryption:*",
    "audit_logs:*",
    str(Permission(Resource.ORGANIZATION, Action.READ)),
]

APPROVER_PERMISSIONS = _build_permissions(
    (Resource.APPROVALS, Action.READ),
    (Resource.APPROVALS, Action.LIST),
    (Resource.APPROVALS, Action.SUBMIT),
    (Resource.APPROVALS, Action.APPROVE),
    (Resource.APPROVALS, Action.REJECT),
    (Resource.APPROVALS, Action.DELEGATE),
    (Resource.WORKFLOWS, Action.READ),
    (Resource.WORKFLOWS, Action.LIST),
    (Resource.ENCRYPTION, Action.READ),
)

MEMBER_PERMISSIONS = _build_permissions(
    (Resource.APPROVALS, Action.READ),
    (Resource.APPROVALS, Action.LIST),
    (Resource.APPROVALS, Action.SUBMIT),
    (Resource.WORKFLOWS, Action.READ),
    (Resource.ENCRYPTION, Action.READ),
)

# Auditor: read-only with audit log export
AUDITOR_PERMISSIONS = _build_permissions(
    (Resource.APPROVALS, Action.READ),
    (Resource.APPROVALS, Action.LIST),
    (Resource.WORKFLOWS, Action.READ),
    (Resource.WORKFLOWS, Action.LIST),
    (Resource.ENCRYPTION, Action.READ),
    (Resource.AUDIT_LOGS, Action.READ),
    (Resource.AUDIT_LOGS, Action.LIST),
    (Resource.AUDIT_LOGS, Action.EXPORT),
    (Resource.ORGANIZATION, Action.READ),
)


DEFAULT_ROLES: Dict[str, dict] = {
    "owner": {
        "name": "Owner",
        "description": "Full access including organization settings",
        "permissions": OWNER_PERMISSIONS,
    },
    "admin": {
        "name": "Admin",
        "description": "Manages workflows, approvals and encryption",
        "permissions": ADMIN_PERMISSIONS,
    },
    "approver": {
        "name": "Approver",
        "description": "Acts on approval steps assigned to them",
        "permissions": APPROVER_PERMISSIONS,
    },
    "member": {
        "name": "Member",
        "description": "Submits entities and follows their approval",
        "permissions": MEMBER_PERMISSIONS,
    },
    "auditor": {
        "name": "Auditor",
        "description": "Read-only access with audit log export",
        "permissions": AUDITOR_PERMISSIONS,
    },
}


def get_role_permissions(role_key: str) -> List[str]:
    """Get the permissions list for a member role; unknown roles get none."""
    role = DEFAULT_ROLES.get(role_key)
    if not role:
        logger.debug(f"Role {role_key!r} has no default permissions")
        return []
    return list(role["permissions"])
