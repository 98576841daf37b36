"""Permission checks against a member's role."""

from typing import Iterable, List, Optional, Union
from uuid import UUID

from sqlalchemy.orm import Session

from safee.core.errors import PermissionDeniedError
from .permissions import Permission
from .roles import get_role_permissions

PermissionLike = Union[str, Permission]


class PermissionChecker:
    """
    Answers "may this member do X" for one organization.

    ``resource:*`` grants every action on a resource and ``*:*`` grants
    everything.
    """

    def __init__(self, user_permissions: Iterable[str], org_id: Optional[UUID] = None):
        self.permissions = frozenset(user_permissions)
        self.org_id = org_id

    def has_permission(self, permission: PermissionLike) -> bool:
        perm_str = str(permission)
        resource = perm_str.partition(":")[0]
        return bool(self.permissions & {perm_str, f"{resource}:*", "*:*"})

    def has_any_permission(self, permissions: Iterable[PermissionLike]) -> bool:
        return any(map(self.has_permission, permissions))

    def has_all_permissions(self, permissions: Iterable[PermissionLike]) -> bool:
        return all(map(self.has_permission, permissions))

    def require(self, permission: PermissionLike) -> None:
        """Raises PermissionDeniedError naming ``permission`` when it is not held."""
        if not self.has_permission(permission):
            raise PermissionDeniedError(str(permission))


def load_member_permissions(db: Session, org_id: UUID, user_id: UUID) -> List[str]:
    """Permissions of the user's membership role; empty for non-members."""
    from safee.db.models import Member

    role = db.query(Member.role).filter(
        Member.organization_id == org_id,
        Member.user_id == user_id,
    ).scalar()
    return get_role_permissions(role) if role else []
