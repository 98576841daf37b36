from dataclasses import dataclass, field
from typing import Generator, List, Optional
from uuid import UUID

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from safee.core.approval import ApprovalService
from safee.core.config import get_settings
from safee.core.crypto import EncryptionKeyManager, FileEncryptionService
from safee.core.errors import PermissionDeniedError
from safee.core.rbac import PermissionChecker, get_role_permissions
from safee.core.secrets import get_secrets_manager
from safee.db.models import Member
from safee.db.session import SessionLocal
from safee.services.notifications import NotificationService


def get_db() -> Generator:
    """Database session dependency."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@dataclass
class ActorContext:
    """Identity asserted by the upstream auth gateway."""
    user_id: UUID
    organization_id: UUID
    role: Optional[str] = None
    permissions: List[str] = field(default_factory=list)

    @property
    def checker(self) -> PermissionChecker:
        return PermissionChecker(self.permissions, org_id=self.organization_id)


def get_actor(
    x_actor_id: UUID = Header(...),
    x_organization_id: UUID = Header(...),
    db: Session = Depends(get_db),
) -> ActorContext:
    """Resolve the acting member; non-members get no permissions."""
    member = db.query(Member).filter(
        Member.organization_id == x_organization_id,
        Member.user_id == x_actor_id,
    ).first()
    role = member.role if member else None
    return ActorContext(
        user_id=x_actor_id,
        organization_id=x_organization_id,
        role=role,
        permissions=get_role_permissions(role) if role else [],
    )


class PermissionDependency:
    """
    FastAPI dependency for permission checking.

    Usage:
        @router.post("/rotate", dependencies=[Depends(PermissionDependency("encryption:rotate"))])
        def rotate_key():
            ...
    """

    def __init__(self, *permissions: str, require_all: bool = False):
        self.permissions = permissions
        self.require_all = require_all

    def __call__(self, actor: ActorContext = Depends(get_actor)) -> ActorContext:
        checker = actor.checker
        if self.require_all:
            has_access = checker.has_all_permissions(list(self.permissions))
        else:
            has_access = checker.has_any_permission(list(self.permissions))
        if not has_access:
            raise PermissionDeniedError(", ".join(self.permissions))
        return actor


def get_notifier() -> NotificationService:
    return NotificationService(get_settings())


def get_approval_service(
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
    notifier: NotificationService = Depends(get_notifier),
) -> ApprovalService:
    return ApprovalService(db, actor.organization_id, notifier=notifier)


def get_key_manager(db: Session = Depends(get_db)) -> EncryptionKeyManager:
    return EncryptionKeyManager(
        db,
        settings=get_settings(),
        passphrase_provider=get_secrets_manager().get_passphrase,
    )


def get_file_service(
    db: Session = Depends(get_db),
    key_manager: EncryptionKeyManager = Depends(get_key_manager),
) -> FileEncryptionService:
    return FileEncryptionService(db, key_manager=key_manager, settings=key_manager.settings)
