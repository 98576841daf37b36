"""Organization encryption API endpoints.

Passphrases are accepted in request bodies for one call only; when
omitted, the configured secrets provider is consulted.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from safee.api.deps import ActorContext, PermissionDependency, get_key_manager
from safee.core.crypto import EncryptionKeyManager
from safee.core.errors import NotFoundError

router = APIRouter(prefix="/encryption", tags=["encryption"])


# Schemas
class SetupRequest(BaseModel):
    passphrase: Optional[str] = Field(None, min_length=1)


class RotateRequest(BaseModel):
    passphrase: Optional[str] = Field(None, min_length=1)
    new_passphrase: Optional[str] = Field(None, min_length=1)
    expected_version: Optional[int] = Field(None, ge=1)


class PassphraseCheckRequest(BaseModel):
    passphrase: str


class PassphraseCheckResponse(BaseModel):
    score: int
    is_valid: bool
    feedback: List[str]


class AuditorAccessRequest(BaseModel):
    auditor_user_id: UUID
    public_key_pem: str
    passphrase: Optional[str] = Field(None, min_length=1)
    expires_at: Optional[datetime] = None


# Endpoints
@router.get("/status")
def get_status(
    actor: ActorContext = Depends(PermissionDependency("encryption:read")),
    key_manager: EncryptionKeyManager = Depends(get_key_manager),
) -> Dict[str, Any]:
    """Encryption status for the organization."""
    return key_manager.get_status(actor.organization_id)


@router.post("/setup", status_code=status.HTTP_201_CREATED)
def setup_encryption(
    body: SetupRequest,
    actor: ActorContext = Depends(PermissionDependency("encryption:manage")),
    key_manager: EncryptionKeyManager = Depends(get_key_manager),
) -> Dict[str, Any]:
    """Enable encryption by generating the first organization key."""
    return key_manager.enable_encryption(actor.organization_id, body.passphrase, created_by=actor.user_id)


@router.post("/rotate")
def rotate_key(
    body: RotateRequest,
    actor: ActorContext = Depends(PermissionDependency("encryption:rotate")),
    key_manager: EncryptionKeyManager = Depends(get_key_manager),
) -> Dict[str, Any]:
    """Rotate the organization key to a new version."""
    return key_manager.rotate_key(
        actor.organization_id,
        body.passphrase,
        new_passphrase=body.new_passphrase,
        rotated_by=actor.user_id,
        expected_version=body.expected_version,
    )


@router.post("/passphrase-strength", response_model=PassphraseCheckResponse)
def check_passphrase(
    body: PassphraseCheckRequest,
    actor: ActorContext = Depends(PermissionDependency("encryption:read")),
):
    strength = EncryptionKeyManager.check_passphrase_strength(body.passphrase)
    return PassphraseCheckResponse(score=strength.score, is_valid=strength.is_valid, feedback=strength.feedback)


@router.post("/auditor-access", status_code=status.HTTP_201_CREATED)
def grant_auditor_access(
    body: AuditorAccessRequest,
    actor: ActorContext = Depends(PermissionDependency("encryption:grant")),
    key_manager: EncryptionKeyManager = Depends(get_key_manager),
) -> Dict[str, Any]:
    """Share the active key with an auditor's RSA public key."""
    expires_at = body.expires_at
    if expires_at is not None and expires_at.tzinfo is not None:
        expires_at = expires_at.astimezone(timezone.utc).replace(tzinfo=None)
    return key_manager.grant_auditor_access(
        actor.organization_id,
        body.auditor_user_id,
        body.public_key_pem,
        body.passphrase,
        granted_by=actor.user_id,
        expires_at=expires_at,
    )


@router.get("/auditor-access")
def list_auditor_access(
    actor: ActorContext = Depends(PermissionDependency("encryption:grant")),
    key_manager: EncryptionKeyManager = Depends(get_key_manager),
    include_inactive: bool = Query(False),
) -> List[Dict[str, Any]]:
    return key_manager.list_auditor_access(actor.organization_id, include_inactive=include_inactive)


@router.get("/auditor-access/me")
def get_my_auditor_access(
    actor: ActorContext = Depends(PermissionDependency("audit_logs:read")),
    key_manager: EncryptionKeyManager = Depends(get_key_manager),
) -> Dict[str, Any]:
    """The caller's usable grant, including the RSA-wrapped key."""
    access = key_manager.get_auditor_access(actor.organization_id, actor.user_id)
    if access is None:
        raise NotFoundError("No active auditor access")
    return access


@router.delete("/auditor-access/{access_id}")
def revoke_auditor_access(
    access_id: UUID,
    actor: ActorContext = Depends(PermissionDependency("encryption:revoke")),
    key_manager: EncryptionKeyManager = Depends(get_key_manager),
) -> Dict[str, Any]:
    return key_manager.revoke_auditor_access(actor.organization_id, access_id, revoked_by=actor.user_id)
