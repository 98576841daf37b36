"""Organization encryption key management.

Each organization has one active AES-256 content key, stored wrapped
under a key derived from the organization passphrase. Rotation creates
the next key version and retires the previous row; retired rows are kept
so files pinned to an older version stay decryptable.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from safee.core.config import Settings, get_settings
from safee.core.errors import (
    AuthenticationFailure,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from safee.db.base import utcnow
from safee.db.models import AuditorAccess, EncryptionKey
from safee.db.models.audit import AuditSeverity
from safee.db.transaction import unit_of_work
from safee.services.audit import AuditEventEmitter
from . import primitives
from .primitives import DerivationParams, PassphraseStrength

logger = logging.getLogger(__name__)

ALGORITHM = "AES-256-GCM"

PassphraseProvider = Callable[[UUID], Optional[str]]


def _key_aad(organization_id: UUID, key_version: int) -> bytes:
    """Bind a wrapped org key to its organization and version."""
    return f"safee:org-key:{organization_id}:{key_version}".encode("ascii")


class EncryptionKeyManager:
    """
    Manages organization keys and auditor grants.

    The passphrase for an operation is the explicit argument when given,
    otherwise whatever ``passphrase_provider`` returns for the organization.
    Passphrases and raw keys are never persisted or logged.
    """

    def __init__(
        self,
        db: Session,
        *,
        settings: Optional[Settings] = None,
        audit: Optional[AuditEventEmitter] = None,
        passphrase_provider: Optional[PassphraseProvider] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.audit = audit or AuditEventEmitter(db)
        self.passphrase_provider = passphrase_provider

    # ------------------------------------------------------------------
    # Key lifecycle
    # ------------------------------------------------------------------

    def enable_encryption(
        self,
        organization_id: UUID,
        passphrase: Optional[str] = None,
        created_by: Optional[UUID] = None,
    ) -> Dict[str, Any]:
        """
        Generate the organization key (version 1) and store it wrapped.

        Raises:
            ConflictError: Encryption already enabled
            ValidationError: Weak passphrase or unsupported KDF settings
        """
        passphrase = self._passphrase(organization_id, passphrase)
        self._check_strength(passphrase)
        params = self._derivation_params()

        with unit_of_work(self.db, f"enable encryption for {organization_id}", audit=self.audit):
            if self.get_active_key(organization_id) is not None:
                raise ConflictError(f"Encryption is already enabled for organization {organization_id}")

            record = self._store_key(organization_id, primitives.generate_key(), passphrase, params, 1, created_by)
            self.db.flush()

            self.audit.emit(
                organization_id, "encryption_key", record.id, "encryption.enabled", created_by,
                after={"key_version": 1, "algorithm": ALGORITHM},
                severity=AuditSeverity.CRITICAL,
            )
            result = self._key_to_dict(record)

        logger.info(f"Encryption enabled for organization {organization_id}")
        return result

    def rotate_key(
        self,
        organization_id: UUID,
        passphrase: Optional[str] = None,
        *,
        new_passphrase: Optional[str] = None,
        rotated_by: Optional[UUID] = None,
        expected_version: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Replace the active key with a new version.

        The current passphrase is verified by unwrapping the active key.
        The new key is wrapped under ``new_passphrase`` when given,
        otherwise under the current passphrase, with a fresh salt.

        With ``expected_version``, the call rotates away from that version
        only: if the active key is already newer, nothing changes and the
        active key is returned.

        Raises:
            NotFoundError: Encryption not enabled
            AuthenticationFailure: Passphrase does not unlock the active key
            ConflictError: Another rotation won the race
            ValidationError: ``expected_version`` is ahead of the active key
        """
        passphrase = self._passphrase(organization_id, passphrase)
        if new_passphrase is not None:
            self._check_strength(new_passphrase)
        params = self._derivation_params()

        with unit_of_work(self.db, f"rotate key for {organization_id}", audit=self.audit):
            current = self._require_active_key(organization_id, for_update=True)
            if self._already_rotated(current, expected_version):
                return self._key_to_dict(current)
            self._unwrap(current, passphrase)

            rotated_at = utcnow()
            result = self.db.execute(
                update(EncryptionKey)
                .where(EncryptionKey.id == current.id, EncryptionKey.is_active == True)
                .values(is_active=False, rotated_at=rotated_at)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConflictError(f"Key for organization {organization_id} was rotated concurrently")
            set_committed_value(current, "is_active", False)
            set_committed_value(current, "rotated_at", rotated_at)
            self.db.flush()

            new_version = current.key_version + 1
            record = self._store_key(
                organization_id,
                primitives.generate_key(),
                new_passphrase or passphrase,
                params,
                new_version,
                rotated_by,
            )
            self.db.flush()

            self.audit.emit(
                organization_id, "encryption_key", record.id, "encryption.key.rotated", rotated_by,
                before={"key_version": current.key_version},
                after={"key_version": new_version},
                severity=AuditSeverity.CRITICAL,
            )
            data = self._key_to_dict(record)

        logger.info(f"Rotated key for organization {organization_id} to version {new_version}")
        return data

    def unwrap_organization_key(
        self,
        organization_id: UUID,
        passphrase: Optional[str] = None,
        key_version: Optional[int] = None,
    ) -> bytes:
        """
        Return the raw organization key for the active or a given version.

        Raises:
            NotFoundError: No such key
            AuthenticationFailure: Wrong passphrase or tampered key material
        """
        passphrase = self._passphrase(organization_id, passphrase)
        if key_version is None:
            record = self._require_active_key(organization_id)
        else:
            record = self.get_key_by_version(organization_id, key_version)
        return self._unwrap(record, passphrase)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_active_key(self, organization_id: UUID) -> Optional[EncryptionKey]:
        return self.db.query(EncryptionKey).filter(
            EncryptionKey.organization_id == organization_id,
            EncryptionKey.is_active == True,
        ).first()

    def get_key_by_version(self, organization_id: UUID, key_version: int) -> EncryptionKey:
        record = self.db.query(EncryptionKey).filter(
            EncryptionKey.organization_id == organization_id,
            EncryptionKey.key_version == key_version,
        ).first()
        if not record:
            raise NotFoundError(f"Key version {key_version} not found for organization {organization_id}")
        return record

    def get_status(self, organization_id: UUID) -> Dict[str, Any]:
        """Encryption status; never includes key material."""
        record = self.get_active_key(organization_id)
        if record is None:
            return {"enabled": False, "organization_id": str(organization_id)}
        status = self._key_to_dict(record)
        status["enabled"] = True
        return status

    @staticmethod
    def check_passphrase_strength(passphrase: str) -> PassphraseStrength:
        return primitives.check_passphrase_strength(passphrase)

    # ------------------------------------------------------------------
    # Auditor access
    # ------------------------------------------------------------------

    def grant_auditor_access(
        self,
        organization_id: UUID,
        auditor_user_id: UUID,
        public_key_pem: str,
        passphrase: Optional[str] = None,
        *,
        granted_by: Optional[UUID] = None,
        expires_at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Share the active organization key with an auditor.

        The key is re-wrapped with RSA-OAEP under the auditor's public
        key; only the auditor's private key can recover it.
        """
        passphrase = self._passphrase(organization_id, passphrase)
        if expires_at is not None and expires_at <= utcnow():
            raise ValidationError("expires_at must be in the future")

        with unit_of_work(self.db, f"grant auditor access for {organization_id}", audit=self.audit):
            record = self._require_active_key(organization_id)
            org_key = self._unwrap(record, passphrase)
            wrapped = primitives.wrap_key_for_public_key(public_key_pem, org_key)

            access = AuditorAccess(
                organization_id=organization_id,
                auditor_user_id=auditor_user_id,
                granted_by_user_id=granted_by,
                encryption_key_id=record.id,
                wrapped_org_key=primitives.b64encode(wrapped),
                expires_at=expires_at,
            )
            self.db.add(access)
            self.db.flush()

            self.audit.emit(
                organization_id, "auditor_access", access.id, "encryption.auditor_access.granted", granted_by,
                after={
                    "auditor_user_id": str(auditor_user_id),
                    "key_version": record.key_version,
                    "expires_at": expires_at.isoformat() if expires_at else None,
                },
                severity=AuditSeverity.WARNING,
            )
            result = self._access_to_dict(access, record.key_version)
        return result

    def get_auditor_access(self, organization_id: UUID, auditor_user_id: UUID) -> Optional[Dict[str, Any]]:
        """Latest usable grant for an auditor; revoked or expired grants are ignored."""
        grants = (
            self.db.query(AuditorAccess)
            .filter(
                AuditorAccess.organization_id == organization_id,
                AuditorAccess.auditor_user_id == auditor_user_id,
                AuditorAccess.is_revoked == False,
            )
            .order_by(AuditorAccess.created_at.desc())
            .all()
        )
        now = utcnow()
        for access in grants:
            if access.expires_at is None or access.expires_at > now:
                return self._access_to_dict(access, access.encryption_key.key_version, include_key=True)
        return None

    def revoke_auditor_access(
        self,
        organization_id: UUID,
        access_id: UUID,
        revoked_by: Optional[UUID] = None,
    ) -> Dict[str, Any]:
        with unit_of_work(self.db, f"revoke auditor access {access_id}", audit=self.audit):
            access = self.db.query(AuditorAccess).filter(
                AuditorAccess.id == access_id,
                AuditorAccess.organization_id == organization_id,
            ).with_for_update().first()
            if not access:
                raise NotFoundError(f"Auditor access {access_id} not found")
            if access.is_revoked:
                raise ConflictError(f"Auditor access {access_id} is already revoked")

            access.is_revoked = True
            access.revoked_at = utcnow()
            access.revoked_by_user_id = revoked_by
            self.db.flush()

            self.audit.emit(
                organization_id, "auditor_access", access.id, "encryption.auditor_access.revoked", revoked_by,
                before={"is_revoked": False},
                after={"is_revoked": True},
                severity=AuditSeverity.WARNING,
            )
            result = self._access_to_dict(access, access.encryption_key.key_version)
        return result

    def list_auditor_access(self, organization_id: UUID, *, include_inactive: bool = False) -> List[Dict[str, Any]]:
        grants = (
            self.db.query(AuditorAccess)
            .filter(AuditorAccess.organization_id == organization_id)
            .order_by(AuditorAccess.created_at.desc())
            .all()
        )
        now = utcnow()
        results = []
        for access in grants:
            active = not access.is_revoked and (access.expires_at is None or access.expires_at > now)
            if active or include_inactive:
                results.append(self._access_to_dict(access, access.encryption_key.key_version))
        return results

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _passphrase(self, organization_id: UUID, passphrase: Optional[str]) -> str:
        if passphrase is None and self.passphrase_provider is not None:
            passphrase = self.passphrase_provider(organization_id)
        if not passphrase:
            raise ValidationError("An organization passphrase is required")
        return passphrase

    def _check_strength(self, passphrase: str) -> None:
        if not self.settings.enforce_passphrase_strength:
            return
        strength = primitives.check_passphrase_strength(passphrase)
        if not strength.is_valid:
            raise ValidationError(
                "Passphrase is too weak",
                details={"score": strength.score, "feedback": strength.feedback},
            )

    def _derivation_params(self) -> DerivationParams:
        return DerivationParams(
            iterations=self.settings.pbkdf2_iterations,
            hash=self.settings.pbkdf2_hash,
            key_length=self.settings.key_length,
        ).validate(allow_weak=self.settings.allow_weak_kdf)

    def _already_rotated(self, current: EncryptionKey, expected_version: Optional[int]) -> bool:
        if expected_version is None or current.key_version == expected_version:
            return False
        if current.key_version > expected_version:
            logger.info(
                f"Key for organization {current.organization_id} is already at version "
                f"{current.key_version}, skipping rotation from {expected_version}"
            )
            return True
        raise ValidationError(
            f"Cannot rotate from key version {expected_version}: active version is {current.key_version}",
            details={"active_version": current.key_version, "expected_version": expected_version},
        )

    def _require_active_key(self, organization_id: UUID, *, for_update: bool = False) -> EncryptionKey:
        query = self.db.query(EncryptionKey).filter(
            EncryptionKey.organization_id == organization_id,
            EncryptionKey.is_active == True,
        )
        if for_update:
            query = query.with_for_update()
        record = query.first()
        if not record:
            raise NotFoundError(f"Encryption is not enabled for organization {organization_id}")
        return record

    def _store_key(
        self,
        organization_id: UUID,
        org_key: bytes,
        passphrase: str,
        params: DerivationParams,
        key_version: int,
        created_by: Optional[UUID],
    ) -> EncryptionKey:
        salt = primitives.random_bytes(self.settings.salt_length)
        iv = primitives.random_bytes(self.settings.iv_length)
        wrapping_key = primitives.derive_wrapping_key(passphrase, salt, params)
        wrapped = primitives.wrap_key(wrapping_key, org_key, iv, _key_aad(organization_id, key_version))

        record = EncryptionKey(
            organization_id=organization_id,
            wrapped_org_key=primitives.b64encode(wrapped),
            salt=primitives.b64encode(salt),
            iv=primitives.b64encode(iv),
            key_version=key_version,
            algorithm=ALGORITHM,
            derivation_params=params.to_dict(),
            is_active=True,
            created_by=created_by,
        )
        self.db.add(record)
        return record

    def _stored_material(self, record: EncryptionKey) -> Tuple[DerivationParams, bytes, bytes, bytes]:
        """Decode a key row; malformed material fails like a wrong passphrase."""
        try:
            return (
                DerivationParams.from_dict(record.derivation_params).validate(allow_weak=True),
                primitives.b64decode(record.salt),
                primitives.b64decode(record.wrapped_org_key),
                primitives.b64decode(record.iv),
            )
        except (KeyError, TypeError, ValueError, AttributeError, ValidationError) as e:
            raise AuthenticationFailure() from e

    def _unwrap(self, record: EncryptionKey, passphrase: str) -> bytes:
        try:
            params, salt, wrapped, iv = self._stored_material(record)
            wrapping_key = primitives.derive_wrapping_key(passphrase, salt, params)
            return primitives.unwrap_key(
                wrapping_key, wrapped, iv, _key_aad(record.organization_id, record.key_version),
            )
        except AuthenticationFailure:
            logger.warning(
                f"Failed to unwrap key version {record.key_version} "
                f"for organization {record.organization_id}"
            )
            raise

    def _key_to_dict(self, record: EncryptionKey) -> Dict[str, Any]:
        return {
            "id": str(record.id),
            "organization_id": str(record.organization_id),
            "key_version": record.key_version,
            "algorithm": record.algorithm,
            "derivation_params": record.derivation_params,
            "is_active": record.is_active,
            "created_by": str(record.created_by) if record.created_by else None,
            "created_at": record.created_at.isoformat() if record.created_at else None,
        }

    def _access_to_dict(self, access: AuditorAccess, key_version: int, *, include_key: bool = False) -> Dict[str, Any]:
        data = {
            "id": str(access.id),
            "organization_id": str(access.organization_id),
            "auditor_user_id": str(access.auditor_user_id),
            "granted_by_user_id": str(access.granted_by_user_id) if access.granted_by_user_id else None,
            "key_version": key_version,
            "expires_at": access.expires_at.isoformat() if access.expires_at else None,
            "is_revoked": access.is_revoked,
            "revoked_at": access.revoked_at.isoformat() if access.revoked_at else None,
            "created_at": access.created_at.isoformat() if access.created_at else None,
        }
        if include_key:
            # RSA-OAEP ciphertext; only the auditor's private key opens it
            data["wrapped_org_key"] = access.wrapped_org_key
        return data
