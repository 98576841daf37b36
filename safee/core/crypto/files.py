"""Per-file envelope encryption.

Every file gets its own random AES-256 key. Content is encrypted in
chunks with that key; the file key itself is wrapped under the
organization key version that was active at encryption time, and the
version is pinned in ``file_encryption_metadata``.
"""

import hmac
import logging
from dataclasses import dataclass
from typing import Any, BinaryIO, Dict, Iterator, Optional, Tuple, Union
from uuid import UUID

from sqlalchemy.orm import Session

from safee.core.config import Settings, get_settings
from safee.core.errors import (
    AuthenticationFailure,
    ConflictError,
    KeyUnavailableError,
    NotFoundError,
)
from safee.db.models import EncryptionKey, FileEncryptionMetadata
from safee.db.transaction import unit_of_work
from safee.services.audit import AuditEventEmitter
from . import primitives
from .keys import ALGORITHM, EncryptionKeyManager

logger = logging.getLogger(__name__)


@dataclass
class EncryptedFile:
    ciphertext: bytes
    metadata: Dict[str, Any]


class FileEncryptionService:
    """Encrypts and decrypts file content for object storage."""

    def __init__(
        self,
        db: Session,
        *,
        key_manager: Optional[EncryptionKeyManager] = None,
        settings: Optional[Settings] = None,
        audit: Optional[AuditEventEmitter] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.audit = audit or AuditEventEmitter(db)
        self.key_manager = key_manager or EncryptionKeyManager(db, settings=self.settings, audit=self.audit)

    def encrypt_file(
        self,
        organization_id: UUID,
        file_id: UUID,
        plaintext: Union[bytes, BinaryIO],
        acting_user_id: Optional[UUID] = None,
        passphrase: Optional[str] = None,
    ) -> EncryptedFile:
        """
        Encrypt file content under the active organization key.

        Args:
            organization_id: Owning organization
            file_id: Storage identifier of the file
            plaintext: File content as bytes or a binary stream
            acting_user_id: User performing the upload
            passphrase: Organization passphrase (or use the key manager's provider)

        Returns:
            EncryptedFile with the ciphertext to store and its metadata

        Raises:
            ConflictError: The file was already encrypted
            NotFoundError: Encryption not enabled and auto-enable is off
            ValidationError: First file for the organization with a weak passphrase
            AuthenticationFailure: Passphrase does not unlock the organization key
        """
        ciphertext = b"".join(self.iter_encrypt(organization_id, file_id, plaintext, acting_user_id, passphrase))
        return EncryptedFile(ciphertext=ciphertext, metadata=self.get_metadata(file_id))

    def iter_encrypt(
        self,
        organization_id: UUID,
        file_id: UUID,
        plaintext: Union[bytes, BinaryIO],
        acting_user_id: Optional[UUID] = None,
        passphrase: Optional[str] = None,
    ) -> Iterator[bytes]:
        """
        Encrypt chunk by chunk, for writing straight to object storage.

        Key checks happen before this returns and raise the same errors as
        :meth:`encrypt_file`. The returned iterator yields one
        ``chunk || tag`` record at a time; the metadata row is stored when
        the last record has been produced, so an abandoned upload leaves
        nothing decryptable behind.
        """
        file_id = _as_uuid(file_id)

        if self.settings.auto_enable_encryption and self.key_manager.get_active_key(organization_id) is None:
            self._enable_on_first_file(organization_id, passphrase, acting_user_id)

        if self._find_metadata(file_id) is not None:
            raise ConflictError(f"File {file_id} is already encrypted")
        key_record = self.key_manager.get_active_key(organization_id)
        if key_record is None:
            raise NotFoundError(f"Encryption is not enabled for organization {organization_id}")
        org_key = self.key_manager.unwrap_organization_key(
            organization_id, passphrase, key_version=key_record.key_version,
        )
        return self._encrypt_records(organization_id, file_id, plaintext, key_record, org_key, acting_user_id)

    def _encrypt_records(
        self,
        organization_id: UUID,
        file_id: UUID,
        plaintext: Union[bytes, BinaryIO],
        key_record: EncryptionKey,
        org_key: bytes,
        acting_user_id: Optional[UUID],
    ) -> Iterator[bytes]:
        chunk_size = self.settings.file_chunk_size
        file_key = primitives.generate_key()
        base_iv = primitives.random_bytes(self.settings.iv_length)

        size = 0
        last_record = b""
        for record in primitives.encrypt_chunks(
            file_key, base_iv, file_id, primitives.iter_chunks(plaintext, chunk_size),
        ):
            size += len(record)
            last_record = record
            yield record

        file_key_iv = primitives.random_bytes(self.settings.iv_length)
        wrapped_file_key = primitives.wrap_key(org_key, file_key, file_key_iv, file_id.bytes)

        with unit_of_work(self.db, f"encrypt file {file_id}", audit=self.audit):
            self.db.add(FileEncryptionMetadata(
                file_id=file_id,
                organization_id=organization_id,
                encryption_key_id=key_record.id,
                key_version=key_record.key_version,
                iv=primitives.b64encode(base_iv),
                auth_tag=primitives.b64encode(last_record[-primitives.TAG_LENGTH:]),
                wrapped_file_key=primitives.b64encode(wrapped_file_key),
                file_key_iv=primitives.b64encode(file_key_iv),
                algorithm=ALGORITHM,
                chunk_size=chunk_size,
                is_encrypted=True,
                encrypted_by=acting_user_id,
            ))
            self.db.flush()

            self.audit.emit(
                organization_id, "file", file_id, "file.encrypted", acting_user_id,
                after={"key_version": key_record.key_version, "size": size},
            )

        logger.debug(f"Encrypted file {file_id} with key version {key_record.key_version}")

    def _enable_on_first_file(
        self,
        organization_id: UUID,
        passphrase: Optional[str],
        acting_user_id: Optional[UUID],
    ) -> None:
        try:
            self.key_manager.enable_encryption(organization_id, passphrase, created_by=acting_user_id)
        except ConflictError:
            # Another upload enabled it first
            logger.info(f"Encryption for organization {organization_id} was enabled concurrently")
        else:
            logger.info(f"Enabled encryption for organization {organization_id} on its first file")

    def decrypt_file(
        self,
        file_id: UUID,
        ciphertext: bytes,
        passphrase: Optional[str] = None,
        *,
        organization_id: Optional[UUID] = None,
    ) -> bytes:
        """
        Decrypt file content with the key version it was encrypted under.

        Raises:
            NotFoundError: No encryption metadata for the file
            KeyUnavailableError: The pinned key version no longer exists
            AuthenticationFailure: Wrong passphrase or modified ciphertext
        """
        file_id = _as_uuid(file_id)
        metadata = self._find_metadata(file_id)
        if metadata is None or (organization_id is not None and metadata.organization_id != organization_id):
            raise NotFoundError(f"No encryption metadata for file {file_id}")

        try:
            self.key_manager.get_key_by_version(metadata.organization_id, metadata.key_version)
        except NotFoundError as e:
            raise KeyUnavailableError(
                f"Key version {metadata.key_version} for file {file_id} is no longer available"
            ) from e

        org_key = self.key_manager.unwrap_organization_key(
            metadata.organization_id, passphrase, key_version=metadata.key_version,
        )

        expected_tag, wrapped_file_key, file_key_iv, base_iv = self._stored_material(metadata)
        if not hmac.compare_digest(ciphertext[-primitives.TAG_LENGTH:], expected_tag):
            raise AuthenticationFailure()

        file_key = primitives.unwrap_key(org_key, wrapped_file_key, file_key_iv, file_id.bytes)
        return b"".join(primitives.decrypt_chunks(file_key, base_iv, file_id, ciphertext, metadata.chunk_size))

    def _stored_material(self, metadata: FileEncryptionMetadata) -> Tuple[bytes, bytes, bytes, bytes]:
        """Decode a metadata row; malformed fields fail authentication."""
        if not isinstance(metadata.chunk_size, int) or metadata.chunk_size < 1:
            raise AuthenticationFailure()
        try:
            return (
                primitives.b64decode(metadata.auth_tag),
                primitives.b64decode(metadata.wrapped_file_key),
                primitives.b64decode(metadata.file_key_iv),
                primitives.b64decode(metadata.iv),
            )
        except (TypeError, ValueError, AttributeError) as e:
            raise AuthenticationFailure() from e

    def get_metadata(self, file_id: UUID) -> Dict[str, Any]:
        metadata = self._find_metadata(_as_uuid(file_id))
        if metadata is None:
            raise NotFoundError(f"No encryption metadata for file {file_id}")
        return self._metadata_to_dict(metadata)

    def _find_metadata(self, file_id: UUID) -> Optional[FileEncryptionMetadata]:
        return self.db.query(FileEncryptionMetadata).filter(
            FileEncryptionMetadata.file_id == file_id,
        ).first()

    def _metadata_to_dict(self, metadata: FileEncryptionMetadata) -> Dict[str, Any]:
        return {
            "file_id": str(metadata.file_id),
            "organization_id": str(metadata.organization_id),
            "key_version": metadata.key_version,
            "iv": metadata.iv,
            "auth_tag": metadata.auth_tag,
            "algorithm": metadata.algorithm,
            "chunk_size": metadata.chunk_size,
            "encrypted_by": str(metadata.encrypted_by) if metadata.encrypted_by else None,
            "encrypted_at": metadata.encrypted_at.isoformat() if metadata.encrypted_at else None,
        }


def _as_uuid(value: Any) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))
