"""Encryption key and file metadata models.

``encryption_keys`` rows are never deleted: rotation deactivates the old
row and inserts the next version, so historical files stay decryptable.
``file_encryption_metadata`` is write-once.
"""

import uuid
from sqlalchemy import (
    Column, String, DateTime, JSON, ForeignKey, Text, Integer, Boolean,
    Index, UniqueConstraint, text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from safee.db.base import Base, utcnow


class EncryptionKey(Base):
    """Organization content key, wrapped under a passphrase-derived key."""
    __tablename__ = "encryption_keys"
    __table_args__ = (
        UniqueConstraint("organization_id", "key_version", name="uq_encryption_keys_org_version"),
        Index(
            "uq_encryption_keys_active_org",
            "organization_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False, index=True)

    # Base64 encoded key material
    wrapped_org_key = Column(Text, nullable=False)
    salt = Column(String(64), nullable=False)
    iv = Column(String(64), nullable=False)

    key_version = Column(Integer, nullable=False, default=1)
    algorithm = Column(String(50), nullable=False, default="AES-256-GCM")
    derivation_params = Column(JSON, nullable=False, default=dict)  # iterations, hash, keyLength
    is_active = Column(Boolean, nullable=False, default=True)

    created_by = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    rotated_at = Column(DateTime, nullable=True)

    organization = relationship("Organization")

    def __repr__(self) -> str:
        state = "active" if self.is_active else "retired"
        return f"<EncryptionKey org={self.organization_id} v{self.key_version} [{state}]>"


class FileEncryptionMetadata(Base):
    __tablename__ = "file_encryption_metadata"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    file_id = Column(UUID(as_uuid=True), nullable=False, unique=True, index=True)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False, index=True)

    # Pinned to the key version used at encryption time
    encryption_key_id = Column(UUID(as_uuid=True), ForeignKey("encryption_keys.id"), nullable=True)
    key_version = Column(Integer, nullable=False)

    # Content encryption (base64)
    iv = Column(String(64), nullable=False)
    auth_tag = Column(String(64), nullable=False)
    wrapped_file_key = Column(Text, nullable=False)
    file_key_iv = Column(String(64), nullable=False)

    algorithm = Column(String(50), nullable=False, default="AES-256-GCM")
    chunk_size = Column(Integer, nullable=False)
    is_encrypted = Column(Boolean, nullable=False, default=True)

    encrypted_at = Column(DateTime, default=utcnow)
    encrypted_by = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    encryption_key = relationship("EncryptionKey")

    def __repr__(self) -> str:
        return f"<FileEncryptionMetadata file={self.file_id} v{self.key_version}>"


class AuditorAccess(Base):
    """Time-boxed grant of the org key to an external auditor (RSA-OAEP wrapped)."""
    __tablename__ = "auditor_access"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False, index=True)
    auditor_user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    granted_by_user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    encryption_key_id = Column(UUID(as_uuid=True), ForeignKey("encryption_keys.id"), nullable=False)
    wrapped_org_key = Column(Text, nullable=False)

    expires_at = Column(DateTime, nullable=True)
    is_revoked = Column(Boolean, nullable=False, default=False)
    revoked_at = Column(DateTime, nullable=True)
    revoked_by_user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, default=utcnow)

    encryption_key = relationship("EncryptionKey")
