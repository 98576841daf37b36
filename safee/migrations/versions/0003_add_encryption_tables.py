"""Add encryption keys, file encryption metadata and auditor access

Revision ID: 0003
Revises: 0002
Create Date: 2026-09-21

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0003"
down_revision: Union[str, Sequence[str], None] = "0002"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- encryption_keys ---
    op.create_table(
        "encryption_keys",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("wrapped_org_key", sa.Text(), nullable=False),
        sa.Column("salt", sa.String(64), nullable=False),
        sa.Column("iv", sa.String(64), nullable=False),
        sa.Column("key_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("algorithm", sa.String(50), nullable=False, server_default="AES-256-GCM"),
        sa.Column("derivation_params", sa.JSON(), nullable=False, server_default="{}"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("created_by", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("now()")),
        sa.Column("rotated_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_encryption_keys"),
        sa.UniqueConstraint("organization_id", "key_version", name="uq_encryption_keys_org_version"),
        sa.ForeignKeyConstraint(
            ["organization_id"], ["organizations.id"],
            name="fk_encryption_keys_organization_id_organizations",
        ),
        sa.ForeignKeyConstraint(
            ["created_by"], ["users.id"],
            name="fk_encryption_keys_created_by_users", ondelete="SET NULL",
        ),
    )
    op.create_index("ix_encryption_keys_organization_id", "encryption_keys", ["organization_id"])
    # One active key per organization
    op.create_index(
        "uq_encryption_keys_active_org",
        "encryption_keys",
        ["organization_id"],
        unique=True,
        postgresql_where=sa.text("is_active"),
    )

    # --- file_encryption_metadata ---
    op.create_table(
        "file_encryption_metadata",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("file_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("encryption_key_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("key_version", sa.Integer(), nullable=False),
        sa.Column("iv", sa.String(64), nullable=False),
        sa.Column("auth_tag", sa.String(64), nullable=False),
        sa.Column("wrapped_file_key", sa.Text(), nullable=False),
        sa.Column("file_key_iv", sa.String(64), nullable=False),
        sa.Column("algorithm", sa.String(50), nullable=False, server_default="AES-256-GCM"),
        sa.Column("chunk_size", sa.Integer(), nullable=False),
        sa.Column("is_encrypted", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("encrypted_at", sa.DateTime(), server_default=sa.text("now()")),
        sa.Column("encrypted_by", postgresql.UUID(as_uuid=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_file_encryption_metadata"),
        sa.UniqueConstraint("file_id", name="uq_file_encryption_metadata_file_id"),
        sa.ForeignKeyConstraint(
            ["organization_id"], ["organizations.id"],
            name="fk_file_encryption_metadata_organization_id",
        ),
        sa.ForeignKeyConstraint(
            ["encryption_key_id"], ["encryption_keys.id"],
            name="fk_file_encryption_metadata_encryption_key_id",
        ),
        sa.ForeignKeyConstraint(
            ["encrypted_by"], ["users.id"],
            name="fk_file_encryption_metadata_encrypted_by_users", ondelete="SET NULL",
        ),
    )
    op.create_index("ix_file_encryption_metadata_file_id", "file_encryption_metadata", ["file_id"])
    op.create_index("ix_file_encryption_metadata_organization_id", "file_encryption_metadata", ["organization_id"])

    # --- auditor_access ---
    op.create_table(
        "auditor_access",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("auditor_user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("granted_by_user_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("encryption_key_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("wrapped_org_key", sa.Text(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=True),
        sa.Column("is_revoked", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("revoked_at", sa.DateTime(), nullable=True),
        sa.Column("revoked_by_user_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id", name="pk_auditor_access"),
        sa.ForeignKeyConstraint(
            ["organization_id"], ["organizations.id"],
            name="fk_auditor_access_organization_id_organizations",
        ),
        sa.ForeignKeyConstraint(["auditor_user_id"], ["users.id"], name="fk_auditor_access_auditor_user_id_users"),
        sa.ForeignKeyConstraint(
            ["granted_by_user_id"], ["users.id"],
            name="fk_auditor_access_granted_by_user_id_users", ondelete="SET NULL",
        ),
        sa.ForeignKeyConstraint(
            ["encryption_key_id"], ["encryption_keys.id"],
            name="fk_auditor_access_encryption_key_id",
        ),
        sa.ForeignKeyConstraint(
            ["revoked_by_user_id"], ["users.id"],
            name="fk_auditor_access_revoked_by_user_id_users", ondelete="SET NULL",
        ),
    )
    op.create_index("ix_auditor_access_organization_id", "auditor_access", ["organization_id"])
    op.create_index("ix_auditor_access_auditor_user_id", "auditor_access", ["auditor_user_id"])


def downgrade() -> None:
    op.drop_table("auditor_access")
    op.drop_table("file_encryption_metadata")
    op.drop_index("uq_encryption_keys_active_org", table_name="encryption_keys")
    op.drop_table("encryption_keys")
