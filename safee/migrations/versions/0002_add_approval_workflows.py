"""Add approval workflows, rules, requests, steps and history

Revision ID: 0002
Revises: 0001
Create Date: 2026-09-14

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0002"
down_revision: Union[str, Sequence[str], None] = "0001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- approval_workflows ---
    op.create_table(
        "approval_workflows",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id", name="pk_approval_workflows"),
        sa.ForeignKeyConstraint(
            ["organization_id"], ["organizations.id"],
            name="fk_approval_workflows_organization_id_organizations",
        ),
    )
    op.create_index("ix_approval_workflows_organization_id", "approval_workflows", ["organization_id"])
    op.create_index("ix_approval_workflows_entity_type", "approval_workflows", ["entity_type"])

    # --- approval_workflow_steps ---
    op.create_table(
        "approval_workflow_steps",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("workflow_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("step_order", sa.Integer(), nullable=False),
        sa.Column("step_type", sa.String(20), nullable=False, server_default="single"),
        sa.Column("approver_type", sa.String(20), nullable=False, server_default="user"),
        sa.Column("approver_ids", sa.JSON(), nullable=False, server_default="[]"),
        sa.Column("min_approvals", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("required_approvers", sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_approval_workflow_steps"),
        sa.UniqueConstraint("workflow_id", "step_order", name="uq_workflow_steps_order"),
        sa.ForeignKeyConstraint(
            ["workflow_id"], ["approval_workflows.id"],
            name="fk_approval_workflow_steps_workflow_id", ondelete="CASCADE",
        ),
    )
    op.create_index("ix_approval_workflow_steps_workflow_id", "approval_workflow_steps", ["workflow_id"])

    # --- approval_rules ---
    op.create_table(
        "approval_rules",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("workflow_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("conditions", sa.JSON(), nullable=False, server_default="{}"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id", name="pk_approval_rules"),
        sa.ForeignKeyConstraint(
            ["organization_id"], ["organizations.id"],
            name="fk_approval_rules_organization_id_organizations",
        ),
        sa.ForeignKeyConstraint(
            ["workflow_id"], ["approval_workflows.id"],
            name="fk_approval_rules_workflow_id", ondelete="CASCADE",
        ),
    )
    op.create_index("ix_approval_rules_organization_id", "approval_rules", ["organization_id"])
    op.create_index("ix_approval_rules_entity_type", "approval_rules", ["entity_type"])
    op.create_index("ix_approval_rules_created_at", "approval_rules", ["created_at"])

    # --- approval_requests ---
    op.create_table(
        "approval_requests",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("workflow_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("rule_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("entity_id", sa.String(255), nullable=False),
        sa.Column("entity_data", sa.JSON(), nullable=False, server_default="{}"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("current_step_order", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("requested_by", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("cancelled_by", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("cancel_reason", sa.Text(), nullable=True),
        sa.Column("submitted_at", sa.DateTime(), server_default=sa.text("now()")),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id", name="pk_approval_requests"),
        sa.ForeignKeyConstraint(
            ["organization_id"], ["organizations.id"],
            name="fk_approval_requests_organization_id_organizations",
        ),
        sa.ForeignKeyConstraint(
            ["workflow_id"], ["approval_workflows.id"],
            name="fk_approval_requests_workflow_id",
        ),
        sa.ForeignKeyConstraint(
            ["rule_id"], ["approval_rules.id"],
            name="fk_approval_requests_rule_id", ondelete="SET NULL",
        ),
        sa.ForeignKeyConstraint(
            ["requested_by"], ["users.id"],
            name="fk_approval_requests_requested_by_users", ondelete="SET NULL",
        ),
        sa.ForeignKeyConstraint(
            ["cancelled_by"], ["users.id"],
            name="fk_approval_requests_cancelled_by_users", ondelete="SET NULL",
        ),
    )
    op.create_index("ix_approval_requests_organization_id", "approval_requests", ["organization_id"])
    op.create_index("ix_approval_requests_entity_type", "approval_requests", ["entity_type"])
    op.create_index("ix_approval_requests_entity_id", "approval_requests", ["entity_id"])
    op.create_index("ix_approval_requests_status", "approval_requests", ["status"])
    op.create_index("ix_approval_requests_submitted_at", "approval_requests", ["submitted_at"])
    # At most one pending request per entity within an organization
    op.create_index(
        "uq_approval_requests_pending_entity",
        "approval_requests",
        ["organization_id", "entity_type", "entity_id"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )

    # --- approval_steps ---
    op.create_table(
        "approval_steps",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("request_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("workflow_step_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("step_order", sa.Integer(), nullable=False),
        sa.Column("approver_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("step_type", sa.String(20), nullable=False, server_default="single"),
        sa.Column("min_approvals", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("delegated_to", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("delegated_at", sa.DateTime(), nullable=True),
        sa.Column("comments", sa.Text(), nullable=True),
        sa.Column("acted_by", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("action_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id", name="pk_approval_steps"),
        sa.ForeignKeyConstraint(
            ["request_id"], ["approval_requests.id"],
            name="fk_approval_steps_request_id", ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["workflow_step_id"], ["approval_workflow_steps.id"],
            name="fk_approval_steps_workflow_step_id", ondelete="SET NULL",
        ),
        sa.ForeignKeyConstraint(["approver_id"], ["users.id"], name="fk_approval_steps_approver_id_users"),
        sa.ForeignKeyConstraint(["delegated_to"], ["users.id"], name="fk_approval_steps_delegated_to_users"),
        sa.ForeignKeyConstraint(["acted_by"], ["users.id"], name="fk_approval_steps_acted_by_users"),
    )
    op.create_index("ix_approval_steps_request_id", "approval_steps", ["request_id"])
    op.create_index("ix_approval_steps_approver_id", "approval_steps", ["approver_id"])
    op.create_index("ix_approval_steps_status", "approval_steps", ["status"])
    op.create_index("ix_approval_steps_delegated_to", "approval_steps", ["delegated_to"])

    # --- approval_history ---
    op.create_table(
        "approval_history",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("request_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("step_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("from_status", sa.String(20), nullable=True),
        sa.Column("to_status", sa.String(20), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("comment", sa.Text(), nullable=True),
        sa.Column("extra_data", sa.JSON(), nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id", name="pk_approval_history"),
        sa.ForeignKeyConstraint(
            ["request_id"], ["approval_requests.id"],
            name="fk_approval_history_request_id", ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["step_id"], ["approval_steps.id"],
            name="fk_approval_history_step_id", ondelete="SET NULL",
        ),
        sa.ForeignKeyConstraint(
            ["user_id"], ["users.id"],
            name="fk_approval_history_user_id_users", ondelete="SET NULL",
        ),
    )
    op.create_index("ix_approval_history_request_id", "approval_history", ["request_id"])
    op.create_index("ix_approval_history_created_at", "approval_history", ["created_at"])


def downgrade() -> None:
    op.drop_table("approval_history")
    op.drop_table("approval_steps")
    op.drop_index("uq_approval_requests_pending_entity", table_name="approval_requests")
    op.drop_table("approval_requests")
    op.drop_table("approval_rules")
    op.drop_table("approval_workflow_steps")
    op.drop_table("approval_workflows")
