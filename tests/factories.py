"""Factory functions for creating test database records.

Each factory creates a model instance, adds it to the session, and flushes
so that database-generated fields (id, created_at, etc.) are populated.
All fields have sensible defaults but can be overridden via keyword arguments.

Usage::

    from tests.factories import create_organization, create_member

    def test_something(db_session):
        org = create_organization(db_session, name="Acme")
        member = create_member(db_session, org=org, role="admin")
        assert member.organization.name == "Acme"
"""

from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from safee.db.models import (
    ApprovalRule,
    ApprovalWorkflow,
    ApprovalWorkflowStep,
    Member,
    Organization,
    Team,
    TeamMember,
    User,
)


_counter = 0


def _next_id() -> int:
    """Return a monotonically increasing integer for unique default values."""
    global _counter
    _counter += 1
    return _counter


# ---------------------------------------------------------------------------
# Organization
# ---------------------------------------------------------------------------


def create_organization(
    session: Session,
    *,
    name: Optional[str] = None,
    slug: Optional[str] = None,
    settings: Optional[dict] = None,
) -> Organization:
    n = _next_id()
    org = Organization(
        name=name or f"Test Org {n}",
        slug=slug or f"test-org-{n}",
        settings=settings or {},
    )
    session.add(org)
    session.flush()
    return org


# ---------------------------------------------------------------------------
# Users and membership
# ---------------------------------------------------------------------------


def create_user(
    session: Session,
    *,
    email: Optional[str] = None,
    name: Optional[str] = None,
    is_active: bool = True,
) -> User:
    n = _next_id()
    user = User(
        email=email or f"user-{n}@example.com",
        name=name or f"Test User {n}",
        is_active=is_active,
    )
    session.add(user)
    session.flush()
    return user


def create_member(
    session: Session,
    *,
    org: Optional[Organization] = None,
    user: Optional[User] = None,
    role: str = "member",
) -> Member:
    if org is None:
        org = create_organization(session)
    if user is None:
        user = create_user(session)
    member = Member(organization_id=org.id, user_id=user.id, role=role)
    session.add(member)
    session.flush()
    return member


def create_team(
    session: Session,
    *,
    org: Organization,
    members: Optional[List[User]] = None,
    name: Optional[str] = None,
) -> Team:
    team = Team(organization_id=org.id, name=name or f"Team {_next_id()}")
    session.add(team)
    session.flush()
    for user in members or []:
        session.add(TeamMember(team_id=team.id, user_id=user.id))
    session.flush()
    return team


# ---------------------------------------------------------------------------
# Workflows and rules
# ---------------------------------------------------------------------------


def create_workflow(
    session: Session,
    *,
    org: Organization,
    steps: List[Dict[str, Any]],
    entity_type: str = "invoice",
    name: Optional[str] = None,
    is_active: bool = True,
) -> ApprovalWorkflow:
    """Insert a workflow directly, bypassing step validation."""
    workflow = ApprovalWorkflow(
        organization_id=org.id,
        name=name or f"Workflow {_next_id()}",
        entity_type=entity_type,
        is_active=is_active,
    )
    workflow.steps = [
        ApprovalWorkflowStep(
            step_order=step["step_order"],
            step_type=step.get("step_type", "single"),
            approver_type=step.get("approver_type", "user"),
            approver_ids=[str(a) for a in step["approver_ids"]],
            min_approvals=step.get("min_approvals", 1),
            required_approvers=step.get("required_approvers"),
        )
        for step in steps
    ]
    session.add(workflow)
    session.flush()
    return workflow


def create_rule(
    session: Session,
    *,
    org: Organization,
    workflow: ApprovalWorkflow,
    conditions: Optional[Dict[str, Any]] = None,
    priority: int = 0,
    entity_type: Optional[str] = None,
    is_active: bool = True,
) -> ApprovalRule:
    rule = ApprovalRule(
        organization_id=org.id,
        entity_type=entity_type or workflow.entity_type,
        workflow_id=workflow.id,
        conditions=conditions if conditions is not None else {"type": "manual"},
        priority=priority,
        is_active=is_active,
    )
    session.add(rule)
    session.flush()
    return rule
