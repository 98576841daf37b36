"""Database seeding for Safee Core.

Creates organizations, memberships and approval workflows from YAML
definitions.
"""

import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from sqlalchemy.orm import Session

from safee.core.errors import ValidationError
from safee.core.rbac.roles import DEFAULT_ROLES
from safee.db.models import Member, Organization, User


def seed_organization(
    db: Session,
    name: str,
    slug: str,
    *,
    settings: Optional[dict] = None,
) -> Organization:
    """
    Create a new organization, or return the existing one with this slug.

    Args:
        db: Database session
        name: Organization name
        slug: URL-friendly slug
        settings: Optional organization settings

    Returns:
        Created organization
    """
    existing = db.query(Organization).filter(
        Organization.slug == slug
    ).first()

    if existing:
        return existing

    org = Organization(
        id=uuid.uuid4(),
        name=name,
        slug=slug,
        settings=settings or {},
    )
    db.add(org)
    db.flush()
    return org


def seed_member(
    db: Session,
    org_id: uuid.UUID,
    email: str,
    role: str = "member",
    *,
    name: Optional[str] = None,
) -> Member:
    """Create (or reuse) a user and add them to an organization."""
    if role not in DEFAULT_ROLES:
        raise ValidationError(f"Unknown role: {role}")

    user = db.query(User).filter(User.email == email).first()
    if not user:
        user = User(id=uuid.uuid4(), email=email, name=name)
        db.add(user)
        db.flush()

    member = db.query(Member).filter(
        Member.organization_id == org_id,
        Member.user_id == user.id,
    ).first()
    if member:
        return member

    member = Member(organization_id=org_id, user_id=user.id, role=role)
    db.add(member)
    db.flush()
    return member


def load_workflow_definitions(
    db: Session,
    org_id: uuid.UUID,
    source: Union[str, Path],
    *,
    actor_id: Optional[uuid.UUID] = None,
) -> List[Dict[str, Any]]:
    """
    Create workflows and their rules from a YAML file.

    Expected layout::

        workflows:
          - name: Large purchases
            entity_type: purchase_order
            steps:
              - step_order: 1
                approver_type: role
                approver_ids: [admin]
            rules:
              - name: Over 10k
                priority: 10
                conditions: {type: amount, operator: gt, value: 10000}

    Returns:
        The created workflows, each with a ``rules`` list
    """
    from safee.core.approval import ApprovalService

    with open(source) as f:
        document = yaml.safe_load(f) or {}

    definitions = document.get("workflows")
    if not isinstance(definitions, list):
        raise ValidationError(f"{source}: 'workflows' must be a list")

    service = ApprovalService(db, org_id)
    created = []
    for definition in definitions:
        workflow = service.define_workflow(
            definition["name"],
            definition["entity_type"],
            definition.get("steps", []),
            description=definition.get("description"),
            actor_id=actor_id,
        )
        workflow["rules"] = [
            service.create_rule(
                definition["entity_type"],
                uuid.UUID(workflow["id"]),
                rule["conditions"],
                priority=rule.get("priority", 0),
                name=rule.get("name"),
                actor_id=actor_id,
            )
            for rule in definition.get("rules", [])
        ]
        created.append(workflow)
    return created


# CLI script for seeding
if __name__ == "__main__":
    import sys
    from safee.db.session import SessionLocal

    db = SessionLocal()
    try:
        org = seed_organization(db, name="Default Organization", slug="default")
        db.commit()
        print(f"Created organization: {org.name} (ID: {org.id})")

        if len(sys.argv) > 1:
            workflows = load_workflow_definitions(db, org.id, sys.argv[1])
            for workflow in workflows:
                print(f"  - {workflow['name']}: {len(workflow['steps'])} steps, {len(workflow['rules'])} rules")

        print("\nSeeding complete!")

    except Exception as e:
        db.rollback()
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        db.close()
