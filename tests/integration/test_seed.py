"""Tests for organization seeding and YAML workflow loading."""

import textwrap

import pytest

from safee.core.errors import ValidationError
from safee.core.rules import ApprovalRuleResolver
from safee.db.models import ApprovalRule, Member, User
from safee.db.seed import load_workflow_definitions, seed_member, seed_organization

WORKFLOWS_YAML = textwrap.dedent("""
    workflows:
      - name: Large purchases
        entity_type: purchase_order
        steps:
          - step_order: 1
            approver_type: role
            approver_ids: [admin]
          - step_order: 2
            step_type: any
            approver_type: role
            approver_ids: [owner]
        rules:
          - name: Over 10k
            priority: 10
            conditions: {type: amount, operator: gt, value: 10000}
      - name: Audit plans
        entity_type: audit_plan
        steps:
          - step_order: 1
            approver_type: role
            approver_ids: [admin]
""")


class TestSeedOrganization:

    def test_creates_once_per_slug(self, db_session):
        first = seed_organization(db_session, "Acme", "acme")
        second = seed_organization(db_session, "Acme Renamed", "acme")
        assert first.id == second.id
        assert second.name == "Acme"


class TestSeedMember:

    def test_creates_user_and_membership(self, db_session, org):
        member = seed_member(db_session, org.id, "ada@example.com", "admin", name="Ada")
        assert member.role == "admin"
        assert db_session.query(User).filter(User.email == "ada@example.com").one().name == "Ada"

    def test_reuses_existing_membership(self, db_session, org):
        first = seed_member(db_session, org.id, "ada@example.com", "admin")
        second = seed_member(db_session, org.id, "ada@example.com", "admin")
        assert first.id == second.id
        assert db_session.query(Member).count() == 1

    def test_unknown_role(self, db_session, org):
        with pytest.raises(ValidationError):
            seed_member(db_session, org.id, "ada@example.com", "superuser")


class TestLoadWorkflowDefinitions:

    def test_loads_workflows_and_rules(self, db_session, org, tmp_path):
        source = tmp_path / "workflows.yaml"
        source.write_text(WORKFLOWS_YAML)

        created = load_workflow_definitions(db_session, org.id, source)

        assert [w["name"] for w in created] == ["Large purchases", "Audit plans"]
        assert [s["step_type"] for s in created[0]["steps"]] == ["single", "any"]
        assert created[0]["rules"][0]["priority"] == 10
        assert created[1]["rules"] == []
        assert db_session.query(ApprovalRule).count() == 1

        match = ApprovalRuleResolver(db_session).resolve(org.id, "purchase_order", {"amount": 20000})
        assert str(match.workflow_id) == created[0]["id"]

    def test_workflows_must_be_a_list(self, db_session, org, tmp_path):
        source = tmp_path / "workflows.yaml"
        source.write_text("workflows: {name: nope}\n")
        with pytest.raises(ValidationError):
            load_workflow_definitions(db_session, org.id, source)

    def test_invalid_step_rejected(self, db_session, org, tmp_path):
        source = tmp_path / "workflows.yaml"
        source.write_text(textwrap.dedent("""
            workflows:
              - name: Broken
                entity_type: invoice
                steps:
                  - step_order: 1
                    approver_type: user
                    approver_ids: [not-a-uuid]
        """))
        with pytest.raises(ValidationError):
            load_workflow_definitions(db_session, org.id, source)
