"""Integration tests for approval rule resolution."""

from datetime import datetime
from uuid import uuid4

import pytest

from safee.core.errors import NotFoundError, ValidationError
from safee.core.rules import ApprovalRuleResolver

from tests import factories

STEPS = [{"step_order": 1, "approver_ids": [uuid4()]}]


@pytest.fixture
def resolver(db_session):
    return ApprovalRuleResolver(db_session)


@pytest.fixture
def workflows(db_session, org):
    """Three active invoice workflows."""
    return [factories.create_workflow(db_session, org=org, steps=STEPS, name=f"wf-{i}") for i in range(3)]


class TestResolve:

    def test_highest_priority_match_wins(self, db_session, org, resolver, workflows):
        low, high, _ = workflows
        factories.create_rule(db_session, org=org, workflow=low, priority=1)
        factories.create_rule(
            db_session, org=org, workflow=high, priority=50,
            conditions={"type": "amount", "operator": "gt", "value": 1000},
        )

        assert resolver.resolve(org.id, "invoice", {"amount": 5000}).workflow_id == high.id
        assert resolver.resolve(org.id, "invoice", {"amount": 10}).workflow_id == low.id

    def test_priority_tie_goes_to_older_rule(self, db_session, org, resolver, workflows):
        first, second, _ = workflows
        newer = factories.create_rule(db_session, org=org, workflow=second, priority=5)
        older = factories.create_rule(db_session, org=org, workflow=first, priority=5)
        older.created_at = datetime(2024, 1, 1)
        newer.created_at = datetime(2024, 6, 1)
        db_session.flush()

        match = resolver.resolve(org.id, "invoice", {})
        assert match.rule.id == older.id

    def test_no_match_returns_none(self, db_session, org, resolver, workflows):
        factories.create_rule(
            db_session, org=org, workflow=workflows[0],
            conditions={"type": "field", "field": "currency", "operator": "eq", "value": "EUR"},
        )
        assert resolver.resolve(org.id, "invoice", {"currency": "USD"}) is None

    def test_other_entity_type_ignored(self, db_session, org, resolver, workflows):
        factories.create_rule(db_session, org=org, workflow=workflows[0])
        assert resolver.resolve(org.id, "audit_plan", {}) is None

    def test_other_organization_ignored(self, db_session, org, resolver, workflows):
        factories.create_rule(db_session, org=org, workflow=workflows[0])
        other = factories.create_organization(db_session)
        assert resolver.resolve(other.id, "invoice", {}) is None

    def test_inactive_rule_ignored(self, db_session, org, resolver, workflows):
        factories.create_rule(db_session, org=org, workflow=workflows[0], priority=9, is_active=False)
        fallback = factories.create_rule(db_session, org=org, workflow=workflows[1], priority=1)
        assert resolver.resolve(org.id, "invoice", {}).rule.id == fallback.id

    def test_inactive_workflow_skipped(self, db_session, org, resolver, workflows):
        retired = factories.create_workflow(db_session, org=org, steps=STEPS, is_active=False)
        skipped = factories.create_rule(db_session, org=org, workflow=retired, priority=9)
        fallback = factories.create_rule(db_session, org=org, workflow=workflows[0], priority=1)

        trace = resolver.explain(org.id, "invoice", {})

        assert trace.match.rule.id == fallback.id
        assert trace.evaluations[0].rule_id == skipped.id
        assert trace.evaluations[0].skipped_reason == "workflow inactive"

    def test_malformed_stored_condition_fails_closed(self, db_session, org, resolver, workflows):
        factories.create_rule(db_session, org=org, workflow=workflows[0], priority=9,
                              conditions={"type": "script", "value": "1 == 1"})
        assert resolver.resolve(org.id, "invoice", {"amount": 1}) is None

    def test_entity_type_available_to_conditions(self, db_session, org, resolver, workflows):
        factories.create_rule(db_session, org=org, workflow=workflows[0],
                              conditions={"type": "entityType", "value": "invoice"})
        assert resolver.resolve(org.id, "invoice", {}) is not None

    def test_match_summary(self, db_session, org, resolver, workflows):
        rule = factories.create_rule(db_session, org=org, workflow=workflows[0], priority=3)
        summary = resolver.resolve(org.id, "invoice", {}).to_dict()
        assert summary == {
            "rule_id": str(rule.id),
            "workflow_id": str(workflows[0].id),
            "priority": 3,
            "condition": "manual",
        }


class TestCreateRule:

    def test_creates_rule(self, org, resolver, workflows):
        rule = resolver.create_rule(org.id, "invoice", workflows[0].id, {"type": "manual"}, priority=4, name="all")
        assert rule.id is not None
        assert rule.priority == 4

    def test_rejects_malformed_conditions(self, org, resolver, workflows):
        with pytest.raises(ValidationError):
            resolver.create_rule(org.id, "invoice", workflows[0].id, {"type": "amount", "value": 5})

    def test_entity_type_mismatch(self, org, resolver, workflows):
        with pytest.raises(ValidationError):
            resolver.create_rule(org.id, "audit_plan", workflows[0].id, {"type": "manual"})

    def test_unknown_workflow(self, org, resolver):
        with pytest.raises(NotFoundError):
            resolver.create_rule(org.id, "invoice", uuid4(), {"type": "manual"})
