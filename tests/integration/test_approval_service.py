"""Integration tests for the approval service against a real database session."""

import uuid
from decimal import Decimal

import pytest
from sqlalchemy import update
from sqlalchemy.exc import OperationalError

from safee.core.approval import ApprovalEventType, ApprovalService, TransitionError
from safee.core.errors import (
    ConflictError,
    NotFoundError,
    OperationFailed,
    PermissionDeniedError,
    ValidationError,
)
from safee.db.models import ApprovalRequest, ApprovalStep, AuditLog
from safee.services.audit import AuditEventEmitter

from tests import factories

HIGH_VALUE = {"type": "amount", "operator": "gt", "value": 1000}


class RecordingNotifier:
    def __init__(self):
        self.events = []

    def notify(self, event):
        self.events.append(event)

    def of_type(self, event_type):
        return [e for e in self.events if e.event_type == event_type]


def _group(request, order):
    return [s for s in request["steps"] if s["step_order"] == order]


def _step_for(request, user):
    return next(s for s in request["steps"] if s["approver_id"] == str(user.id))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def service(db_session, org, notifier):
    return ApprovalService(db_session, org.id, notifier=notifier)


@pytest.fixture
def approvers(member_factory):
    """Four approvers: a, b, c, d."""
    return [member_factory("approver") for _ in range(4)]


@pytest.fixture
def requester(member_factory):
    return member_factory("member")


def _setup(service, steps, conditions=HIGH_VALUE, entity_type="invoice"):
    workflow = service.define_workflow("Invoice approval", entity_type, steps)
    service.create_rule(entity_type, uuid.UUID(workflow["id"]), conditions, priority=10)
    return workflow


def _submit(service, requester, entity_id="INV-1", amount=5000):
    result = service.submit_for_approval("invoice", entity_id, {"amount": amount}, requested_by=requester.id)
    return result.request


@pytest.fixture
def two_step(service, approvers):
    """Step 1: a alone. Step 2: two of b, c, d."""
    a, b, c, d = approvers
    return _setup(service, [
        {"step_order": 1, "step_type": "single", "approver_type": "user", "approver_ids": [a.id]},
        {"step_order": 2, "step_type": "parallel", "approver_type": "user",
         "approver_ids": [b.id, c.id, d.id], "min_approvals": 2},
    ])


class TestSubmission:

    def test_no_matching_rule(self, service, two_step, requester):
        result = service.submit_for_approval("invoice", "INV-9", {"amount": 10}, requested_by=requester.id)
        assert result.request is None
        assert not result.requires_approval

    def test_steps_created_per_expanded_approver(self, service, two_step, requester):
        request = _submit(service, requester)

        assert request["status"] == "pending"
        assert request["current_step_order"] == 1
        assert len(request["steps"]) == 4
        assert [s["is_active"] for s in _group(request, 1)] == [True]
        assert all(not s["is_active"] for s in _group(request, 2))
        assert all(s["status"] == "pending" for s in request["steps"])

    def test_duplicate_pending_submission(self, service, two_step, requester):
        first = _submit(service, requester)
        with pytest.raises(ConflictError) as exc_info:
            _submit(service, requester)
        assert exc_info.value.details["request_id"] == first["id"]

    def test_same_entity_id_in_another_organization(self, db_session, service, two_step, requester):
        """Pending uniqueness is per organization; entity ids are tenant-local."""
        first = _submit(service, requester, entity_id="INV-1")

        other_org = factories.create_organization(db_session)
        other_approver = factories.create_member(db_session, org=other_org, role="approver").user
        db_session.commit()
        other_service = ApprovalService(db_session, other_org.id)
        _setup(other_service, [
            {"step_order": 1, "step_type": "single", "approver_type": "user", "approver_ids": [other_approver.id]},
        ])

        second = other_service.submit_for_approval("invoice", "INV-1", {"amount": 5000}).request

        assert second["organization_id"] == str(other_org.id)
        assert second["id"] != first["id"]
        assert service.get_active_request("invoice", "INV-1")["id"] == first["id"]
        assert other_service.get_active_request("invoice", "INV-1")["id"] == second["id"]

    def test_decimal_amount_requires_approval(self, db_session, service, two_step, requester):
        result = service.submit_for_approval(
            "invoice", "INV-D", {"amount": Decimal("5000.00"), "tax": Decimal("412.50")},
            requested_by=requester.id,
        )

        assert result.requires_approval
        row = db_session.query(ApprovalRequest).filter(ApprovalRequest.entity_id == "INV-D").one()
        db_session.refresh(row)
        assert row.entity_data == {"amount": 5000, "tax": 412.5}

    def test_duplicate_approver_ids_collapse(self, service, approvers, requester):
        a = approvers[0]
        _setup(service, [
            {"step_order": 1, "step_type": "any", "approver_type": "user", "approver_ids": [a.id, str(a.id)]},
        ])
        request = _submit(service, requester)
        assert len(request["steps"]) == 1

    def test_team_expansion(self, db_session, org, service, approvers, requester):
        a, b, c, d = approvers
        team = factories.create_team(db_session, org=org, members=[b, c, d])
        db_session.commit()
        _setup(service, [
            {"step_order": 1, "step_type": "single", "approver_type": "user", "approver_ids": [a.id]},
            {"step_order": 2, "step_type": "parallel", "approver_type": "team",
             "approver_ids": [team.id], "min_approvals": 2},
        ])

        request = _submit(service, requester)

        assert {s["approver_id"] for s in _group(request, 2)} == {str(b.id), str(c.id), str(d.id)}

    def test_role_expansion(self, service, member_factory, requester):
        finance = [member_factory("finance") for _ in range(2)]
        _setup(service, [
            {"step_order": 1, "step_type": "any", "approver_type": "role", "approver_ids": ["finance"]},
        ])
        request = _submit(service, requester)
        assert {s["approver_id"] for s in request["steps"]} == {str(u.id) for u in finance}

    def test_unstaffed_step_rolls_back(self, service, requester):
        _setup(service, [
            {"step_order": 1, "step_type": "single", "approver_type": "role", "approver_ids": ["treasury"]},
        ])
        with pytest.raises(ValidationError):
            _submit(service, requester)
        assert service.get_active_request("invoice", "INV-1") is None

    def test_required_approvers_enforced(self, service, approvers, requester):
        a, b = approvers[:2]
        _setup(service, [
            {"step_order": 1, "step_type": "parallel", "approver_type": "user",
             "approver_ids": [a.id, b.id], "min_approvals": 1, "required_approvers": 3},
        ])
        with pytest.raises(ValidationError):
            _submit(service, requester)

    def test_pending_notification_after_commit(self, service, two_step, requester, notifier, approvers):
        request = _submit(service, requester)
        pending = notifier.of_type(ApprovalEventType.PENDING)
        assert len(pending) == 1
        assert pending[0].recipients == [approvers[0].id]
        assert str(pending[0].request_id) == request["id"]
        assert pending[0].context == {"step_order": 1}


class TestWorkflowDefinition:

    @pytest.mark.parametrize("steps", [
        [],
        [{"step_order": 2, "approver_ids": [str(uuid.uuid4())]}],
        [{"step_order": 1, "step_type": "single", "approver_ids": [str(uuid.uuid4())], "min_approvals": 2}],
        [{"step_order": 1, "step_type": "quorum", "approver_ids": [str(uuid.uuid4())]}],
        [{"step_order": 1, "approver_ids": []}],
        [{"step_order": 1, "approver_type": "user", "approver_ids": ["not-a-uuid"]}],
        [{"step_order": 1, "step_type": "parallel", "approver_ids": [str(uuid.uuid4())],
          "min_approvals": 3, "required_approvers": 2}],
    ])
    def test_invalid_steps(self, service, steps):
        with pytest.raises(ValidationError):
            service.define_workflow("Broken", "invoice", steps)

    def test_steps_sorted_by_order(self, service):
        workflow = service.define_workflow("Two", "invoice", [
            {"step_order": 2, "approver_type": "role", "approver_ids": ["admin"]},
            {"step_order": 1, "approver_type": "role", "approver_ids": ["finance"]},
        ])
        assert [s["step_order"] for s in workflow["steps"]] == [1, 2]

    def test_definition_is_audited(self, db_session, service):
        service.define_workflow("Audited", "invoice", [
            {"step_order": 1, "approver_type": "role", "approver_ids": ["admin"]},
        ])
        assert db_session.query(AuditLog).filter(AuditLog.action == "approval.workflow.created").count() == 1


class TestMultiStepFlow:

    def test_full_approval_without_last_parallel_approver(self, db_session, service, two_step, requester,
                                                          approvers, notifier):
        a, b, c, d = approvers
        request = _submit(service, requester)
        request_id = uuid.UUID(request["id"])

        after_a = service.approve(request_id, a.id, "fine")
        assert after_a["status"] == "pending"
        assert after_a["current_step_order"] == 2
        assert all(s["is_active"] for s in _group(after_a, 2))

        after_b = service.approve(request_id, b.id)
        assert after_b["status"] == "pending"

        final = service.approve(request_id, c.id)
        assert final["status"] == "approved"
        assert final["completed_at"] is not None

        d_step = _step_for(final, d)
        assert d_step["status"] == "pending"
        assert not d_step["is_active"]

        approved = notifier.of_type(ApprovalEventType.APPROVED)
        assert len(approved) == 1
        assert approved[0].recipients == [requester.id]
        assert len(notifier.of_type(ApprovalEventType.PENDING)) == 2

        actions = {row.action for row in db_session.query(AuditLog).all()}
        assert {"approval.submitted", "approval.step.approved",
                "approval.step_group.activated", "approval.approved"} <= actions

    def test_first_step_rejection_leaves_later_steps_latent(self, service, two_step, requester, approvers,
                                                           notifier):
        a = approvers[0]
        request = _submit(service, requester)

        result = service.reject(uuid.UUID(request["id"]), a.id, "missing receipts")

        assert result["status"] == "rejected"
        assert _step_for(result, a)["status"] == "rejected"
        for step in _group(result, 2):
            assert step["status"] == "pending"
            assert not step["is_active"]
        rejected = notifier.of_type(ApprovalEventType.REJECTED)
        assert rejected[0].context == {"comments": "missing receipts"}

    def test_parallel_tolerates_rejection_while_reachable(self, service, two_step, requester, approvers):
        a, b, c, d = approvers
        request_id = uuid.UUID(_submit(service, requester)["id"])
        service.approve(request_id, a.id)

        assert service.reject(request_id, b.id)["status"] == "pending"
        assert service.approve(request_id, c.id)["status"] == "pending"
        assert service.approve(request_id, d.id)["status"] == "approved"

    def test_parallel_fails_when_threshold_unreachable(self, service, two_step, requester, approvers):
        a, b, c, d = approvers
        request_id = uuid.UUID(_submit(service, requester)["id"])
        service.approve(request_id, a.id)
        service.reject(request_id, b.id)

        result = service.reject(request_id, c.id)

        assert result["status"] == "rejected"
        assert not _step_for(result, d)["is_active"]

    def test_any_group(self, service, member_factory, requester):
        f1, f2 = member_factory("finance"), member_factory("finance")
        _setup(service, [
            {"step_order": 1, "step_type": "any", "approver_type": "role", "approver_ids": ["finance"]},
        ])
        request_id = uuid.UUID(_submit(service, requester)["id"])

        assert service.reject(request_id, f1.id)["status"] == "pending"
        assert service.reject(request_id, f2.id)["status"] == "rejected"

    def test_any_group_first_approval_wins(self, service, member_factory, requester):
        f1, f2 = member_factory("finance"), member_factory("finance")
        _setup(service, [
            {"step_order": 1, "step_type": "any", "approver_type": "role", "approver_ids": ["finance"]},
        ])
        request_id = uuid.UUID(_submit(service, requester)["id"])

        result = service.approve(request_id, f2.id)

        assert result["status"] == "approved"
        assert not _step_for(result, f1)["is_active"]

    def test_resubmission_after_rejection(self, service, two_step, requester, approvers):
        first = _submit(service, requester)
        service.reject(uuid.UUID(first["id"]), approvers[0].id)

        second = _submit(service, requester)

        assert second["id"] != first["id"]
        history = service.get_history_by_entity("invoice", "INV-1")
        assert {h["id"] for h in history} == {first["id"], second["id"]}
        assert service.get_active_request("invoice", "INV-1")["id"] == second["id"]


class TestStepActions:

    def test_latent_step_not_actionable(self, service, two_step, requester, approvers):
        request_id = uuid.UUID(_submit(service, requester)["id"])
        with pytest.raises(NotFoundError):
            service.approve(request_id, approvers[1].id)

    def test_stranger_cannot_act(self, service, two_step, requester):
        request_id = uuid.UUID(_submit(service, requester)["id"])
        with pytest.raises(NotFoundError):
            service.approve(request_id, uuid.uuid4())

    def test_unknown_request(self, service):
        with pytest.raises(NotFoundError):
            service.approve(uuid.uuid4(), uuid.uuid4())

    def test_double_vote_is_conflict(self, service, two_step, requester, approvers):
        a, b = approvers[:2]
        request_id = uuid.UUID(_submit(service, requester)["id"])
        service.approve(request_id, a.id)
        service.approve(request_id, b.id)

        with pytest.raises(ConflictError):
            service.approve(request_id, b.id)

    def test_action_on_decided_request(self, service, two_step, requester, approvers):
        request_id = uuid.UUID(_submit(service, requester)["id"])
        service.reject(request_id, approvers[0].id)
        with pytest.raises(ConflictError):
            service.approve(request_id, approvers[1].id)

    def test_concurrent_step_update_is_conflict(self, db_session, service, two_step, requester, approvers):
        a = approvers[0]
        request = _submit(service, requester)
        request_id = uuid.UUID(request["id"])
        step_id = uuid.UUID(_step_for(request, a)["id"])

        # Another writer resolves the step behind this session's back
        db_session.execute(
            update(ApprovalStep)
            .where(ApprovalStep.id == step_id)
            .values(status="approved")
            .execution_options(synchronize_session=False)
        )
        db_session.commit()

        with pytest.raises(ConflictError):
            service.approve(request_id, a.id)

        stored = db_session.query(ApprovalRequest).filter(ApprovalRequest.id == request_id).one()
        assert stored.current_step_order == 1
        assert [h["action"] for h in service.get_request(request_id)["history"]] == ["submitted"]


class TestDelegation:

    @pytest.fixture
    def delegate(self, member_factory):
        return member_factory("approver")

    def test_delegate_acts_in_place_of_approver(self, service, two_step, requester, approvers, delegate,
                                                notifier):
        a = approvers[0]
        request_id = uuid.UUID(_submit(service, requester)["id"])

        delegated = service.delegate(request_id, a.id, delegate.id, "on leave")
        step = _step_for(delegated, a)
        assert step["status"] == "delegated"
        assert step["delegated_to"] == str(delegate.id)
        assert notifier.of_type(ApprovalEventType.DELEGATED)[0].recipients == [delegate.id]

        assert service.list_pending_for_approver(a.id) == []
        pending = service.list_pending_for_approver(delegate.id)
        assert [p["id"] for p in pending] == [str(request_id)]

        with pytest.raises(ConflictError):
            service.approve(request_id, a.id)

        result = service.approve(request_id, delegate.id)
        step = _step_for(result, a)
        assert step["status"] == "approved"
        assert step["acted_by"] == str(delegate.id)
        assert result["current_step_order"] == 2

    def test_no_redelegation(self, service, two_step, requester, approvers, delegate, member_factory):
        a = approvers[0]
        request_id = uuid.UUID(_submit(service, requester)["id"])
        service.delegate(request_id, a.id, delegate.id)

        with pytest.raises(ConflictError):
            service.delegate(request_id, delegate.id, member_factory("approver").id)

    def test_delegate_to_self(self, service, two_step, requester, approvers):
        a = approvers[0]
        request_id = uuid.UUID(_submit(service, requester)["id"])
        with pytest.raises(ValidationError):
            service.delegate(request_id, a.id, a.id)

    def test_delegate_must_be_member(self, service, two_step, requester, approvers):
        request_id = uuid.UUID(_submit(service, requester)["id"])
        with pytest.raises(ValidationError):
            service.delegate(request_id, approvers[0].id, uuid.uuid4())

    def test_delegate_cannot_hold_step_in_group(self, service, two_step, requester, approvers):
        a, b, c = approvers[:3]
        request_id = uuid.UUID(_submit(service, requester)["id"])
        service.approve(request_id, a.id)
        with pytest.raises(ValidationError):
            service.delegate(request_id, b.id, c.id)


class TestCancel:

    def test_cancel_requires_permission(self, service, two_step, requester):
        request_id = uuid.UUID(_submit(service, requester)["id"])
        with pytest.raises(PermissionDeniedError):
            service.cancel(request_id, requester.id, "no longer needed")
        assert service.get_request(request_id)["status"] == "pending"

    def test_admin_cancel(self, service, two_step, requester, member_factory, approvers, notifier):
        admin = member_factory("admin")
        request_id = uuid.UUID(_submit(service, requester)["id"])

        result = service.cancel(request_id, admin.id, "duplicate invoice")

        assert result["status"] == "cancelled"
        assert result["cancelled_by"] == str(admin.id)
        assert result["cancel_reason"] == "duplicate invoice"
        assert not any(s["is_active"] for s in result["steps"])
        assert service.list_pending_for_approver(approvers[0].id) == []
        assert notifier.of_type(ApprovalEventType.CANCELLED)[0].context == {"reason": "duplicate invoice"}

    def test_explicit_permissions(self, service, two_step, requester):
        request_id = uuid.UUID(_submit(service, requester)["id"])
        result = service.cancel(request_id, requester.id, user_permissions=["approvals:cancel"])
        assert result["status"] == "cancelled"

    def test_cancel_terminal_request(self, service, two_step, requester, approvers):
        request_id = uuid.UUID(_submit(service, requester)["id"])
        service.reject(request_id, approvers[0].id)
        with pytest.raises(TransitionError):
            service.cancel(request_id, requester.id, user_permissions=["*:*"])


class TestQueries:

    def test_get_request_includes_history(self, service, two_step, requester, approvers):
        request_id = uuid.UUID(_submit(service, requester)["id"])
        service.approve(request_id, approvers[0].id, "ok")

        history = service.get_request(request_id)["history"]

        assert [h["action"] for h in history] == ["submitted", "step.approve", "step_group.activated"]
        assert history[1]["comment"] == "ok"
        assert history[2]["extra_data"] == {"completed_step_order": 1, "step_order": 2}

    def test_get_request_other_org(self, db_session, service, two_step, requester):
        request_id = uuid.UUID(_submit(service, requester)["id"])
        other_org = factories.create_organization(db_session)
        db_session.commit()
        with pytest.raises(NotFoundError):
            ApprovalService(db_session, other_org.id).get_request(request_id)

    def test_pending_for_approver_follows_active_group(self, service, two_step, requester, approvers):
        a, b = approvers[:2]
        request_id = uuid.UUID(_submit(service, requester)["id"])

        assert len(service.list_pending_for_approver(a.id)) == 1
        assert service.list_pending_for_approver(b.id) == []

        service.approve(request_id, a.id)

        assert service.list_pending_for_approver(a.id) == []
        pending = service.list_pending_for_approver(b.id)
        assert pending[0]["step"]["approver_id"] == str(b.id)


class TestTransactionBoundaries:

    def test_failed_commit_reaches_no_sink_or_notifier(self, db_session, org, approvers, requester, monkeypatch):
        """Sinks and notifiers only ever see transitions that were committed."""
        sink_events = []
        notifier = RecordingNotifier()
        service = ApprovalService(
            db_session, org.id,
            notifier=notifier,
            audit=AuditEventEmitter(db_session, sinks=[sink_events.append]),
        )
        _setup(service, [
            {"step_order": 1, "step_type": "single", "approver_type": "user", "approver_ids": [approvers[0].id]},
        ])
        request_id = uuid.UUID(_submit(service, requester)["id"])
        sink_events.clear()
        notifier.events.clear()

        def failing_commit():
            raise OperationalError("COMMIT", {}, Exception("connection lost"))

        monkeypatch.setattr(db_session, "commit", failing_commit)
        with pytest.raises(OperationFailed):
            service.approve(request_id, approvers[0].id)
        monkeypatch.undo()

        assert sink_events == []
        assert notifier.events == []
        assert service.get_request(request_id)["status"] == "pending"

    def test_committed_transition_reaches_sinks(self, db_session, org, approvers, requester):
        sink_events = []
        service = ApprovalService(db_session, org.id, audit=AuditEventEmitter(db_session, sinks=[sink_events.append]))
        _setup(service, [
            {"step_order": 1, "step_type": "single", "approver_type": "user", "approver_ids": [approvers[0].id]},
        ])
        request_id = uuid.UUID(_submit(service, requester)["id"])

        service.approve(request_id, approvers[0].id)

        assert "approval.approved" in [e["action"] for e in sink_events]
