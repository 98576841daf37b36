"""Tests for the Celery tasks, run synchronously against the test database."""

import uuid

import pytest

from safee.core.approval import ApprovalService
from safee.core.crypto import EncryptionKeyManager
from safee.core.errors import NotFoundError, ValidationError
from safee.workers import tasks

from tests.conftest import STRONG_PASSPHRASE


@pytest.fixture
def worker_db(db_session, settings, monkeypatch):
    """Point the tasks at the test session and settings."""
    monkeypatch.setattr(tasks, "SessionLocal", lambda: db_session)
    monkeypatch.setattr(tasks, "settings", settings)
    monkeypatch.setattr(db_session, "close", lambda: None)
    return db_session


@pytest.fixture
def requester(member_factory):
    return member_factory("member")


def _configure(db_session, org, approver_ids, approver_type="user"):
    service = ApprovalService(db_session, org.id)
    workflow = service.define_workflow("Invoices", "invoice", [
        {"step_order": 1, "approver_type": approver_type, "approver_ids": approver_ids},
    ])
    service.create_rule("invoice", uuid.UUID(workflow["id"]), {"type": "amount", "operator": "gt", "value": 1000})


class TestSubmitEntityForApproval:

    def test_opens_request(self, worker_db, org, member_factory, requester):
        _configure(worker_db, org, [member_factory("approver").id])

        result = tasks.submit_entity_for_approval(
            str(org.id), "invoice", "INV-1", {"amount": 5000}, str(requester.id),
        )

        assert result["requires_approval"]
        assert result["duplicate"] is False
        request = ApprovalService(worker_db, org.id).get_request(uuid.UUID(result["request_id"]))
        assert request["requested_by"] == str(requester.id)

    def test_no_rule_matches(self, worker_db, org, member_factory):
        _configure(worker_db, org, [member_factory("approver").id])

        result = tasks.submit_entity_for_approval(str(org.id), "invoice", "INV-2", {"amount": 5})

        assert result == {"requires_approval": False, "request_id": None, "duplicate": False}

    def test_duplicate_reports_existing_request(self, worker_db, org, member_factory, requester):
        _configure(worker_db, org, [member_factory("approver").id])
        first = tasks.submit_entity_for_approval(str(org.id), "invoice", "INV-3", {"amount": 5000})

        second = tasks.submit_entity_for_approval(str(org.id), "invoice", "INV-3", {"amount": 5000})

        assert second == {"requires_approval": True, "request_id": first["request_id"], "duplicate": True}

    def test_unstaffed_workflow_is_not_retried(self, worker_db, org):
        _configure(worker_db, org, ["finance"], approver_type="role")

        with pytest.raises(ValidationError):
            tasks.submit_entity_for_approval(str(org.id), "invoice", "INV-4", {"amount": 5000})


class TestRotateOrganizationKey:

    @pytest.fixture
    def enabled(self, worker_db, settings, org):
        EncryptionKeyManager(worker_db, settings=settings).enable_encryption(org.id, STRONG_PASSPHRASE)

    def test_rotates_with_stored_passphrase(self, enabled, worker_db, settings, org, monkeypatch):
        monkeypatch.setenv("SAFEE_ORG_PASSPHRASE", STRONG_PASSPHRASE)

        result = tasks.rotate_organization_key(str(org.id))

        assert result["key_version"] == 2
        assert EncryptionKeyManager(worker_db, settings=settings).get_active_key(org.id).key_version == 2

    def test_redelivered_rotation_runs_once(self, enabled, worker_db, settings, org, monkeypatch):
        monkeypatch.setenv("SAFEE_ORG_PASSPHRASE", STRONG_PASSPHRASE)

        first = tasks.rotate_organization_key(str(org.id), expected_version=1)
        second = tasks.rotate_organization_key(str(org.id), expected_version=1)

        assert first["key_version"] == second["key_version"] == 2
        manager = EncryptionKeyManager(worker_db, settings=settings)
        assert manager.get_active_key(org.id).key_version == 2
        with pytest.raises(NotFoundError):
            manager.get_key_by_version(org.id, 3)

    def test_missing_passphrase(self, enabled, org, monkeypatch):
        monkeypatch.delenv("SAFEE_ORG_PASSPHRASE", raising=False)
        monkeypatch.delenv(f"SAFEE_ORG_PASSPHRASE_{org.id.hex.upper()}", raising=False)

        with pytest.raises(ValidationError):
            tasks.rotate_organization_key(str(org.id))
