"""Celery tasks for background approval and key operations.

Provides async task processing for:
- Entity submissions raised by other services
- Scheduled organization key rotation
"""

from typing import Any, Dict, Optional
from uuid import UUID
import logging

from celery import Celery, shared_task

from safee.core.approval import ApprovalService
from safee.core.config import get_settings
from safee.core.crypto import EncryptionKeyManager
from safee.core.errors import ConflictError, SafeeError
from safee.core.secrets import get_secrets_manager
from safee.db.session import SessionLocal
from safee.services.notifications import NotificationService

logger = logging.getLogger(__name__)
settings = get_settings()

# Initialize Celery
celery_app = Celery(
    'safee',
    broker=settings.celery_broker,
    backend=settings.celery_backend,
)

celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,
    task_routes={
        'safee.workers.tasks.rotate_organization_key': {'queue': 'keys'},
    },
    task_default_queue='default',
)


@shared_task(bind=True, max_retries=3, default_retry_delay=5)
def submit_entity_for_approval(
    self,
    org_id: str,
    entity_type: str,
    entity_id: str,
    attributes: Optional[Dict[str, Any]] = None,
    requested_by: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Submit an entity for approval from a background job.

    Returns:
        ``{"requires_approval": bool, "request_id": str | None}``; a
        duplicate submission reports the already-pending request.
    """
    db = SessionLocal()
    try:
        service = ApprovalService(db, UUID(org_id), notifier=NotificationService(settings))
        try:
            result = service.submit_for_approval(
                entity_type,
                entity_id,
                attributes or {},
                UUID(requested_by) if requested_by else None,
            )
        except ConflictError as e:
            if "request_id" not in e.details:
                raise self.retry(exc=e)
            logger.info(f"{entity_type} {entity_id} already pending as {e.details['request_id']}")
            return {"requires_approval": True, "request_id": e.details["request_id"], "duplicate": True}

        request_id = result.request["id"] if result.request else None
        return {"requires_approval": result.requires_approval, "request_id": request_id, "duplicate": False}

    except SafeeError as e:
        if e.retryable:
            logger.warning(f"Submission of {entity_type} {entity_id} failed, retrying: {e.message}")
            raise self.retry(exc=e)
        logger.error(f"Submission of {entity_type} {entity_id} failed: {e.message}")
        raise

    finally:
        db.close()


@shared_task(bind=True, max_retries=3, default_retry_delay=30)
def rotate_organization_key(
    self,
    org_id: str,
    rotated_by: Optional[str] = None,
    expected_version: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Rotate an organization's key using the passphrase from the secrets store.

    ``expected_version`` is the version to rotate away from. When omitted,
    the active version at first execution is pinned and carried into
    retries, so one job creates at most one new version.

    Returns:
        The active key's public attributes after the job
    """
    db = SessionLocal()
    try:
        manager = EncryptionKeyManager(
            db,
            settings=settings,
            passphrase_provider=get_secrets_manager().get_passphrase,
        )
        if expected_version is None:
            active = manager.get_active_key(UUID(org_id))
            expected_version = active.key_version if active else None
        result = manager.rotate_key(
            UUID(org_id),
            rotated_by=UUID(rotated_by) if rotated_by else None,
            expected_version=expected_version,
        )
        logger.info(f"Key for organization {org_id} is at version {result['key_version']}")
        return result

    except SafeeError as e:
        if e.retryable:
            raise self.retry(exc=e, kwargs={
                "org_id": org_id,
                "rotated_by": rotated_by,
                "expected_version": expected_version,
            })
        logger.error(f"Key rotation for organization {org_id} failed: {e.message}")
        raise

    finally:
        db.close()
