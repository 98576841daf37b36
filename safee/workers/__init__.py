"""Celery workers for Safee Core."""

from safee.workers.tasks import (
    celery_app,
    submit_entity_for_approval,
    rotate_organization_key,
)

__all__ = [
    "celery_app",
    "submit_entity_for_approval",
    "rotate_organization_key",
]
