"""Notification service for approval events.

Renders a Jinja2 subject/message per event type and delivers a JSON
payload to the configured webhook URLs. Delivery failures are logged and
reported in the returned results; they never propagate to the engine.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx
from jinja2 import Environment, StrictUndefined

from safee.core.approval.events import ApprovalEvent, ApprovalEventType
from safee.core.config import Settings, get_settings
from safee.db.base import utcnow

logger = logging.getLogger(__name__)


MESSAGE_TEMPLATES = {
    ApprovalEventType.PENDING: {
        "subject": "[Safee] Approval needed: {{ entity_type }} {{ entity_id }}",
        "body": (
            "{{ entity_type | title }} {{ entity_id }} is waiting for your approval"
            "{% if step_order %} (step {{ step_order }}){% endif %}.\n"
            "Review at: {{ review_url }}"
        ),
    },
    ApprovalEventType.APPROVED: {
        "subject": "[Safee] Approved: {{ entity_type }} {{ entity_id }}",
        "body": "{{ entity_type | title }} {{ entity_id }} has been approved.\nDetails: {{ review_url }}",
    },
    ApprovalEventType.REJECTED: {
        "subject": "[Safee] Rejected: {{ entity_type }} {{ entity_id }}",
        "body": (
            "{{ entity_type | title }} {{ entity_id }} has been rejected."
            "{% if comments %}\nReason: {{ comments }}{% endif %}\n"
            "Details: {{ review_url }}"
        ),
    },
    ApprovalEventType.CANCELLED: {
        "subject": "[Safee] Cancelled: {{ entity_type }} {{ entity_id }}",
        "body": (
            "The approval of {{ entity_type }} {{ entity_id }} was cancelled."
            "{% if reason %}\nReason: {{ reason }}{% endif %}"
        ),
    },
    ApprovalEventType.DELEGATED: {
        "subject": "[Safee] Approval delegated to you: {{ entity_type }} {{ entity_id }}",
        "body": (
            "An approval step for {{ entity_type }} {{ entity_id }} was delegated to you."
            "{% if comments %}\nNote: {{ comments }}{% endif %}\n"
            "Review at: {{ review_url }}"
        ),
    },
}


@dataclass
class DeliveryResult:
    url: str
    event_type: str
    status: str  # sent, failed
    attempts: int
    status_code: Optional[int] = None
    error: Optional[str] = None


class NotificationService:
    """Delivers approval events to webhook endpoints."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        webhook_urls: Optional[List[str]] = None,
        client: Optional[httpx.Client] = None,
        retry_backoff: float = 0.5,
    ):
        """
        Args:
            settings: Application settings (defaults to get_settings())
            webhook_urls: Override for settings.notification_webhook_list
            client: httpx client to reuse (tests pass one with a MockTransport)
            retry_backoff: Seconds to wait per failed attempt before retrying
        """
        self.settings = settings or get_settings()
        self.webhook_urls = (
            webhook_urls if webhook_urls is not None else self.settings.notification_webhook_list
        )
        self._client = client
        self.retry_backoff = retry_backoff
        self._env = Environment(undefined=StrictUndefined, autoescape=False)

    def notify(self, event: ApprovalEvent) -> List[DeliveryResult]:
        """Render and deliver an event to every configured webhook."""
        if not self.webhook_urls:
            logger.debug(f"No webhooks configured, skipping {event.event_type.value}")
            return []

        payload = self.build_payload(event)
        results = []
        client = self._client or httpx.Client(timeout=self.settings.webhook_timeout)
        try:
            for url in self.webhook_urls:
                results.append(self._deliver_webhook(client, url, event, payload))
        finally:
            if self._client is None:
                client.close()
        return results

    def render(self, event: ApprovalEvent) -> Dict[str, str]:
        """Render the subject and message for an event."""
        template = MESSAGE_TEMPLATES[event.event_type]
        context = self._build_context(event)
        return {
            "subject": self._env.from_string(template["subject"]).render(**context),
            "message": self._env.from_string(template["body"]).render(**context),
        }

    def build_payload(self, event: ApprovalEvent) -> Dict[str, Any]:
        """Build the webhook payload for an event."""
        rendered = self.render(event)
        payload = event.to_dict()
        payload.update({
            "timestamp": utcnow().isoformat(),
            "subject": rendered["subject"],
            "message": rendered["message"],
        })
        return payload

    def _build_context(self, event: ApprovalEvent) -> Dict[str, Any]:
        base_url = self.settings.app_base_url.rstrip("/")
        context = {
            "step_order": None,
            "comments": None,
            "reason": None,
        }
        context.update(event.context)
        context.update({
            "entity_type": event.entity_type,
            "entity_id": event.entity_id,
            "review_url": f"{base_url}/approvals/{event.request_id}",
        })
        return context

    def _deliver_webhook(
        self,
        client: httpx.Client,
        url: str,
        event: ApprovalEvent,
        payload: Dict[str, Any],
    ) -> DeliveryResult:
        """POST the payload, retrying transport errors and 5xx responses."""
        max_attempts = max(1, self.settings.webhook_max_retries)
        error = None
        status_code = None

        for attempt in range(1, max_attempts + 1):
            try:
                response = client.post(url, json=payload, headers={"Content-Type": "application/json"})
                status_code = response.status_code
                response.raise_for_status()
                return DeliveryResult(url, event.event_type.value, "sent", attempt, status_code)
            except httpx.HTTPStatusError as e:
                error = f"HTTP {e.response.status_code}"
                if e.response.status_code < 500:
                    break
            except httpx.HTTPError as e:
                error = str(e) or e.__class__.__name__

            logger.warning(f"Webhook delivery to {url} failed (attempt {attempt}/{max_attempts}): {error}")
            if attempt < max_attempts and self.retry_backoff:
                time.sleep(self.retry_backoff * attempt)

        logger.error(f"Giving up on webhook {url} for {event.event_type.value}: {error}")
        return DeliveryResult(url, event.event_type.value, "failed", attempt, status_code, error)
