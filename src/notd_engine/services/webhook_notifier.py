"""Signs and delivers webhook events, logging every attempt."""
import hashlib
import hmac
import json
import logging
import time
from typing import Any, Dict, Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from notd_engine.config import EngineConfig
from notd_engine.config import config as default_config
from notd_engine.models.schema import DeliveryResult, EntityType, EventType, Webhook
from notd_engine.observability import timed_operation
from notd_engine.storage.webhook_repository import WebhookRepository

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Notd-Signature"
EVENT_HEADER = "X-Notd-Event"

DISABLED_MESSAGE = "Webhook dispatch failed: Webhooks are disabled by configuration."


def serialize_payload(payload: Dict[str, Any]) -> str:
    """Compact JSON body; the exact bytes that are signed are the bytes sent."""
    return json.dumps(payload, separators=(",", ":"), default=str)


def sign_payload(body: str, secret: str) -> str:
    """Hex HMAC-SHA256 of ``body`` keyed with the webhook secret."""
    return hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()


def build_payload(
    webhook_id: int,
    event_type: EventType,
    data: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Wire format shared by every event type."""
    payload: Dict[str, Any] = {
        "event": EventType(event_type).value,
        "webhook_id": webhook_id,
        "timestamp": int(time.time()),
    }
    if data is not None:
        payload["data"] = data
    return payload


class WebhookNotifier:
    """HTTP delivery of webhook events.

    Deliveries are blocking POSTs bounded by ``config.webhook_timeout``.
    Transport failures are reported as status 0, never raised.
    """

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or default_config
        self._client = httpx.Client(
            timeout=self.config.webhook_timeout,
            headers={"User-Agent": self.config.webhook_user_agent},
        )

    def dispatch_event(
        self,
        session: Session,
        webhook: Webhook,
        event_type: EventType,
        payload: Dict[str, Any],
        is_verification: bool = False,
    ) -> DeliveryResult:
        """Sign and POST ``payload`` to the webhook, then log the attempt.

        Args:
            session: Session used to write the delivery log.
            webhook: Target webhook.
            event_type: Value sent in the event header.
            payload: JSON-serialisable event payload.
            is_verification: Verification attempts only count as a trigger
                when they succeed.

        Returns:
            DeliveryResult(success, status_code, response_body)
        """
        if not self.config.webhooks_enabled:
            logger.debug(f"Webhooks disabled, not delivering to webhook {webhook.id}")
            return DeliveryResult(False, 0, DISABLED_MESSAGE)

        event_type = EventType(event_type)
        body = serialize_payload(payload)
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self.config.webhook_user_agent,
            SIGNATURE_HEADER: sign_payload(body, webhook.secret),
            EVENT_HEADER: event_type.value,
        }

        with timed_operation(
            "webhook_delivery", key=webhook.id, event=event_type.value
        ) as op:
            try:
                response = self._client.post(webhook.url, content=body, headers=headers)
                status_code = response.status_code
                response_body = response.text
            except (httpx.HTTPError, httpx.InvalidURL) as e:
                logger.warning(f"Webhook {webhook.id} delivery to {webhook.url} failed: {e}")
                status_code = 0
                response_body = f"Transport error: {e}"
            success = 200 <= status_code < 300
            op["status_code"] = status_code
            if not success:
                op["error"] = f"HTTP {status_code}" if status_code else response_body

        self._log_attempt(
            session, webhook, event_type, body, status_code, response_body, success
        )
        if not success and not is_verification:
            logger.warning(
                f"Webhook {webhook.id} returned {status_code} for '{event_type.value}'"
            )
        return DeliveryResult(success, status_code, response_body)

    def send_test(self, session: Session, webhook_id: int) -> DeliveryResult:
        """Send a ``test`` event to a webhook regardless of its verified state."""
        webhook = WebhookRepository(session).get_or_raise(webhook_id)
        payload = build_payload(
            webhook.id,
            EventType.TEST,
            {
                "message": "This is a test webhook from Notd.",
                "entity_type": webhook.entity_type.value,
            },
        )
        return self.dispatch_event(session, webhook, EventType.TEST, payload)

    def verify(self, session: Session, webhook_id: int) -> DeliveryResult:
        """Send a ``verification`` event; the webhook's verified flag follows the outcome."""
        repository = WebhookRepository(session)
        webhook = repository.get_or_raise(webhook_id)
        payload = build_payload(webhook.id, EventType.VERIFICATION)
        result = self.dispatch_event(
            session, webhook, EventType.VERIFICATION, payload, is_verification=True
        )
        if not self.config.webhooks_enabled:
            return result
        repository.set_verified(webhook.id, result.success)
        logger.info(f"Webhook {webhook.id} verification {'succeeded' if result.success else 'failed'}")
        return result

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def _log_attempt(
        self,
        session: Session,
        webhook: Webhook,
        event_type: EventType,
        body: str,
        status_code: int,
        response_body: str,
        success: bool,
    ) -> None:
        """Append to the delivery log inside a savepoint.

        A logging failure is reported but never reaches the caller.
        """
        repository = WebhookRepository(session)
        try:
            with session.begin_nested():
                repository.record_event(
                    webhook.id, event_type.value, body, status_code, response_body, success
                )
                # A failed verification never counts as a trigger
                if success:
                    repository.mark_triggered(webhook.id)
        except SQLAlchemyError as e:
            logger.error(f"Failed to log delivery for webhook {webhook.id}: {e}")


def entity_event_data(entity_type: EntityType, entity_id: int, **extra: Any) -> Dict[str, Any]:
    """``data`` member of an event payload."""
    data: Dict[str, Any] = {"entity_type": EntityType(entity_type).value, "entity_id": entity_id}
    data.update(extra)
    return data
