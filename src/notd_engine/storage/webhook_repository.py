"""Repository for webhook subscriptions and their delivery log."""
import json
import logging
from typing import Any, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from notd_engine.exceptions import WebhookNotFoundError
from notd_engine.models.db_models import DBWebhook, DBWebhookEvent, _utcnow
from notd_engine.models.schema import (
    WILDCARD,
    EntityType,
    EventType,
    Webhook,
    WebhookEvent,
)

logger = logging.getLogger(__name__)


class WebhookRepository:
    """Webhook rows within a caller-owned session.

    Subscriptions are registered by the host application. The engine
    writes only verification state and the delivery log.
    """

    def __init__(self, session: Session):
        self.session = session

    def get(self, webhook_id: int) -> Optional[Webhook]:
        db_hook = self.session.get(DBWebhook, webhook_id)
        return self._to_model(db_hook) if db_hook is not None else None

    def get_or_raise(self, webhook_id: int) -> Webhook:
        webhook = self.get(webhook_id)
        if webhook is None:
            raise WebhookNotFoundError(webhook_id)
        return webhook

    def find_subscribers(
        self,
        entity_type: EntityType,
        event_type: EventType,
        property_name: Optional[str] = None,
    ) -> List[Webhook]:
        """Active, verified webhooks interested in an event.

        ``property_name`` narrows by the webhook's property filter; entity
        events pass None and ignore it.
        """
        db_hooks = self.session.scalars(
            select(DBWebhook)
            .where(DBWebhook.active.is_(True))
            .where(DBWebhook.verified.is_(True))
            .where(DBWebhook.entity_type == EntityType(entity_type).value)
            .order_by(DBWebhook.id)
        ).all()

        subscribers = []
        for db_hook in db_hooks:
            try:
                webhook = self._to_model(db_hook)
            except ValueError as e:
                logger.warning(f"Skipping webhook {db_hook.id} with invalid configuration: {e}")
                continue
            if not webhook.subscribes_to(event_type):
                continue
            if property_name is not None and not webhook.watches(property_name):
                continue
            subscribers.append(webhook)
        return subscribers

    def record_event(
        self,
        webhook_id: int,
        event_type: str,
        payload: str,
        response_code: int,
        response_body: Optional[str],
        success: bool,
    ) -> int:
        """Append a delivery attempt to the log."""
        db_event = DBWebhookEvent(
            webhook_id=webhook_id,
            event_type=event_type,
            payload=payload,
            response_code=response_code,
            response_body=response_body,
            success=success,
            created_at=_utcnow(),
        )
        self.session.add(db_event)
        self.session.flush()
        return db_event.id

    def mark_triggered(self, webhook_id: int) -> None:
        db_hook = self.session.get(DBWebhook, webhook_id)
        if db_hook is None:
            raise WebhookNotFoundError(webhook_id)
        db_hook.last_triggered = _utcnow()
        self.session.flush()

    def set_verified(self, webhook_id: int, verified: bool) -> None:
        db_hook = self.session.get(DBWebhook, webhook_id)
        if db_hook is None:
            raise WebhookNotFoundError(webhook_id)
        now = _utcnow()
        db_hook.verified = verified
        db_hook.last_verified = now
        db_hook.updated_at = now
        self.session.flush()

    def history(
        self, webhook_id: int, page: int = 1, limit: int = 20
    ) -> Tuple[List[WebhookEvent], int]:
        """Delivery log for a webhook, newest first.

        Returns:
            Tuple of (events on the requested page, total event count).
        """
        if self.session.get(DBWebhook, webhook_id) is None:
            raise WebhookNotFoundError(webhook_id)
        page = max(page, 1)
        limit = max(limit, 1)

        total = self.session.scalar(
            select(func.count(DBWebhookEvent.id)).where(
                DBWebhookEvent.webhook_id == webhook_id
            )
        ) or 0
        db_events = self.session.scalars(
            select(DBWebhookEvent)
            .where(DBWebhookEvent.webhook_id == webhook_id)
            .order_by(DBWebhookEvent.created_at.desc(), DBWebhookEvent.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).all()
        events = [
            WebhookEvent(
                id=e.id,
                webhook_id=e.webhook_id,
                event_type=e.event_type,
                payload=e.payload,
                response_code=e.response_code,
                response_body=e.response_body,
                success=bool(e.success),
                created_at=e.created_at,
            )
            for e in db_events
        ]
        return events, total

    @staticmethod
    def _to_model(db_hook: DBWebhook) -> Webhook:
        property_names: Any = db_hook.property_names
        if isinstance(property_names, str) and property_names != WILDCARD:
            # Older rows may hold a JSON-encoded list as text
            try:
                property_names = json.loads(property_names)
            except json.JSONDecodeError:
                property_names = [property_names]
        return Webhook(
            id=db_hook.id,
            url=db_hook.url,
            entity_type=db_hook.entity_type,
            property_names=property_names,
            event_types=db_hook.event_types or [EventType.PROPERTY_CHANGE.value],
            secret=db_hook.secret,
            active=bool(db_hook.active),
            verified=bool(db_hook.verified),
            last_verified=db_hook.last_verified,
            last_triggered=db_hook.last_triggered,
            created_at=db_hook.created_at,
        )

