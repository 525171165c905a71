"""Side effects fired when specific property names are written."""
import logging
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from notd_engine.exceptions import TriggerError, WebhookDeliveryError
from notd_engine.models.db_models import DBNote, DBPage, _utcnow
from notd_engine.models.schema import (
    ENTITY_EVENT_TYPES,
    EntityType,
    EventType,
    PropertyChange,
)
from notd_engine.services.webhook_notifier import (
    WebhookNotifier,
    build_payload,
    entity_event_data,
)
from notd_engine.storage.webhook_repository import WebhookRepository

logger = logging.getLogger(__name__)

TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
FALSE_VALUES = frozenset({"0", "false", "no", "off", ""})

# (session, entity_id, value) -> None
TriggerHandler = Callable[[Session, int, Optional[str]], None]


def parse_bool(value: Any) -> Optional[bool]:
    """Loose boolean parse; None when the value is not recognisably boolean."""
    if isinstance(value, bool):
        return value
    text = "" if value is None else str(value).strip().lower()
    if text in TRUE_VALUES:
        return True
    if text in FALSE_VALUES:
        return False
    return None


def set_note_internal(session: Session, note_id: int, value: Optional[str]) -> None:
    """Mirror the ``internal`` property onto ``notes.internal``."""
    flag = parse_bool(value)
    if flag is None:
        logger.debug(f"Ignoring non-boolean internal value {value!r} for note {note_id}")
        return
    note = session.get(DBNote, note_id)
    if note is None:
        raise TriggerError("Note not found", property_name="internal", entity_id=note_id)
    note.internal = flag
    note.updated_at = _utcnow()
    session.flush()


def revalidate_page_alias(session: Session, page_id: int, value: Optional[str]) -> None:
    """Mirror the ``alias`` property onto ``pages.alias``.

    The alias is cleared when it is empty, names the page itself or names
    no existing page.
    """
    page = session.get(DBPage, page_id)
    if page is None:
        raise TriggerError("Page not found", property_name="alias", entity_id=page_id)

    alias = (value or "").strip()
    if not alias or alias.lower() == page.name.lower():
        page.alias = None
    else:
        target = session.scalar(
            select(DBPage.id).where(func.lower(DBPage.name) == alias.lower())
        )
        if target is None:
            logger.info(f"Clearing alias of page {page_id}: no page named '{alias}'")
            page.alias = None
        else:
            page.alias = alias
    page.updated_at = _utcnow()
    session.flush()


DEFAULT_TRIGGER_HANDLERS: Dict[Tuple[EntityType, str], TriggerHandler] = {
    (EntityType.NOTE, "internal"): set_note_internal,
    (EntityType.PAGE, "alias"): revalidate_page_alias,
}


class TriggerDispatcher:
    """Runs hard-coded triggers for property writes and notifies webhooks.

    Triggers run inside the write transaction. Webhooks for property
    changes are only contacted through ``notify_committed``, after the
    writes are committed. Neither a failing trigger nor a failing
    delivery ever reaches the caller: both are logged and the save
    continues.
    """

    def __init__(
        self,
        notifier: Optional[WebhookNotifier] = None,
        handlers: Optional[Dict[Tuple[EntityType, str], TriggerHandler]] = None,
    ):
        self.notifier = notifier
        self.handlers = dict(DEFAULT_TRIGGER_HANDLERS if handlers is None else handlers)

    def dispatch(
        self,
        session: Session,
        entity_type: EntityType,
        entity_id: int,
        name: str,
        value: Optional[str],
    ) -> PropertyChange:
        """Run the trigger for one ``(entity, name)`` write.

        Returns the change to pass to ``notify_committed`` once the
        surrounding transaction commits.
        """
        entity_type = EntityType(entity_type)
        handler = self.handlers.get((entity_type, name))
        if handler is not None:
            self._run_handler(session, handler, entity_type, entity_id, name, value)

        return PropertyChange(entity_type, entity_id, name, value)

    def notify_committed(self, session_factory, changes: Iterable[PropertyChange]) -> None:
        """Send ``property_change`` webhooks for committed writes.

        Delivery log rows are committed per change in a session of their
        own, so every attempt that reached an endpoint is recorded.
        """
        changes = list(changes)
        if not changes or not self._webhooks_enabled():
            return
        with session_factory() as session:
            for change in changes:
                data = entity_event_data(
                    change.entity_type,
                    change.entity_id,
                    property_name=change.name,
                    value=change.value,
                )
                try:
                    self._notify(
                        session,
                        change.entity_type,
                        EventType.PROPERTY_CHANGE,
                        data,
                        property_name=change.name,
                    )
                    session.commit()
                except SQLAlchemyError as e:
                    session.rollback()
                    logger.error(
                        f"Failed to record webhook deliveries for "
                        f"{change.entity_type.value}.{change.name} on "
                        f"{change.entity_type.value} {change.entity_id}: {e}"
                    )

    def dispatch_entity_event(
        self,
        session: Session,
        entity_type: EntityType,
        entity_id: int,
        event_type: EventType,
    ) -> None:
        """Notify webhooks subscribed to an entity lifecycle event."""
        entity_type = EntityType(entity_type)
        event_type = EventType(event_type)
        if event_type not in ENTITY_EVENT_TYPES:
            raise ValueError(f"Not an entity event: {event_type.value}")
        self._notify(session, entity_type, event_type, entity_event_data(entity_type, entity_id))

    def _webhooks_enabled(self) -> bool:
        return self.notifier is not None and self.notifier.config.webhooks_enabled

    def _run_handler(
        self,
        session: Session,
        handler: TriggerHandler,
        entity_type: EntityType,
        entity_id: int,
        name: str,
        value: Optional[str],
    ) -> None:
        try:
            with session.begin_nested():
                handler(session, entity_id, value)
        except Exception as e:
            logger.error(
                f"Trigger for {entity_type.value}.{name} failed on "
                f"{entity_type.value} {entity_id}: {e}"
            )

    def _notify(
        self,
        session: Session,
        entity_type: EntityType,
        event_type: EventType,
        data: Dict[str, Any],
        property_name: Optional[str] = None,
    ) -> None:
        if not self._webhooks_enabled():
            return
        webhooks = WebhookRepository(session).find_subscribers(
            entity_type, event_type, property_name=property_name
        )
        for webhook in webhooks:
            payload = build_payload(webhook.id, event_type, data)
            try:
                result = self.notifier.dispatch_event(session, webhook, event_type, payload)
            except Exception as e:
                error = WebhookDeliveryError(
                    "Webhook dispatch failed",
                    webhook_id=webhook.id,
                    event_type=event_type.value,
                    original_error=e,
                )
                logger.error(str(error))
                continue
            if not result.success:
                logger.warning(
                    f"Webhook {webhook.id} delivery unsuccessful "
                    f"(status {result.status_code}) for '{event_type.value}'"
                )
