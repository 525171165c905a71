"""Persists extracted properties under the weight-driven update policy."""
import logging
from typing import Dict, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from notd_engine.config import EngineConfig, UpdateBehavior
from notd_engine.config import config as default_config
from notd_engine.exceptions import EntityNotFoundError, PropertyPersistenceError
from notd_engine.models.db_models import get_session_factory, init_db
from notd_engine.models.schema import (
    EntityType,
    ExtractedProperty,
    PersistedProperty,
    PropertyChange,
)
from notd_engine.observability import timed_operation
from notd_engine.services.trigger_dispatcher import TriggerDispatcher
from notd_engine.services.webhook_notifier import WebhookNotifier
from notd_engine.storage.definition_store import PropertyDefinitionStore
from notd_engine.storage.property_repository import PropertyRepository, to_persisted

logger = logging.getLogger(__name__)


def group_by_name(
    properties: Iterable[ExtractedProperty],
) -> Dict[str, List[ExtractedProperty]]:
    """Group properties by name, keeping first-seen name order."""
    groups: Dict[str, List[ExtractedProperty]] = {}
    for prop in properties:
        groups.setdefault(prop.name, []).append(prop)
    return groups


class PropertyReconciler:
    """Writes a batch of extracted properties for one entity.

    Per name group:

    - **append**: every item is inserted with the group weight, nothing is
      deleted
    - **replace**: the active rows for the name are deleted, then every
      item is inserted with its own weight

    The hard-coded trigger runs once per group, right after the group's
    first row is written. Webhooks for the group are notified only after
    the batch commits.
    """

    def __init__(
        self,
        session_factory=None,
        config: Optional[EngineConfig] = None,
        dispatcher: Optional[TriggerDispatcher] = None,
    ):
        self.config = config or default_config
        if session_factory is None:
            session_factory = get_session_factory(init_db())
        self.session_factory = session_factory
        self._owns_notifier = dispatcher is None
        if dispatcher is None:
            dispatcher = TriggerDispatcher(notifier=WebhookNotifier(self.config))
        self.dispatcher = dispatcher

    def close(self) -> None:
        """Release the webhook client when the reconciler created it."""
        if self._owns_notifier:
            self.dispatcher.notifier.close()

    def save(
        self,
        properties: Iterable[ExtractedProperty],
        entity_type: EntityType,
        entity_id: int,
        session: Optional[Session] = None,
        changes: Optional[List[PropertyChange]] = None,
    ) -> List[PersistedProperty]:
        """Persist ``properties`` for an entity atomically.

        Args:
            properties: Extracted properties, usually from the pipeline.
            entity_type: Owner entity type.
            entity_id: Owner entity id.
            session: Caller's session. When given, the reconciler only
                flushes and the caller commits or rolls back; otherwise a
                session is opened and committed here.
            changes: With a caller session, collects one change per name
                group. The caller passes them to
                ``TriggerDispatcher.notify_committed`` after its commit.
                Without a session the reconciler notifies webhooks itself.

        Returns:
            The rows written, in write order.

        Raises:
            PropertyPersistenceError: If any write fails.
            EntityNotFoundError: If the entity does not exist.
        """
        entity_type = EntityType.parse(entity_type)
        properties = list(properties)

        if session is not None:
            pending = [] if changes is None else changes
            persisted = self._save(session, properties, entity_type, entity_id, pending)
            if changes is None and pending and self.dispatcher.notifier is not None:
                logger.warning(
                    f"No change list given with caller session; webhooks for "
                    f"{len(pending)} properties on {entity_type.value} "
                    f"{entity_id} will not be notified"
                )
            return persisted

        collected: List[PropertyChange] = []
        with self.session_factory() as own_session:
            try:
                persisted = self._save(
                    own_session, properties, entity_type, entity_id, collected
                )
                own_session.commit()
            except Exception:
                own_session.rollback()
                raise
        self.dispatcher.notify_committed(self.session_factory, collected)
        return persisted

    def _save(
        self,
        session: Session,
        properties: List[ExtractedProperty],
        entity_type: EntityType,
        entity_id: int,
        changes: List[PropertyChange],
    ) -> List[PersistedProperty]:
        repository = PropertyRepository(session)
        definitions = PropertyDefinitionStore(session, self.config)

        with timed_operation(
            "save_properties", entity_type=entity_type.value, entity_id=entity_id
        ) as op:
            if not repository.entity_exists(entity_type, entity_id):
                raise EntityNotFoundError(entity_type.value, entity_id)

            persisted: List[PersistedProperty] = []
            for name, items in group_by_name(properties).items():
                group_weight = items[0].weight
                if group_weight is None:
                    group_weight = self.config.default_weight
                behavior = self.config.update_behavior_for(group_weight)

                try:
                    if behavior == UpdateBehavior.REPLACE:
                        deleted = repository.delete_active(entity_type, entity_id, name)
                        if deleted:
                            logger.debug(
                                f"Replaced {deleted} '{name}' rows on "
                                f"{entity_type.value} {entity_id}"
                            )

                    for index, item in enumerate(items):
                        if behavior == UpdateBehavior.APPEND or item.weight is None:
                            weight = group_weight
                        else:
                            weight = item.weight
                        db_prop = repository.insert(
                            entity_type,
                            entity_id,
                            name,
                            item.value,
                            weight,
                            internal=definitions.resolve_internal(name, item.internal),
                        )
                        persisted.append(to_persisted(db_prop))
                        if index == 0:
                            changes.append(
                                self.dispatcher.dispatch(
                                    session, entity_type, entity_id, name, db_prop.value
                                )
                            )
                except SQLAlchemyError as e:
                    logger.error(
                        f"Failed to save property '{name}' for "
                        f"{entity_type.value} {entity_id}: {e}"
                    )
                    raise PropertyPersistenceError(
                        f"Failed to save property '{name}'",
                        entity_type=entity_type.value,
                        entity_id=entity_id,
                        property_name=name,
                        original_error=e,
                    ) from e

            op["property_count"] = len(persisted)

        return persisted
