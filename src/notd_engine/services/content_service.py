"""Service layer: the entry points note and page save handlers call."""
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from notd_engine.config import EngineConfig
from notd_engine.config import config as default_config
from notd_engine.models.db_models import (
    DBProperty,
    create_db_engine,
    get_session_factory,
    init_db,
)
from notd_engine.models.schema import (
    DeliveryResult,
    EntityType,
    EventType,
    ExtractedProperty,
    PersistedProperty,
    ProcessResult,
    PropertyChange,
    PropertyDefinition,
    WebhookEvent,
)
from notd_engine.observability import traced
from notd_engine.patterns.pipeline import PatternPipeline, PipelineConfig
from notd_engine.services.property_reconciler import PropertyReconciler
from notd_engine.services.trigger_dispatcher import TriggerDispatcher
from notd_engine.services.webhook_notifier import WebhookNotifier
from notd_engine.storage.definition_store import PropertyDefinitionStore
from notd_engine.storage.property_repository import PropertyRepository
from notd_engine.storage.webhook_repository import WebhookRepository

logger = logging.getLogger(__name__)


@dataclass
class SaveOutcome:
    """Pipeline result plus the rows written for it."""

    result: ProcessResult
    persisted: List[PersistedProperty] = field(default_factory=list)


def build_read_model(
    rows: Iterable[DBProperty],
    config: EngineConfig,
    include_internal: bool = False,
) -> Dict[str, Any]:
    """Group property rows by name for API responses.

    By default internal rows and rows whose weight is hidden in view mode
    are left out, and a name with a single remaining value collapses to
    that value. With ``include_internal`` every name maps to a list of
    ``{value, internal, weight, created_at}``.
    """
    grouped: Dict[str, List[DBProperty]] = {}
    for row in rows:
        if not include_internal and (
            row.internal or not config.is_visible_in_view_mode(row.weight)
        ):
            continue
        grouped.setdefault(row.name, []).append(row)

    model: Dict[str, Any] = {}
    for name, named_rows in grouped.items():
        if not include_internal and len(named_rows) == 1:
            model[name] = named_rows[0].value
            continue
        model[name] = [
            {
                "value": row.value,
                "internal": bool(row.internal),
                "weight": row.weight,
                "created_at": row.created_at.isoformat() if row.created_at else None,
            }
            for row in named_rows
        ]
    return model


class ContentService:
    """Content processing, property persistence and webhook operations."""

    def __init__(
        self,
        engine: Optional[Engine] = None,
        config: Optional[EngineConfig] = None,
        pipeline_config: Optional[PipelineConfig] = None,
        notifier: Optional[WebhookNotifier] = None,
    ):
        """Initialize the service.

        Args:
            engine: Pre-configured SQLAlchemy engine. Created from
                ``config.database_path`` if None. Tables are created on
                demand either way.
            config: Engine configuration. The global config if None.
            pipeline_config: Handler set. The built-in handlers if None.
            notifier: Webhook notifier. Created from config if None.
        """
        self.config = config or default_config
        self.engine = init_db(engine or create_db_engine(self.config.get_db_url()))
        self.session_factory = get_session_factory(self.engine)
        self.pipeline = PatternPipeline(
            pipeline_config or PipelineConfig.default(self.config)
        )
        self.notifier = notifier or WebhookNotifier(self.config)
        self.dispatcher = TriggerDispatcher(notifier=self.notifier)
        self.reconciler = PropertyReconciler(
            self.session_factory, config=self.config, dispatcher=self.dispatcher
        )

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        with self.session_factory() as session:
            try:
                yield session
                session.commit()
            except Exception:
                session.rollback()
                raise

    # =========================================================================
    # Content
    # =========================================================================

    def process_content(
        self,
        content: str,
        entity_type: EntityType,
        entity_id: int,
        context: Optional[Dict[str, Any]] = None,
    ) -> ProcessResult:
        """Run the pattern pipeline without persisting anything."""
        return self.pipeline.process(
            content, EntityType.parse(entity_type), entity_id, context
        )

    @traced("save_content")
    def save_content(
        self,
        content: str,
        entity_type: EntityType,
        entity_id: int,
        context: Optional[Dict[str, Any]] = None,
    ) -> SaveOutcome:
        """Extract and persist the properties of ``content`` in one transaction.

        Webhooks are notified once the transaction has committed.

        Raises:
            PatternProcessingError: A handler failed; nothing is written.
            PropertyPersistenceError: A write failed; the transaction is
                rolled back.
        """
        entity_type = EntityType.parse(entity_type)
        changes: List[PropertyChange] = []
        with self._transaction() as session:
            result = self.pipeline.process(content, entity_type, entity_id, context)
            persisted = self.reconciler.save(
                result.properties,
                entity_type,
                entity_id,
                session=session,
                changes=changes,
            )
        self.dispatcher.notify_committed(self.session_factory, changes)
        logger.info(
            f"Saved {len(persisted)} properties for {entity_type.value} {entity_id}"
        )
        return SaveOutcome(result=result, persisted=persisted)

    def save_properties(
        self,
        properties: Iterable[ExtractedProperty],
        entity_type: EntityType,
        entity_id: int,
    ) -> List[PersistedProperty]:
        """Persist properties supplied directly by a caller."""
        return self.reconciler.save(properties, EntityType.parse(entity_type), entity_id)

    @traced("get_properties")
    def get_properties(
        self,
        entity_type: EntityType,
        entity_id: int,
        include_internal: bool = False,
    ) -> Dict[str, Any]:
        """Property read model for an entity (see ``build_read_model``)."""
        entity_type = EntityType.parse(entity_type)
        with self.session_factory() as session:
            rows = PropertyRepository(session).list_for_entity(entity_type, entity_id)
            return build_read_model(rows, self.config, include_internal)

    # =========================================================================
    # Property definitions
    # =========================================================================

    def save_definition(self, definition: PropertyDefinition) -> int:
        """Create or update a definition; returns the rows reclassified."""
        changes: List[PropertyChange] = []
        with self._transaction() as session:
            store = PropertyDefinitionStore(session, self.config, self.dispatcher)
            updated = store.save(definition, changes=changes)
        self.dispatcher.notify_committed(self.session_factory, changes)
        return updated

    def list_definitions(self) -> List[PropertyDefinition]:
        with self.session_factory() as session:
            return PropertyDefinitionStore(session, self.config).list()

    def apply_definitions(self, name: Optional[str] = None) -> int:
        """Reclassify existing rows from auto-apply definitions."""
        changes: List[PropertyChange] = []
        with self._transaction() as session:
            store = PropertyDefinitionStore(session, self.config, self.dispatcher)
            updated = store.apply_definitions(name, changes=changes)
        self.dispatcher.notify_committed(self.session_factory, changes)
        return updated

    # =========================================================================
    # Webhooks
    # =========================================================================

    def verify_webhook(self, webhook_id: int) -> DeliveryResult:
        with self._transaction() as session:
            return self.notifier.verify(session, webhook_id)

    def send_test_webhook(self, webhook_id: int) -> DeliveryResult:
        with self._transaction() as session:
            return self.notifier.send_test(session, webhook_id)

    def webhook_history(
        self, webhook_id: int, page: int = 1, limit: int = 20
    ) -> Tuple[List[WebhookEvent], int]:
        with self.session_factory() as session:
            return WebhookRepository(session).history(webhook_id, page=page, limit=limit)

    def notify_entity_event(
        self,
        entity_type: EntityType,
        entity_id: int,
        event_type: EventType,
    ) -> None:
        """Tell subscribed webhooks that a note or page was created, updated or deleted."""
        with self._transaction() as session:
            self.dispatcher.dispatch_entity_event(
                session, EntityType.parse(entity_type), entity_id, EventType(event_type)
            )

    def close(self) -> None:
        """Release the HTTP client and database connections."""
        self.notifier.close()
        self.engine.dispose()
