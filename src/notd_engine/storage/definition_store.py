"""Property definitions: explicit internal/visible classification by name."""
import logging
from typing import TYPE_CHECKING, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from notd_engine.config import EngineConfig
from notd_engine.config import config as default_config
from notd_engine.exceptions import ErrorCode, StorageError, ValidationError
from notd_engine.models.db_models import DBPropertyDefinition, _utcnow
from notd_engine.models.schema import PropertyChange, PropertyDefinition
from notd_engine.storage.property_repository import PropertyRepository

if TYPE_CHECKING:
    from notd_engine.services.trigger_dispatcher import TriggerDispatcher

logger = logging.getLogger(__name__)


class PropertyDefinitionStore:
    """Lookup and maintenance of property definitions.

    One store is bound to one session (one request or run). Lookups are
    cached for the store's lifetime, misses included; the cache is never
    shared between stores.
    """

    def __init__(
        self,
        session: Session,
        config: Optional[EngineConfig] = None,
        dispatcher: Optional["TriggerDispatcher"] = None,
    ):
        self.session = session
        self.config = config or default_config
        self.dispatcher = dispatcher
        self._cache: Dict[str, Optional[bool]] = {}

    def lookup_internal(self, name: str) -> Optional[bool]:
        """Internal flag from the definition for ``name``, None if undefined."""
        if name in self._cache:
            return self._cache[name]
        db_def = self.session.scalar(
            select(DBPropertyDefinition).where(DBPropertyDefinition.name == name)
        )
        internal = bool(db_def.internal) if db_def is not None else None
        self._cache[name] = internal
        return internal

    def is_default_internal(self, name: str) -> bool:
        """Name heuristic used when no definition exists."""
        return name.startswith("_") or name in self.config.default_internal_names

    def resolve_internal(self, name: str, explicit: Optional[bool] = None) -> bool:
        """Classify a property row.

        Precedence: explicit caller value, then the definition, then the
        name heuristic, then not internal.
        """
        if explicit is not None:
            return bool(explicit)
        defined = self.lookup_internal(name)
        if defined is not None:
            return defined
        return self.is_default_internal(name)

    def list(self) -> List[PropertyDefinition]:
        db_defs = self.session.scalars(
            select(DBPropertyDefinition).order_by(DBPropertyDefinition.name)
        ).all()
        return [self._to_model(d) for d in db_defs]

    def get(self, name: str) -> Optional[PropertyDefinition]:
        db_def = self.session.scalar(
            select(DBPropertyDefinition).where(DBPropertyDefinition.name == name)
        )
        return self._to_model(db_def) if db_def is not None else None

    def save(
        self,
        definition: PropertyDefinition,
        changes: Optional[List[PropertyChange]] = None,
    ) -> int:
        """Create or update the definition for ``definition.name``.

        When the definition is auto-applied, existing rows are reclassified
        immediately (see ``apply_definitions`` for ``changes``).

        Returns:
            Number of property rows reclassified.
        """
        if not isinstance(definition, PropertyDefinition):
            raise ValidationError("Expected a PropertyDefinition", field="definition")

        try:
            db_def = self.session.scalar(
                select(DBPropertyDefinition).where(
                    DBPropertyDefinition.name == definition.name
                )
            )
            now = _utcnow()
            if db_def is None:
                db_def = DBPropertyDefinition(name=definition.name, created_at=now)
                self.session.add(db_def)
            db_def.internal = definition.internal
            db_def.auto_apply = definition.auto_apply
            db_def.description = definition.description
            db_def.updated_at = now
            self.session.flush()
        except SQLAlchemyError as e:
            logger.error(f"Failed to save property definition '{definition.name}': {e}")
            raise StorageError(
                f"Failed to save property definition '{definition.name}'",
                operation="save_definition",
                code=ErrorCode.PROPERTY_DEFINITION_INVALID,
                original_error=e,
            ) from e

        self._cache.pop(definition.name, None)
        logger.info(
            f"Saved property definition '{definition.name}' "
            f"(internal={definition.internal}, auto_apply={definition.auto_apply})"
        )

        if definition.auto_apply:
            return self.apply_definitions(definition.name, changes=changes)
        return 0

    def delete(self, definition_id: int) -> bool:
        db_def = self.session.get(DBPropertyDefinition, definition_id)
        if db_def is None:
            return False
        self._cache.pop(db_def.name, None)
        self.session.delete(db_def)
        self.session.flush()
        return True

    def apply_definitions(
        self,
        name: Optional[str] = None,
        changes: Optional[List[PropertyChange]] = None,
    ) -> int:
        """Reclassify existing rows from auto-apply definitions.

        Every row whose ``internal`` flag differs from its definition is
        updated, then triggers are re-dispatched for each affected row.

        Args:
            name: Only apply the definition for this property name.
            changes: Collects the re-dispatched changes; the caller
                notifies webhooks for them after committing.

        Returns:
            Number of property rows reclassified.
        """
        stmt = select(DBPropertyDefinition).where(
            DBPropertyDefinition.auto_apply.is_(True)
        )
        if name is not None:
            stmt = stmt.where(DBPropertyDefinition.name == name)
        definitions = self.session.scalars(stmt).all()

        repository = PropertyRepository(self.session)
        updated = 0
        for db_def in definitions:
            rows = repository.reclassify(db_def.name, bool(db_def.internal))
            updated += len(rows)
            if rows and self.dispatcher is not None:
                for row in rows:
                    change = self.dispatcher.dispatch(
                        self.session, row.entity_type, row.entity_id, row.name, row.value
                    )
                    if changes is not None:
                        changes.append(change)

        if updated:
            logger.info(f"Reclassified {updated} property rows from definitions")
        return updated

    @staticmethod
    def _to_model(db_def: DBPropertyDefinition) -> PropertyDefinition:
        return PropertyDefinition(
            id=db_def.id,
            name=db_def.name,
            internal=bool(db_def.internal),
            auto_apply=bool(db_def.auto_apply),
            description=db_def.description,
        )
