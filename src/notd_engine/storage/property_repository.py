"""Repository for property rows attached to notes and pages."""
import logging
from typing import List, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from notd_engine.models.db_models import DBNote, DBPage, DBProperty, _utcnow
from notd_engine.models.schema import EntityType, PersistedProperty

logger = logging.getLogger(__name__)


def _entity_column(entity_type: EntityType):
    return DBProperty.note_id if entity_type == EntityType.NOTE else DBProperty.page_id


def to_persisted(db_prop: DBProperty) -> PersistedProperty:
    """Convert a property row to its domain model."""
    return PersistedProperty(
        id=db_prop.id,
        entity_type=db_prop.entity_type,
        entity_id=db_prop.entity_id,
        name=db_prop.name,
        value=db_prop.value,
        weight=db_prop.weight,
        internal=bool(db_prop.internal),
        active=bool(db_prop.active),
        created_at=db_prop.created_at,
        updated_at=db_prop.updated_at,
    )


class PropertyRepository:
    """Reads and writes property rows within a caller-owned session.

    The repository never commits; the caller controls the session and
    transaction boundary.
    """

    def __init__(self, session: Session):
        self.session = session

    def entity_exists(self, entity_type: EntityType, entity_id: int) -> bool:
        model = DBNote if EntityType(entity_type) == EntityType.NOTE else DBPage
        return self.session.get(model, entity_id) is not None

    def delete_active(self, entity_type: EntityType, entity_id: int, name: str) -> int:
        """Delete every active row for ``(entity, name)``.

        Returns:
            Number of rows deleted.
        """
        entity_type = EntityType(entity_type)
        result = self.session.execute(
            delete(DBProperty)
            .where(_entity_column(entity_type) == entity_id)
            .where(DBProperty.name == name)
            .where(DBProperty.active.is_(True))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    def insert(
        self,
        entity_type: EntityType,
        entity_id: int,
        name: str,
        value: Optional[str],
        weight: int,
        internal: bool = False,
    ) -> DBProperty:
        """Insert a property row and flush so it has an id."""
        entity_type = EntityType(entity_type)
        now = _utcnow()
        db_prop = DBProperty(
            note_id=entity_id if entity_type == EntityType.NOTE else None,
            page_id=entity_id if entity_type == EntityType.PAGE else None,
            name=name,
            value=value,
            weight=weight,
            internal=internal,
            active=True,
            created_at=now,
            updated_at=now,
        )
        self.session.add(db_prop)
        self.session.flush()
        return db_prop

    def list_for_entity(
        self,
        entity_type: EntityType,
        entity_id: int,
        name: Optional[str] = None,
        include_inactive: bool = False,
    ) -> List[DBProperty]:
        """Property rows of an entity in creation order."""
        entity_type = EntityType(entity_type)
        stmt = select(DBProperty).where(_entity_column(entity_type) == entity_id)
        if name is not None:
            stmt = stmt.where(DBProperty.name == name)
        if not include_inactive:
            stmt = stmt.where(DBProperty.active.is_(True))
        stmt = stmt.order_by(DBProperty.created_at, DBProperty.id)
        return list(self.session.scalars(stmt).all())

    def reclassify(self, name: str, internal: bool) -> List[DBProperty]:
        """Set ``internal`` on every row named ``name`` whose flag differs.

        Returns:
            The rows that changed.
        """
        rows = list(
            self.session.scalars(
                select(DBProperty)
                .where(DBProperty.name == name)
                .where(DBProperty.internal != internal)
                .order_by(DBProperty.id)
            ).all()
        )
        now = _utcnow()
        for row in rows:
            row.internal = internal
            row.updated_at = now
        if rows:
            self.session.flush()
        return rows
