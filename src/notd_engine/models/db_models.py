"""SQLAlchemy database models for the Notd engine."""
import datetime
from typing import Optional

from sqlalchemy import (JSON, Boolean, Column, DateTime, ForeignKey, Index,
                        Integer, String, Text, create_engine, event)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from notd_engine.config import config
from notd_engine.models.schema import WILDCARD, EntityType, EventType

# Create base class for SQLAlchemy models
Base = declarative_base()


def _utcnow() -> datetime.datetime:
    """Naive UTC timestamp; SQLite stores datetimes without zone."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


class DBPage(Base):
    """Database model for a page."""
    __tablename__ = "pages"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), unique=True, nullable=False, index=True)
    content = Column(Text, nullable=True)
    alias = Column(String(255), nullable=True)
    active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<Page(id={self.id}, name='{self.name}')>"


class DBNote(Base):
    """Database model for a note (outline block)."""
    __tablename__ = "notes"
    id = Column(Integer, primary_key=True, autoincrement=True)
    page_id = Column(Integer, ForeignKey("pages.id"), nullable=False, index=True)
    parent_note_id = Column(Integer, ForeignKey("notes.id"), nullable=True)
    content = Column(Text, nullable=True)
    internal = Column(Boolean, default=False, nullable=False)
    order_index = Column(Integer, default=0, nullable=False)
    active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<Note(id={self.id}, page_id={self.page_id})>"


class DBProperty(Base):
    """Database model for a property row.

    Exactly one of note_id / page_id is set. Several rows may share a
    name: append-policy properties keep their history, replace-policy
    properties may carry several values saved together.
    """
    __tablename__ = "properties"
    id = Column(Integer, primary_key=True, autoincrement=True)
    note_id = Column(Integer, ForeignKey("notes.id"), nullable=True, index=True)
    page_id = Column(Integer, ForeignKey("pages.id"), nullable=True, index=True)
    name = Column(String(255), nullable=False, index=True)
    value = Column(Text, nullable=True)
    weight = Column(Integer, default=2, nullable=False)
    internal = Column(Boolean, default=False, nullable=False)
    active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_properties_note_name", "note_id", "name"),
        Index("ix_properties_page_name", "page_id", "name"),
    )

    @property
    def entity_type(self) -> EntityType:
        return EntityType.NOTE if self.note_id is not None else EntityType.PAGE

    @property
    def entity_id(self) -> Optional[int]:
        return self.note_id if self.note_id is not None else self.page_id

    def __repr__(self) -> str:
        return (
            f"<Property(id={self.id}, {self.entity_type.value}={self.entity_id}, "
            f"name='{self.name}', weight={self.weight})>"
        )


class DBPropertyDefinition(Base):
    """Database model for a property definition."""
    __tablename__ = "property_definitions"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), unique=True, nullable=False)
    internal = Column(Boolean, default=False, nullable=False)
    auto_apply = Column(Boolean, default=True, nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<PropertyDefinition(name='{self.name}', internal={self.internal})>"


class DBWebhook(Base):
    """Database model for a webhook subscription."""
    __tablename__ = "webhooks"
    id = Column(Integer, primary_key=True, autoincrement=True)
    url = Column(String(2048), nullable=False)
    entity_type = Column(String(20), nullable=False, index=True)
    # Either the string "*" or a JSON list of property names
    property_names = Column(JSON, nullable=False, default=WILDCARD)
    event_types = Column(
        JSON, nullable=False, default=lambda: [EventType.PROPERTY_CHANGE.value]
    )
    secret = Column(String(255), nullable=False)
    active = Column(Boolean, default=True, nullable=False)
    verified = Column(Boolean, default=False, nullable=False)
    last_verified = Column(DateTime, nullable=True)
    last_triggered = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<Webhook(id={self.id}, url='{self.url}', entity_type='{self.entity_type}')>"


class DBWebhookEvent(Base):
    """Append-only delivery log entry."""
    __tablename__ = "webhook_events"
    id = Column(Integer, primary_key=True, autoincrement=True)
    webhook_id = Column(Integer, ForeignKey("webhooks.id"), nullable=False, index=True)
    event_type = Column(String(50), nullable=False)
    payload = Column(Text, nullable=False)
    response_code = Column(Integer, nullable=False, default=0)
    response_body = Column(Text, nullable=True)
    success = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<WebhookEvent(id={self.id}, webhook_id={self.webhook_id}, "
            f"event='{self.event_type}', success={self.success})>"
        )


def create_db_engine(db_url: Optional[str] = None) -> Engine:
    """Create a SQLite engine with hardened configuration.

    - WAL journal and NORMAL synchronous mode for crash resilience
    - SQLAlchemy emits BEGIN itself (the pysqlite driver otherwise defers
      it), so SAVEPOINTs used by trigger handlers nest inside the caller's
      transaction
    - QueuePool for file databases, a single shared connection for
      in-memory ones
    """
    url = db_url or config.get_db_url()

    if url in ("sqlite://", "sqlite:///:memory:"):
        engine = create_engine(
            url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    else:
        engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=5,
            max_overflow=10,
            pool_timeout=30,
            pool_recycle=3600,
            pool_pre_ping=True,
        )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


def init_db(engine: Optional[Engine] = None) -> Engine:
    """Create all tables (idempotent) and return the engine."""
    engine = engine or create_db_engine()
    Base.metadata.create_all(engine)
    return engine


def get_session_factory(engine: Optional[Engine] = None):
    """Get a session factory for the database."""
    if engine is None:
        engine = create_db_engine()
    return sessionmaker(bind=engine)
