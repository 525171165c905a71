"""Data models for the Notd engine."""

import datetime
from datetime import timezone
from enum import Enum
from typing import Any, Dict, List, Literal, NamedTuple, Optional, Union

from pydantic import BaseModel, Field, field_validator

from notd_engine.exceptions import ErrorCode, ValidationError

# Matches every property name in a webhook subscription
WILDCARD = "*"

# Format used for timestamp property values (done_at, ...)
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.datetime.now(timezone.utc)


def format_timestamp(value: Optional[datetime.datetime] = None) -> str:
    """Render a datetime (default: now, UTC) in property value format."""
    return (value or utc_now()).strftime(TIMESTAMP_FORMAT)


class EntityType(str, Enum):
    """Kinds of entity that own properties."""

    NOTE = "note"
    PAGE = "page"

    @classmethod
    def parse(cls, value: Any) -> "EntityType":
        """Coerce caller input, raising a ValidationError for unknown types."""
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(
                f"Invalid entity type: {value!r}",
                field="entity_type",
                value=value,
                code=ErrorCode.INVALID_ENTITY_TYPE,
            ) from None


class PropertyKind(str, Enum):
    """Which micro-syntax produced an extracted property."""

    PROPERTY = "property"  # {key::value}
    PAGE_LINK = "page_link"  # [[Page]]
    TASK_STATUS = "task_status"  # TODO ... at line start
    BLOCK_REFERENCE = "block_reference"  # !{{block}}
    TIMESTAMP = "timestamp"  # done_at for DONE tasks
    SQL_QUERY = "sql_query"  # SQL{...}
    URL = "url"  # http(s)://... or www....


class EventType(str, Enum):
    """Webhook event types."""

    PROPERTY_CHANGE = "property_change"
    ENTITY_CREATED = "entity_created"
    ENTITY_UPDATED = "entity_updated"
    ENTITY_DELETED = "entity_deleted"
    TEST = "test"
    VERIFICATION = "verification"


# Event types a webhook can subscribe to (test/verification are sent on demand)
SUBSCRIBABLE_EVENT_TYPES = frozenset(
    {
        EventType.PROPERTY_CHANGE,
        EventType.ENTITY_CREATED,
        EventType.ENTITY_UPDATED,
        EventType.ENTITY_DELETED,
    }
)

ENTITY_EVENT_TYPES = frozenset(
    {EventType.ENTITY_CREATED, EventType.ENTITY_UPDATED, EventType.ENTITY_DELETED}
)


class ExtractedProperty(BaseModel):
    """A property found in content by a pattern handler.

    Transient: produced by the pipeline and consumed by the reconciler
    within one save. ``weight`` may be None, in which case the configured
    default weight applies. ``internal`` is an explicit classification
    supplied by the caller; None means it is resolved on save.
    """

    name: str = Field(..., description="Property name")
    value: str = Field(default="", description="Property value (may be empty)")
    weight: Optional[int] = Field(default=None, description="Colon-run length / policy weight")
    raw_match: str = Field(default="", description="Text that produced the property")
    kind: PropertyKind = Field(default=PropertyKind.PROPERTY)
    internal: Optional[bool] = Field(default=None)

    model_config = {"frozen": True, "extra": "forbid"}

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Names are trimmed and must not be empty."""
        v = v.strip()
        if not v:
            raise ValueError("Property name cannot be empty")
        return v

    @field_validator("value", mode="before")
    @classmethod
    def coerce_value(cls, v: Any) -> str:
        """Accept scalars from API callers; store as text."""
        if v is None:
            return ""
        if isinstance(v, bool):
            return "true" if v else "false"
        return str(v)


class PersistedProperty(BaseModel):
    """A property row as stored in the property table."""

    id: int
    entity_type: EntityType
    entity_id: int
    name: str
    value: Optional[str] = None
    weight: int
    internal: bool = False
    active: bool = True
    created_at: Optional[datetime.datetime] = None
    updated_at: Optional[datetime.datetime] = None


class PropertyDefinition(BaseModel):
    """Explicit internal/visible classification for a property name."""

    id: Optional[int] = None
    name: str = Field(..., description="Property name the definition applies to")
    internal: bool = False
    auto_apply: bool = True
    description: Optional[str] = None

    model_config = {"validate_assignment": True}

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Property name is required")
        return v


class Webhook(BaseModel):
    """An outbound webhook subscription."""

    id: Optional[int] = None
    url: str
    entity_type: EntityType
    property_names: Union[Literal["*"], List[str]] = Field(default=WILDCARD)
    event_types: List[EventType] = Field(
        default_factory=lambda: [EventType.PROPERTY_CHANGE]
    )
    secret: str = ""
    active: bool = True
    verified: bool = False
    last_verified: Optional[datetime.datetime] = None
    last_triggered: Optional[datetime.datetime] = None
    created_at: Optional[datetime.datetime] = None

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError("Webhook URL must start with http:// or https://")
        return v

    @field_validator("event_types")
    @classmethod
    def validate_event_types(cls, v: List[EventType]) -> List[EventType]:
        invalid = [e.value for e in v if e not in SUBSCRIBABLE_EVENT_TYPES]
        if invalid:
            raise ValueError(f"Event types cannot be subscribed to: {invalid}")
        return v

    def watches(self, property_name: str) -> bool:
        """True if a change to ``property_name`` concerns this webhook."""
        if self.property_names == WILDCARD:
            return True
        return WILDCARD in self.property_names or property_name in self.property_names

    def subscribes_to(self, event_type: EventType) -> bool:
        return event_type in self.event_types


class WebhookEvent(BaseModel):
    """One delivery attempt in the append-only delivery log."""

    id: int
    webhook_id: int
    event_type: str
    payload: str
    response_code: int
    response_body: Optional[str] = None
    success: bool
    created_at: Optional[datetime.datetime] = None


class ProcessResult(BaseModel):
    """Result envelope of one pipeline run."""

    properties: List[ExtractedProperty] = Field(default_factory=list)
    content: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)


class DeliveryResult(NamedTuple):
    """Outcome of a webhook delivery attempt."""

    success: bool
    status_code: int
    response_body: str


class PropertyChange(NamedTuple):
    """A property write whose webhook notification waits for the commit."""

    entity_type: EntityType
    entity_id: int
    name: str
    value: Optional[str]
