"""Storage layer for the Notd engine."""

from notd_engine.storage.definition_store import PropertyDefinitionStore
from notd_engine.storage.property_repository import PropertyRepository
from notd_engine.storage.webhook_repository import WebhookRepository

__all__ = [
    "PropertyRepository",
    "PropertyDefinitionStore",
    "WebhookRepository",
]
