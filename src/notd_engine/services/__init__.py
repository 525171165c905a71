"""Service layer for the Notd engine."""

from notd_engine.services.content_service import ContentService, SaveOutcome
from notd_engine.services.property_reconciler import PropertyReconciler
from notd_engine.services.trigger_dispatcher import TriggerDispatcher
from notd_engine.services.webhook_notifier import WebhookNotifier

__all__ = [
    "ContentService",
    "SaveOutcome",
    "PropertyReconciler",
    "TriggerDispatcher",
    "WebhookNotifier",
]
