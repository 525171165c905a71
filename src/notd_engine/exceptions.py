"""Custom exceptions for the Notd engine.

Provides a structured exception hierarchy with error codes and
machine-readable error information for better error handling.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Entity errors (1xxx)
    ENTITY_NOT_FOUND = 1001
    INVALID_ENTITY_TYPE = 1002

    # Pattern processing errors (2xxx)
    PATTERN_HANDLER_FAILED = 2001
    PATTERN_HANDLER_DUPLICATE = 2002

    # Property persistence errors (3xxx)
    PROPERTY_WRITE_FAILED = 3001
    PROPERTY_READ_FAILED = 3002
    PROPERTY_DEFINITION_INVALID = 3003

    # Trigger errors (4xxx)
    TRIGGER_FAILED = 4001

    # Webhook errors (5xxx)
    WEBHOOK_NOT_FOUND = 5001
    WEBHOOK_DELIVERY_FAILED = 5002

    # Configuration errors (6xxx)
    CONFIG_INVALID = 6001

    # Validation errors (7xxx)
    VALIDATION_FAILED = 7001


class NotdError(Exception):
    """Base exception for all Notd engine errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "details": self.details
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class EntityNotFoundError(NotdError):
    """Raised when a note or page cannot be found."""

    def __init__(self, entity_type: str, entity_id: int, message: Optional[str] = None):
        super().__init__(
            message or f"{entity_type.capitalize()} with ID '{entity_id}' not found",
            code=ErrorCode.ENTITY_NOT_FOUND,
            details={"entity_type": entity_type, "entity_id": entity_id}
        )
        self.entity_type = entity_type
        self.entity_id = entity_id


class PatternProcessingError(NotdError):
    """Raised when a pattern handler fails; aborts the whole pipeline run."""

    def __init__(
        self,
        message: str,
        handler_name: Optional[str] = None,
        code: ErrorCode = ErrorCode.PATTERN_HANDLER_FAILED,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if handler_name:
            details["handler"] = handler_name
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.handler_name = handler_name
        self.original_error = original_error


class StorageError(NotdError):
    """Raised for storage/persistence errors."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        code: ErrorCode = ErrorCode.PROPERTY_READ_FAILED,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.original_error = original_error


class PropertyPersistenceError(StorageError):
    """Raised when saving properties fails; the caller must roll back."""

    def __init__(
        self,
        message: str,
        entity_type: Optional[str] = None,
        entity_id: Optional[int] = None,
        property_name: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message,
            operation="save_properties",
            code=ErrorCode.PROPERTY_WRITE_FAILED,
            original_error=original_error
        )
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.property_name = property_name
        if entity_type:
            self.details["entity_type"] = entity_type
        if entity_id is not None:
            self.details["entity_id"] = entity_id
        if property_name:
            self.details["property_name"] = property_name


class TriggerError(NotdError):
    """Raised by a hard-coded trigger handler.

    The dispatcher logs and swallows these; they never abort a save.
    """

    def __init__(
        self,
        message: str,
        property_name: Optional[str] = None,
        entity_id: Optional[int] = None,
        original_error: Optional[Exception] = None
    ):
        details: Dict[str, Any] = {}
        if property_name:
            details["property_name"] = property_name
        if entity_id is not None:
            details["entity_id"] = entity_id
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=ErrorCode.TRIGGER_FAILED, details=details)
        self.property_name = property_name
        self.entity_id = entity_id
        self.original_error = original_error


class WebhookNotFoundError(NotdError):
    """Raised when a webhook cannot be found."""

    def __init__(self, webhook_id: int):
        super().__init__(
            f"Webhook {webhook_id} not found",
            code=ErrorCode.WEBHOOK_NOT_FOUND,
            details={"webhook_id": webhook_id}
        )
        self.webhook_id = webhook_id


class WebhookDeliveryError(NotdError):
    """Raised when a webhook delivery fails outside the HTTP exchange."""

    def __init__(
        self,
        message: str,
        webhook_id: Optional[int] = None,
        event_type: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details: Dict[str, Any] = {}
        if webhook_id is not None:
            details["webhook_id"] = webhook_id
        if event_type:
            details["event_type"] = event_type
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=ErrorCode.WEBHOOK_DELIVERY_FAILED, details=details)
        self.webhook_id = webhook_id
        self.event_type = event_type
        self.original_error = original_error


class ConfigurationError(NotdError):
    """Raised for configuration-related errors."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        code: ErrorCode = ErrorCode.CONFIG_INVALID
    ):
        details = {}
        if config_key:
            details["config_key"] = config_key

        super().__init__(message, code=code, details=details)
        self.config_key = config_key


class ValidationError(NotdError):
    """Raised for general validation errors."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED
    ):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]

        super().__init__(message, code=code, details=details)
        self.field = field
        self.value = value
