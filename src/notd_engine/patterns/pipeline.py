"""Pattern pipeline: runs handlers in priority order over note/page text."""
import logging
from typing import Any, Dict, Iterable, Optional, Tuple

from notd_engine.config import EngineConfig
from notd_engine.config import config as default_config
from notd_engine.exceptions import (
    ConfigurationError,
    ErrorCode,
    PatternProcessingError,
)
from notd_engine.models.schema import EntityType, ProcessResult
from notd_engine.observability import timed_operation
from notd_engine.patterns.handlers import (
    BlockReferenceHandler,
    EmbeddedQueryHandler,
    ExternalUrlHandler,
    HandlerContext,
    PageLinkHandler,
    PatternHandler,
    PropertyTagHandler,
    TaskStatusHandler,
)

logger = logging.getLogger(__name__)


class PipelineConfig:
    """Immutable, ordered set of pattern handlers.

    Built once (usually via ``PipelineConfig.default``) and handed to every
    ``PatternPipeline``. ``with_handler`` and ``without_handler`` return new
    configurations and leave the receiver untouched.
    """

    __slots__ = ("_handlers",)

    def __init__(self, handlers: Iterable[PatternHandler] = ()):
        handlers = tuple(handlers)
        seen = set()
        for handler in handlers:
            if not handler.name:
                raise ConfigurationError(
                    f"Pattern handler {handler!r} has no name",
                    config_key="handlers",
                )
            if handler.name in seen:
                raise ConfigurationError(
                    f"Duplicate pattern handler name '{handler.name}'",
                    config_key="handlers",
                    code=ErrorCode.PATTERN_HANDLER_DUPLICATE,
                )
            seen.add(handler.name)
        # sorted() is stable, so ties keep registration order
        object.__setattr__(
            self, "_handlers", tuple(sorted(handlers, key=lambda h: h.priority))
        )

    def __setattr__(self, name, value):
        raise AttributeError("PipelineConfig is immutable")

    @classmethod
    def default(cls, config: Optional[EngineConfig] = None) -> "PipelineConfig":
        """The built-in handler set, parameterised from engine config."""
        config = config or default_config
        weights = config.special_weights
        return cls(
            [
                TaskStatusHandler(states=config.task_states, weights=weights),
                PropertyTagHandler(),
                PageLinkHandler(weights=weights),
                ExternalUrlHandler(weights=weights),
                BlockReferenceHandler(weights=weights),
                EmbeddedQueryHandler(weights=weights),
            ]
        )

    @property
    def handlers(self) -> Tuple[PatternHandler, ...]:
        """Handlers in execution order."""
        return self._handlers

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(h.name for h in self._handlers)

    def get(self, name: str) -> Optional[PatternHandler]:
        for handler in self._handlers:
            if handler.name == name:
                return handler
        return None

    def with_handler(self, handler: PatternHandler) -> "PipelineConfig":
        """Return a new config with ``handler`` added."""
        return PipelineConfig(self._handlers + (handler,))

    def without_handler(self, name: str) -> "PipelineConfig":
        """Return a new config without the handler called ``name``."""
        if self.get(name) is None:
            raise ConfigurationError(
                f"No pattern handler named '{name}'", config_key="handlers"
            )
        return PipelineConfig(h for h in self._handlers if h.name != name)

    def __len__(self) -> int:
        return len(self._handlers)

    def __iter__(self):
        return iter(self._handlers)

    def __repr__(self) -> str:
        return f"PipelineConfig({list(self.names)})"


class PatternPipeline:
    """Runs the configured handlers over content and merges their output."""

    def __init__(self, pipeline_config: Optional[PipelineConfig] = None):
        self.pipeline_config = pipeline_config or PipelineConfig.default()

    def process(
        self,
        content: str,
        entity_type: EntityType,
        entity_id: int,
        context: Optional[Dict[str, Any]] = None,
    ) -> ProcessResult:
        """Extract properties from ``content``.

        Handlers see the working content as left by the handlers before
        them. Properties are concatenated in priority order, metadata is
        keyed by handler name.

        Raises:
            PatternProcessingError: If any handler fails. No partial result
                is returned.
        """
        entity_type = EntityType.parse(entity_type)
        working = content or ""
        properties = []
        metadata: Dict[str, Any] = {}

        with timed_operation(
            "process_content", entity_type=entity_type.value, entity_id=entity_id
        ) as op:
            for handler in self.pipeline_config:
                try:
                    matches = handler.find_matches(working)
                    if not matches:
                        continue
                    ctx = HandlerContext(
                        content=working,
                        entity_type=entity_type,
                        entity_id=entity_id,
                        extra=dict(context or {}),
                    )
                    with timed_operation("pattern_handler", key=handler.name):
                        result = handler.handle(matches, ctx)
                except PatternProcessingError:
                    raise
                except Exception as e:
                    logger.error(
                        f"Pattern handler '{handler.name}' failed for "
                        f"{entity_type.value} {entity_id}: {e}"
                    )
                    raise PatternProcessingError(
                        f"Pattern handler '{handler.name}' failed",
                        handler_name=handler.name,
                        original_error=e,
                    ) from e

                if handler.extract_properties:
                    properties.extend(result.properties)
                if handler.modify_content and result.content is not None:
                    working = result.content
                if result.metadata:
                    metadata[handler.name] = result.metadata

            op["property_count"] = len(properties)

        return ProcessResult(properties=properties, content=working, metadata=metadata)
