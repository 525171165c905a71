"""Micro-syntax handlers and the pipeline that runs them."""

from notd_engine.patterns.handlers import (
    BlockReferenceHandler,
    EmbeddedQueryHandler,
    ExternalUrlHandler,
    HandlerContext,
    HandlerResult,
    PageLinkHandler,
    PatternHandler,
    PropertyTagHandler,
    TaskStatusHandler,
)
from notd_engine.patterns.pipeline import PatternPipeline, PipelineConfig

__all__ = [
    "PatternHandler",
    "HandlerContext",
    "HandlerResult",
    "TaskStatusHandler",
    "PropertyTagHandler",
    "PageLinkHandler",
    "ExternalUrlHandler",
    "BlockReferenceHandler",
    "EmbeddedQueryHandler",
    "PipelineConfig",
    "PatternPipeline",
]
