"""Pattern handlers for the micro-syntax embedded in note and page text.

Each handler recognises one syntax, receives every match found in the
current working content at once and returns a ``HandlerResult`` with the
properties it extracted, optionally rewritten content and metadata.
"""
import datetime
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from notd_engine.config import DEFAULT_TASK_STATES, SpecialStateWeights
from notd_engine.models.schema import (
    EntityType,
    ExtractedProperty,
    PropertyKind,
    format_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 50

# Recognised when the configured task vocabulary is empty
FALLBACK_TASK_STATE = "TODO"


@dataclass
class HandlerContext:
    """What a handler knows about the run it is part of."""

    content: str
    entity_type: EntityType
    entity_id: int
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class HandlerResult:
    """Output of one handler invocation.

    ``content`` is only honoured for handlers with ``modify_content`` set;
    ``metadata`` is stored under the handler's name when non-empty.
    """

    properties: List[ExtractedProperty] = field(default_factory=list)
    content: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class PatternHandler(ABC):
    """Base class for a micro-syntax handler.

    Subclasses declare ``name`` and ``pattern`` and implement ``handle``.
    """

    name: str = ""
    pattern: re.Pattern
    priority: int = DEFAULT_PRIORITY
    extract_properties: bool = True
    modify_content: bool = False

    def find_matches(self, content: str) -> List[re.Match]:
        """All non-overlapping matches of the handler pattern in ``content``."""
        return list(self.pattern.finditer(content))

    @abstractmethod
    def handle(self, matches: List[re.Match], ctx: HandlerContext) -> HandlerResult:
        """Turn the matches into properties, content and metadata."""

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(name='{self.name}', priority={self.priority})>"


class TaskStatusHandler(PatternHandler):
    """``TODO Buy milk`` style task markers anchored at line start.

    Emits ``status`` per task and, for DONE tasks, a ``done_at`` timestamp.
    """

    name = "task_status"
    priority = 5

    def __init__(
        self,
        states: Iterable[str] = DEFAULT_TASK_STATES,
        weights: Optional[SpecialStateWeights] = None,
        clock: Callable[[], datetime.datetime] = utc_now,
    ):
        states = tuple(s for s in states if s)
        if not states:
            logger.warning(
                f"Empty task status vocabulary, falling back to '{FALLBACK_TASK_STATE}'"
            )
            states = (FALLBACK_TASK_STATE,)
        self.states = states
        self.weights = weights or SpecialStateWeights()
        self.clock = clock
        alternation = "|".join(re.escape(state) for state in states)
        self.pattern = re.compile(rf"^({alternation})[ \t]+([^\n]*)$", re.MULTILINE)

    def handle(self, matches: List[re.Match], ctx: HandlerContext) -> HandlerResult:
        result = HandlerResult()
        tasks = []
        for match in matches:
            status = match.group(1)
            done_at = None
            result.properties.append(
                ExtractedProperty(
                    name="status",
                    value=status,
                    weight=self.weights.task,
                    raw_match=match.group(0),
                    kind=PropertyKind.TASK_STATUS,
                )
            )
            if status == "DONE":
                done_at = format_timestamp(self.clock())
                result.properties.append(
                    ExtractedProperty(
                        name="done_at",
                        value=done_at,
                        weight=self.weights.done_at,
                        raw_match=match.group(0),
                        kind=PropertyKind.TIMESTAMP,
                    )
                )
            tasks.append(
                {
                    "status": status,
                    "content": match.group(2).strip(),
                    "raw_match": match.group(0),
                    "done_at": done_at,
                }
            )
        result.metadata = {"tasks": tasks}
        return result


class PropertyTagHandler(PatternHandler):
    """``{name::value}`` tags; the colon-run length is the weight."""

    name = "properties"
    priority = 10
    pattern = re.compile(r"\{\s*([A-Za-z0-9_.-]+)\s*(:{2,})([^}]*)\}")

    def handle(self, matches: List[re.Match], ctx: HandlerContext) -> HandlerResult:
        result = HandlerResult()
        for match in matches:
            name = match.group(1).strip()
            if not name:
                continue
            result.properties.append(
                ExtractedProperty(
                    name=name,
                    value=match.group(3).strip(),
                    weight=len(match.group(2)),
                    raw_match=match.group(0),
                    kind=PropertyKind.PROPERTY,
                )
            )
        return result


class PageLinkHandler(PatternHandler):
    """``[[Page name]]`` links, de-duplicated per content body."""

    name = "page_links"
    priority = 20
    pattern = re.compile(r"\[\[([^\]]+)\]\]")

    def __init__(self, weights: Optional[SpecialStateWeights] = None):
        self.weights = weights or SpecialStateWeights()

    def handle(self, matches: List[re.Match], ctx: HandlerContext) -> HandlerResult:
        result = HandlerResult()
        seen = set()
        for match in matches:
            target = match.group(1).strip()
            if not target or target in seen:
                continue
            seen.add(target)
            result.properties.append(
                ExtractedProperty(
                    name="links_to_page",
                    value=target,
                    weight=self.weights.link,
                    raw_match=match.group(0),
                    kind=PropertyKind.PAGE_LINK,
                )
            )
        return result


class ExternalUrlHandler(PatternHandler):
    """Bare ``http(s)://`` and ``www.`` URLs."""

    name = "external_urls"
    priority = 25
    pattern = re.compile(r"(https?://[^\s<>\"}\]]+|www\.[^\s<>\"}\]]+)")

    def __init__(self, weights: Optional[SpecialStateWeights] = None):
        self.weights = weights or SpecialStateWeights()

    def handle(self, matches: List[re.Match], ctx: HandlerContext) -> HandlerResult:
        result = HandlerResult()
        for match in matches:
            url = match.group(0).strip()
            if not url:
                continue
            if url.startswith("www."):
                url = f"https://{url}"
            result.properties.append(
                ExtractedProperty(
                    name="external_url",
                    value=url,
                    weight=self.weights.url,
                    raw_match=match.group(0),
                    kind=PropertyKind.URL,
                )
            )
        return result


class BlockReferenceHandler(PatternHandler):
    """``!{{block}}`` transclusions."""

    name = "block_refs"
    priority = 30
    pattern = re.compile(r"!\{\{([^}]+)\}\}")

    def __init__(self, weights: Optional[SpecialStateWeights] = None):
        self.weights = weights or SpecialStateWeights()

    def handle(self, matches: List[re.Match], ctx: HandlerContext) -> HandlerResult:
        result = HandlerResult()
        for match in matches:
            ref = match.group(1).strip()
            if not ref:
                continue
            result.properties.append(
                ExtractedProperty(
                    name="references_block",
                    value=ref,
                    weight=self.weights.transclusion,
                    raw_match=match.group(0),
                    kind=PropertyKind.BLOCK_REFERENCE,
                )
            )
        return result


class EmbeddedQueryHandler(PatternHandler):
    """``SQL{...}`` queries, extracted as data and never executed here."""

    name = "sql_queries"
    priority = 40
    pattern = re.compile(r"SQL\{([^}]+)\}")

    def __init__(self, weights: Optional[SpecialStateWeights] = None):
        self.weights = weights or SpecialStateWeights()

    def handle(self, matches: List[re.Match], ctx: HandlerContext) -> HandlerResult:
        result = HandlerResult()
        for match in matches:
            query = match.group(1).strip()
            if not query:
                continue
            result.properties.append(
                ExtractedProperty(
                    name="sql_query",
                    value=query,
                    weight=self.weights.sql,
                    raw_match=match.group(0),
                    kind=PropertyKind.SQL_QUERY,
                )
            )
        return result
