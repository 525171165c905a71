"""Logging setup and operation metrics for the Notd engine.

Engine operations are timed with ``timed_operation`` (or the ``traced``
decorator). Totals are kept per operation and, when a key is given, per
key inside it: ``pattern_handler`` is broken down by handler name and
``webhook_delivery`` by webhook id. ``notd-engine metrics`` prints the
snapshot; the CLI writes it to ``~/.notd/metrics.json`` on exit and the
next run continues from there.
"""
import functools
import json
import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Iterator, Optional, TypeVar, Union

logger = logging.getLogger(__name__)

DEFAULT_LOG_DIR = Path.home() / ".notd" / "logs"
DEFAULT_METRICS_FILE = Path.home() / ".notd" / "metrics.json"

ROOT_LOGGER_NAME = "notd_engine"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

# Names given to the handlers configure_logging installs
FILE_HANDLER_NAME = "notd_file"
CONSOLE_HANDLER_NAME = "notd_console"

MAX_ERROR_LENGTH = 200

F = TypeVar("F", bound=Callable[..., Any])


def configure_logging(
    log_dir: Optional[Union[str, Path]] = None,
    level: int = logging.INFO,
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 3,
    console: bool = True,
) -> Path:
    """Send the ``notd_engine`` logger to a rotating ``notd.log``.

    Handlers installed by an earlier call are replaced, so calling this
    again only changes the destination and level.

    Returns:
        The log directory.
    """
    log_path = Path(log_dir) if log_dir else DEFAULT_LOG_DIR
    log_path.mkdir(parents=True, exist_ok=True)

    engine_logger = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in list(engine_logger.handlers):
        if handler.get_name() in (FILE_HANDLER_NAME, CONSOLE_HANDLER_NAME):
            engine_logger.removeHandler(handler)
            handler.close()

    file_handler = RotatingFileHandler(
        log_path / "notd.log",
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    file_handler.set_name(FILE_HANDLER_NAME)
    handlers = [file_handler]
    if console:
        console_handler = logging.StreamHandler()
        console_handler.set_name(CONSOLE_HANDLER_NAME)
        handlers.append(console_handler)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    for handler in handlers:
        handler.setFormatter(formatter)
        engine_logger.addHandler(handler)
    engine_logger.setLevel(level)

    logger.debug(f"Logging to {log_path / 'notd.log'}")
    return log_path


@dataclass
class OperationStats:
    """Running totals for one operation (or one key of an operation)."""

    count: int = 0
    errors: int = 0
    total_ms: float = 0.0
    max_ms: float = 0.0
    last_error: Optional[str] = None

    def add(self, duration_ms: float, error: Optional[str] = None) -> None:
        self.count += 1
        self.total_ms += duration_ms
        self.max_ms = max(self.max_ms, duration_ms)
        if error is not None:
            self.errors += 1
            self.last_error = error[:MAX_ERROR_LENGTH]

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["avg_ms"] = round(self.total_ms / self.count, 2) if self.count else 0.0
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OperationStats":
        return cls(
            count=int(data.get("count", 0)),
            errors=int(data.get("errors", 0)),
            total_ms=float(data.get("total_ms", 0.0)),
            max_ms=float(data.get("max_ms", 0.0)),
            last_error=data.get("last_error"),
        )


class MetricsCollector:
    """Thread-safe timing totals, persisted as JSON between CLI runs."""

    def __init__(self, metrics_file: Optional[Union[str, Path]] = None):
        self.metrics_file = Path(metrics_file) if metrics_file else DEFAULT_METRICS_FILE
        self._lock = Lock()
        self._totals: Dict[str, OperationStats] = {}
        self._by_key: Dict[str, Dict[str, OperationStats]] = {}
        self._load()

    def record(
        self,
        operation: str,
        duration_ms: float,
        error: Optional[str] = None,
        key: Optional[Any] = None,
    ) -> None:
        """Add one timed run; ``error`` is None for a successful run."""
        with self._lock:
            self._totals.setdefault(operation, OperationStats()).add(duration_ms, error)
            if key is not None:
                keyed = self._by_key.setdefault(operation, {})
                keyed.setdefault(str(key), OperationStats()).add(duration_ms, error)

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        """Totals per operation, with a ``by_key`` breakdown where recorded."""
        with self._lock:
            result = {}
            for operation, stats in sorted(self._totals.items()):
                entry = stats.to_dict()
                keyed = self._by_key.get(operation)
                if keyed:
                    entry["by_key"] = {k: s.to_dict() for k, s in sorted(keyed.items())}
                result[operation] = entry
            return result

    def save(self) -> bool:
        """Write the snapshot to the metrics file; False if that failed."""
        data = self.snapshot()
        tmp_file = self.metrics_file.with_suffix(".tmp")
        try:
            self.metrics_file.parent.mkdir(parents=True, exist_ok=True)
            tmp_file.write_text(json.dumps(data, indent=2), encoding="utf-8")
            tmp_file.replace(self.metrics_file)
        except OSError as e:
            logger.error(f"Failed to save metrics to {self.metrics_file}: {e}")
            return False
        return True

    def _load(self) -> None:
        try:
            data = json.loads(self.metrics_file.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable metrics file {self.metrics_file}: {e}")
            return

        try:
            for operation, entry in data.items():
                self._totals[operation] = OperationStats.from_dict(entry)
                for key, keyed in entry.get("by_key", {}).items():
                    self._by_key.setdefault(operation, {})[key] = OperationStats.from_dict(keyed)
        except (AttributeError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring malformed metrics file {self.metrics_file}: {e}")
            self._totals.clear()
            self._by_key.clear()


metrics = MetricsCollector()


@contextmanager
def timed_operation(
    operation: str, key: Optional[Any] = None, **context: Any
) -> Iterator[Dict[str, Any]]:
    """Time a block and record it under ``operation`` (and ``key``).

    Yields a dict; whatever the block puts there is added to the
    completion log line. Setting ``"error"`` in it records the run as
    failed without raising.

    Example:
        with timed_operation("webhook_delivery", key=webhook.id) as op:
            response = client.post(...)
            op["status_code"] = response.status_code
    """
    correlation_id = uuid.uuid4().hex[:8]
    details: Dict[str, Any] = {}
    label = operation if key is None else f"{operation}[{key}]"
    context_str = ", ".join(f"{k}={v}" for k, v in context.items())
    logger.debug(f"[{correlation_id}] {label} started ({context_str})")

    error: Optional[str] = None
    start = time.perf_counter()
    try:
        yield details
    except Exception as e:
        error = str(e) or type(e).__name__
        raise
    finally:
        duration_ms = (time.perf_counter() - start) * 1000
        if error is None and details.get("error"):
            error = str(details["error"])
        metrics.record(operation, duration_ms, error=error, key=key)
        extra = ", ".join(f"{k}={v}" for k, v in details.items())
        if error is None:
            logger.debug(f"[{correlation_id}] {label} done in {duration_ms:.2f}ms {extra}")
        else:
            logger.warning(
                f"[{correlation_id}] {label} failed after {duration_ms:.2f}ms: {error}"
            )


def traced(operation_name: Optional[str] = None) -> Callable[[F], F]:
    """Decorator form of ``timed_operation``; defaults to the function name."""

    def decorator(func: F) -> F:
        operation = operation_name or func.__name__

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            with timed_operation(operation):
                return func(*args, **kwargs)

        return wrapper  # type: ignore[return-value]

    return decorator
