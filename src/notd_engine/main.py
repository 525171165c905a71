#!/usr/bin/env python
"""Command line entry point for the Notd engine."""
import argparse
import atexit
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, List, Optional

from notd_engine import __version__, observability
from notd_engine.config import config
from notd_engine.exceptions import NotdError
from notd_engine.models.schema import EntityType
from notd_engine.observability import configure_logging
from notd_engine.services.content_service import ContentService

logger = logging.getLogger(__name__)


def _add_entity_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "entity_type",
        choices=[e.value for e in EntityType],
        help="Owner entity type",
    )
    parser.add_argument("entity_id", type=int, help="Owner entity id")


def _add_content_args(parser: argparse.ArgumentParser) -> None:
    _add_entity_args(parser)
    source = parser.add_mutually_exclusive_group()
    source.add_argument("--content", help="Content text (default: read stdin)")
    source.add_argument("--file", type=Path, help="Read content from this file")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="notd-engine",
        description="Notd content pattern processing and property engine",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--database-path",
        help="SQLite database file path",
        type=str,
        default=os.environ.get("NOTD_DATABASE_PATH"),
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.environ.get("NOTD_LOG_LEVEL", "INFO"),
    )
    parser.add_argument(
        "--log-dir",
        help="Directory for rotating log files",
        type=str,
        default=os.environ.get("NOTD_LOG_DIR"),
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    process = subparsers.add_parser("process", help="Extract properties without saving")
    _add_content_args(process)

    save = subparsers.add_parser("save", help="Extract and persist properties")
    _add_content_args(save)

    properties = subparsers.add_parser("properties", help="Show an entity's properties")
    _add_entity_args(properties)
    properties.add_argument(
        "--include-internal",
        action="store_true",
        help="Include internal and hidden properties",
    )

    apply_defs = subparsers.add_parser(
        "apply-definitions", help="Reclassify existing properties from definitions"
    )
    apply_defs.add_argument("--name", help="Only apply the definition for this property")

    verify = subparsers.add_parser("verify-webhook", help="Send a verification event")
    verify.add_argument("webhook_id", type=int)

    test = subparsers.add_parser("test-webhook", help="Send a test event")
    test.add_argument("webhook_id", type=int)

    subparsers.add_parser("metrics", help="Show operation timing totals")

    return parser.parse_args(argv)


def update_config(args: argparse.Namespace) -> None:
    """Update the global config with command line arguments."""
    if args.database_path:
        config.database_path = Path(args.database_path)
    config.log_level = args.log_level


def _read_content(args: argparse.Namespace) -> str:
    if args.content is not None:
        return args.content
    if args.file is not None:
        return args.file.read_text(encoding="utf-8")
    return sys.stdin.read()


def _emit(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def run_command(args: argparse.Namespace, service: ContentService) -> Any:
    """Execute one sub-command and return its JSON-serialisable result."""
    if args.command == "process":
        result = service.process_content(_read_content(args), args.entity_type, args.entity_id)
        return result.model_dump(mode="json")
    if args.command == "save":
        outcome = service.save_content(_read_content(args), args.entity_type, args.entity_id)
        return {
            "result": outcome.result.model_dump(mode="json"),
            "persisted": [p.model_dump(mode="json") for p in outcome.persisted],
        }
    if args.command == "properties":
        return service.get_properties(
            args.entity_type, args.entity_id, include_internal=args.include_internal
        )
    if args.command == "apply-definitions":
        return {"updated": service.apply_definitions(args.name)}
    if args.command in ("verify-webhook", "test-webhook"):
        if args.command == "verify-webhook":
            delivery = service.verify_webhook(args.webhook_id)
        else:
            delivery = service.send_test_webhook(args.webhook_id)
        return delivery._asdict()
    if args.command == "metrics":
        return observability.metrics.snapshot()
    raise ValueError(f"Unknown command: {args.command}")


def _save_metrics_on_exit() -> None:
    """Save metrics to disk on shutdown."""
    if observability.metrics.save():
        logger.debug("Metrics saved to disk on shutdown")


def main(argv: Optional[List[str]] = None) -> int:
    """Run one engine command."""
    args = parse_args(argv)
    update_config(args)

    # Console output is reserved for command results
    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    try:
        configure_logging(log_dir=args.log_dir, level=log_level, console=False)
    except OSError as e:
        logging.basicConfig(level=log_level)
        logger.warning(f"Failed to configure file logging: {e}")

    atexit.register(_save_metrics_on_exit)

    try:
        logger.info(f"Using SQLite database: {config.get_db_url()}")
        service = ContentService(config=config)
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        print(f"Failed to initialize database: {e}", file=sys.stderr)
        return 1

    try:
        _emit(run_command(args, service))
    except NotdError as e:
        logger.error(f"Command '{args.command}' failed: {e}")
        print(json.dumps(e.to_dict(), indent=2, default=str), file=sys.stderr)
        return 1
    finally:
        service.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
