"""CLI entry point for Chat Signal Monitor.

This module provides the main entry point for running the monitor
from the command line.

Usage:
    python -m chat_signal_monitor [options]
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import logging.config
import sys
from typing import IO, NoReturn

from pydantic import ValidationError

from chat_signal_monitor import __version__
from chat_signal_monitor.config import Settings, clear_settings_cache, get_settings
from chat_signal_monitor.detector.engine import DetectionEngine, StoreError
from chat_signal_monitor.detector.matching import SignalValidationError
from chat_signal_monitor.detector.models import SignalKind
from chat_signal_monitor.ingestor.source import JsonLinesSource
from chat_signal_monitor.pipeline import Pipeline
from chat_signal_monitor.shutdown import GracefulShutdown

# Application info
APP_NAME = "Chat Signal Monitor"
APP_VERSION = __version__

# Exit codes
EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_CONFIG_ERROR = 2
EXIT_INTERRUPTED = 130

STDIN_PATH = "-"


def parse_signal_arg(value: str) -> tuple[SignalKind, str]:
    """Parse a ``KIND:PATTERN`` signal argument.

    Without a recognised kind prefix the whole value is a keyword.

    Raises:
        argparse.ArgumentTypeError: If the pattern is empty.
    """
    kind = SignalKind.KEYWORD
    pattern = value
    prefix, sep, rest = value.partition(":")
    if sep:
        with contextlib.suppress(ValueError):
            kind = SignalKind(prefix.lower())
            pattern = rest
    if not pattern.strip():
        raise argparse.ArgumentTypeError(f"empty signal pattern in {value!r}")
    return kind, pattern


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI.

    Returns:
        Configured ArgumentParser instance.
    """
    parser = argparse.ArgumentParser(
        prog="chat-signal-monitor",
        description="Match chat messages against signals and track the resulting alerts.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m chat_signal_monitor --input messages.jsonl
  python -m chat_signal_monitor --signal bitcoin --signal 'regex:\\$[0-9]+' < messages.jsonl
  python -m chat_signal_monitor --config-check
  python -m chat_signal_monitor --log-level DEBUG --input -
        """,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {APP_VERSION}",
    )

    parser.add_argument(
        "--config-check",
        action="store_true",
        help="Validate configuration and exit without processing messages",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override logging level (default: from settings)",
    )

    parser.add_argument(
        "--input",
        default=STDIN_PATH,
        metavar="PATH",
        help="JSON-lines file of messages to process ('-' for stdin, the default)",
    )

    parser.add_argument(
        "--signal",
        dest="signals",
        action="append",
        default=[],
        type=parse_signal_arg,
        metavar="KIND:PATTERN",
        help="Create and store a signal before processing (kind: keyword, phrase, regex)",
    )

    return parser


def configure_logging(level: str) -> None:
    """Configure logging for the application.

    Args:
        level: Logging level string (DEBUG, INFO, etc.)
    """
    config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
            "detailed": {
                "format": (
                    "%(asctime)s [%(levelname)s] %(name)s (%(filename)s:%(lineno)d): %(message)s"
                ),
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": level,
                "formatter": "detailed" if level == "DEBUG" else "standard",
                "stream": "ext://sys.stderr",
            },
        },
        "root": {
            "level": level,
            "handlers": ["console"],
        },
        "loggers": {
            "sqlalchemy": {"level": "WARNING"},
            "aiosqlite": {"level": "WARNING"},
            "asyncio": {"level": "WARNING"},
        },
    }
    logging.config.dictConfig(config)


def print_banner() -> None:
    """Print the application startup banner."""
    banner = f"""
+--------------------------------------------------------------+
|   {APP_NAME:^56}   |
|   {"v" + APP_VERSION:^56}   |
+--------------------------------------------------------------+
"""
    print(banner)


def print_config_summary(settings: Settings) -> None:
    """Print a summary of the configuration.

    Args:
        settings: Application settings.
    """
    summary = settings.redacted_summary()
    print("Configuration:")
    print(f"  Database: {summary['database_url']}")
    print(f"  Recent match buffer: {summary['recent_match_limit']}")
    print(f"  Context window: {summary['context_chars']} chars")
    print(f"  Persist timeout: {summary['persist_timeout']}")
    print(f"  Alert feed size: {summary['max_alerts']}")
    print(f"  Log Level: {summary['log_level']}")
    print()


def validate_config() -> Settings | None:
    """Validate and load configuration.

    Returns:
        Settings instance if valid, None if invalid.
    """
    try:
        clear_settings_cache()
        return get_settings()
    except ValidationError as e:
        print("Configuration validation failed:", file=sys.stderr)
        for error in e.errors():
            field = ".".join(str(loc) for loc in error["loc"])
            msg = error["msg"]
            print(f"  {field}: {msg}", file=sys.stderr)
        return None


def run_config_check(settings: Settings) -> int:
    """Run configuration check and exit.

    Args:
        settings: Validated settings.

    Returns:
        Exit code (0 for success).
    """
    print("Configuration is valid!")
    print()
    print_config_summary(settings)
    return EXIT_SUCCESS


async def register_signals(
    engine: DetectionEngine,
    signal_args: list[tuple[SignalKind, str]],
) -> int:
    """Create and store signals given on the command line.

    Signals already loaded with the same kind and pattern are skipped. Patterns
    are unique in the store whatever their kind, so a pattern the store
    rejects (stored under another kind, or deactivated earlier) is logged
    and skipped.

    Returns:
        Number of signals created.
    """
    logger = logging.getLogger(__name__)
    existing = {(s.kind, s.pattern) for s in engine.active_signals()}
    created = 0
    for kind, pattern in signal_args:
        if (kind, pattern) in existing:
            continue
        try:
            await engine.create_signal(pattern, kind)
        except StoreError as e:
            logger.warning("Skipping %s signal %r: %s", kind.value, pattern, e)
            continue
        existing.add((kind, pattern))
        created += 1
    return created


def print_alert_summary(pipeline: Pipeline) -> None:
    """Print the state of the alert feed after a run."""
    manager = pipeline.alert_manager
    print()
    print(f"Messages processed: {pipeline.messages_processed}")
    print(f"Alerts: {len(manager.alerts)} ({manager.unread_count} unread)")
    for alert in manager.alerts[:10]:
        print(f"  [signal {alert.signal_id}] chat {alert.match.chat_id}: {alert.display_message}")


def _open_input(path: str) -> contextlib.AbstractContextManager[IO[str]]:
    if path == STDIN_PATH:
        return contextlib.nullcontext(sys.stdin)
    return open(path, encoding="utf-8")


async def run_pipeline(
    settings: Settings,
    input_path: str = STDIN_PATH,
    signal_args: list[tuple[SignalKind, str]] | None = None,
    shutdown_timeout: float = 30.0,
) -> int:
    """Run the pipeline over a message stream with graceful shutdown handling.

    Args:
        settings: Application settings.
        input_path: JSON-lines file to read, or ``-`` for stdin.
        signal_args: Signals to create before processing.
        shutdown_timeout: Maximum time to wait for cleanup.

    Returns:
        Exit code.
    """
    logger = logging.getLogger(__name__)
    shutdown = GracefulShutdown(timeout=shutdown_timeout)

    try:
        async with shutdown:
            pipeline = Pipeline(settings)
            shutdown.register_cleanup(pipeline.stop)

            logger.info("Starting pipeline...")
            await pipeline.start()
            created = await register_signals(pipeline.engine, signal_args or [])
            if created:
                logger.info("Created %d signal(s) from command line", created)

            with _open_input(input_path) as stream:
                completed = await shutdown.run(pipeline.run(JsonLinesSource(stream)))
            if not completed:
                logger.info("Stopped before the input was exhausted")

            print_alert_summary(pipeline)

        return EXIT_SUCCESS
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return EXIT_INTERRUPTED
    except (SignalValidationError, StoreError, OSError) as e:
        logger.error("Pipeline failed: %s", e)
        return EXIT_ERROR
    except Exception as e:
        logger.exception("Pipeline failed: %s", e)
        return EXIT_ERROR


def main(argv: list[str] | None = None) -> NoReturn:
    """Main entry point for the CLI.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:]).
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    settings = validate_config()
    if settings is None:
        sys.exit(EXIT_CONFIG_ERROR)

    log_level = args.log_level or settings.log_level
    configure_logging(log_level)

    print_banner()

    if args.config_check:
        sys.exit(run_config_check(settings))

    print_config_summary(settings)

    exit_code = asyncio.run(run_pipeline(settings, args.input, args.signals))
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
