#!/usr/bin/env python3
"""
One-shot Admin Commands

Usage:
    python -m engagement_backbone.cli queue-stats bulk-import
    python -m engagement_backbone.cli retry-failed-enqueues --limit 500
    python -m engagement_backbone.cli obliterate bulk-import
    python -m engagement_backbone.cli start-backfill
    python -m engagement_backbone.cli start-import --target-unprocessed 1000
    python -m engagement_backbone.cli run-workers

Exit codes: 0 success, 1 configuration/precondition, 2 broker unavailable,
3 database unavailable. Command results are printed as JSON on stdout.
"""

import argparse
import asyncio
import signal
import sys
from collections.abc import Awaitable, Callable
from typing import Any

import orjson

from engagement_backbone.config.constants import (
    ALL_QUEUES,
    EXIT_BROKER_UNAVAILABLE,
    EXIT_CONFIG_ERROR,
    EXIT_DATABASE_UNAVAILABLE,
    EXIT_OK,
)
from engagement_backbone.config.settings import get_settings
from engagement_backbone.container import ServiceContainer
from engagement_backbone.core.exceptions import (
    BrokerError,
    ConfigurationError,
    DatabaseError,
    ImportInProgressError,
    QueueError,
)
from engagement_backbone.core.logging.logger import get_logger, setup_logging
from engagement_backbone.infrastructure.broker.broker_client import close_broker, init_broker
from engagement_backbone.infrastructure.database.engine import close_databases, init_databases
from engagement_backbone.pipelines.bulk_import import ImportOptions

logger = get_logger(__name__)

Command = Callable[[ServiceContainer, argparse.Namespace], Awaitable[Any]]


def create_parser() -> argparse.ArgumentParser:
    """Create command-line argument parser."""
    parser = argparse.ArgumentParser(
        prog="engagement-backbone",
        description="One-shot admin commands of the engagement backbone",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s queue-stats bulk-import
  %(prog)s retry-failed-enqueues --limit 500
  %(prog)s start-import --full-import --batch-size 2000
  %(prog)s run-workers
        """,
    )
    subparsers = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")

    stats = subparsers.add_parser("queue-stats", help="Print job counts of one queue")
    stats.add_argument("queue", choices=ALL_QUEUES)

    retry = subparsers.add_parser("retry-failed-enqueues", help="Replay pending failed-enqueue ledger rows")
    retry.add_argument("--limit", type=int, default=100, metavar="N", help="Rows per run (default: 100)")

    obliterate = subparsers.add_parser("obliterate", help="Delete every key of one queue")
    obliterate.add_argument("queue", choices=ALL_QUEUES)

    subparsers.add_parser("start-backfill", help="Enqueue an engagement score job per active user")

    start_import = subparsers.add_parser("start-import", help="Scan the catalog and enqueue imports")
    start_import.add_argument("--reimport-all", action="store_true", help="Re-import already imported users")
    start_import.add_argument("--target-unprocessed", type=int, metavar="N", help="Stop after N unprocessed users")
    start_import.add_argument("--max-customers", type=int, metavar="N", help="Cap on scanned customers")
    start_import.add_argument("--full-import", action="store_true", help="Enqueue every catalog customer")
    start_import.add_argument("--batch-size", type=int, metavar="N", help="Customer cap in full import mode")

    subparsers.add_parser("run-workers", help="Run all pipeline workers until SIGINT/SIGTERM")

    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    return parser


# ============================================================================
# Commands
# ============================================================================

async def cmd_queue_stats(container: ServiceContainer, args: argparse.Namespace) -> dict[str, Any]:
    return await container.queue(args.queue).stats()


async def cmd_retry_failed_enqueues(container: ServiceContainer, args: argparse.Namespace) -> dict[str, Any]:
    return await container.imports.retry_failed_enqueues(limit=args.limit)


async def cmd_obliterate(container: ServiceContainer, args: argparse.Namespace) -> dict[str, Any]:
    def _report(progress: dict[str, Any]) -> None:
        logger.info("Obliterate progress", stage="CLI.OBLITERATE", queue=args.queue, **progress)

    return await container.queue(args.queue).obliterate_with_progress(_report)


async def cmd_start_backfill(container: ServiceContainer, args: argparse.Namespace) -> dict[str, Any]:
    return await container.backfill.start_backfill()


async def cmd_start_import(container: ServiceContainer, args: argparse.Namespace) -> dict[str, Any]:
    options = ImportOptions(
        reimport_all=args.reimport_all,
        target_unprocessed=args.target_unprocessed,
        max_customers=args.max_customers,
        full_import=args.full_import,
        batch_size=args.batch_size,
    )
    return await container.import_service.start_bulk_import(options)


async def cmd_run_workers(container: ServiceContainer, args: argparse.Namespace) -> dict[str, Any]:
    """Start every pipeline worker and block until a stop signal arrives."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await container.start_workers()
    await stop.wait()
    status = container.worker_status()
    await container.close_workers()
    return {"workers": status}


COMMANDS: dict[str, Command] = {
    "queue-stats": cmd_queue_stats,
    "retry-failed-enqueues": cmd_retry_failed_enqueues,
    "obliterate": cmd_obliterate,
    "start-backfill": cmd_start_backfill,
    "start-import": cmd_start_import,
    "run-workers": cmd_run_workers,
}


# ============================================================================
# Runner
# ============================================================================

async def run_command(args: argparse.Namespace) -> int:
    """
    Bring up broker and databases, run one command, tear everything down.

    STAGE-CLI.1: One-shot command
    """
    settings = get_settings()
    container: ServiceContainer | None = None
    try:
        broker = await init_broker()
        if not broker.is_ready:
            logger.error("Broker unavailable", stage="CLI.1", command=args.command)
            return EXIT_BROKER_UNAVAILABLE
        database = await init_databases(settings)
        container = ServiceContainer.build(broker, database, settings)

        result = await COMMANDS[args.command](container, args)
        sys.stdout.write(orjson.dumps(result, option=orjson.OPT_INDENT_2, default=str).decode() + "\n")
        return EXIT_OK

    except (ConfigurationError, ImportInProgressError) as e:
        logger.error("Command precondition failed", stage="CLI.1", command=args.command, error=str(e))
        return EXIT_CONFIG_ERROR
    except BrokerError as e:
        logger.error("Broker unavailable", stage="CLI.1", command=args.command, error=str(e))
        return EXIT_BROKER_UNAVAILABLE
    except DatabaseError as e:
        logger.error("Database unavailable", stage="CLI.1", command=args.command, error=str(e))
        return EXIT_DATABASE_UNAVAILABLE
    except QueueError as e:
        logger.error("Command failed", stage="CLI.1", command=args.command, error=str(e))
        return EXIT_CONFIG_ERROR
    finally:
        if container is not None:
            await container.close()
        await close_databases()
        await close_broker()


def main(argv: list[str] | None = None) -> int:
    """Application entry point."""
    args = create_parser().parse_args(argv)
    settings = get_settings()
    setup_logging(
        log_level="DEBUG" if args.verbose else settings.logging.LOG_LEVEL,
        log_format=settings.logging.LOG_FORMAT,
    )
    try:
        return asyncio.run(run_command(args))
    except KeyboardInterrupt:
        logger.warning("Operation interrupted by user", stage="CLI.1")
        return EXIT_CONFIG_ERROR


if __name__ == "__main__":
    sys.exit(main())
