"""CLI command running one timeout sweep pass.

Usage:
    python -m pixelrelay.cli.sweep_tasks [OPTIONS]

Examples:
    # Force-fail stale tasks and retry pending refunds
    python -m pixelrelay.cli.sweep_tasks

    # Only list what would be done
    python -m pixelrelay.cli.sweep_tasks --dry-run

    # Handle at most 10 tasks per step, with debug logging
    python -m pixelrelay.cli.sweep_tasks --limit 10 -v
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace

import structlog

from pixelrelay.core.config import Settings, configure_logging
from pixelrelay.core.database import setup_db_session
from pixelrelay.services.container import open_services
from pixelrelay.services.exceptions import ServiceError
from pixelrelay.uow import create_uow_factory

logger = structlog.get_logger()


def parse_args(argv: list[str] | None = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(
        description="Force-fail tasks stuck past their ceiling and retry pending refunds",
    )

    parser.add_argument(
        "--limit",
        type=int,
        default=50,
        help="Maximum number of tasks handled per step (default: 50)",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report affected tasks without changing anything",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )

    return parser.parse_args(argv)


async def async_main(argv: list[str] | None = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (success), 1 (error), 130 (interrupted)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)

    logger.info("cli.started", limit=args.limit, dry_run=args.dry_run)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)

    try:
        async with open_services(settings, uow_factory) as services:
            report = await services.sweeper.sweep(limit=args.limit, dry_run=args.dry_run)

        print("\n" + "=" * 60)
        print("Task Sweep Summary")
        print("=" * 60)
        print(f"Timed out: {len(report.timed_out)}")
        for task_id in report.timed_out[:10]:
            print(f"  - {task_id}")
        print(f"Refunds retried: {len(report.refunds_retried)}")
        for task_id in report.refunds_retried[:10]:
            print(f"  - {task_id}")
        if report.skipped:
            print(f"Skipped (concurrently handled): {len(report.skipped)}")

        if args.dry_run:
            print("\n[DRY RUN] No changes were made")

        print("=" * 60 + "\n")

        logger.info("cli.success", total=report.total)
        return 0

    except ServiceError as e:
        logger.error("cli.service_error", error=str(e), error_type=type(e).__name__)
        print(f"\nError: {e}", file=sys.stderr)
        return 1

    except KeyboardInterrupt:
        logger.info("cli.interrupted")
        print("\nSweep interrupted by user", file=sys.stderr)
        return 130

    except Exception as e:
        logger.error("cli.unexpected_error", error=str(e), error_type=type(e).__name__)
        print(f"\nUnexpected error: {e}", file=sys.stderr)
        return 1


def main() -> None:
    """Synchronous entry point for CLI."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
