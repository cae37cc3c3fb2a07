"""CLI command for a one-shot reaper pass.

Usage:
    python -m aistudio.cli [OPTIONS]

Examples:
    # Scheduled cleanup (age-gated timeouts)
    python -m aistudio.cli

    # Manual incident reset of both queues
    python -m aistudio.cli --reset

    # Report what would change without writing
    python -m aistudio.cli --reset --dry-run

    # Verbose logging
    python -m aistudio.cli -v
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace
from typing import Optional, Sequence

import structlog

from aistudio.core import timezone  # noqa: F401
from aistudio.core.config import Settings, configure_logging
from aistudio.core.database import setup_db_session
from aistudio.uow import create_uow_factory
from aistudio.workers.reaper import CleanupMode, CleanupSummary, Reaper

logger = structlog.get_logger()

SUMMARY_LABELS = [
    ("stuck_queued", "Stuck queued jobs failed"),
    ("stuck_submitted", "Stuck submitted jobs failed"),
    ("stuck_running", "Running jobs without provider id failed"),
    ("stuck_saving", "Stuck saving jobs failed"),
    ("stale", "Stale jobs failed"),
    ("prompt_processing_reset", "Prompt jobs requeued"),
    ("prompt_failed", "Prompt jobs failed"),
    ("prompt_queued_boosted", "Prompt jobs boosted"),
    ("dependent_jobs_updated", "Dependent jobs updated"),
    ("rows_updated", "Rows re-aggregated"),
]


def parse_args(argv: Optional[Sequence[str]] = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(
        description="Fail or requeue stuck generation and prompt jobs",
        epilog="Without --reset the scheduled timeouts apply",
    )

    parser.add_argument(
        "--reset",
        action="store_true",
        help="Manual incident reset (ignores the prompt processing age gate)",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Count stuck jobs without database writes",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )

    return parser.parse_args(argv)


def print_summary(summary: CleanupSummary) -> None:
    print("\n" + "=" * 60)
    print(f"Cleanup Summary ({summary.mode.value})")
    print("=" * 60)
    for name, label in SUMMARY_LABELS:
        print(f"{label}: {getattr(summary, name)}")
    print(f"Total cleaned: {summary.cleaned_count}")
    if summary.errors:
        print(f"\nItems that could not be repaired: {summary.errors}")
    if summary.dry_run:
        print("\n[DRY RUN] No changes were persisted to database")
    print("=" * 60 + "\n")


async def async_main(argv: Optional[Sequence[str]] = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (success), 1 (error), 2 (some items failed)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)

    mode = CleanupMode.RESET if args.reset else CleanupMode.SCHEDULED
    logger.info("cli.started", mode=mode.value, dry_run=args.dry_run)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    reaper = Reaper(create_uow_factory(session_factory))

    try:
        summary = await reaper.cleanup(mode, dry_run=args.dry_run)

    except KeyboardInterrupt:
        logger.info("cli.interrupted")
        print("\nCleanup interrupted by user", file=sys.stderr)
        return 130

    except Exception as e:
        logger.error(
            "cli.unexpected_error",
            error=str(e),
            error_type=type(e).__name__,
        )
        print(f"\nUnexpected error: {e}", file=sys.stderr)
        return 1

    finally:
        await session_factory.kw["bind"].dispose()

    print_summary(summary)

    if summary.errors:
        logger.warning("cli.partial_success", errors=summary.errors)
        return 2
    logger.info("cli.success", cleaned_count=summary.cleaned_count)
    return 0


def main() -> None:
    """Synchronous entry point for CLI."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
