#!/usr/bin/env python3
"""Generate AI justifications for bank questions that do not have one.

Supports:
- Previewing coverage and the next batch (--dry-run)
- Filtering by subject, level and grade
- Running one batch (default) or every batch until none is left (--all)
"""

import asyncio
import logging
import sys
import uuid

from core.config import get_settings
from core.logging_config import set_run_id, setup_logging
from schemas.justification import (
    BatchProcessingConfig,
    BatchProcessingResult,
    JustificationStats,
    QuestionFilters,
)
from services.ai.exceptions import PipelineError
from services.ai.generative_client import GenerativeClient
from services.ai.scheduler import RateLimitedScheduler
from services.document_store import DocumentStore
from services.justification_service import JustificationService
from services.resources.topics import grade_name


logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 10


def print_stats(stats: JustificationStats) -> None:
    print("\n" + "=" * 50)
    print("📊 JUSTIFICATION COVERAGE")
    print("=" * 50)
    print(f"Total questions:      {stats.total}")
    print(f"With justification:   {stats.with_justification}")
    print(f"Without:              {stats.without_justification}")
    if stats.average_confidence is not None:
        print(f"Average confidence:   {stats.average_confidence:.2f}")
    for title, buckets, label in (
        ("By subject", stats.by_subject, str),
        ("By level", stats.by_level, str),
        ("By grade", stats.by_grade, grade_name),
    ):
        print(f"\n{title}:")
        for key, counts in sorted(buckets.items()):
            print(f"  {label(key)}: {counts.with_justification}/{counts.total}")
    print("=" * 50)


def print_result(result: BatchProcessingResult) -> None:
    print("\n" + "=" * 50)
    print("📈 BATCH SUMMARY")
    print("=" * 50)
    print(f"Processed:     {result.total_processed}")
    print(f"Succeeded:     {result.successful}")
    print(f"Failed:        {result.failed}")
    if result.unrecoverable:
        print(f"Unrecoverable: {result.unrecoverable}")
    print(f"Skipped:       {result.skipped}")
    print(f"Success rate:  {result.success_rate:.1f}%")
    print(f"Duration:      {result.duration_ms / 1000:.1f}s")
    if result.errors:
        print("\nErrors:")
        for error in result.errors:
            print(f"  - {error.question_code}: {error.error}")
    print("=" * 50)


async def run(
    *,
    dry_run: bool,
    batch_size: int,
    delay_ms: int | None,
    filters: QuestionFilters,
    process_all: bool,
) -> int:
    """Run the backfill and return the process exit code."""
    settings = get_settings()
    if delay_ms is None:
        delay_ms = int(settings.JUSTIFICATION_DELAY_SECONDS * 1000)
    store = DocumentStore.from_url(settings.DATABASE_URL)
    try:
        await store.create_schema()
        client = GenerativeClient(settings)
        if not dry_run:
            client.connect()
        service = JustificationService(
            store, RateLimitedScheduler(client, settings), settings
        )

        print_stats(await service.get_stats(filters))
        config = BatchProcessingConfig(
            batch_size=batch_size,
            delay_between_items_ms=delay_ms,
            dry_run=dry_run,
            filters=filters,
        )
        if dry_run:
            logger.info("🔍 DRY RUN - no justification will be generated")
            print_result(await service.process_batch(config))
            return 0

        if process_all:
            result = await service.process_all(config)
        else:
            result = await service.process_batch(config)
        print_result(result)
        print_stats(await service.get_stats(filters))
        if result.unrecoverable:
            logger.error(
                "❌ %d question(s) failed with unrecoverable errors",
                result.unrecoverable,
            )
            return 1
        return 0
    finally:
        await store.dispose()


def main() -> None:
    """CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(
        description="Generate AI justifications for questions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Coverage report and the questions the next batch would take
  python -m scripts.generate_justifications --dry-run

  # One batch of 20 Matemáticas questions
  python -m scripts.generate_justifications --subject Matemáticas --batch-size 20

  # Keep going until every matching question has a justification
  python -m scripts.generate_justifications --all
        """,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be processed without generating anything",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=DEFAULT_BATCH_SIZE,
        help="Questions per batch",
    )
    parser.add_argument(
        "--delay",
        type=int,
        default=None,
        help="Delay between questions in milliseconds (default: from settings)",
    )
    parser.add_argument("--subject", default=None, help="Only this subject")
    parser.add_argument("--level", default=None, help="Only this difficulty level")
    parser.add_argument("--grade", default=None, help="Only this grade code")
    parser.add_argument(
        "--all",
        action="store_true",
        dest="process_all",
        help="Process batches until no question is left",
    )
    args = parser.parse_args()

    if args.batch_size < 1:
        parser.error("--batch-size must be at least 1")
    if args.delay is not None and args.delay < 0:
        parser.error("--delay cannot be negative")

    setup_logging()
    set_run_id(uuid.uuid4().hex[:8])

    try:
        exit_code = asyncio.run(
            run(
                dry_run=args.dry_run,
                batch_size=args.batch_size,
                delay_ms=args.delay,
                filters=QuestionFilters(
                    subject=args.subject, level=args.level, grade=args.grade
                ),
                process_all=args.process_all,
            )
        )
    except PipelineError as exc:
        logger.error("❌ Fatal error (%s): %s", exc.error_code, exc.message)
        sys.exit(1)
    except Exception:
        logger.exception("❌ Fatal error")
        sys.exit(1)

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
