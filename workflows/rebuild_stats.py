"""
Prefect Workflow Orchestration - Statistics Replay and Rebuild

Recovery workflows for the per-grade-subject statistics:
- Gap fill: replay an answer sheet export; already-folded sheets are
  acknowledged as duplicates by the processed-events ledger
- Rebuild: drop an exam's statistics and replay its export from scratch,
  the way to retract sheets that were deleted or edited upstream
"""

from typing import Optional

from prefect import flow, task, get_run_logger

from ljk_analytics.aggregation.triggers import EventDispatcher
from ljk_analytics.aggregation.updater import AtomicCounterUpdater
from ljk_analytics.config.logging import configure_logging
from ljk_analytics.database.connection import (
    close_database,
    create_schema,
    get_session_factory,
    init_database,
)
from ljk_analytics.ingestion.batch_loader import BatchLoader
from ljk_analytics.serving.cache import (
    close_redis,
    connect_redis_optional,
    invalidate_exam_reports,
    invalidate_report,
)


# =============================================================================
# TASKS
# =============================================================================

@task(
    name="reset_exam_stats",
    description="Delete the per-grade-subject statistics of one exam",
    retries=2,
    retry_delay_seconds=30,
)
async def reset_exam_stats(exam_id: str) -> int:
    """Delete an exam's statistics rows, their ledger entries and cached reports"""
    logger = get_run_logger()

    updater = AtomicCounterUpdater(get_session_factory())
    removed = await updater.reset_exam_stats(exam_id)
    await invalidate_exam_reports(exam_id)

    logger.info(f"Removed {removed} statistics documents for exam {exam_id}")
    return removed


@task(
    name="replay_answer_export",
    description="Replay an answer sheet export through the trigger layer",
    retries=3,
    retry_delay_seconds=60,
)
async def replay_answer_export(
    export_path: str,
    exam_id: Optional[str] = None,
    concurrency: int = 8,
) -> dict:
    """Load an export and dispatch every sheet in it"""
    logger = get_run_logger()

    dispatcher = EventDispatcher(AtomicCounterUpdater(get_session_factory()), on_folded=invalidate_report)
    loader = BatchLoader(dispatcher, concurrency=concurrency)

    export = loader.load_answer_sheets(export_path, exam_id=exam_id)
    if export.errors:
        logger.warning(f"{len(export.errors)} export lines could not be parsed")

    result = await loader.replay(export.events)

    logger.info(
        f"Replay complete: {result.applied} applied, {result.duplicates} duplicates, "
        f"{result.skipped} skipped, {result.failed} failed"
    )

    return {
        "file_hash": export.file_hash,
        "invalid_lines": [e.model_dump() for e in export.errors],
        **result.model_dump(mode="json"),
    }


# =============================================================================
# FLOWS
# =============================================================================

@flow(
    name="replay_exam_answers",
    description="Fill statistics gaps left by dropped answer sheet events",
)
async def replay_exam_answers(
    export_path: str,
    exam_id: Optional[str] = None,
    database_url: Optional[str] = None,
) -> dict:
    """
    Gap fill.

    Sheets that were already folded are reported as duplicates and leave
    the statistics untouched.
    """
    configure_logging()
    await init_database(database_url)
    await create_schema()
    await connect_redis_optional()
    try:
        return await replay_answer_export(export_path, exam_id=exam_id)
    finally:
        await close_redis()
        await close_database()


@flow(
    name="rebuild_exam_stats",
    description="Rebuild one exam's per-grade-subject statistics from an export",
)
async def rebuild_exam_stats(
    exam_id: str,
    export_path: str,
    database_url: Optional[str] = None,
) -> dict:
    """
    Reset and replay.

    Steps:
    1. Delete the exam's statistics documents, ledger entries and cached reports
    2. Replay the export restricted to this exam

    The global answer sheet total is not rebuilt; its ledger entries
    survive the reset so replayed sheets are not counted twice.
    """
    logger = get_run_logger()
    configure_logging()
    await init_database(database_url)
    await create_schema()
    await connect_redis_optional()

    try:
        removed = await reset_exam_stats(exam_id)
        replay = await replay_answer_export(export_path, exam_id=exam_id)
    finally:
        await close_redis()
        await close_database()

    logger.info(f"Rebuilt exam {exam_id}: {removed} documents dropped, {replay['applied']} sheets folded")
    return {"exam_id": exam_id, "documents_removed": removed, "replay": replay}


if __name__ == "__main__":
    import argparse
    import asyncio

    parser = argparse.ArgumentParser(description="Replay or rebuild exam statistics")
    parser.add_argument("export_path", help="JSON-lines answer sheet export")
    parser.add_argument("--exam-id", help="Restrict to one exam")
    parser.add_argument("--rebuild", action="store_true", help="Reset the exam's statistics first")
    args = parser.parse_args()

    if args.rebuild:
        if not args.exam_id:
            parser.error("--rebuild requires --exam-id")
        asyncio.run(rebuild_exam_stats(args.exam_id, args.export_path))
    else:
        asyncio.run(replay_exam_answers(args.export_path, exam_id=args.exam_id))
