"""
Pipeline worker entry-point.

Thin shell: main() -> worker_loop() -> one pool per stage -> stage_worker()
-> process_job() -> the stage module's ``run`` / ``on_exhausted``.
Business logic lives in ``app.worker.{ocr, classify, extract, score}``.
DB access is via ``app.worker.db``. Configuration via ``app.worker.config``.
"""
import asyncio
import importlib
import logging
import os
import sys
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from app.models import PipelineJob
from app.worker import classify, extract, ocr, score
from app.worker.config import WorkerConfig, load_worker_config
from app.worker.context import PipelineContext, build_context
from app.worker.db import recover_stale_jobs, safe_commit, safe_rollback
from app.worker.errors import FatalStageError, InvariantViolation, record_stage_error

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

def configure_logging(cfg: WorkerConfig) -> None:
    """Root logging for the worker process from WORKER_LOG_LEVEL / WORKER_LOG_FORMAT."""
    level = getattr(logging, cfg.log_level.upper(), None)
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level, format=cfg.log_format, force=True)


def _utc_now_naive() -> datetime:
    """Naive UTC datetime for DB (TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


WORKER_ID = f"worker-{os.getpid()}-{_utc_now_naive().isoformat()}"

# stage name -> module exposing run(ctx, db, job) and on_exhausted(ctx, db, job, error)
STAGE_HANDLERS = {
    ocr.STAGE: ocr,
    classify.STAGE: classify,
    extract.STAGE: extract,
    score.STAGE: score,
}

STARTUP_MIGRATIONS = [
    ("pipeline_indexes", "app.migrations.add_pipeline_indexes"),
]


# ---------------------------------------------------------------------------
# process_job
# ---------------------------------------------------------------------------

async def process_job(ctx: PipelineContext, job: PipelineJob, db: AsyncSession) -> str:
    """Run one claimed job and settle it. Never raises; returns the job's final status."""
    job_id, stage = job.id, job.stage
    referral_id, document_id = job.referral_id, job.document_id
    handler = STAGE_HANDLERS[stage]
    queue = ctx.queue(stage)
    job_start_time = _utc_now_naive()
    logger.info(
        "[JOB %s] %s attempt %s/%s for referral %s doc %s",
        job_id, stage, job.attempts, job.max_attempts, referral_id, document_id,
    )

    try:
        await handler.run(ctx, db, job)
        queue.complete(job)
        await db.commit()
        job_duration = (_utc_now_naive() - job_start_time).total_seconds()
        logger.info("[JOB %s] Completed in %.2fs", job_id, job_duration)
        return job.status
    except Exception as e:
        error = e

    job_duration = (_utc_now_naive() - job_start_time).total_seconds()
    await safe_rollback(db)
    try:
        await db.refresh(job)
    except Exception as refresh_err:
        logger.error("[JOB %s] Could not reload job after rollback: %s", job_id, refresh_err, exc_info=True)
        return "unknown"

    recovered = False
    if isinstance(error, FatalStageError):
        logger.error("[JOB %s] Fatal after %.2fs, not retrying: %s", job_id, job_duration, error)
        queue.kill(job, str(error))
    elif isinstance(error, InvariantViolation):
        logger.error("[JOB %s] Invariant violation (bug), skipping job: %s", job_id, error)
        queue.skip(job, str(error))
    else:
        logger.error("[JOB %s] Error after %.2fs: %s", job_id, job_duration, error, exc_info=True)
        recovered = queue.fail(job, error)
        if not recovered:
            try:
                await handler.on_exhausted(ctx, db, job, error)
            except Exception as hook_err:
                logger.error("[JOB %s] Failed to mark %s failure: %s", job_id, stage, hook_err, exc_info=True)

    if not await safe_commit(db):
        logger.error("[JOB %s] Failed to persist failure status", job_id)
    await record_stage_error(
        db,
        stage=stage,
        error=error,
        referral_id=referral_id,
        document_id=document_id,
        job_id=job_id,
        recovered=recovered,
        error_details={"attempt": job.attempts, "max_attempts": job.max_attempts},
    )
    logger.info("[JOB %s] Final status: %s", job_id, job.status)
    return job.status


# ---------------------------------------------------------------------------
# Stage pools
# ---------------------------------------------------------------------------

async def stage_worker(ctx: PipelineContext, stage: str, index: int) -> None:
    """One consumer of *stage*'s queue. Runs forever."""
    queue = ctx.queue(stage)
    worker_id = f"{WORKER_ID}-{stage}-{index}"
    cfg = ctx.config
    poll_count = 0
    while True:
        try:
            async with ctx.session_factory() as db:
                job = await queue.claim(db, worker_id)
                if job:
                    await process_job(ctx, job, db)
            if job:
                poll_count = 0
                continue
            poll_count += 1
            if poll_count % 10 == 0:
                logger.debug("[%s-%s] No pending jobs (poll #%s)", stage, index, poll_count)
            await asyncio.sleep(cfg.poll_interval_seconds)
        except Exception as e:
            logger.error("[%s-%s] Error in worker loop: %s", stage, index, e, exc_info=True)
            await asyncio.sleep(cfg.error_sleep_seconds)


async def _run_startup_migrations() -> None:
    for label, mod_path in STARTUP_MIGRATIONS:
        try:
            m = importlib.import_module(mod_path)
            await m.migrate()
        except Exception as migrate_err:
            logger.warning("Startup migration (%s) skipped/failed: %s", label, migrate_err)


async def worker_loop(ctx: PipelineContext | None = None, stages: list[str] | None = None):
    """Start one pool per stage (sized by WorkerConfig) and run until cancelled."""
    ctx = ctx or build_context()
    stages = stages or list(ctx.queues)
    logger.info("Worker %s starting stages: %s", WORKER_ID, ", ".join(stages))

    await _run_startup_migrations()

    try:
        async with ctx.session_factory() as db:
            recovered = await recover_stale_jobs(
                db, ctx.config.stale_job_timeout_minutes, worker_id=WORKER_ID,
            )
            if recovered:
                logger.info("[stale-recovery] Recovered %s jobs", recovered)
    except Exception as e:
        logger.warning("[stale-recovery] Failed: %s", e, exc_info=True)

    tasks = []
    for stage in stages:
        settings = ctx.config.stage(stage)
        logger.info("Stage %s: concurrency=%s max_attempts=%s", stage, settings.concurrency, settings.max_attempts)
        tasks.extend(stage_worker(ctx, stage, i) for i in range(settings.concurrency))
    await asyncio.gather(*tasks)


# ---------------------------------------------------------------------------
# main
# ---------------------------------------------------------------------------

def main():
    """Entry point for worker process. WORKER_STAGES=ocr,classification limits the pools started."""
    cfg = load_worker_config()
    configure_logging(cfg)
    stages = [s.strip() for s in os.getenv("WORKER_STAGES", "").split(",") if s.strip()] or None
    try:
        asyncio.run(worker_loop(build_context(cfg), stages=stages))
    except KeyboardInterrupt:
        logger.info("Worker shutting down...")
    except Exception as e:
        logger.error("Fatal error in worker: %s", e, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
