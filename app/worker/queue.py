"""
Durable stage queues backed by the ``pipeline_jobs`` table.

One StageQueue per stage (ocr, classification, extraction, scoring). Jobs are
keyed by (stage, referral_id, document_id); delivery is at-least-once, so
stage handlers must be safe to re-run.

Transaction boundaries belong to the caller: ``enqueue``, ``complete``,
``fail`` and friends only mutate the session, so a stage can finish its own
job and enqueue the next stage in one commit. ``claim`` is the exception: it
commits so the row lock is released as soon as the job is marked processing.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import PipelineJob
from app.worker.config import StageSettings

logger = logging.getLogger(__name__)

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
DEAD = "dead"
SKIPPED = "skipped"


def _utc_now_naive() -> datetime:
    """Naive UTC datetime for DB (TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class StageQueue:
    """Handle on one stage's jobs; built once at startup and carried on the PipelineContext."""

    def __init__(self, stage: str, settings: StageSettings):
        self.stage = stage
        self.settings = settings

    def __repr__(self) -> str:
        return f"StageQueue({self.stage!r})"

    async def find_pending(
        self,
        db: AsyncSession,
        referral_id: UUID,
        document_id: UUID | None = None,
    ) -> PipelineJob | None:
        """Pending job for the same key, if any."""
        doc_clause = (
            PipelineJob.document_id.is_(None) if document_id is None
            else PipelineJob.document_id == document_id
        )
        result = await db.execute(
            select(PipelineJob).where(
                PipelineJob.stage == self.stage,
                PipelineJob.referral_id == referral_id,
                doc_clause,
                PipelineJob.status == PENDING,
            ).limit(1)
        )
        return result.scalar_one_or_none()

    async def enqueue(
        self,
        db: AsyncSession,
        referral_id: UUID,
        document_id: UUID | None = None,
        *,
        priority: int = 0,
        payload: dict[str, Any] | None = None,
    ) -> PipelineJob:
        """Add a job unless one is already pending for the same key.

        A duplicate request returns the pending job, raising its priority and
        making it immediately available when asked for higher priority.
        """
        existing = await self.find_pending(db, referral_id, document_id)
        if existing is not None:
            if priority > (existing.priority or 0):
                existing.priority = priority
                existing.available_at = _utc_now_naive()
            logger.info(
                "[queue:%s] Job already pending for referral %s doc %s (job %s)",
                self.stage, referral_id, document_id, existing.id,
            )
            return existing

        job = PipelineJob(
            stage=self.stage,
            referral_id=referral_id,
            document_id=document_id,
            status=PENDING,
            priority=priority,
            attempts=0,
            max_attempts=self.settings.max_attempts,
            available_at=_utc_now_naive(),
            payload=payload or {},
        )
        db.add(job)
        await db.flush()
        logger.info(
            "[queue:%s] Enqueued job %s for referral %s doc %s (priority %s)",
            self.stage, job.id, referral_id, document_id, priority,
        )
        return job

    async def claim(self, db: AsyncSession, worker_id: str) -> PipelineJob | None:
        """Lock the next available job (FOR UPDATE SKIP LOCKED), mark it processing and commit."""
        now = _utc_now_naive()
        result = await db.execute(
            select(PipelineJob)
            .where(
                PipelineJob.stage == self.stage,
                PipelineJob.status == PENDING,
                PipelineJob.available_at <= now,
            )
            .order_by(PipelineJob.priority.desc(), PipelineJob.created_at)
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        job = result.scalar_one_or_none()
        if job is None:
            return None
        job.status = PROCESSING
        job.attempts = (job.attempts or 0) + 1
        job.worker_id = worker_id
        job.started_at = now
        await db.commit()
        return job

    def complete(self, job: PipelineJob) -> None:
        job.status = COMPLETED
        job.error_message = None
        job.completed_at = _utc_now_naive()

    def fail(self, job: PipelineJob, error: Exception | str) -> bool:
        """Record a failed attempt. Returns True if the job was rescheduled, False if it is now dead."""
        job.error_message = str(error)[:2000]
        job.worker_id = None
        if (job.attempts or 0) < (job.max_attempts or self.settings.max_attempts):
            delay = self.settings.backoff_seconds(job.attempts or 1)
            job.status = PENDING
            job.available_at = _utc_now_naive() + timedelta(seconds=delay)
            logger.warning(
                "[queue:%s] Job %s attempt %s/%s failed, retrying in %.1fs: %s",
                self.stage, job.id, job.attempts, job.max_attempts, delay, job.error_message[:200],
            )
            return True
        job.status = DEAD
        job.completed_at = _utc_now_naive()
        logger.error(
            "[queue:%s] Job %s dead after %s attempts: %s",
            self.stage, job.id, job.attempts, job.error_message[:200],
        )
        return False

    def kill(self, job: PipelineJob, reason: str) -> None:
        """Dead-letter without retry."""
        job.status = DEAD
        job.error_message = reason[:2000]
        job.completed_at = _utc_now_naive()

    def skip(self, job: PipelineJob, reason: str) -> None:
        job.status = SKIPPED
        job.error_message = reason[:2000]
        job.completed_at = _utc_now_naive()

    def is_final_attempt(self, job: PipelineJob) -> bool:
        return (job.attempts or 0) >= (job.max_attempts or self.settings.max_attempts)


def build_queues(stages: dict[str, StageSettings]) -> dict[str, StageQueue]:
    return {name: StageQueue(name, settings) for name, settings in stages.items()}
