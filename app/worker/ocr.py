"""
OCR stage: fetch the document bytes, run the OCR provider, store text + confidence,
then enqueue classification for the same document.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from app.models import PipelineJob
from app.worker.context import PipelineContext
from app.worker.db import (
    advance_status,
    get_document,
    get_referral,
    mark_referral_failed,
)
from app.worker.errors import FatalStageError, describe_error

logger = logging.getLogger(__name__)

STAGE = "ocr"


def _utc_now_naive() -> datetime:
    """Naive UTC datetime for DB (TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


async def run(ctx: PipelineContext, db: AsyncSession, job: PipelineJob) -> None:
    cfg = ctx.config
    document = await get_document(db, job.document_id)
    if document is None:
        raise FatalStageError(f"Document {job.document_id} not found")
    referral = await get_referral(db, document.referral_id)
    if referral is None:
        raise FatalStageError(f"Referral {document.referral_id} not found")

    if document.ocr_status == "completed" and document.ocr_text is not None:
        # Re-delivered after a successful run: only make sure the next stage is queued
        logger.info("[JOB %s] Document %s already OCR'd; re-enqueueing classification", job.id, document.id)
        await ctx.queue("classification").enqueue(db, referral.id, document.id, priority=job.priority)
        return

    document.ocr_status = "processing"
    advance_status(referral, "processing")
    await db.commit()

    if ctx.ocr_limiter is not None:
        await ctx.ocr_limiter.acquire()

    data = await asyncio.wait_for(
        ctx.storage.get(document.storage_bucket, document.storage_path),
        timeout=cfg.storage_timeout_seconds,
    )
    result = await asyncio.wait_for(
        ctx.ocr.analyze(data, document.mime_type),
        timeout=cfg.ocr_timeout_seconds,
    )

    document.ocr_text = result.text
    document.ocr_confidence = result.confidence
    document.ocr_status = "completed"
    document.ocr_completed_at = _utc_now_naive()
    document.document_type = None
    document.document_type_confidence = None
    document.classification_reasoning = None
    logger.info(
        "[JOB %s] OCR %s: %d chars, confidence %.2f",
        job.id, document.original_filename, len(result.text), result.confidence,
    )

    await ctx.queue("classification").enqueue(db, referral.id, document.id, priority=job.priority)


async def on_exhausted(ctx: PipelineContext, db: AsyncSession, job: PipelineJob, error: BaseException) -> None:
    """Retries used up: document and referral are marked failed; nothing downstream is queued."""
    document = await get_document(db, job.document_id)
    if document is None:
        return
    document.ocr_status = "failed"
    referral = await get_referral(db, document.referral_id)
    if referral is not None:
        mark_referral_failed(
            referral, "failed", f"OCR failed for {document.original_filename}: {describe_error(error)}",
        )
