"""
Classification stage: type one OCR'd document, then check whether the whole
referral is ready for extraction.

Only the worker that observes every sibling with OCR completed and a type set
enqueues extraction. The check runs under a row lock on the referral, so two
workers finishing the last two documents cannot both miss the complete set.
"""
from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from app.models import PipelineJob
from app.services.classification import classify
from app.worker.context import PipelineContext
from app.worker.db import (
    all_documents_classified,
    get_document,
    get_referral,
    list_documents,
    lock_referral,
    mark_referral_failed,
)
from app.worker.errors import FatalStageError, InvariantViolation, describe_error

logger = logging.getLogger(__name__)

STAGE = "classification"


async def run(ctx: PipelineContext, db: AsyncSession, job: PipelineJob) -> None:
    cfg = ctx.config
    document = await get_document(db, job.document_id)
    if document is None:
        raise FatalStageError(f"Document {job.document_id} not found")
    if document.ocr_status != "completed":
        raise InvariantViolation(
            f"Classification fired for document {document.id} with ocr_status={document.ocr_status}"
        )

    # Malformed or failed model output is retried; the last attempt degrades to "other"
    strict = not ctx.queue(STAGE).is_final_attempt(job)
    result = await classify(
        document.ocr_text or "",
        ctx.require_llm(),
        prefix_chars=cfg.classification_prefix_chars,
        prompt_version=cfg.prompt_version,
        timeout=cfg.llm_call_timeout_seconds,
        strict=strict,
    )
    document.document_type = result.type
    document.document_type_confidence = result.confidence
    document.classification_reasoning = result.reasoning
    await db.flush()

    referral = await lock_referral(db, document.referral_id)
    if referral is None:
        raise FatalStageError(f"Referral {document.referral_id} not found")
    siblings = await list_documents(db, referral.id, refresh=True)
    if all_documents_classified(siblings):
        logger.info("[JOB %s] All %d documents classified; enqueueing extraction", job.id, len(siblings))
        await ctx.queue("extraction").enqueue(db, referral.id, priority=job.priority)
    else:
        done = sum(1 for d in siblings if d.ocr_status == "completed" and d.document_type)
        logger.info("[JOB %s] %d/%d documents classified; waiting", job.id, done, len(siblings))


async def on_exhausted(ctx: PipelineContext, db: AsyncSession, job: PipelineJob, error: BaseException) -> None:
    document = await get_document(db, job.document_id)
    referral = await get_referral(db, document.referral_id if document else job.referral_id)
    if referral is not None:
        name = document.original_filename if document else job.document_id
        mark_referral_failed(referral, "failed", f"Classification failed for {name}: {describe_error(error)}")
