"""
Extraction stage: merge every classified document of a referral into one
PatientRecord, upsert it, then enqueue scoring.
"""
from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import MODEL_VERSION
from app.models import PipelineJob
from app.services.extraction import SourceDocument, extract
from app.worker.context import PipelineContext
from app.worker.db import (
    advance_status,
    all_documents_classified,
    apply_patient_fields,
    get_referral,
    list_documents,
    mark_referral_failed,
    upsert_extraction,
)
from app.worker.errors import FatalStageError, InvariantViolation, describe_error

logger = logging.getLogger(__name__)

STAGE = "extraction"


async def run(ctx: PipelineContext, db: AsyncSession, job: PipelineJob) -> None:
    cfg = ctx.config
    referral = await get_referral(db, job.referral_id)
    if referral is None:
        raise FatalStageError(f"Referral {job.referral_id} not found")

    documents = await list_documents(db, referral.id)
    if not all_documents_classified(documents):
        pending = [str(d.id) for d in documents if d.ocr_status != "completed" or not d.document_type]
        raise InvariantViolation(
            f"Extraction fired for referral {referral.id} with unclassified documents: {', '.join(pending) or 'none uploaded'}"
        )

    llm = ctx.require_llm()
    strict = not ctx.queue(STAGE).is_final_attempt(job)
    result = await extract(
        [SourceDocument(type=d.document_type, text=d.ocr_text or "", document_id=str(d.id)) for d in documents],
        llm,
        max_chars_per_document=cfg.extraction_document_chars,
        prompt_version=cfg.prompt_version,
        timeout=cfg.llm_call_timeout_seconds,
        strict=strict,
    )
    if result.degraded:
        logger.warning(
            "[JOB %s] Extraction degraded to empty record after %s attempts: %s",
            job.id, job.attempts, result.error,
        )

    await upsert_extraction(
        db,
        referral.id,
        result.record,
        raw=result.raw,
        model=getattr(llm, "model_name", None),
        version=MODEL_VERSION,
        source_document_ids=[str(d.id) for d in documents],
    )
    apply_patient_fields(referral, result.record)
    advance_status(referral, "extracted")
    await ctx.queue("scoring").enqueue(db, referral.id, priority=job.priority)


async def on_exhausted(ctx: PipelineContext, db: AsyncSession, job: PipelineJob, error: BaseException) -> None:
    referral = await get_referral(db, job.referral_id)
    if referral is not None:
        mark_referral_failed(referral, "extraction_failed", f"Data extraction failed: {describe_error(error)}")
