"""
Scoring stage: run the four agents over the stored patient record and persist
the recommendation (upsert), this attempt's risk flags and an audit log row.

The scoring job's id is the ``processing_attempt_id`` carried by the flags and
the recommendation.
"""
from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import MODEL_VERSION
from app.models import PipelineJob
from app.schemas import PatientRecord
from app.services.scoring import score_referral
from app.worker.context import PipelineContext
from app.worker.db import (
    advance_status,
    apply_recommendation_fields,
    get_active_criteria,
    get_extraction,
    get_facility,
    get_referral,
    insert_flags,
    list_documents,
    mark_referral_failed,
    upsert_recommendation,
    write_processing_log,
)
from app.worker.errors import FatalStageError, InvariantViolation, describe_error

logger = logging.getLogger(__name__)

STAGE = "scoring"


async def run(ctx: PipelineContext, db: AsyncSession, job: PipelineJob) -> None:
    cfg = ctx.config
    referral = await get_referral(db, job.referral_id)
    if referral is None:
        raise FatalStageError(f"Referral {job.referral_id} not found")
    extraction = await get_extraction(db, referral.id)
    if extraction is None:
        raise InvariantViolation(f"Scoring fired for referral {referral.id} before extraction")

    record = PatientRecord.from_row(extraction)
    facility = await get_facility(db, referral.facility_id)
    criteria = await get_active_criteria(db, referral.facility_id)
    documents = await list_documents(db, referral.id)
    llm = ctx.require_llm()

    outcome = await score_referral(
        record,
        criteria=criteria,
        facility_settings=facility.settings if facility else None,
        document_types=[d.document_type for d in documents],
        llm=llm,
        timeout=cfg.llm_call_timeout_seconds,
        prompt_version=cfg.prompt_version,
    )

    await upsert_recommendation(
        db, referral.id, outcome, processing_attempt_id=job.id, model_version=MODEL_VERSION,
    )
    written = await insert_flags(db, referral.id, outcome.flags, processing_attempt_id=job.id)
    write_processing_log(db, referral.id, outcome, model_used=getattr(llm, "model_name", None))
    apply_recommendation_fields(referral, outcome)
    advance_status(referral, "completed")
    logger.info(
        "[JOB %s] Referral %s scored: %s (overall %s, %d flags written)",
        job.id, referral.id, outcome.recommendation, outcome.overall_score, written,
    )


async def on_exhausted(ctx: PipelineContext, db: AsyncSession, job: PipelineJob, error: BaseException) -> None:
    referral = await get_referral(db, job.referral_id)
    if referral is not None:
        mark_referral_failed(
            referral, "failed", f"Scoring failed: {describe_error(error)}", lifecycle_status="pending_review",
        )
