"""
Pipeline worker database handler.

All worker persistence goes through this module: commits, rollbacks, reads,
status transitions, and writes to ExtractedPatientData, AIRecommendation,
RiskFlag and AIProcessingLog.

ExtractedPatientData and AIRecommendation are written with PostgreSQL
``INSERT ... ON CONFLICT (referral_id) DO UPDATE`` so duplicate job delivery
replaces the row instead of failing or duplicating it.

Stage handlers never call ``db.add()`` or raw SQL directly.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Iterable
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import (
    AIProcessingLog,
    AIRecommendation,
    Document,
    ExtractedPatientData,
    Facility,
    FacilityCriteria,
    PipelineJob,
    Referral,
    RiskFlag,
)
from app.schemas import PatientRecord
from app.services.agents.base import FlagData
from app.services.scoring import ScoringOutcome

logger = logging.getLogger(__name__)

# Referral.ai_processing_status forward order within one processing attempt
STATUS_ORDER = ("pending", "queued", "processing", "extracted", "completed")
FAILED_STATUSES = ("failed", "extraction_failed")


def _utc_now_naive() -> datetime:
    """Naive UTC datetime for DB (TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ---------------------------------------------------------------------------
# Stale job recovery
# ---------------------------------------------------------------------------

async def recover_stale_jobs(
    db: AsyncSession,
    timeout_minutes: float = 10.0,
    worker_id: str | None = None,
    stage: str | None = None,
) -> int:
    """Reset jobs stuck in 'processing' for longer than *timeout_minutes*.

    This catches jobs whose workers died (crash, restart, OOM) without
    finishing the job. Resets them to ``pending`` so a healthy worker can
    pick them up; the attempt already counted stays counted.

    Returns the number of recovered jobs.
    """
    cutoff = _utc_now_naive() - timedelta(minutes=timeout_minutes)

    conditions = [PipelineJob.status == "processing", PipelineJob.started_at < cutoff]
    if stage:
        conditions.append(PipelineJob.stage == stage)

    stmt = (
        update(PipelineJob)
        .where(*conditions)
        .values(
            status="pending",
            worker_id=None,
            started_at=None,
            available_at=_utc_now_naive(),
            error_message=f"Auto-recovered: stuck in processing >{timeout_minutes}min (by {worker_id or 'unknown'})",
        )
        .returning(PipelineJob.id, PipelineJob.stage, PipelineJob.referral_id)
    )

    result = await db.execute(stmt)
    recovered = result.fetchall()
    await db.commit()

    for job_id, job_stage, referral_id in recovered:
        logger.warning(
            "[stale-recovery] Reset %s job %s (referral %s) from processing -> pending",
            job_stage, job_id, referral_id,
        )
    return len(recovered)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

async def get_referral(db: AsyncSession, referral_id: UUID) -> Referral | None:
    result = await db.execute(select(Referral).where(Referral.id == referral_id))
    return result.scalar_one_or_none()


async def get_document(db: AsyncSession, document_id: UUID) -> Document | None:
    result = await db.execute(select(Document).where(Document.id == document_id))
    return result.scalar_one_or_none()


async def lock_referral(db: AsyncSession, referral_id: UUID) -> Referral | None:
    """SELECT ... FOR UPDATE on the referral row; serialises sibling checks until commit."""
    result = await db.execute(
        select(Referral)
        .where(Referral.id == referral_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_documents(db: AsyncSession, referral_id: UUID, *, refresh: bool = False) -> list[Document]:
    """Documents of a referral, oldest first. *refresh* re-reads rows already in the session."""
    stmt = select(Document).where(Document.referral_id == referral_id).order_by(Document.created_at)
    if refresh:
        stmt = stmt.execution_options(populate_existing=True)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def get_facility(db: AsyncSession, facility_id: UUID) -> Facility | None:
    result = await db.execute(select(Facility).where(Facility.id == facility_id))
    return result.scalar_one_or_none()


async def get_active_criteria(db: AsyncSession, facility_id: UUID) -> list[FacilityCriteria]:
    result = await db.execute(
        select(FacilityCriteria)
        .where(FacilityCriteria.facility_id == facility_id, FacilityCriteria.is_active.is_(True))
        .order_by(FacilityCriteria.priority)
    )
    return list(result.scalars().all())


async def get_extraction(db: AsyncSession, referral_id: UUID) -> ExtractedPatientData | None:
    result = await db.execute(
        select(ExtractedPatientData).where(ExtractedPatientData.referral_id == referral_id)
    )
    return result.scalar_one_or_none()


async def get_recommendation(db: AsyncSession, referral_id: UUID) -> AIRecommendation | None:
    result = await db.execute(select(AIRecommendation).where(AIRecommendation.referral_id == referral_id))
    return result.scalar_one_or_none()


async def list_flags(db: AsyncSession, referral_id: UUID, *, latest_only: bool = False) -> list[RiskFlag]:
    """Flags for a referral, newest first. *latest_only* keeps the attempt the recommendation came from."""
    stmt = select(RiskFlag).where(RiskFlag.referral_id == referral_id)
    if latest_only:
        rec = await get_recommendation(db, referral_id)
        if rec is None or rec.processing_attempt_id is None:
            return []
        stmt = stmt.where(RiskFlag.processing_attempt_id == rec.processing_attempt_id)
    result = await db.execute(stmt.order_by(RiskFlag.created_at.desc()))
    return list(result.scalars().all())


def all_documents_classified(documents: Iterable[Document]) -> bool:
    """True when there is at least one document and every one has OCR completed and a type."""
    docs = list(documents)
    return bool(docs) and all(d.ocr_status == "completed" and d.document_type for d in docs)


# ---------------------------------------------------------------------------
# Referral status transitions
# ---------------------------------------------------------------------------

def advance_status(referral: Referral, target: str) -> bool:
    """Move ``ai_processing_status`` forward to *target*; never backwards, never out of a failed state.

    Returns True if the status changed. Explicit resets (retry, trigger) assign
    the field directly instead.
    """
    current = referral.ai_processing_status or "pending"
    if current in FAILED_STATUSES:
        logger.info("[db] Referral %s is %s; not advancing to %s", referral.id, current, target)
        return False
    if STATUS_ORDER.index(target) <= STATUS_ORDER.index(current):
        return False
    referral.ai_processing_status = target
    if target == "processing" and referral.ai_processing_started_at is None:
        referral.ai_processing_started_at = _utc_now_naive()
    if target == "completed":
        referral.ai_processing_completed_at = _utc_now_naive()
    return True


def mark_referral_failed(referral: Referral, status: str, message: str, *, lifecycle_status: str | None = None) -> None:
    referral.ai_processing_status = status
    referral.ai_processing_error = message[:2000]
    if lifecycle_status:
        referral.status = lifecycle_status


def reset_referral_for_reprocessing(referral: Referral) -> None:
    """Explicit retry/trigger: back to queued and clear the previous error."""
    referral.ai_processing_status = "queued"
    referral.ai_processing_error = None
    referral.ai_processing_completed_at = None
    if referral.status in (None, "new"):
        referral.status = "processing"


# ---------------------------------------------------------------------------
# ExtractedPatientData (upsert)
# ---------------------------------------------------------------------------

async def upsert_extraction(
    db: AsyncSession,
    referral_id: UUID,
    record: PatientRecord,
    *,
    raw: dict | None,
    model: str | None,
    version: str | None,
    source_document_ids: list[str],
) -> None:
    """Replace the referral's extracted record wholesale."""
    now = _utc_now_naive()
    values = {
        "demographics": record.demographics.to_json(),
        "clinical_summary": record.clinical_summary.to_json(),
        "diagnoses": [d.to_json() for d in record.diagnoses],
        "medications": [m.to_json() for m in record.medications],
        "functional_status": record.functional_status.to_json(),
        "care_requirements": record.care_requirements.to_json(),
        "behavioral_status": record.behavioral_status.to_json(),
        "insurance_info": record.insurance_info.to_json(),
        "raw_extraction": raw or {},
        "extraction_model": model,
        "extraction_version": version,
        "source_document_ids": source_document_ids,
        "updated_at": now,
    }
    stmt = pg_insert(ExtractedPatientData).values(
        id=uuid.uuid4(), referral_id=referral_id, created_at=now, **values
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["referral_id"],
        set_={key: stmt.excluded[key] for key in values},
    )
    await db.execute(stmt)


def apply_patient_fields(referral: Referral, record: PatientRecord) -> None:
    """Copy demographics onto the referral for list views (only fields the record has)."""
    demo = record.demographics
    if demo.first_name:
        referral.patient_first_name = demo.first_name[:100]
    if demo.last_name:
        referral.patient_last_name = demo.last_name[:100]
    if demo.dob:
        referral.patient_dob = demo.dob[:20]
    if demo.gender:
        referral.patient_gender = demo.gender


# ---------------------------------------------------------------------------
# AIRecommendation (upsert) + RiskFlag (append, per attempt)
# ---------------------------------------------------------------------------

async def upsert_recommendation(
    db: AsyncSession,
    referral_id: UUID,
    outcome: ScoringOutcome,
    *,
    processing_attempt_id: UUID,
    model_version: str | None,
) -> None:
    """One authoritative recommendation per referral, replaced on every scoring run."""
    now = _utc_now_naive()
    values = {
        "processing_attempt_id": processing_attempt_id,
        "recommendation": outcome.recommendation,
        "confidence_score": outcome.confidence_score,
        "overall_score": outcome.overall_score,
        "clinical_fit_score": outcome.clinical_fit_score,
        "financial_score": outcome.financial_score,
        "operational_score": outcome.operational_score,
        "clinical_complexity": outcome.clinical_complexity,
        "documentation_quality_score": outcome.documentation_quality_score,
        "pdpm_components": outcome.pdpm_components,
        "estimated_daily_rate": outcome.estimated_daily_rate,
        "estimated_los_days": outcome.estimated_los_days,
        "estimated_total_revenue": outcome.estimated_total_revenue,
        "payer_analysis": outcome.payer_analysis,
        "summary": outcome.summary,
        "detailed_rationale": outcome.detailed_rationale,
        "positive_factors": outcome.positive_factors,
        "missing_info": outcome.missing_info,
        "review_questions": outcome.review_questions,
        "agent_outputs": outcome.agent_outputs,
        "model_version": model_version,
        "processing_time_ms": outcome.processing_time_ms,
        "updated_at": now,
    }
    stmt = pg_insert(AIRecommendation).values(
        id=uuid.uuid4(), referral_id=referral_id, created_at=now, **values
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["referral_id"],
        set_={key: stmt.excluded[key] for key in values},
    )
    await db.execute(stmt)


async def insert_flags(
    db: AsyncSession,
    referral_id: UUID,
    flags: list[FlagData],
    *,
    processing_attempt_id: UUID,
) -> int:
    """Append this attempt's flags. A re-delivered attempt that already wrote flags adds nothing.

    Flags from earlier attempts (resolved or not) are left as they are.
    """
    existing = await db.execute(
        select(func.count())
        .select_from(RiskFlag)
        .where(RiskFlag.referral_id == referral_id, RiskFlag.processing_attempt_id == processing_attempt_id)
    )
    if existing.scalar_one():
        logger.info("[db] Flags already written for attempt %s; skipping", processing_attempt_id)
        return 0
    for flag in flags:
        db.add(RiskFlag(
            referral_id=referral_id,
            processing_attempt_id=processing_attempt_id,
            category=flag.category,
            flag_type=flag.flag_type[:100],
            severity=flag.severity,
            is_deal_breaker=flag.is_deal_breaker,
            title=flag.title[:255],
            description=flag.description,
            recommendation=flag.recommendation,
            source_agent=flag.source_agent,
        ))
    return len(flags)


def apply_recommendation_fields(referral: Referral, outcome: ScoringOutcome) -> None:
    referral.ai_recommendation = outcome.recommendation
    referral.ai_confidence_score = outcome.confidence_score
    referral.status = "ready_for_decision"


def write_processing_log(
    db: AsyncSession,
    referral_id: UUID,
    outcome: ScoringOutcome,
    *,
    model_used: str | None,
) -> None:
    """Audit row for one scoring run."""
    db.add(AIProcessingLog(
        referral_id=referral_id,
        agent_name="orchestrator",
        action="score_referral",
        input_summary=None,
        output_summary=(
            f"{outcome.recommendation} (overall {outcome.overall_score}, "
            f"confidence {outcome.confidence_score}, {len(outcome.flags)} flags)"
        ),
        full_output=outcome.agent_outputs,
        model_used=model_used,
        processing_time_ms=outcome.processing_time_ms,
        success=not outcome.failed_agents,
        error_message=(
            f"Agents degraded to defaults: {', '.join(outcome.failed_agents)}"
            if outcome.failed_agents else None
        ),
    ))


# ---------------------------------------------------------------------------
# Commit helpers
# ---------------------------------------------------------------------------

async def safe_commit(db: AsyncSession) -> bool:
    """Commit; on failure rollback and return False."""
    try:
        await db.commit()
        return True
    except Exception as exc:
        logger.error("[db] commit failed, rolling back: %s", exc, exc_info=True)
        await db.rollback()
        return False


async def safe_rollback(db: AsyncSession) -> None:
    """Rollback; never raises."""
    try:
        await db.rollback()
    except Exception as exc:
        logger.error("[db] rollback failed: %s", exc, exc_info=True)
