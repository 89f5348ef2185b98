import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import CORS_ORIGINS, DOWNLOAD_URL_TTL_SECONDS
from app.database import get_db
from app.models import RiskFlag
from app.worker import coordinator
from app.worker import db as db_handler
from app.worker.context import PipelineContext, build_context
from app.worker.errors import FatalStageError

# Set up logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - [API] - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)
logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)

app = FastAPI(title="Referral Intake", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in CORS_ORIGINS.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def build_pipeline_context():
    """The API only enqueues and reads; stage workers own the LLM."""
    app.state.pipeline = build_context(include_llm=False)


def get_pipeline(request: Request) -> PipelineContext:
    return request.app.state.pipeline


def _parse_uuid(value: str, label: str) -> UUID:
    try:
        return UUID(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {label} ID")


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@app.get("/health")
async def health():
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

@app.post("/referrals/{referral_id}/documents")
async def upload_referral_document(
    referral_id: str,
    file: UploadFile,
    db: AsyncSession = Depends(get_db),
    pipeline: PipelineContext = Depends(get_pipeline),
):
    """Store an uploaded referral document and queue it for OCR."""
    ref_uuid = _parse_uuid(referral_id, "referral")
    if not file.filename:
        raise HTTPException(status_code=400, detail="No filename provided")
    contents = await file.read()
    if not contents:
        raise HTTPException(status_code=400, detail="Empty file")

    try:
        document = await coordinator.upload_document(
            pipeline, db, ref_uuid, file.filename, contents, file.content_type,
        )
    except FatalStageError:
        raise HTTPException(status_code=404, detail="Referral not found")
    except Exception as e:
        await db.rollback()
        logger.error("Upload error: %s", e, exc_info=True)
        raise HTTPException(status_code=500, detail=f"Upload failed: {e}")

    return {
        "document_id": str(document.id),
        "referral_id": referral_id,
        "filename": document.original_filename,
        "content_type": document.mime_type,
        "size": document.file_size,
        "ocr_status": document.ocr_status,
    }


@app.get("/documents/{document_id}/status")
async def get_document_status(document_id: str, db: AsyncSession = Depends(get_db)):
    """OCR / classification status of one document."""
    doc_uuid = _parse_uuid(document_id, "document")
    document = await db_handler.get_document(db, doc_uuid)
    if not document:
        raise HTTPException(status_code=404, detail="Document not found")
    return coordinator.document_status(document)


@app.post("/documents/{document_id}/retry")
async def retry_document(
    document_id: str,
    db: AsyncSession = Depends(get_db),
    pipeline: PipelineContext = Depends(get_pipeline),
):
    """Reset a document's OCR/classification and re-run it ahead of normal work."""
    doc_uuid = _parse_uuid(document_id, "document")
    try:
        job = await coordinator.retry_document(pipeline, db, doc_uuid)
    except FatalStageError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"status": "queued", "document_id": document_id, "job_id": str(job.id)}


@app.get("/documents/{document_id}/download-url")
async def get_download_url(
    document_id: str,
    db: AsyncSession = Depends(get_db),
    pipeline: PipelineContext = Depends(get_pipeline),
):
    doc_uuid = _parse_uuid(document_id, "document")
    document = await db_handler.get_document(db, doc_uuid)
    if not document:
        raise HTTPException(status_code=404, detail="Document not found")
    url = await pipeline.storage.presigned_get(
        document.storage_bucket, document.storage_path, DOWNLOAD_URL_TTL_SECONDS,
    )
    return {"document_id": document_id, "url": url, "expires_in": DOWNLOAD_URL_TTL_SECONDS}


# ---------------------------------------------------------------------------
# Referral processing
# ---------------------------------------------------------------------------

@app.post("/referrals/{referral_id}/process")
async def trigger_processing(
    referral_id: str,
    db: AsyncSession = Depends(get_db),
    pipeline: PipelineContext = Depends(get_pipeline),
):
    """Re-drive a referral from its earliest unfinished stage."""
    ref_uuid = _parse_uuid(referral_id, "referral")
    try:
        jobs = await coordinator.trigger_processing(pipeline, db, ref_uuid)
    except FatalStageError:
        raise HTTPException(status_code=404, detail="Referral not found")
    except coordinator.NothingToProcess as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {
        "status": "queued",
        "referral_id": referral_id,
        "jobs": [{"job_id": str(j.id), "stage": j.stage, "document_id": str(j.document_id) if j.document_id else None} for j in jobs],
    }


@app.get("/referrals/{referral_id}/status")
async def get_processing_status(referral_id: str, db: AsyncSession = Depends(get_db)):
    ref_uuid = _parse_uuid(referral_id, "referral")
    try:
        return await coordinator.get_processing_status(db, ref_uuid)
    except FatalStageError:
        raise HTTPException(status_code=404, detail="Referral not found")


@app.get("/referrals/{referral_id}/extraction")
async def get_extraction(referral_id: str, db: AsyncSession = Depends(get_db)):
    """Stored patient record (sections in camelCase, as extracted)."""
    ref_uuid = _parse_uuid(referral_id, "referral")
    row = await db_handler.get_extraction(db, ref_uuid)
    if not row:
        raise HTTPException(status_code=404, detail="No extraction for referral")
    return {
        "referral_id": referral_id,
        "demographics": row.demographics,
        "clinical_summary": row.clinical_summary,
        "diagnoses": row.diagnoses,
        "medications": row.medications,
        "functional_status": row.functional_status,
        "care_requirements": row.care_requirements,
        "behavioral_status": row.behavioral_status,
        "insurance_info": row.insurance_info,
        "extraction_model": row.extraction_model,
        "extraction_version": row.extraction_version,
        "source_document_ids": row.source_document_ids or [],
        "updated_at": _iso(row.updated_at),
    }


@app.get("/referrals/{referral_id}/recommendation")
async def get_recommendation(referral_id: str, db: AsyncSession = Depends(get_db)):
    ref_uuid = _parse_uuid(referral_id, "referral")
    rec = await db_handler.get_recommendation(db, ref_uuid)
    if not rec:
        raise HTTPException(status_code=404, detail="No recommendation for referral")
    return {
        "referral_id": referral_id,
        "processing_attempt_id": str(rec.processing_attempt_id) if rec.processing_attempt_id else None,
        "recommendation": rec.recommendation,
        "confidence_score": rec.confidence_score,
        "overall_score": rec.overall_score,
        "clinical_fit_score": rec.clinical_fit_score,
        "financial_score": rec.financial_score,
        "operational_score": rec.operational_score,
        "clinical_complexity": rec.clinical_complexity,
        "documentation_quality_score": rec.documentation_quality_score,
        "pdpm_components": rec.pdpm_components,
        "estimated_daily_rate": rec.estimated_daily_rate,
        "estimated_los_days": rec.estimated_los_days,
        "estimated_total_revenue": rec.estimated_total_revenue,
        "payer_analysis": rec.payer_analysis,
        "summary": rec.summary,
        "detailed_rationale": rec.detailed_rationale,
        "positive_factors": rec.positive_factors or [],
        "missing_info": rec.missing_info or [],
        "review_questions": rec.review_questions or [],
        "model_version": rec.model_version,
        "processing_time_ms": rec.processing_time_ms,
        "updated_at": _iso(rec.updated_at),
    }


# ---------------------------------------------------------------------------
# Risk flags
# ---------------------------------------------------------------------------

def _flag_to_dict(flag: RiskFlag) -> dict:
    return {
        "id": str(flag.id),
        "processing_attempt_id": str(flag.processing_attempt_id) if flag.processing_attempt_id else None,
        "category": flag.category,
        "flag_type": flag.flag_type,
        "severity": flag.severity,
        "is_deal_breaker": flag.is_deal_breaker,
        "title": flag.title,
        "description": flag.description,
        "recommendation": flag.recommendation,
        "source_agent": flag.source_agent,
        "is_resolved": flag.is_resolved,
        "resolved_by": flag.resolved_by,
        "resolved_at": _iso(flag.resolved_at),
        "resolution_notes": flag.resolution_notes,
        "created_at": _iso(flag.created_at),
    }


@app.get("/referrals/{referral_id}/flags")
async def list_flags(
    referral_id: str,
    latest_only: bool = Query(False, description="Only flags from the scoring attempt behind the current recommendation"),
    db: AsyncSession = Depends(get_db),
):
    ref_uuid = _parse_uuid(referral_id, "referral")
    flags = await db_handler.list_flags(db, ref_uuid, latest_only=latest_only)
    return {"referral_id": referral_id, "total": len(flags), "flags": [_flag_to_dict(f) for f in flags]}


class ResolveFlagRequest(BaseModel):
    resolved_by: str
    notes: Optional[str] = None


async def _get_flag(db: AsyncSession, flag_id: str) -> RiskFlag:
    flag_uuid = _parse_uuid(flag_id, "flag")
    result = await db.execute(select(RiskFlag).where(RiskFlag.id == flag_uuid))
    flag = result.scalar_one_or_none()
    if not flag:
        raise HTTPException(status_code=404, detail="Flag not found")
    return flag


@app.patch("/flags/{flag_id}/resolve")
async def resolve_flag(
    flag_id: str,
    body: ResolveFlagRequest = Body(...),
    db: AsyncSession = Depends(get_db),
):
    flag = await _get_flag(db, flag_id)
    flag.is_resolved = True
    flag.resolved_by = body.resolved_by
    flag.resolved_at = datetime.now(timezone.utc).replace(tzinfo=None)
    flag.resolution_notes = body.notes
    await db.commit()
    return _flag_to_dict(flag)


@app.patch("/flags/{flag_id}/unresolve")
async def unresolve_flag(flag_id: str, db: AsyncSession = Depends(get_db)):
    flag = await _get_flag(db, flag_id)
    flag.is_resolved = False
    flag.resolved_by = None
    flag.resolved_at = None
    flag.resolution_notes = None
    await db.commit()
    return _flag_to_dict(flag)
