"""
Pipeline coordinator.

Entry points used by the API (and scripts) to put work on the stage queues:

1. ``upload_document``: store bytes, create the Document, then
   ``on_document_uploaded``.
2. ``on_document_uploaded``: queue OCR; the first document of a referral moves
   it to ``queued`` / lifecycle ``processing``.
3. ``trigger_processing``: re-drive a referral from wherever it stalled.
4. ``retry_document``: reset one document and re-run it at higher priority.

Plus the read-side ``get_processing_status``. Stage-to-stage transitions live
in the stage modules (``ocr``, ``classify``, ``extract``, ``score``).
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.models import Document, PipelineJob, Referral
from app.services.storage import document_key
from app.worker import db as db_handler
from app.worker.context import PipelineContext
from app.worker.errors import FatalStageError

logger = logging.getLogger(__name__)

# Referral states from which a new upload starts a fresh processing pass
_RESTARTABLE = ("pending", "completed", "failed", "extraction_failed")


class NothingToProcess(ValueError):
    """Referral has no documents."""


async def _require_referral(db: AsyncSession, referral_id: UUID) -> Referral:
    referral = await db_handler.get_referral(db, referral_id)
    if referral is None:
        raise FatalStageError(f"Referral {referral_id} not found")
    return referral


def _reset_document(document: Document) -> None:
    document.ocr_status = "pending"
    document.ocr_text = None
    document.ocr_confidence = None
    document.ocr_completed_at = None
    document.document_type = None
    document.document_type_confidence = None
    document.classification_reasoning = None


async def upload_document(
    ctx: PipelineContext,
    db: AsyncSession,
    referral_id: UUID,
    filename: str,
    data: bytes,
    content_type: str | None = None,
) -> Document:
    """Store *data* in blob storage, create its Document row and queue OCR (one commit)."""
    referral = await _require_referral(db, referral_id)
    document_id = uuid.uuid4()
    key = document_key(referral.id, document_id, filename)
    await asyncio.wait_for(
        ctx.storage.put(ctx.bucket, key, data, content_type),
        timeout=ctx.config.storage_timeout_seconds,
    )

    document = Document(
        id=document_id,
        referral_id=referral.id,
        original_filename=filename,
        mime_type=content_type,
        file_size=len(data),
        storage_bucket=ctx.bucket,
        storage_path=key,
        ocr_status="pending",
    )
    db.add(document)
    await db.flush()
    await on_document_uploaded(ctx, db, referral, document)
    await db.commit()
    logger.info("[coordinator] Uploaded %s (%d bytes) to referral %s as %s", filename, len(data), referral.id, document.id)
    return document


async def on_document_uploaded(
    ctx: PipelineContext,
    db: AsyncSession,
    referral: Referral,
    document: Document,
) -> PipelineJob:
    """Queue OCR for a new document. Caller commits."""
    if (referral.ai_processing_status or "pending") in _RESTARTABLE:
        db_handler.reset_referral_for_reprocessing(referral)
        referral.status = "processing"
        logger.info("[coordinator] Referral %s queued for processing", referral.id)
    return await ctx.queue("ocr").enqueue(
        db, referral.id, document.id, priority=ctx.config.upload_priority,
    )


async def trigger_processing(ctx: PipelineContext, db: AsyncSession, referral_id: UUID) -> list[PipelineJob]:
    """Re-drive a referral from its earliest unfinished stage.

    * every document classified: queue extraction
    * otherwise: OCR for documents pending or failed, classification for
      documents OCR'd but not yet typed
    """
    referral = await _require_referral(db, referral_id)
    documents = await db_handler.list_documents(db, referral.id)
    if not documents:
        raise NothingToProcess(f"Referral {referral.id} has no documents")

    priority = ctx.config.retry_priority
    db_handler.reset_referral_for_reprocessing(referral)
    jobs: list[PipelineJob] = []
    if db_handler.all_documents_classified(documents):
        jobs.append(await ctx.queue("extraction").enqueue(db, referral.id, priority=priority))
    else:
        for document in documents:
            if document.ocr_status in ("pending", "failed"):
                _reset_document(document)
                jobs.append(await ctx.queue("ocr").enqueue(db, referral.id, document.id, priority=priority))
            elif document.ocr_status == "completed" and not document.document_type:
                jobs.append(await ctx.queue("classification").enqueue(db, referral.id, document.id, priority=priority))
    await db.commit()
    logger.info("[coordinator] Triggered processing for referral %s: %d jobs", referral.id, len(jobs))
    return jobs


async def retry_document(ctx: PipelineContext, db: AsyncSession, document_id: UUID) -> PipelineJob:
    """Reset one document's OCR/classification and re-queue OCR at retry priority.

    Other documents and any stored extraction/recommendation stay as they are
    until the retried document completes and extraction re-runs.
    """
    document = await db_handler.get_document(db, document_id)
    if document is None:
        raise FatalStageError(f"Document {document_id} not found")
    referral = await _require_referral(db, document.referral_id)

    _reset_document(document)
    db_handler.reset_referral_for_reprocessing(referral)
    job = await ctx.queue("ocr").enqueue(
        db, referral.id, document.id, priority=ctx.config.retry_priority,
    )
    await db.commit()
    logger.info("[coordinator] Retrying document %s (job %s)", document.id, job.id)
    return job


def _iso(value) -> str | None:
    return value.isoformat() if value else None


async def get_processing_status(db: AsyncSession, referral_id: UUID) -> dict[str, Any]:
    """Referral pipeline state plus per-document OCR/classification state."""
    referral = await _require_referral(db, referral_id)
    documents = await db_handler.list_documents(db, referral.id)
    return {
        "referral_id": str(referral.id),
        "status": referral.status,
        "ai_processing_status": referral.ai_processing_status,
        "ai_processing_error": referral.ai_processing_error,
        "ai_processing_started_at": _iso(referral.ai_processing_started_at),
        "ai_processing_completed_at": _iso(referral.ai_processing_completed_at),
        "ai_recommendation": referral.ai_recommendation,
        "ai_confidence_score": referral.ai_confidence_score,
        "all_documents_classified": db_handler.all_documents_classified(documents),
        "documents": [document_status(d) for d in documents],
    }


def document_status(document: Document) -> dict[str, Any]:
    return {
        "document_id": str(document.id),
        "filename": document.original_filename,
        "ocr_status": document.ocr_status,
        "ocr_confidence": document.ocr_confidence,
        "ocr_completed_at": _iso(document.ocr_completed_at),
        "document_type": document.document_type,
        "document_type_confidence": document.document_type_confidence,
    }
