"""Unit tests for app.worker.coordinator: upload, trigger, retry and status reads."""
from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest

from app.worker import db as real_db
from app.worker.errors import FatalStageError


def _mock_db():
    db = AsyncMock()
    db.add = MagicMock()
    db.flush = AsyncMock()
    db.commit = AsyncMock()
    return db


def _referral(**overrides):
    base = dict(
        id=uuid4(), status="new", ai_processing_status="pending", ai_processing_error=None,
        ai_processing_started_at=None, ai_processing_completed_at=None,
        ai_recommendation=None, ai_confidence_score=None,
    )
    base.update(overrides)
    return SimpleNamespace(**base)


def _document(referral_id, **overrides):
    base = dict(
        id=uuid4(), referral_id=referral_id, original_filename="hp.pdf",
        ocr_status="pending", ocr_text=None, ocr_confidence=None, ocr_completed_at=None,
        document_type=None, document_type_confidence=None, classification_reasoning=None,
    )
    base.update(overrides)
    return SimpleNamespace(**base)


def _handler_mock(mock_db, referral, documents=None, document=None):
    """Patched db_handler: async reads return fixtures, pure helpers keep their real behaviour."""
    mock_db.get_referral = AsyncMock(return_value=referral)
    mock_db.get_document = AsyncMock(return_value=document)
    mock_db.list_documents = AsyncMock(return_value=documents or [])
    mock_db.reset_referral_for_reprocessing = MagicMock(side_effect=real_db.reset_referral_for_reprocessing)
    mock_db.all_documents_classified = MagicMock(side_effect=real_db.all_documents_classified)


def _stub_queues(ctx, *stages):
    mocks = {}
    for stage in stages:
        mocks[stage] = AsyncMock(side_effect=lambda db, referral_id, document_id=None, *, priority=0, _s=stage: SimpleNamespace(
            id=uuid4(), stage=_s, referral_id=referral_id, document_id=document_id, priority=priority,
        ))
        ctx.queue(stage).enqueue = mocks[stage]
    return mocks


# ---------------------------------------------------------------------------
# upload_document
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_upload_stores_blob_creates_document_and_queues_ocr(pipeline_ctx):
    from app.worker.coordinator import upload_document

    referral = _referral()
    db = _mock_db()
    queues = _stub_queues(pipeline_ctx, "ocr")

    with patch("app.worker.coordinator.db_handler") as mock_db:
        _handler_mock(mock_db, referral)
        document = await upload_document(pipeline_ctx, db, referral.id, "H&P scan.pdf", b"%PDF-1.4", "application/pdf")

    bucket, key, data, content_type = pipeline_ctx.storage.put.call_args[0]
    assert bucket == "test-bucket"
    assert key == f"referrals/{referral.id}/{document.id}/H_P_scan.pdf"
    assert data == b"%PDF-1.4"
    assert content_type == "application/pdf"
    db.add.assert_called_once_with(document)
    assert document.storage_path == key
    assert document.file_size == 8
    assert document.ocr_status == "pending"
    assert referral.ai_processing_status == "queued"
    assert referral.status == "processing"
    queues["ocr"].assert_awaited_once_with(db, referral.id, document.id, priority=pipeline_ctx.config.upload_priority)
    db.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_upload_unknown_referral_is_fatal(pipeline_ctx):
    from app.worker.coordinator import upload_document

    with patch("app.worker.coordinator.db_handler") as mock_db:
        _handler_mock(mock_db, None)
        with pytest.raises(FatalStageError):
            await upload_document(pipeline_ctx, _mock_db(), uuid4(), "a.pdf", b"x")
    pipeline_ctx.storage.put.assert_not_awaited()


@pytest.mark.asyncio
async def test_upload_while_processing_keeps_status(pipeline_ctx):
    from app.worker.coordinator import on_document_uploaded

    referral = _referral(status="processing", ai_processing_status="extracted")
    document = _document(referral.id)
    queues = _stub_queues(pipeline_ctx, "ocr")
    with patch("app.worker.coordinator.db_handler") as mock_db:
        _handler_mock(mock_db, referral)
        await on_document_uploaded(pipeline_ctx, _mock_db(), referral, document)
    assert referral.ai_processing_status == "extracted"
    queues["ocr"].assert_awaited_once()


# ---------------------------------------------------------------------------
# trigger_processing
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_trigger_without_documents(pipeline_ctx):
    from app.worker.coordinator import NothingToProcess, trigger_processing

    with patch("app.worker.coordinator.db_handler") as mock_db:
        _handler_mock(mock_db, _referral(), documents=[])
        with pytest.raises(NothingToProcess):
            await trigger_processing(pipeline_ctx, _mock_db(), uuid4())


@pytest.mark.asyncio
async def test_trigger_all_classified_queues_extraction(pipeline_ctx):
    from app.worker.coordinator import trigger_processing

    referral = _referral(status="pending_review", ai_processing_status="extraction_failed", ai_processing_error="quota")
    docs = [
        _document(referral.id, ocr_status="completed", document_type="face_sheet"),
        _document(referral.id, ocr_status="completed", document_type="labs"),
    ]
    queues = _stub_queues(pipeline_ctx, "ocr", "classification", "extraction")
    with patch("app.worker.coordinator.db_handler") as mock_db:
        _handler_mock(mock_db, referral, documents=docs)
        jobs = await trigger_processing(pipeline_ctx, _mock_db(), referral.id)

    assert [j.stage for j in jobs] == ["extraction"]
    assert jobs[0].priority == pipeline_ctx.config.retry_priority
    assert referral.ai_processing_status == "queued"
    assert referral.ai_processing_error is None
    queues["ocr"].assert_not_awaited()


@pytest.mark.asyncio
async def test_trigger_resumes_each_document_at_its_stage(pipeline_ctx):
    from app.worker.coordinator import trigger_processing

    referral = _referral(ai_processing_status="failed")
    failed = _document(referral.id, ocr_status="failed")
    ocr_done = _document(referral.id, ocr_status="completed", ocr_text="labs")
    classified = _document(referral.id, ocr_status="completed", document_type="face_sheet")
    in_flight = _document(referral.id, ocr_status="processing")
    _stub_queues(pipeline_ctx, "ocr", "classification", "extraction")

    with patch("app.worker.coordinator.db_handler") as mock_db:
        _handler_mock(mock_db, referral, documents=[failed, ocr_done, classified, in_flight])
        jobs = await trigger_processing(pipeline_ctx, _mock_db(), referral.id)

    assert [(j.stage, j.document_id) for j in jobs] == [
        ("ocr", failed.id),
        ("classification", ocr_done.id),
    ]
    assert failed.ocr_status == "pending"
    assert ocr_done.ocr_text == "labs"


# ---------------------------------------------------------------------------
# retry_document
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_retry_document_resets_and_requeues(pipeline_ctx):
    from app.worker.coordinator import retry_document

    referral = _referral(status="ready_for_decision", ai_processing_status="completed")
    document = _document(
        referral.id, ocr_status="completed", ocr_text="old", ocr_confidence=0.4, document_type="other",
    )
    queues = _stub_queues(pipeline_ctx, "ocr")
    db = _mock_db()
    with patch("app.worker.coordinator.db_handler") as mock_db:
        _handler_mock(mock_db, referral, document=document)
        job = await retry_document(pipeline_ctx, db, document.id)

    assert job.priority == pipeline_ctx.config.retry_priority
    assert document.ocr_status == "pending"
    assert document.ocr_text is None
    assert document.document_type is None
    assert referral.ai_processing_status == "queued"
    queues["ocr"].assert_awaited_once_with(db, referral.id, document.id, priority=pipeline_ctx.config.retry_priority)
    db.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_retry_unknown_document(pipeline_ctx):
    from app.worker.coordinator import retry_document

    with patch("app.worker.coordinator.db_handler") as mock_db:
        _handler_mock(mock_db, _referral(), document=None)
        with pytest.raises(FatalStageError):
            await retry_document(pipeline_ctx, _mock_db(), uuid4())


# ---------------------------------------------------------------------------
# get_processing_status
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_processing_status_shape():
    from app.worker.coordinator import get_processing_status

    referral = _referral(status="processing", ai_processing_status="processing")
    docs = [
        _document(referral.id, ocr_status="completed", document_type="h_and_p", ocr_confidence=0.97),
        _document(referral.id, ocr_status="processing"),
    ]
    with patch("app.worker.coordinator.db_handler") as mock_db:
        _handler_mock(mock_db, referral, documents=docs)
        status = await get_processing_status(_mock_db(), referral.id)

    assert status["referral_id"] == str(referral.id)
    assert status["ai_processing_status"] == "processing"
    assert status["all_documents_classified"] is False
    assert [d["ocr_status"] for d in status["documents"]] == ["completed", "processing"]
    assert status["documents"][0]["document_type"] == "h_and_p"
