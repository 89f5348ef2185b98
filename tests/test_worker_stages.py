"""Unit tests for the stage handlers (app.worker.ocr / classify / extract / score).

DB reads and writes are patched at the stage module level; queues are real
StageQueue objects with ``enqueue`` replaced by an AsyncMock.
"""
from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest

from app.services.ocr import OCRResult
from app.worker.errors import FatalStageError, InvariantViolation


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _mock_db():
    db = AsyncMock()
    db.add = MagicMock()
    db.flush = AsyncMock()
    db.commit = AsyncMock()
    db.rollback = AsyncMock()
    return db


def _job(stage, referral_id, document_id=None, *, attempts=1, max_attempts=3, priority=0):
    return SimpleNamespace(
        id=uuid4(), stage=stage, referral_id=referral_id, document_id=document_id,
        attempts=attempts, max_attempts=max_attempts, priority=priority, status="processing",
    )


def _referral(**overrides):
    base = dict(
        id=uuid4(), facility_id=uuid4(), status="processing", ai_processing_status="queued",
        ai_processing_error=None, ai_processing_started_at=None, ai_processing_completed_at=None,
        patient_first_name=None, patient_last_name=None, patient_dob=None, patient_gender=None,
        ai_recommendation=None, ai_confidence_score=None,
    )
    base.update(overrides)
    return SimpleNamespace(**base)


def _document(referral_id, **overrides):
    base = dict(
        id=uuid4(), referral_id=referral_id, original_filename="facesheet.pdf", mime_type="application/pdf",
        storage_bucket="test-bucket", storage_path="referrals/x/y/facesheet.pdf",
        ocr_status="pending", ocr_text=None, ocr_confidence=None, ocr_completed_at=None,
        document_type=None, document_type_confidence=None, classification_reasoning=None,
    )
    base.update(overrides)
    return SimpleNamespace(**base)


def _stub_enqueue(ctx, stage):
    mock = AsyncMock(return_value=SimpleNamespace(id=uuid4(), stage=stage))
    ctx.queue(stage).enqueue = mock
    return mock


# ---------------------------------------------------------------------------
# OCR
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_ocr_stores_text_and_enqueues_classification(pipeline_ctx):
    from app.worker import ocr

    referral = _referral()
    document = _document(referral.id, document_type="labs")
    job = _job("ocr", referral.id, document.id, priority=1)
    pipeline_ctx.ocr.analyze = AsyncMock(return_value=OCRResult(text="FACE SHEET\nName: Ada", confidence=0.91))
    enqueue = _stub_enqueue(pipeline_ctx, "classification")
    db = _mock_db()

    with patch("app.worker.ocr.get_document", AsyncMock(return_value=document)), \
         patch("app.worker.ocr.get_referral", AsyncMock(return_value=referral)):
        await ocr.run(pipeline_ctx, db, job)

    pipeline_ctx.storage.get.assert_awaited_once_with("test-bucket", "referrals/x/y/facesheet.pdf")
    pipeline_ctx.ocr.analyze.assert_awaited_once_with(b"%PDF-1.4 fake", "application/pdf")
    assert document.ocr_status == "completed"
    assert document.ocr_text == "FACE SHEET\nName: Ada"
    assert document.ocr_confidence == 0.91
    assert document.document_type is None
    assert referral.ai_processing_status == "processing"
    enqueue.assert_awaited_once_with(db, referral.id, document.id, priority=1)


@pytest.mark.asyncio
async def test_ocr_redelivery_only_requeues(pipeline_ctx):
    from app.worker import ocr

    referral = _referral(ai_processing_status="processing")
    document = _document(referral.id, ocr_status="completed", ocr_text="already done")
    enqueue = _stub_enqueue(pipeline_ctx, "classification")

    with patch("app.worker.ocr.get_document", AsyncMock(return_value=document)), \
         patch("app.worker.ocr.get_referral", AsyncMock(return_value=referral)):
        await ocr.run(pipeline_ctx, _mock_db(), _job("ocr", referral.id, document.id))

    pipeline_ctx.storage.get.assert_not_awaited()
    pipeline_ctx.ocr.analyze.assert_not_awaited()
    enqueue.assert_awaited_once()


@pytest.mark.asyncio
async def test_ocr_missing_document_is_fatal(pipeline_ctx):
    from app.worker import ocr

    with patch("app.worker.ocr.get_document", AsyncMock(return_value=None)):
        with pytest.raises(FatalStageError):
            await ocr.run(pipeline_ctx, _mock_db(), _job("ocr", uuid4(), uuid4()))


@pytest.mark.asyncio
async def test_ocr_exhausted_marks_document_and_referral_failed(pipeline_ctx):
    from app.worker import ocr

    referral = _referral(ai_processing_status="processing")
    document = _document(referral.id, ocr_status="processing")
    with patch("app.worker.ocr.get_document", AsyncMock(return_value=document)), \
         patch("app.worker.ocr.get_referral", AsyncMock(return_value=referral)):
        await ocr.on_exhausted(pipeline_ctx, _mock_db(), _job("ocr", referral.id, document.id), TimeoutError())

    assert document.ocr_status == "failed"
    assert referral.ai_processing_status == "failed"
    assert referral.ai_processing_error.startswith("OCR failed for facesheet.pdf")


# ---------------------------------------------------------------------------
# Classification + extraction gating
# ---------------------------------------------------------------------------

async def _classify_one(pipeline_ctx, make_llm, document, siblings, referral, **job_kwargs):
    from app.worker import classify

    pipeline_ctx.llm = make_llm({"classification": {"type": "H_AND_P", "confidence": 0.88}})
    enqueue = _stub_enqueue(pipeline_ctx, "extraction")
    db = _mock_db()
    job = _job("classification", referral.id, document.id, **job_kwargs)
    with patch("app.worker.classify.get_document", AsyncMock(return_value=document)), \
         patch("app.worker.classify.lock_referral", AsyncMock(return_value=referral)) as lock, \
         patch("app.worker.classify.list_documents", AsyncMock(return_value=siblings)):
        await classify.run(pipeline_ctx, db, job)
    lock.assert_awaited_once_with(db, referral.id)
    return enqueue, db


@pytest.mark.asyncio
async def test_classify_waits_for_unclassified_siblings(pipeline_ctx, make_llm):
    referral = _referral()
    document = _document(referral.id, ocr_status="completed", ocr_text="HISTORY AND PHYSICAL")
    done = _document(referral.id, ocr_status="completed", document_type="face_sheet")
    still_ocr = _document(referral.id, ocr_status="processing")

    enqueue, db = await _classify_one(pipeline_ctx, make_llm, document, [done, document, still_ocr], referral)

    assert document.document_type == "h_and_p"
    assert document.document_type_confidence == 0.88
    db.flush.assert_awaited()
    enqueue.assert_not_awaited()


@pytest.mark.asyncio
async def test_last_classified_document_enqueues_extraction_once(pipeline_ctx, make_llm):
    referral = _referral()
    document = _document(referral.id, ocr_status="completed", ocr_text="HISTORY AND PHYSICAL")
    siblings = [
        _document(referral.id, ocr_status="completed", document_type="face_sheet"),
        document,
        _document(referral.id, ocr_status="completed", document_type="discharge_summary"),
    ]

    enqueue, db = await _classify_one(pipeline_ctx, make_llm, document, siblings, referral, priority=2)

    enqueue.assert_awaited_once_with(db, referral.id, priority=2)


@pytest.mark.asyncio
async def test_classify_final_attempt_degrades_to_other(pipeline_ctx, make_llm):
    from app.worker import classify

    referral = _referral()
    document = _document(referral.id, ocr_status="completed", ocr_text="???")
    pipeline_ctx.llm = make_llm({"classification": "no json here"})
    _stub_enqueue(pipeline_ctx, "extraction")
    job = _job("classification", referral.id, document.id, attempts=3, max_attempts=3)
    with patch("app.worker.classify.get_document", AsyncMock(return_value=document)), \
         patch("app.worker.classify.lock_referral", AsyncMock(return_value=referral)), \
         patch("app.worker.classify.list_documents", AsyncMock(return_value=[document])):
        await classify.run(pipeline_ctx, _mock_db(), job)
    assert document.document_type == "other"
    assert document.document_type_confidence == 0.1


@pytest.mark.asyncio
async def test_classify_retryable_attempt_raises(pipeline_ctx, make_llm):
    from app.worker import classify

    referral = _referral()
    document = _document(referral.id, ocr_status="completed", ocr_text="???")
    pipeline_ctx.llm = make_llm({"classification": "no json here"})
    with patch("app.worker.classify.get_document", AsyncMock(return_value=document)):
        with pytest.raises(ValueError):
            await classify.run(pipeline_ctx, _mock_db(), _job("classification", referral.id, document.id))
    assert document.document_type is None


@pytest.mark.asyncio
async def test_classify_before_ocr_is_invariant_violation(pipeline_ctx):
    from app.worker import classify

    document = _document(uuid4(), ocr_status="pending")
    with patch("app.worker.classify.get_document", AsyncMock(return_value=document)):
        with pytest.raises(InvariantViolation):
            await classify.run(pipeline_ctx, _mock_db(), _job("classification", document.referral_id, document.id))


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_extraction_with_unclassified_sibling_writes_nothing(pipeline_ctx):
    from app.worker import extract

    referral = _referral()
    docs = [
        _document(referral.id, ocr_status="completed", document_type="face_sheet"),
        _document(referral.id, ocr_status="completed", document_type=None),
    ]
    upsert = AsyncMock()
    with patch("app.worker.extract.get_referral", AsyncMock(return_value=referral)), \
         patch("app.worker.extract.list_documents", AsyncMock(return_value=docs)), \
         patch("app.worker.extract.upsert_extraction", upsert):
        with pytest.raises(InvariantViolation):
            await extract.run(pipeline_ctx, _mock_db(), _job("extraction", referral.id))
    upsert.assert_not_awaited()
    assert referral.ai_processing_status == "queued"


@pytest.mark.asyncio
async def test_extraction_upserts_record_and_enqueues_scoring(pipeline_ctx, make_llm):
    from app.worker import extract

    referral = _referral(ai_processing_status="processing")
    docs = [
        _document(referral.id, ocr_status="completed", document_type="face_sheet", ocr_text="Name: Ada Lovelace"),
        _document(referral.id, ocr_status="completed", document_type="medication_list", ocr_text="Insulin Lispro"),
    ]
    pipeline_ctx.llm = make_llm({"extraction": {
        "demographics": {"firstName": "Ada", "lastName": "Lovelace"},
        "medications": [{"name": "Insulin Lispro"}],
    }})
    enqueue = _stub_enqueue(pipeline_ctx, "scoring")
    upsert = AsyncMock()
    db = _mock_db()

    with patch("app.worker.extract.get_referral", AsyncMock(return_value=referral)), \
         patch("app.worker.extract.list_documents", AsyncMock(return_value=docs)), \
         patch("app.worker.extract.upsert_extraction", upsert):
        await extract.run(pipeline_ctx, db, _job("extraction", referral.id))

    record = upsert.call_args[0][2]
    assert record.medications[0].is_high_cost is True
    assert upsert.call_args.kwargs["source_document_ids"] == [str(d.id) for d in docs]
    assert upsert.call_args.kwargs["model"] == "fake-llm"
    assert referral.patient_first_name == "Ada"
    assert referral.ai_processing_status == "extracted"
    enqueue.assert_awaited_once_with(db, referral.id, priority=0)


@pytest.mark.asyncio
async def test_extraction_final_attempt_failure_still_proceeds_to_scoring(pipeline_ctx, make_llm):
    from app.schemas import PatientRecord
    from app.services.llm_provider import LLMProviderError
    from app.worker import extract

    referral = _referral(ai_processing_status="processing")
    docs = [_document(referral.id, ocr_status="completed", document_type="h_and_p", ocr_text="CHF, ambulates 50ft")]
    pipeline_ctx.llm = make_llm({"extraction": LLMProviderError("model overloaded")})
    enqueue = _stub_enqueue(pipeline_ctx, "scoring")
    upsert = AsyncMock()
    db = _mock_db()

    with patch("app.worker.extract.get_referral", AsyncMock(return_value=referral)), \
         patch("app.worker.extract.list_documents", AsyncMock(return_value=docs)), \
         patch("app.worker.extract.upsert_extraction", upsert):
        await extract.run(pipeline_ctx, db, _job("extraction", referral.id, attempts=3, max_attempts=3))

    upsert.assert_awaited_once()
    assert upsert.call_args[0][2] == PatientRecord.empty()
    assert referral.ai_processing_status == "extracted"
    enqueue.assert_awaited_once_with(db, referral.id, priority=0)


@pytest.mark.asyncio
async def test_extraction_retryable_attempt_failure_raises(pipeline_ctx, make_llm):
    from app.services.llm_provider import LLMProviderError
    from app.worker import extract

    referral = _referral(ai_processing_status="processing")
    docs = [_document(referral.id, ocr_status="completed", document_type="h_and_p", ocr_text="CHF")]
    pipeline_ctx.llm = make_llm({"extraction": LLMProviderError("model overloaded")})
    enqueue = _stub_enqueue(pipeline_ctx, "scoring")
    upsert = AsyncMock()

    with patch("app.worker.extract.get_referral", AsyncMock(return_value=referral)), \
         patch("app.worker.extract.list_documents", AsyncMock(return_value=docs)), \
         patch("app.worker.extract.upsert_extraction", upsert):
        with pytest.raises(LLMProviderError):
            await extract.run(pipeline_ctx, _mock_db(), _job("extraction", referral.id, attempts=1, max_attempts=3))

    upsert.assert_not_awaited()
    enqueue.assert_not_awaited()
    assert referral.ai_processing_status == "processing"


@pytest.mark.asyncio
async def test_extraction_exhausted_sets_extraction_failed(pipeline_ctx):
    from app.worker import extract

    referral = _referral(ai_processing_status="processing")
    with patch("app.worker.extract.get_referral", AsyncMock(return_value=referral)):
        await extract.on_exhausted(pipeline_ctx, _mock_db(), _job("extraction", referral.id), RuntimeError("quota"))
    assert referral.ai_processing_status == "extraction_failed"
    assert referral.ai_processing_error == "Data extraction failed: quota"


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

def _extraction_row():
    return SimpleNamespace(
        demographics={"firstName": "Ada"}, clinical_summary={}, diagnoses=[], medications=[],
        functional_status={}, care_requirements={"requiresVentilator": False}, behavioral_status={},
        insurance_info={"primaryPayer": "Medicare A"},
    )


SCORING_RESPONSES = {
    "admissions": {"fitScore": 76, "flags": [], "positiveFactors": []},
    "reimbursement": {"financialScore": 95, "payerAnalysis": {"payerType": "Medicare A", "riskLevel": "low"}},
    "clinical": {"clinicalComplexityScore": 3, "operationalScore": 90},
    "documentation": {"patientSummary": "Ready for SNF.", "documentQuality": {"completeness": 90, "legibility": 90, "recency": 90}},
}


@pytest.mark.asyncio
async def test_scoring_persists_outcome(pipeline_ctx, make_llm):
    from app.worker import score

    referral = _referral(ai_processing_status="extracted")
    job = _job("scoring", referral.id, max_attempts=2)
    pipeline_ctx.llm = make_llm(SCORING_RESPONSES)
    criteria = [SimpleNamespace(
        id=uuid4(), name="No ventilators", category="clinical", priority=1, is_deal_breaker=True,
        rule_definition={"field": "careRequirements.requiresVentilator", "operator": "equals", "value": True},
    )]
    upsert_rec = AsyncMock()
    insert_flags = AsyncMock(return_value=0)
    write_log = MagicMock()

    with patch("app.worker.score.get_referral", AsyncMock(return_value=referral)), \
         patch("app.worker.score.get_extraction", AsyncMock(return_value=_extraction_row())), \
         patch("app.worker.score.get_facility", AsyncMock(return_value=SimpleNamespace(settings={}))), \
         patch("app.worker.score.get_active_criteria", AsyncMock(return_value=criteria)), \
         patch("app.worker.score.list_documents", AsyncMock(return_value=[])), \
         patch("app.worker.score.upsert_recommendation", upsert_rec), \
         patch("app.worker.score.insert_flags", insert_flags), \
         patch("app.worker.score.write_processing_log", write_log):
        await score.run(pipeline_ctx, _mock_db(), job)

    outcome = upsert_rec.call_args[0][2]
    assert outcome.overall_score == 91
    assert outcome.recommendation == "strong_accept"
    assert upsert_rec.call_args.kwargs["processing_attempt_id"] == job.id
    assert insert_flags.call_args.kwargs["processing_attempt_id"] == job.id
    write_log.assert_called_once()
    assert referral.ai_recommendation == "strong_accept"
    assert referral.ai_confidence_score == pytest.approx(0.919)
    assert referral.status == "ready_for_decision"
    assert referral.ai_processing_status == "completed"


@pytest.mark.asyncio
async def test_scoring_without_extraction_is_invariant_violation(pipeline_ctx):
    from app.worker import score

    referral = _referral()
    with patch("app.worker.score.get_referral", AsyncMock(return_value=referral)), \
         patch("app.worker.score.get_extraction", AsyncMock(return_value=None)):
        with pytest.raises(InvariantViolation):
            await score.run(pipeline_ctx, _mock_db(), _job("scoring", referral.id))


@pytest.mark.asyncio
async def test_scoring_exhausted_routes_to_manual_review(pipeline_ctx):
    from app.worker import score

    referral = _referral(ai_processing_status="extracted")
    with patch("app.worker.score.get_referral", AsyncMock(return_value=referral)):
        await score.on_exhausted(pipeline_ctx, _mock_db(), _job("scoring", referral.id), RuntimeError("db down"))
    assert referral.ai_processing_status == "failed"
    assert referral.status == "pending_review"
