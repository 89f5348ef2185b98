"""Unit tests for app.worker.db: all DB functions tested with mocked AsyncSession."""
from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from sqlalchemy.dialects import postgresql

from app.schemas import PatientRecord
from app.services.agents.base import FlagData


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _mock_db(
    *,
    scalar_one_or_none=None,
    scalars_all=None,
    scalar_one=None,
    execute_side_effect=None,
):
    """Build a mock AsyncSession with common patterns."""
    db = AsyncMock()
    db.add = MagicMock()
    db.flush = AsyncMock()
    db.commit = AsyncMock()
    db.rollback = AsyncMock()

    if execute_side_effect is not None:
        db.execute = AsyncMock(side_effect=execute_side_effect)
    else:
        result_mock = MagicMock()
        result_mock.scalar_one_or_none.return_value = scalar_one_or_none
        result_mock.scalar_one.return_value = scalar_one
        result_mock.scalars.return_value.all.return_value = scalars_all or []
        db.execute = AsyncMock(return_value=result_mock)

    return db


def _referral(**overrides):
    base = dict(
        id=uuid4(), status="new", ai_processing_status="pending", ai_processing_error=None,
        ai_processing_started_at=None, ai_processing_completed_at=None,
        patient_first_name=None, patient_last_name=None, patient_dob=None, patient_gender=None,
        ai_recommendation=None, ai_confidence_score=None,
    )
    base.update(overrides)
    return SimpleNamespace(**base)


def _compiled(stmt) -> str:
    return str(stmt.compile(dialect=postgresql.dialect()))


# ---------------------------------------------------------------------------
# safe_commit / safe_rollback
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_safe_commit_success():
    from app.worker.db import safe_commit

    db = _mock_db()
    assert await safe_commit(db) is True
    db.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_safe_commit_failure_rolls_back():
    from app.worker.db import safe_commit

    db = _mock_db()
    db.commit = AsyncMock(side_effect=RuntimeError("fail"))
    assert await safe_commit(db) is False
    db.rollback.assert_awaited_once()


@pytest.mark.asyncio
async def test_safe_rollback_never_raises():
    from app.worker.db import safe_rollback

    db = _mock_db()
    db.rollback = AsyncMock(side_effect=RuntimeError("rb fail"))
    await safe_rollback(db)  # should not raise


# ---------------------------------------------------------------------------
# recover_stale_jobs
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_recover_stale_jobs_counts_and_commits():
    from app.worker.db import recover_stale_jobs

    result = MagicMock()
    result.fetchall.return_value = [(uuid4(), "ocr", uuid4()), (uuid4(), "scoring", uuid4())]
    db = _mock_db()
    db.execute = AsyncMock(return_value=result)

    assert await recover_stale_jobs(db, timeout_minutes=5, worker_id="worker-1", stage="ocr") == 2
    db.commit.assert_awaited_once()
    sql = _compiled(db.execute.call_args[0][0])
    assert "UPDATE pipeline_jobs" in sql
    assert "RETURNING" in sql


# ---------------------------------------------------------------------------
# Status transitions
# ---------------------------------------------------------------------------

def test_advance_status_moves_forward_only():
    from app.worker.db import advance_status

    ref = _referral(ai_processing_status="queued")
    assert advance_status(ref, "processing") is True
    assert ref.ai_processing_started_at is not None
    assert advance_status(ref, "queued") is False
    assert advance_status(ref, "processing") is False
    assert ref.ai_processing_status == "processing"
    assert advance_status(ref, "completed") is True
    assert ref.ai_processing_completed_at is not None


def test_advance_status_never_leaves_failed():
    from app.worker.db import advance_status

    ref = _referral(ai_processing_status="extraction_failed")
    assert advance_status(ref, "completed") is False
    assert ref.ai_processing_status == "extraction_failed"


def test_advance_status_none_counts_as_pending():
    from app.worker.db import advance_status

    ref = _referral(ai_processing_status=None)
    assert advance_status(ref, "queued") is True


def test_mark_failed_and_reset():
    from app.worker.db import mark_referral_failed, reset_referral_for_reprocessing

    ref = _referral(status="processing", ai_processing_status="processing")
    mark_referral_failed(ref, "failed", "Scoring failed: timeout", lifecycle_status="pending_review")
    assert ref.ai_processing_status == "failed"
    assert ref.ai_processing_error == "Scoring failed: timeout"
    assert ref.status == "pending_review"

    reset_referral_for_reprocessing(ref)
    assert ref.ai_processing_status == "queued"
    assert ref.ai_processing_error is None
    assert ref.status == "pending_review"

    fresh = _referral(status="new")
    reset_referral_for_reprocessing(fresh)
    assert fresh.status == "processing"


def test_all_documents_classified():
    from app.worker.db import all_documents_classified

    done = SimpleNamespace(ocr_status="completed", document_type="face_sheet")
    pending = SimpleNamespace(ocr_status="completed", document_type=None)
    assert all_documents_classified([done, done])
    assert not all_documents_classified([done, pending])
    assert not all_documents_classified([])


# ---------------------------------------------------------------------------
# Extraction / recommendation writes
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_upsert_extraction_uses_on_conflict():
    from app.worker.db import upsert_extraction

    db = _mock_db()
    record = PatientRecord.model_validate({"demographics": {"firstName": "Ada"}})
    await upsert_extraction(
        db, uuid4(), record, raw={"demographics": {}}, model="fake", version="1.0", source_document_ids=["d1"],
    )
    sql = _compiled(db.execute.call_args[0][0])
    assert "INSERT INTO extracted_patient_data" in sql
    assert "ON CONFLICT (referral_id) DO UPDATE" in sql
    db.add.assert_not_called()


def test_apply_patient_fields_only_sets_known_values():
    from app.worker.db import apply_patient_fields

    ref = _referral(patient_last_name="Existing")
    apply_patient_fields(ref, PatientRecord.model_validate({"demographics": {"firstName": "Ada", "gender": "F"}}))
    assert ref.patient_first_name == "Ada"
    assert ref.patient_last_name == "Existing"
    assert ref.patient_gender == "female"


@pytest.mark.asyncio
async def test_insert_flags_writes_each_flag():
    from app.worker.db import insert_flags

    db = _mock_db(scalar_one=0)
    attempt = uuid4()
    flags = [FlagData(title="Fall risk", source_agent="clinical"), FlagData(title="Medicaid pending")]
    assert await insert_flags(db, uuid4(), flags, processing_attempt_id=attempt) == 2
    assert db.add.call_count == 2
    added = db.add.call_args_list[0][0][0]
    assert added.processing_attempt_id == attempt
    assert added.title == "Fall risk"


@pytest.mark.asyncio
async def test_insert_flags_skips_redelivered_attempt():
    from app.worker.db import insert_flags

    db = _mock_db(scalar_one=3)
    assert await insert_flags(db, uuid4(), [FlagData(title="x")], processing_attempt_id=uuid4()) == 0
    db.add.assert_not_called()


@pytest.mark.asyncio
async def test_list_flags_latest_only_without_recommendation():
    from app.worker.db import list_flags

    db = _mock_db(scalar_one_or_none=None)
    assert await list_flags(db, uuid4(), latest_only=True) == []
    assert db.execute.await_count == 1


def test_apply_recommendation_fields():
    from app.worker.db import apply_recommendation_fields

    ref = _referral(status="processing")
    outcome = SimpleNamespace(recommendation="accept", confidence_score=0.82)
    apply_recommendation_fields(ref, outcome)
    assert ref.ai_recommendation == "accept"
    assert ref.ai_confidence_score == 0.82
    assert ref.status == "ready_for_decision"


def test_write_processing_log_records_degraded_agents():
    from app.worker.db import write_processing_log

    db = _mock_db()
    outcome = SimpleNamespace(
        recommendation="review_required", overall_score=48, confidence_score=0.532,
        flags=[], agent_outputs={}, processing_time_ms=1200, failed_agents=["clinical"],
    )
    write_processing_log(db, uuid4(), outcome, model_used="fake-llm")
    log = db.add.call_args[0][0]
    assert log.agent_name == "orchestrator"
    assert log.success is False
    assert "clinical" in log.error_message
