"""Unit tests for app.worker.errors and app.services.error_tracker."""
from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from app.services.classification import ClassificationError
from app.services.error_tracker import classify_error, log_error
from app.services.llm_provider import LLMProviderError
from app.services.ocr import OCRError
from app.worker.errors import (
    FatalStageError,
    InvariantViolation,
    describe_error,
    error_type_for,
    record_stage_error,
)


@pytest.mark.parametrize("error,expected", [
    (FatalStageError("gone"), "not_found"),
    (InvariantViolation("bug"), "invariant_violation"),
    (asyncio.TimeoutError(), "timeout"),
    (LLMProviderError("503"), "provider_error"),
    (OCRError("tesseract missing"), "provider_error"),
    (json.JSONDecodeError("bad", "x", 0), "json_parse_error"),
    (ClassificationError("no type"), "json_parse_error"),
    (OperationalError("SELECT 1", {}, Exception("conn reset")), "database_error"),
    (RuntimeError("?"), "other"),
])
def test_error_type_for(error, expected):
    assert error_type_for(error) == expected


def test_describe_error():
    assert describe_error(asyncio.TimeoutError()) == "Timed out waiting for external service"
    assert describe_error(RuntimeError("quota exceeded")) == "quota exceeded"
    assert describe_error(KeyError()) == "KeyError"


def test_classify_error_severity_depends_on_recovery():
    assert classify_error("provider_error", Exception(), recovered=True) == ("warning", "external_call")
    assert classify_error("provider_error", Exception(), recovered=False) == ("critical", "external_call")
    assert classify_error("invariant_violation", Exception(), recovered=True) == ("critical", "coordination")
    assert classify_error("something_new", Exception()) == ("warning", "other")


@pytest.mark.asyncio
async def test_record_stage_error_logs_classified_row():
    db = AsyncMock()
    referral_id, job_id = uuid4(), uuid4()
    with patch("app.worker.errors.log_error", AsyncMock()) as log:
        await record_stage_error(
            db, stage="scoring", error=LLMProviderError("503"), referral_id=referral_id,
            job_id=job_id, recovered=True, error_details={"attempt": 1},
        )
    kwargs = log.call_args.kwargs
    assert kwargs["error_type"] == "provider_error"
    assert kwargs["severity"] == "warning"
    assert kwargs["stage"] == "scoring"
    assert kwargs["error_details"] == {
        "exception": "LLMProviderError", "phase": "external_call", "recovered": True, "attempt": 1,
    }


@pytest.mark.asyncio
async def test_record_stage_error_never_raises():
    with patch("app.worker.errors.log_error", AsyncMock(side_effect=RuntimeError("db gone"))):
        await record_stage_error(AsyncMock(), stage="ocr", error=RuntimeError("x"))


@pytest.mark.asyncio
async def test_log_error_commits_row():
    db = AsyncMock()
    db.add = MagicMock()
    row = await log_error(db, "timeout", "OCR timed out", severity="critical", stage="ocr", document_id=str(uuid4()))
    db.add.assert_called_once_with(row)
    db.commit.assert_awaited_once()
    assert row.stage == "ocr"


@pytest.mark.asyncio
async def test_log_error_rolls_back_and_returns_none():
    db = AsyncMock()
    db.add = MagicMock()
    db.commit = AsyncMock(side_effect=RuntimeError("commit failed"))
    assert await log_error(db, "other", "x") is None
    db.rollback.assert_awaited_once()
