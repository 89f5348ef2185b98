"""
Pipeline worker error types and helpers.

Routing in ``process_job``:

* ``FatalStageError``: the job can never succeed (referral/document gone).
  Job is dead-lettered immediately, no retry.
* ``InvariantViolation``: a pipeline precondition does not hold (e.g.
  extraction fired with an unclassified sibling). Logged as a bug, job
  ``skipped``, no entity state written.
* anything else: retryable per the stage's policy; after the last attempt
  the stage's terminal-failure hook marks the owning entity failed.
"""
from __future__ import annotations

import asyncio
import json
import logging

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from app.services.classification import ClassificationError
from app.services.error_tracker import classify_error, log_error
from app.services.llm_provider import LLMProviderError
from app.services.ocr import OCRError

logger = logging.getLogger(__name__)


class StageError(Exception):
    """Base for pipeline stage failures."""


class FatalStageError(StageError):
    """Job cannot succeed; dead-letter without retry."""


class InvariantViolation(StageError):
    """Pipeline precondition broken; skip the job and write nothing."""


def error_type_for(error: BaseException) -> str:
    """Map an exception onto the processing_errors.error_type vocabulary."""
    if isinstance(error, FatalStageError):
        return "not_found"
    if isinstance(error, InvariantViolation):
        return "invariant_violation"
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return "timeout"
    if isinstance(error, (LLMProviderError, OCRError)):
        return "provider_error"
    if isinstance(error, (json.JSONDecodeError, ValidationError, ClassificationError)):
        return "json_parse_error"
    if isinstance(error, SQLAlchemyError):
        return "database_error"
    return "other"


def describe_error(error: BaseException) -> str:
    """Human-readable one-liner stored on the owning entity."""
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)) and not str(error):
        return "Timed out waiting for external service"
    return (str(error) or type(error).__name__)[:2000]


async def record_stage_error(
    db,
    *,
    stage: str,
    error: BaseException,
    referral_id=None,
    document_id=None,
    job_id=None,
    recovered: bool = False,
    error_details: dict | None = None,
) -> None:
    """Classify and persist a ProcessingError. Never raises."""
    error_type = error_type_for(error)
    severity, phase = classify_error(error_type, error, recovered)
    details = {"exception": type(error).__name__, "phase": phase, "recovered": recovered}
    if error_details:
        details.update(error_details)
    try:
        await log_error(
            db=db,
            error_type=error_type,
            error_message=describe_error(error),
            severity=severity,
            stage=stage,
            referral_id=referral_id,
            document_id=document_id,
            job_id=job_id,
            error_details=details,
        )
    except Exception as log_exc:
        logger.error("[errors] log_error failed: %s", log_exc, exc_info=True)
