"""Error tracking service for logging and classifying processing errors."""
from sqlalchemy.ext.asyncio import AsyncSession
from app.models import ProcessingError
from datetime import datetime, timezone
from uuid import UUID
import uuid
import logging

logger = logging.getLogger(__name__)


def _as_uuid(value) -> UUID | None:
    if value is None or isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (ValueError, TypeError):
        logger.error("Invalid id for log_error: %r", value)
        return None


async def log_error(
    db: AsyncSession,
    error_type: str,
    error_message: str,
    severity: str = "warning",
    stage: str = "other",
    referral_id=None,
    document_id=None,
    job_id=None,
    error_details: dict | None = None
) -> ProcessingError | None:
    """
    Log an error to the processing_errors table.

    Args:
        db: Database session
        error_type: Type of error (provider_error, timeout, json_parse_error, not_found,
            invariant_violation, database_error, other)
        error_message: Human-readable error message
        severity: Error severity (critical, warning, info)
        stage: Pipeline stage (ocr, classification, extraction, scoring, other)
        referral_id / document_id / job_id: Owning entities (UUID or str), any may be None
        error_details: Optional JSONB dict with additional context (exception class, attempt, ...)

    Returns:
        The created ProcessingError record, or None if logging failed.
        Never raises; callers can assume control flow continues.
    """
    error = ProcessingError(
        id=uuid.uuid4(),
        referral_id=_as_uuid(referral_id),
        document_id=_as_uuid(document_id),
        job_id=_as_uuid(job_id),
        error_type=error_type,
        severity=severity,
        error_message=(error_message or "")[:2000],
        error_details=error_details or {},
        stage=stage,
        created_at=datetime.now(timezone.utc).replace(tzinfo=None)
    )

    try:
        db.add(error)
        await db.commit()
        logger.info(
            "Logged to processing_errors: id=%s referral_id=%s document_id=%s error_type=%s severity=%s stage=%s",
            error.id, referral_id, document_id or "(none)", error_type, severity, stage,
        )
        return error
    except Exception as e:
        await db.rollback()
        logger.error("Failed to commit error log (rollback done): %s", e, exc_info=True)
        return None


def classify_error(error_type: str, error: Exception, recovered: bool = False) -> tuple[str, str]:
    """
    Classify an error by type and determine severity.

    Args:
        error_type: Type of error
        error: The exception object
        recovered: Whether the error was recovered from (retried or degraded to a default)

    Returns:
        Tuple of (severity, phase) where phase is the kind of work that failed
    """
    severity_map = {
        "provider_error": "warning" if recovered else "critical",
        "timeout": "warning" if recovered else "critical",
        "json_parse_error": "warning" if recovered else "critical",
        "not_found": "critical",
        "invariant_violation": "critical",
        "database_error": "critical",
        "other": "warning"
    }

    phase_map = {
        "provider_error": "external_call",
        "timeout": "external_call",
        "json_parse_error": "parsing",
        "not_found": "lookup",
        "invariant_violation": "coordination",
        "database_error": "persistence",
        "other": "other"
    }

    severity = severity_map.get(error_type, "warning")
    phase = phase_map.get(error_type, "other")

    return severity, phase
