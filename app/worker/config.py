"""
Pipeline worker configuration.

Single source of truth for worker-level defaults and tunables: per-stage pool
concurrency and retry policy, the OCR rate limit, external call timeouts and
polling intervals. Loaded once at startup and carried on the PipelineContext.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field

STAGES = ("ocr", "classification", "extraction", "scoring")


@dataclass(frozen=True)
class StageSettings:
    """Pool size and retry policy for one stage queue."""

    concurrency: int
    max_attempts: int
    backoff_base_seconds: float

    def backoff_seconds(self, attempts: int) -> float:
        """Delay before the next attempt after *attempts* failed tries: base * 2^(attempts-1)."""
        return self.backoff_base_seconds * (2 ** max(0, attempts - 1))


def _default_stages() -> dict[str, StageSettings]:
    return {
        "ocr": StageSettings(concurrency=3, max_attempts=3, backoff_base_seconds=2.0),
        "classification": StageSettings(concurrency=5, max_attempts=3, backoff_base_seconds=2.0),
        "extraction": StageSettings(concurrency=2, max_attempts=3, backoff_base_seconds=2.0),
        "scoring": StageSettings(concurrency=2, max_attempts=2, backoff_base_seconds=5.0),
    }


@dataclass(frozen=True)
class WorkerConfig:
    """Immutable worker configuration loaded once at startup."""

    stages: dict[str, StageSettings] = field(default_factory=_default_stages)

    # --- Polling / sleep ---
    poll_interval_seconds: float = 2.0
    error_sleep_seconds: float = 5.0

    # --- OCR provider throughput ceiling (sliding window) ---
    ocr_rate_limit_jobs: int = 10
    ocr_rate_limit_window_seconds: float = 60.0

    # --- External call timeouts ---
    storage_timeout_seconds: float = 30.0
    ocr_timeout_seconds: float = 120.0
    llm_call_timeout_seconds: float = 90.0

    # --- Stage knobs ---
    classification_prefix_chars: int = 3000
    extraction_document_chars: int = 4000
    prompt_version: str = "v1"

    # --- Queue priorities (higher runs first) ---
    upload_priority: int = 1
    retry_priority: int = 2

    # --- Stale job recovery ---
    stale_job_timeout_minutes: float = 10.0

    # --- Logging ---
    log_level: str = "INFO"
    log_format: str = "%(asctime)s - [WORKER] - %(levelname)s - %(message)s"

    def stage(self, name: str) -> StageSettings:
        try:
            return self.stages[name]
        except KeyError:
            raise ValueError(f"Unknown pipeline stage: {name}") from None


def load_worker_config() -> WorkerConfig:
    """Build WorkerConfig from environment variables (with defaults)."""
    def _float(key: str, default: float) -> float:
        raw = os.getenv(key)
        if raw is None:
            return default
        try:
            return float(raw)
        except (TypeError, ValueError):
            return default

    def _int(key: str, default: int) -> int:
        raw = os.getenv(key)
        if raw is None:
            return default
        try:
            return int(raw)
        except (TypeError, ValueError):
            return default

    defaults = _default_stages()
    stages = {}
    for name in STAGES:
        prefix = f"WORKER_{name.upper()}"
        base = defaults[name]
        stages[name] = StageSettings(
            concurrency=max(1, _int(f"{prefix}_CONCURRENCY", base.concurrency)),
            max_attempts=max(1, _int(f"{prefix}_MAX_ATTEMPTS", base.max_attempts)),
            backoff_base_seconds=max(0.0, _float(f"{prefix}_BACKOFF_SECONDS", base.backoff_base_seconds)),
        )

    return WorkerConfig(
        stages=stages,
        poll_interval_seconds=_float("WORKER_POLL_INTERVAL", 2.0),
        error_sleep_seconds=_float("WORKER_ERROR_SLEEP", 5.0),
        ocr_rate_limit_jobs=max(1, _int("WORKER_OCR_RATE_LIMIT", 10)),
        ocr_rate_limit_window_seconds=_float("WORKER_OCR_RATE_WINDOW", 60.0),
        storage_timeout_seconds=_float("WORKER_STORAGE_TIMEOUT", 30.0),
        ocr_timeout_seconds=_float("WORKER_OCR_TIMEOUT", 120.0),
        llm_call_timeout_seconds=_float("WORKER_LLM_CALL_TIMEOUT", 90.0),
        classification_prefix_chars=_int("WORKER_CLASSIFICATION_PREFIX_CHARS", 3000),
        extraction_document_chars=_int("WORKER_EXTRACTION_DOCUMENT_CHARS", 4000),
        prompt_version=os.getenv("PROMPT_VERSION", "v1"),
        stale_job_timeout_minutes=_float("WORKER_STALE_JOB_TIMEOUT_MINUTES", 10.0),
        log_level=os.getenv("WORKER_LOG_LEVEL", "INFO"),
        log_format=os.getenv(
            "WORKER_LOG_FORMAT",
            "%(asctime)s - [WORKER] - %(levelname)s - %(message)s",
        ),
    )
