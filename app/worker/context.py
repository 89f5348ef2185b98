"""
Pipeline context.

Everything a stage worker or the API needs, built once at startup and passed
down explicitly: session factory, one queue handle per stage, blob storage,
OCR provider, LLM provider and the worker configuration.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app import config as app_config
from app.services.llm_provider import LLMProvider, get_llm_provider
from app.services.ocr import OCRProvider, TesseractOCRProvider
from app.services.storage import BlobStorage, GCSStorage
from app.worker.config import WorkerConfig, load_worker_config
from app.worker.queue import StageQueue, build_queues
from app.worker.rate_limit import SlidingWindowRateLimiter

logger = logging.getLogger(__name__)


@dataclass
class PipelineContext:
    session_factory: Callable[[], AsyncSession]
    queues: dict[str, StageQueue]
    storage: BlobStorage
    ocr: OCRProvider
    llm: Optional[LLMProvider]
    config: WorkerConfig
    bucket: str = app_config.DOCUMENT_BUCKET
    ocr_limiter: Optional[SlidingWindowRateLimiter] = None

    def queue(self, stage: str) -> StageQueue:
        try:
            return self.queues[stage]
        except KeyError:
            raise ValueError(f"No queue for stage: {stage}") from None

    def require_llm(self) -> LLMProvider:
        if self.llm is None:
            raise RuntimeError("PipelineContext was built without an LLM provider")
        return self.llm


def build_context(
    config: WorkerConfig | None = None,
    *,
    session_factory: Callable[[], AsyncSession] | None = None,
    storage: BlobStorage | None = None,
    ocr: OCRProvider | None = None,
    llm: LLMProvider | None = None,
    include_llm: bool = True,
) -> PipelineContext:
    """Wire the production collaborators; any of them can be passed in instead."""
    cfg = config or load_worker_config()
    if session_factory is None:
        from app.database import AsyncSessionLocal
        session_factory = AsyncSessionLocal
    if llm is None and include_llm:
        llm = get_llm_provider()
    ctx = PipelineContext(
        session_factory=session_factory,
        queues=build_queues(cfg.stages),
        storage=storage or GCSStorage(),
        ocr=ocr or TesseractOCRProvider(render_dpi=app_config.OCR_RENDER_DPI, tesseract_cmd=app_config.TESSERACT_CMD),
        llm=llm,
        config=cfg,
        ocr_limiter=SlidingWindowRateLimiter(cfg.ocr_rate_limit_jobs, cfg.ocr_rate_limit_window_seconds),
    )
    logger.info(
        "Pipeline context ready: stages=%s llm=%s bucket=%s",
        ",".join(ctx.queues), getattr(llm, "model_name", None), ctx.bucket,
    )
    return ctx
