"""Pytest fixtures for referral intake tests."""
import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from app.main import app
from app.services.llm_provider import LLMProvider, LLMProviderError
from app.worker.config import WorkerConfig
from app.worker.context import PipelineContext
from app.worker.queue import build_queues

# Substrings that identify each prompt template (app/prompts/<name>/v1.yaml)
PROMPT_MARKERS = {
    "classification": "Classify the document below",
    "extraction": "Extract one structured patient record",
    "admissions": "Evaluate this patient for admission",
    "reimbursement": "Estimate PDPM reimbursement",
    "clinical": "Analyse the clinical complexity",
    "documentation": "Review the documentation received",
}


class FakeLLM(LLMProvider):
    """Canned responses keyed by prompt name; an Exception value is raised instead."""

    model_name = "fake-llm"

    def __init__(self, responses: dict[str, Any]):
        self.responses = responses
        self.prompts: list[str] = []

    async def generate(self, prompt: str, **kwargs) -> str:
        self.prompts.append(prompt)
        for name, response in self.responses.items():
            if PROMPT_MARKERS[name] in prompt:
                if isinstance(response, Exception):
                    raise response
                return response if isinstance(response, str) else json.dumps(response)
        raise LLMProviderError("No canned response for prompt")


@pytest.fixture
def make_llm():
    return FakeLLM


@pytest.fixture
def pipeline_ctx() -> PipelineContext:
    """PipelineContext with mocked collaborators and no rate limiter."""
    cfg = WorkerConfig()
    storage = MagicMock()
    storage.put = AsyncMock(return_value="gs://bucket/key")
    storage.get = AsyncMock(return_value=b"%PDF-1.4 fake")
    storage.presigned_get = AsyncMock(return_value="https://signed.example/doc")
    ocr = MagicMock()
    ocr.analyze = AsyncMock()
    return PipelineContext(
        session_factory=MagicMock(),
        queues=build_queues(cfg.stages),
        storage=storage,
        ocr=ocr,
        llm=FakeLLM({}),
        config=cfg,
        bucket="test-bucket",
    )


@pytest.fixture
def client() -> TestClient:
    """FastAPI test client."""
    return TestClient(app)
