"""Extraction service: merge a referral's classified documents into one PatientRecord."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from pydantic import ValidationError

from app.schemas import PatientRecord
from app.services.llm_provider import LLMProvider, generate_json
from app.services.prompt_registry import render_prompt

logger = logging.getLogger(__name__)

HIGH_COST_MEDICATIONS = (
    "Daptomycin", "Ceftaroline", "Oritavancin", "Dalbavancin",
    "Epoetin alfa", "Darbepoetin alfa", "Filgrastim", "Pegfilgrastim",
    "Rituximab", "Infliximab", "Adalimumab", "Etanercept",
    "Insulin", "Lantus", "Humalog", "Novolog",
)

DOCUMENT_SEPARATOR = "\n\n---\n\n"


@dataclass
class SourceDocument:
    type: str
    text: str
    document_id: Optional[str] = None


@dataclass
class ExtractionResult:
    record: PatientRecord
    raw: dict = field(default_factory=dict)
    degraded: bool = False
    error: Optional[str] = None


def is_high_cost_medication(name: str | None) -> bool:
    """Case-insensitive substring match against HIGH_COST_MEDICATIONS."""
    if not name:
        return False
    lowered = name.lower()
    return any(drug.lower() in lowered for drug in HIGH_COST_MEDICATIONS)


def flag_high_cost_medications(record: PatientRecord) -> PatientRecord:
    """OR the deterministic high-cost match into each medication's own flag (in place)."""
    for med in record.medications:
        med.is_high_cost = med.is_high_cost or is_high_cost_medication(med.name)
    return record


def format_documents(documents: Iterable[SourceDocument], *, max_chars: int = 4000) -> str:
    """Label and truncate each document for the extraction prompt."""
    blocks = [
        f"DOCUMENT {i} ({doc.type}):\n{(doc.text or '')[:max_chars]}"
        for i, doc in enumerate(documents, start=1)
    ]
    return DOCUMENT_SEPARATOR.join(blocks)


def parse_patient_record(data: dict[str, Any]) -> PatientRecord:
    """Validate model output into a PatientRecord and apply the high-cost post-pass."""
    return flag_high_cost_medications(PatientRecord.model_validate(data))


async def extract(
    documents: list[SourceDocument],
    llm: LLMProvider,
    *,
    max_chars_per_document: int = 4000,
    prompt_version: str = "v1",
    timeout: float | None = None,
    strict: bool = False,
) -> ExtractionResult:
    """Extract one merged PatientRecord from all *documents*.

    On failure returns the empty record (``degraded=True``) unless *strict*,
    in which case the error propagates so the job can be retried.
    """
    if not documents:
        logger.warning("[extract] No documents supplied; returning empty record")
        return ExtractionResult(record=PatientRecord.empty(), degraded=True, error="No documents")

    try:
        prompt = render_prompt(
            "extraction",
            prompt_version,
            documents=format_documents(documents, max_chars=max_chars_per_document),
        )
        data = await generate_json(llm, prompt, timeout=timeout)
        record = parse_patient_record(data)
        logger.info(
            "[extract] Extracted record from %d documents (%d diagnoses, %d medications)",
            len(documents), len(record.diagnoses), len(record.medications),
        )
        return ExtractionResult(record=record, raw=data)
    except Exception as e:
        if strict:
            raise
        if isinstance(e, ValidationError):
            logger.error("[extract] Model output failed validation: %s", e)
        else:
            logger.error("[extract] Data extraction failed: %s", e, exc_info=True)
        return ExtractionResult(record=PatientRecord.empty(), degraded=True, error=str(e)[:2000])
