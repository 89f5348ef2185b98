"""Documentation agent: handoff summary, missing documents, evidence and quality scores."""
from __future__ import annotations

import json
import logging
from typing import Iterable, Optional

from pydantic import Field

from app.schemas import PatientRecord
from app.services.agents.base import (
    AgentFields,
    AgentModel,
    Score,
    StrList,
    patient_json,
    processing_error_flag,
    round_half_up,
)
from app.services.llm_provider import LLMProvider, generate_json
from app.services.prompt_registry import render_prompt

logger = logging.getLogger(__name__)

AGENT = "documentation"
DEFAULT_QUALITY = 50

# Document types a complete admission packet carries, with display labels
REQUIRED_DOCUMENT_TYPES = {
    "face_sheet": "Face sheet",
    "h_and_p": "History and physical (H&P)",
    "discharge_summary": "Discharge summary",
    "medication_list": "Medication list",
    "labs": "Recent labs",
}


class EvidenceCitation(AgentModel):
    claim: str
    source: Optional[str] = None
    excerpt: Optional[str] = None


class DocumentQuality(AgentModel):
    completeness: Score = DEFAULT_QUALITY
    legibility: Score = DEFAULT_QUALITY
    recency: Score = DEFAULT_QUALITY

    @property
    def overall(self) -> int:
        return round_half_up((self.completeness + self.legibility + self.recency) / 3)


class DocumentationResponse(AgentModel):
    patient_summary: Optional[str] = None
    missing_documents: StrList = Field(default_factory=list)
    evidence_citations: list[dict] = Field(default_factory=list)
    document_quality: DocumentQuality = Field(default_factory=DocumentQuality)
    key_findings: StrList = Field(default_factory=list)
    review_questions: StrList = Field(default_factory=list)


class DocumentationOutput(AgentFields):
    patient_summary: str = ""
    missing_documents: list[str] = Field(default_factory=list)
    evidence_citations: list[EvidenceCitation] = Field(default_factory=list)
    document_quality: DocumentQuality = Field(default_factory=DocumentQuality)
    key_findings: list[str] = Field(default_factory=list)
    review_questions: list[str] = Field(default_factory=list)

    @property
    def quality_score(self) -> int:
        return self.document_quality.overall

    @classmethod
    def default(cls, error: str) -> "DocumentationOutput":
        return cls(
            patient_summary="Unable to generate patient summary. Manual review required.",
            flags=[processing_error_flag(
                AGENT, "Documentation Analysis Error", "Could not complete documentation analysis",
            )],
            failed=True,
            error=error,
        )


def missing_required_documents(document_types: Iterable[Optional[str]]) -> list[str]:
    """Display labels of required document types not present among *document_types*."""
    received = {t for t in document_types if t}
    return [label for t, label in REQUIRED_DOCUMENT_TYPES.items() if t not in received]


def merge_unique(*lists: Iterable[str]) -> list[str]:
    """Concatenate keeping first occurrence (case-insensitive)."""
    seen: set[str] = set()
    out = []
    for items in lists:
        for item in items:
            key = item.strip().lower()
            if key and key not in seen:
                seen.add(key)
                out.append(item.strip())
    return out


def _citations(items: list[dict]) -> list[EvidenceCitation]:
    return [EvidenceCitation.model_validate(i) for i in items if isinstance(i, dict) and i.get("claim")]


async def run_documentation(
    record: PatientRecord,
    document_types: list[Optional[str]],
    llm: LLMProvider,
    *,
    timeout: float | None = None,
    prompt_version: str = "v1",
) -> DocumentationOutput:
    prompt = render_prompt(
        "documentation",
        prompt_version,
        patient_data=patient_json(record),
        document_types=json.dumps([t or "unclassified" for t in document_types]),
    )
    resp = DocumentationResponse.model_validate(await generate_json(llm, prompt, timeout=timeout))
    missing = merge_unique(missing_required_documents(document_types), resp.missing_documents)
    output = DocumentationOutput(
        patient_summary=resp.patient_summary or "Summary generation failed",
        missing_documents=missing,
        evidence_citations=_citations(resp.evidence_citations),
        document_quality=resp.document_quality,
        key_findings=resp.key_findings,
        review_questions=resp.review_questions,
    )
    logger.info("[documentation] quality=%s, %d missing documents", output.quality_score, len(missing))
    return output
