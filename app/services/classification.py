"""Document-type classification for referral documents."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from app.services.llm_provider import LLMProvider, generate_json
from app.services.prompt_registry import render_prompt

logger = logging.getLogger(__name__)

DOCUMENT_TYPES = (
    "face_sheet",
    "h_and_p",
    "discharge_summary",
    "medication_list",
    "labs",
    "consult_notes",
    "nursing_notes",
    "insurance_card",
    "other",
)

# Labels the model is asked to use, plus common variants
_LABEL_MAP = {
    "FACE_SHEET": "face_sheet",
    "H_AND_P": "h_and_p",
    "H&P": "h_and_p",
    "HISTORY_AND_PHYSICAL": "h_and_p",
    "DISCHARGE_SUMMARY": "discharge_summary",
    "MEDICATION_LIST": "medication_list",
    "MAR": "medication_list",
    "LABS": "labs",
    "LAB_RESULTS": "labs",
    "CONSULT_NOTES": "consult_notes",
    "NURSING_NOTES": "nursing_notes",
    "INSURANCE_CARD": "insurance_card",
    "OTHER": "other",
}

FALLBACK_CONFIDENCE = 0.1
FALLBACK_REASONING = "Classification failed, defaulting to other"


class ClassificationError(ValueError):
    """Model output did not contain a usable classification."""


@dataclass(frozen=True)
class ClassificationResult:
    type: str
    confidence: float
    reasoning: Optional[str] = None

    @classmethod
    def fallback(cls, reasoning: str = FALLBACK_REASONING) -> "ClassificationResult":
        return cls(type="other", confidence=FALLBACK_CONFIDENCE, reasoning=reasoning)


def normalize_document_type(label: Any) -> str:
    """Map a model label (any case, spaces or underscores) onto DOCUMENT_TYPES; unknown -> other."""
    if not isinstance(label, str) or not label.strip():
        return "other"
    key = label.strip().upper().replace(" ", "_").replace("-", "_")
    if key in _LABEL_MAP:
        return _LABEL_MAP[key]
    lowered = key.lower()
    return lowered if lowered in DOCUMENT_TYPES else "other"


def _confidence(value: Any) -> float:
    try:
        conf = float(value)
    except (TypeError, ValueError):
        raise ClassificationError(f"Invalid confidence: {value!r}")
    # Some models answer on a 0-100 scale
    if conf > 1.0:
        conf = conf / 100.0
    return max(0.0, min(1.0, conf))


async def classify(
    ocr_text: str,
    llm: LLMProvider,
    *,
    prefix_chars: int = 3000,
    prompt_version: str = "v1",
    timeout: float | None = None,
    strict: bool = False,
) -> ClassificationResult:
    """Classify one document from a prefix of its OCR text.

    Never raises unless *strict*: on any failure returns ``other`` with low
    confidence. Workers pass ``strict=True`` while retries remain so that a
    transient or malformed response is retried before degrading.
    """
    text = (ocr_text or "").strip()
    if not text:
        logger.warning("[classify] Empty OCR text, defaulting to other")
        return ClassificationResult.fallback("Document has no readable text")

    try:
        prompt = render_prompt("classification", prompt_version, document_text=text[:prefix_chars])
        data = await generate_json(llm, prompt, timeout=timeout)
        label = data.get("type")
        if not label:
            raise ClassificationError(f"Classification response missing type: {data!r}"[:300])
        result = ClassificationResult(
            type=normalize_document_type(label),
            confidence=_confidence(data.get("confidence")),
            reasoning=data.get("reasoning") if isinstance(data.get("reasoning"), str) else None,
        )
        logger.info("[classify] %s (confidence %.2f)", result.type, result.confidence)
        return result
    except Exception as e:
        if strict:
            raise
        logger.error("[classify] Document classification failed: %s", e, exc_info=True)
        return ClassificationResult.fallback()
