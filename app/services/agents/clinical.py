"""Clinical agent: complexity, operational burden, care and staffing needs."""
from __future__ import annotations

import logging

from pydantic import Field, field_validator

from app.schemas import PatientRecord
from app.services.agents.base import (
    AgentFields,
    AgentModel,
    ComplexityScore,
    Score,
    StrList,
    parse_flags,
    patient_json,
    processing_error_flag,
)
from app.services.llm_provider import LLMProvider, generate_json
from app.services.prompt_registry import render_prompt

logger = logging.getLogger(__name__)

AGENT = "clinical"
DEFAULT_COMPLEXITY = 5
DEFAULT_OPERATIONAL_SCORE = 50
DEFAULT_NURSING_HOURS = 2.0


class ClinicalResponse(AgentModel):
    clinical_complexity_score: ComplexityScore = DEFAULT_COMPLEXITY
    operational_score: Score = DEFAULT_OPERATIONAL_SCORE
    special_care_needs: StrList = Field(default_factory=list)
    comorbidity_risks: list[dict] = Field(default_factory=list)
    equipment_needs: StrList = Field(default_factory=list)
    staffing_considerations: StrList = Field(default_factory=list)
    estimated_nursing_hours_per_day: float = DEFAULT_NURSING_HOURS

    @field_validator("estimated_nursing_hours_per_day", mode="before")
    @classmethod
    def _hours(cls, v):
        return DEFAULT_NURSING_HOURS if v is None else max(0.0, float(v))


class ClinicalOutput(AgentFields):
    clinical_complexity_score: int = DEFAULT_COMPLEXITY
    operational_score: int = DEFAULT_OPERATIONAL_SCORE
    special_care_needs: list[str] = Field(default_factory=list)
    equipment_needs: list[str] = Field(default_factory=list)
    staffing_considerations: list[str] = Field(default_factory=list)
    estimated_nursing_hours_per_day: float = DEFAULT_NURSING_HOURS

    @classmethod
    def default(cls, error: str) -> "ClinicalOutput":
        return cls(
            flags=[processing_error_flag(
                AGENT, "Clinical Analysis Error", "Could not complete clinical analysis",
            )],
            failed=True,
            error=error,
        )


async def run_clinical(
    record: PatientRecord,
    llm: LLMProvider,
    *,
    timeout: float | None = None,
    prompt_version: str = "v1",
) -> ClinicalOutput:
    prompt = render_prompt("clinical", prompt_version, patient_data=patient_json(record))
    resp = ClinicalResponse.model_validate(await generate_json(llm, prompt, timeout=timeout))
    logger.info(
        "[clinical] complexity=%s operational=%s",
        resp.clinical_complexity_score, resp.operational_score,
    )
    return ClinicalOutput(
        clinical_complexity_score=resp.clinical_complexity_score,
        operational_score=resp.operational_score,
        special_care_needs=resp.special_care_needs,
        equipment_needs=resp.equipment_needs,
        staffing_considerations=resp.staffing_considerations,
        estimated_nursing_hours_per_day=resp.estimated_nursing_hours_per_day,
        flags=parse_flags(resp.comorbidity_risks, AGENT),
    )
