"""Reimbursement agent: PDPM-style daily rate, length of stay, revenue and payer risk."""
from __future__ import annotations

import logging
from typing import Optional

from pydantic import Field, field_validator

from app.schemas import PatientRecord
from app.services.agents.base import (
    AgentFields,
    AgentModel,
    Score,
    parse_flags,
    patient_json,
    processing_error_flag,
)
from app.services.llm_provider import LLMProvider, generate_json
from app.services.prompt_registry import render_prompt

logger = logging.getLogger(__name__)

AGENT = "reimbursement"
PDPM_COMPONENTS = ("nursing", "pt", "ot", "slp", "nta")
DEFAULT_COMPONENT_RATES = {"nursing": 200.0, "pt": 50.0, "ot": 40.0, "slp": 20.0, "nta": 50.0}
DEFAULT_DAILY_RATE = 360.0
DEFAULT_LOS_DAYS = 20
DEFAULT_FINANCIAL_SCORE = 50


class PdpmComponent(AgentModel):
    category: str = "Unknown"
    daily_rate: float = 0.0

    @field_validator("daily_rate", mode="before")
    @classmethod
    def _rate(cls, v):
        return max(0.0, float(v)) if v is not None else 0.0


def default_components() -> dict[str, PdpmComponent]:
    return {k: PdpmComponent(category="Unknown", daily_rate=r) for k, r in DEFAULT_COMPONENT_RATES.items()}


class PayerAnalysis(AgentModel):
    payer_type: str = "Unknown"
    risk_level: str = "medium"
    notes: Optional[str] = None


class ReimbursementResponse(AgentModel):
    pdpm_components: Optional[dict[str, PdpmComponent]] = None
    estimated_daily_rate: Optional[float] = None
    estimated_los_days: Optional[int] = None
    estimated_total_revenue: Optional[float] = None
    financial_score: Score = DEFAULT_FINANCIAL_SCORE
    financial_flags: list[dict] = Field(default_factory=list)
    payer_analysis: Optional[PayerAnalysis] = None

    @field_validator("estimated_los_days", mode="before")
    @classmethod
    def _los(cls, v):
        return None if v is None else max(1, round(float(v)))


class ReimbursementOutput(AgentFields):
    pdpm_components: dict[str, PdpmComponent] = Field(default_factory=default_components)
    estimated_daily_rate: float = DEFAULT_DAILY_RATE
    estimated_los_days: int = DEFAULT_LOS_DAYS
    estimated_total_revenue: float = DEFAULT_DAILY_RATE * DEFAULT_LOS_DAYS
    financial_score: int = DEFAULT_FINANCIAL_SCORE
    payer_analysis: PayerAnalysis = Field(default_factory=PayerAnalysis)

    @classmethod
    def default(cls, error: str) -> "ReimbursementOutput":
        return cls(
            flags=[processing_error_flag(
                AGENT, "Financial Analysis Error", "Could not complete financial analysis",
            )],
            payer_analysis=PayerAnalysis(notes="Analysis failed - manual review required"),
            failed=True,
            error=error,
        )

    def pdpm_json(self) -> dict:
        return {name: comp.to_json() for name, comp in self.pdpm_components.items()}


def normalize_projection(resp: ReimbursementResponse) -> ReimbursementOutput:
    """Fill gaps: components default individually, daily rate = component sum, revenue = rate x LOS."""
    components = default_components()
    for name, comp in (resp.pdpm_components or {}).items():
        if name.lower() in PDPM_COMPONENTS:
            components[name.lower()] = comp

    daily_rate = resp.estimated_daily_rate
    if not daily_rate:
        daily_rate = sum(c.daily_rate for c in components.values())
    los = resp.estimated_los_days or DEFAULT_LOS_DAYS
    revenue = resp.estimated_total_revenue
    if not revenue:
        revenue = daily_rate * los

    return ReimbursementOutput(
        pdpm_components=components,
        estimated_daily_rate=round(daily_rate, 2),
        estimated_los_days=los,
        estimated_total_revenue=round(revenue, 2),
        financial_score=resp.financial_score,
        payer_analysis=resp.payer_analysis or PayerAnalysis(notes="Unable to determine payer information"),
        flags=parse_flags(resp.financial_flags, AGENT),
    )


async def run_reimbursement(
    record: PatientRecord,
    llm: LLMProvider,
    *,
    timeout: float | None = None,
    prompt_version: str = "v1",
) -> ReimbursementOutput:
    prompt = render_prompt("reimbursement", prompt_version, patient_data=patient_json(record))
    resp = ReimbursementResponse.model_validate(await generate_json(llm, prompt, timeout=timeout))
    output = normalize_projection(resp)
    logger.info(
        "[reimbursement] daily=%.2f los=%s revenue=%.2f score=%s",
        output.estimated_daily_rate, output.estimated_los_days,
        output.estimated_total_revenue, output.financial_score,
    )
    return output
