"""Scoring orchestrator: run the four agents concurrently and combine them into one recommendation.

Aggregation is a pure function of the agent outputs:

* overall = round_half_up(0.4 * clinical fit + 0.3 * financial + 0.3 * operational)
* any deal-breaker flag -> ``decline``; otherwise thresholds 85 / 70 / 55 / 40
* confidence = min(0.95, overall / 100 * 0.9 + 0.1)

An agent that raises is replaced by its conservative default (mid-range score,
one informational flag) so a complete outcome is always produced.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, TypeVar

from app.schemas import PatientRecord
from app.services.agents import (
    AdmissionsOutput,
    ClinicalOutput,
    DocumentationOutput,
    ReimbursementOutput,
    run_admissions,
    run_clinical,
    run_documentation,
    run_reimbursement,
)
from app.services.agents.base import FlagData, round_half_up
from app.services.llm_provider import LLMProvider

logger = logging.getLogger(__name__)

CLINICAL_WEIGHT = 0.4
FINANCIAL_WEIGHT = 0.3
OPERATIONAL_WEIGHT = 0.3

# (minimum overall score, recommendation), checked in order
RECOMMENDATION_THRESHOLDS = (
    (85, "strong_accept"),
    (70, "accept"),
    (55, "accept_with_conditions"),
    (40, "review_required"),
)
DECLINE = "decline"
MAX_CONFIDENCE = 0.95

T = TypeVar("T")


@dataclass
class ScoringOutcome:
    recommendation: str
    confidence_score: float
    overall_score: int
    clinical_fit_score: int
    financial_score: int
    operational_score: int
    clinical_complexity: int
    documentation_quality_score: int
    pdpm_components: dict
    estimated_daily_rate: float
    estimated_los_days: int
    estimated_total_revenue: float
    payer_analysis: dict
    summary: str
    detailed_rationale: str
    positive_factors: list[str]
    missing_info: list[str]
    review_questions: list[str]
    flags: list[FlagData]
    agent_outputs: dict[str, Any] = field(default_factory=dict)
    failed_agents: list[str] = field(default_factory=list)
    processing_time_ms: Optional[int] = None

    @property
    def has_deal_breakers(self) -> bool:
        return any(f.is_deal_breaker for f in self.flags)


def overall_score(clinical_fit: float, financial: float, operational: float) -> int:
    return round_half_up(
        CLINICAL_WEIGHT * clinical_fit + FINANCIAL_WEIGHT * financial + OPERATIONAL_WEIGHT * operational
    )


def derive_recommendation(overall: int, has_deal_breakers: bool) -> str:
    if has_deal_breakers:
        return DECLINE
    for minimum, label in RECOMMENDATION_THRESHOLDS:
        if overall >= minimum:
            return label
    return DECLINE


def confidence_score(overall: int) -> float:
    return round(min(MAX_CONFIDENCE, overall / 100 * 0.9 + 0.1), 4)


def build_rationale(
    recommendation: str,
    overall: int,
    admissions: AdmissionsOutput,
    reimbursement: ReimbursementOutput,
    clinical: ClinicalOutput,
    documentation: DocumentationOutput,
) -> str:
    """Markdown rationale stored as ``detailed_rationale``."""
    label = recommendation.replace("_", " ").upper()
    lines = [
        f"## Recommendation: {label}",
        "",
        f"Overall score: {overall}/100",
        "",
        "### Clinical Fit",
        f"Fit score: {admissions.fit_score}/100",
    ]
    deal_breakers = [f for f in admissions.flags if f.is_deal_breaker]
    if deal_breakers:
        lines.append("Deal-breakers:")
        lines.extend(
            f"- {f.title}" + (f": {f.description}" if f.description else "") for f in deal_breakers
        )
    if admissions.positive_factors:
        lines.append("Positive factors:")
        lines.extend(f"- {p}" for p in admissions.positive_factors)

    lines += [
        "",
        "### Financial Analysis",
        f"Financial score: {reimbursement.financial_score}/100",
        f"Estimated daily rate: ${reimbursement.estimated_daily_rate:,.2f}",
        f"Estimated length of stay: {reimbursement.estimated_los_days} days",
        f"Estimated total revenue: ${reimbursement.estimated_total_revenue:,.2f}",
        f"Payer: {reimbursement.payer_analysis.payer_type} (risk: {reimbursement.payer_analysis.risk_level})",
        "",
        "### Clinical Complexity",
        f"Complexity: {clinical.clinical_complexity_score}/10",
        f"Operational score: {clinical.operational_score}/100",
        f"Estimated nursing hours/day: {clinical.estimated_nursing_hours_per_day:g}",
    ]
    if clinical.special_care_needs:
        lines.append("Special care needs:")
        lines.extend(f"- {n}" for n in clinical.special_care_needs)

    if documentation.missing_documents:
        lines += ["", "### Missing Documents"]
        lines.extend(f"- {d}" for d in documentation.missing_documents)
    return "\n".join(lines)


def aggregate(
    admissions: AdmissionsOutput,
    reimbursement: ReimbursementOutput,
    clinical: ClinicalOutput,
    documentation: DocumentationOutput,
) -> ScoringOutcome:
    """Combine agent outputs. Pure: identical inputs give identical outcomes."""
    flags = admissions.flags + reimbursement.flags + clinical.flags + documentation.flags
    has_deal_breakers = any(f.is_deal_breaker for f in flags)
    overall = overall_score(admissions.fit_score, reimbursement.financial_score, clinical.operational_score)
    recommendation = derive_recommendation(overall, has_deal_breakers)

    failed = [
        name for name, out in (
            ("admissions", admissions), ("reimbursement", reimbursement),
            ("clinical", clinical), ("documentation", documentation),
        ) if out.failed
    ]
    review_questions = list(documentation.review_questions)
    if failed:
        review_questions.append(f"Automated analysis incomplete ({', '.join(failed)}); verify manually.")

    return ScoringOutcome(
        recommendation=recommendation,
        confidence_score=confidence_score(overall),
        overall_score=overall,
        clinical_fit_score=admissions.fit_score,
        financial_score=reimbursement.financial_score,
        operational_score=clinical.operational_score,
        clinical_complexity=clinical.clinical_complexity_score,
        documentation_quality_score=documentation.quality_score,
        pdpm_components=reimbursement.pdpm_json(),
        estimated_daily_rate=reimbursement.estimated_daily_rate,
        estimated_los_days=reimbursement.estimated_los_days,
        estimated_total_revenue=reimbursement.estimated_total_revenue,
        payer_analysis=reimbursement.payer_analysis.to_json(),
        summary=documentation.patient_summary,
        detailed_rationale=build_rationale(
            recommendation, overall, admissions, reimbursement, clinical, documentation,
        ),
        positive_factors=list(admissions.positive_factors),
        missing_info=list(documentation.missing_documents),
        review_questions=review_questions,
        flags=flags,
        agent_outputs={
            "admissions": admissions.to_json(),
            "reimbursement": reimbursement.to_json(),
            "clinical": clinical.to_json(),
            "documentation": documentation.to_json(),
        },
        failed_agents=failed,
    )


async def _guarded(name: str, coro: Awaitable[T], default: Callable[[str], T]) -> T:
    """Await an agent; on any failure log and return its default output."""
    try:
        return await coro
    except Exception as e:
        logger.error("[scoring] %s agent failed, using default: %s", name, e, exc_info=True)
        return default(str(e)[:500])


async def score_referral(
    record: PatientRecord,
    *,
    criteria: list[Any],
    facility_settings: Optional[dict],
    document_types: list[Optional[str]],
    llm: LLMProvider,
    timeout: float | None = None,
    prompt_version: str = "v1",
) -> ScoringOutcome:
    """Run all four agents concurrently and aggregate. Never raises for agent failures."""
    started = time.monotonic()
    opts = {"timeout": timeout, "prompt_version": prompt_version}
    admissions, reimbursement, clinical, documentation = await asyncio.gather(
        _guarded(
            "admissions",
            run_admissions(record, criteria, facility_settings, llm, **opts),
            AdmissionsOutput.default,
        ),
        _guarded("reimbursement", run_reimbursement(record, llm, **opts), ReimbursementOutput.default),
        _guarded("clinical", run_clinical(record, llm, **opts), ClinicalOutput.default),
        _guarded(
            "documentation",
            run_documentation(record, document_types, llm, **opts),
            DocumentationOutput.default,
        ),
    )
    outcome = aggregate(admissions, reimbursement, clinical, documentation)
    outcome.processing_time_ms = int((time.monotonic() - started) * 1000)
    logger.info(
        "[scoring] overall=%s recommendation=%s confidence=%.3f flags=%d (%dms)",
        outcome.overall_score, outcome.recommendation, outcome.confidence_score,
        len(outcome.flags), outcome.processing_time_ms,
    )
    return outcome
