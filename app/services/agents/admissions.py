"""Admissions agent: facility criteria (rule engine) plus an AI holistic fit judgment.

The fit score is the rounded mean of the rule-engine score and the model's fit
score. When the model call fails the rule-engine score stands alone and an
informational flag is attached; rule deal-breakers and warnings are always
reported.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Iterable, Optional

from pydantic import Field

from app.schemas import PatientRecord
from app.services.agents.base import (
    AgentFields,
    AgentModel,
    FlagData,
    Score,
    StrList,
    parse_flags,
    processing_error_flag,
    round_half_up,
    slugify,
    patient_json,
)
from app.services.criteria import CriteriaEvaluation, CriteriaMatch, criterion_attr, evaluate
from app.services.llm_provider import LLMProvider, generate_json
from app.services.prompt_registry import render_prompt

logger = logging.getLogger(__name__)

AGENT = "admissions"
DEFAULT_FIT_SCORE = 50


class AdmissionsResponse(AgentModel):
    fit_score: Score = DEFAULT_FIT_SCORE
    flags: list[dict] = Field(default_factory=list)
    positive_factors: StrList = Field(default_factory=list)


class AdmissionsOutput(AgentFields):
    fit_score: int = DEFAULT_FIT_SCORE
    rule_score: Optional[float] = None
    ai_fit_score: Optional[int] = None
    positive_factors: list[str] = Field(default_factory=list)
    criteria_matches: list[dict] = Field(default_factory=list)

    @classmethod
    def default(cls, error: str) -> "AdmissionsOutput":
        return cls(
            fit_score=DEFAULT_FIT_SCORE,
            flags=[processing_error_flag(
                AGENT, "Admissions Evaluation Error",
                "Could not complete automated admissions evaluation",
            )],
            failed=True,
            error=error,
        )


def flag_from_match(match: CriteriaMatch, *, deal_breaker: bool) -> FlagData:
    return FlagData(
        category=match.category or "clinical",
        flag_type=f"criteria_{slugify(match.criterion_name)}",
        severity=match.flag_severity or ("critical" if deal_breaker else "medium"),
        is_deal_breaker=deal_breaker,
        title=match.criterion_name,
        description=match.reason,
        recommendation=(
            "Facility criteria exclude this patient unless the condition is resolved"
            if deal_breaker else "Review before accepting"
        ),
        source_agent=AGENT,
    )


def rule_flags(evaluation: CriteriaEvaluation) -> list[FlagData]:
    """Matched deal-breakers become deal-breaker flags; warnings become review flags."""
    flags = [flag_from_match(m, deal_breaker=True) for m in evaluation.deal_breakers]
    flags.extend(flag_from_match(m, deal_breaker=False) for m in evaluation.warnings)
    return flags


def _criteria_summary(criteria: Iterable[Any]) -> list[dict]:
    return [
        {
            "name": criterion_attr(c, "name"),
            "category": criterion_attr(c, "category"),
            "isDealBreaker": bool(criterion_attr(c, "is_deal_breaker", False)),
            "rule": criterion_attr(c, "rule_definition"),
        }
        for c in criteria
    ]


async def run_admissions(
    record: PatientRecord,
    criteria: list[Any],
    facility_settings: Optional[dict],
    llm: LLMProvider,
    *,
    timeout: float | None = None,
    prompt_version: str = "v1",
) -> AdmissionsOutput:
    evaluation = evaluate(record, criteria)
    flags = rule_flags(evaluation)
    positive = [m.reason for m in evaluation.matches if m.matched and m.score_impact > 0 and m.reason]

    output = AdmissionsOutput(
        rule_score=evaluation.total_score,
        criteria_matches=[m.to_dict() for m in evaluation.matches],
    )
    try:
        prompt = render_prompt(
            "admissions",
            prompt_version,
            patient_data=patient_json(record),
            facility_criteria=json.dumps(_criteria_summary(criteria), indent=2, default=str),
            facility_capabilities=json.dumps(facility_settings or {}, indent=2, default=str),
            rule_results=json.dumps({
                "score": evaluation.total_score,
                "dealBreakers": [m.to_dict() for m in evaluation.deal_breakers],
                "warnings": [m.to_dict() for m in evaluation.warnings],
            }, indent=2),
        )
        resp = AdmissionsResponse.model_validate(await generate_json(llm, prompt, timeout=timeout))
    except Exception as e:
        logger.warning("[admissions] AI evaluation failed, using rule score only: %s", e)
        output.fit_score = round_half_up(evaluation.total_score)
        output.flags = flags + [processing_error_flag(
            AGENT, "Admissions AI Review Unavailable",
            "Fit score is based on facility criteria only",
        )]
        output.positive_factors = positive
        output.error = str(e)[:500]
        return output

    output.ai_fit_score = resp.fit_score
    output.fit_score = round_half_up((evaluation.total_score + resp.fit_score) / 2)
    output.flags = flags + parse_flags(resp.flags, AGENT)
    output.positive_factors = positive + [p for p in resp.positive_factors if p not in positive]
    logger.info(
        "[admissions] fit=%s (rules %s, ai %s), %d flags",
        output.fit_score, evaluation.total_score, resp.fit_score, len(output.flags),
    )
    return output
