"""Shared types for the scoring agents."""
from __future__ import annotations

import json
import math
import re
from typing import Annotated, Any, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from app.schemas import PatientRecord

SEVERITIES = ("low", "medium", "high", "critical")
FLAG_CATEGORIES = ("clinical", "financial", "operational", "documentation", "behavioral", "system")


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _bounded(low: int, high: int):
    def _coerce(value: Any) -> int:
        if isinstance(value, bool):
            raise ValueError("score must be numeric")
        return max(low, min(high, round_half_up(float(value))))
    return _coerce


Score = Annotated[int, BeforeValidator(_bounded(0, 100))]
ComplexityScore = Annotated[int, BeforeValidator(_bounded(1, 10))]


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if v is not None and str(v).strip()]


StrList = Annotated[list[str], BeforeValidator(_str_list)]


class AgentModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        coerce_numbers_to_str=True,
    )

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class FlagData(AgentModel):
    """A RiskFlag before persistence."""

    category: str = "clinical"
    flag_type: str = "other"
    severity: str = "medium"
    is_deal_breaker: bool = False
    title: str = "Untitled flag"
    description: Optional[str] = None
    recommendation: Optional[str] = None
    source_agent: Optional[str] = None

    @field_validator("severity", mode="before")
    @classmethod
    def _severity(cls, v):
        text = str(v or "").strip().lower()
        return text if text in SEVERITIES else "medium"

    @field_validator("category", mode="before")
    @classmethod
    def _category(cls, v):
        text = str(v or "").strip().lower()
        return text if text in FLAG_CATEGORIES else "clinical"

    @field_validator("is_deal_breaker", mode="before")
    @classmethod
    def _deal_breaker(cls, v):
        return v is True or (isinstance(v, str) and v.strip().lower() == "true")


def parse_flags(items: Any, source_agent: str) -> list[FlagData]:
    """Validate model-produced flags, dropping entries that are not objects."""
    if not isinstance(items, list):
        return []
    flags = []
    for item in items:
        if not isinstance(item, dict):
            continue
        flag = FlagData.model_validate(item)
        flag.source_agent = source_agent
        flags.append(flag)
    return flags


FlagList = list[FlagData]


def processing_error_flag(source_agent: str, title: str, description: str) -> FlagData:
    """Informational flag attached when an agent falls back to its default output."""
    return FlagData(
        category="system",
        flag_type="ai_processing_error",
        severity="low",
        is_deal_breaker=False,
        title=title,
        description=description,
        recommendation="Manual review required",
        source_agent=source_agent,
    )


def slugify(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", (text or "").lower()).strip("_") or "criterion"


def patient_json(record: PatientRecord) -> str:
    return json.dumps(record.to_json(), indent=2)


class AgentFields(AgentModel):
    """Common bits every agent output carries."""

    flags: FlagList = Field(default_factory=list)
    failed: bool = False
    error: Optional[str] = None
