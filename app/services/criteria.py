"""Deterministic admission criteria engine.

Evaluates a facility's rule set against a :class:`~app.schemas.PatientRecord`.
Pure and synchronous: the same record and criteria always produce the same
evaluation, and nothing is persisted here.

Rule definitions are JSON objects (``FacilityCriteria.rule_definition``)::

    {"field": "careRequirements.requiresVentilator", "operator": "equals",
     "value": true, "message": "Facility cannot support ventilator patients"}

Field paths are dotted camelCase keys of the patient record. A path that
crosses a list projects over its items, e.g. ``diagnoses.icd10Code`` resolves
to the list of all ICD-10 codes.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from typing import Any, Iterable, Optional, get_args, get_origin

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from app.schemas import PatientRecord

logger = logging.getLogger(__name__)

BASE_SCORE = 100
MIN_SCORE = 0
MAX_SCORE = 100


class Operator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    BETWEEN = "between"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    CONTAINS_ANY = "contains_any"
    CONTAINS_ALL = "contains_all"
    IN_LIST = "in_list"
    NOT_IN_LIST = "not_in_list"
    IS_NULL = "is_null"
    IS_NOT_NULL = "is_not_null"


class _Undefined:
    """Marker for a key absent from the record (distinct from an explicit null)."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNDEFINED"

    def __bool__(self) -> bool:
        return False


UNDEFINED = _Undefined()


class RuleDefinition(BaseModel):
    """Parsed ``rule_definition``; accepts snake_case or camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    field: str
    operator: str
    value: Any = None
    values: Optional[list[Any]] = None
    min: Optional[float] = None
    max: Optional[float] = None
    score_impact: Optional[float] = 0
    message: Optional[str] = None
    flag_severity: Optional[str] = None


@dataclass
class CriteriaMatch:
    criterion_id: Optional[str]
    criterion_name: str
    category: Optional[str]
    matched: bool
    is_deal_breaker: bool
    score_impact: float
    reason: Optional[str]
    flag_severity: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "criterionId": self.criterion_id,
            "criterionName": self.criterion_name,
            "category": self.category,
            "matched": self.matched,
            "isDealBreaker": self.is_deal_breaker,
            "scoreImpact": self.score_impact,
            "reason": self.reason,
        }


@dataclass
class CriteriaEvaluation:
    matches: list[CriteriaMatch] = field(default_factory=list)
    total_score: float = BASE_SCORE
    deal_breakers: list[CriteriaMatch] = field(default_factory=list)
    warnings: list[CriteriaMatch] = field(default_factory=list)

    @property
    def has_deal_breakers(self) -> bool:
        return bool(self.deal_breakers)


# ---------------------------------------------------------------------------
# Field paths
# ---------------------------------------------------------------------------

def _model_paths(model: type[BaseModel], prefix: str = "") -> set[str]:
    paths: set[str] = set()
    for name, info in model.model_fields.items():
        key = info.alias or name
        path = f"{prefix}{key}"
        paths.add(path)
        annotation = info.annotation
        if get_origin(annotation) is list:
            args = get_args(annotation)
            annotation = args[0] if args else None
        if isinstance(annotation, type) and issubclass(annotation, BaseModel):
            paths |= _model_paths(annotation, prefix=f"{path}.")
    return paths


KNOWN_FIELD_PATHS: frozenset[str] = frozenset(_model_paths(PatientRecord))


@lru_cache(maxsize=512)
def is_known_field_path(path: str) -> bool:
    """True when *path* names a field of the patient record schema. Unknown paths are logged once."""
    known = path in KNOWN_FIELD_PATHS
    if not known:
        logger.warning("[criteria] Unknown field path %r (resolves to undefined)", path)
    return known


def resolve_field(data: Any, path: str) -> Any:
    """Walk a dotted path through nested dicts; lists project over their items.

    Returns ``UNDEFINED`` when a key is missing or an intermediate value is null.
    """
    current = data
    for key in path.split("."):
        if current is UNDEFINED:
            return UNDEFINED
        if current is None:
            return UNDEFINED
        if isinstance(current, list):
            projected = []
            for item in current:
                if isinstance(item, dict) and key in item:
                    projected.append(item[key])
            current = projected
            continue
        if not isinstance(current, dict) or key not in current:
            return UNDEFINED
        current = current[key]
    return current


# ---------------------------------------------------------------------------
# Operators
# ---------------------------------------------------------------------------

def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def strict_equal(a: Any, b: Any) -> bool:
    """Equality that never treats booleans as numbers."""
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a == b
    if _is_number(a) and _is_number(b):
        return a == b
    if type(a) is not type(b):
        return False
    return a == b


def _list_has(items: Iterable[Any], value: Any) -> bool:
    return any(strict_equal(item, value) for item in items)


def _contains(actual: Any, value: Any) -> Optional[bool]:
    """None when *actual* is neither a string nor a list."""
    if isinstance(actual, str):
        return str(value).lower() in actual.lower()
    if isinstance(actual, list):
        return _list_has(actual, value)
    return None


def apply_operator(operator: Operator, actual: Any, rule: RuleDefinition) -> bool:
    if operator is Operator.IS_NULL:
        return actual is UNDEFINED or actual is None
    if operator is Operator.IS_NOT_NULL:
        return actual is not UNDEFINED and actual is not None
    if actual is UNDEFINED:
        return False

    if operator is Operator.EQUALS:
        return strict_equal(actual, rule.value)
    if operator is Operator.NOT_EQUALS:
        return not strict_equal(actual, rule.value)
    if operator is Operator.GREATER_THAN:
        return _is_number(actual) and _is_number(rule.value) and actual > rule.value
    if operator is Operator.LESS_THAN:
        return _is_number(actual) and _is_number(rule.value) and actual < rule.value
    if operator is Operator.BETWEEN:
        low = rule.min if rule.min is not None else -math.inf
        high = rule.max if rule.max is not None else math.inf
        return _is_number(actual) and low <= actual <= high
    if operator is Operator.CONTAINS:
        return bool(_contains(actual, rule.value))
    if operator is Operator.NOT_CONTAINS:
        found = _contains(actual, rule.value)
        return found is not None and not found
    if operator is Operator.CONTAINS_ANY:
        if rule.values is None:
            return False
        if isinstance(actual, list):
            return any(_list_has(actual, v) for v in rule.values)
        if isinstance(actual, str):
            lowered = actual.lower()
            return any(str(v).lower() in lowered for v in rule.values)
        return False
    if operator is Operator.CONTAINS_ALL:
        if rule.values is None or not isinstance(actual, list):
            return False
        return all(_list_has(actual, v) for v in rule.values)
    if operator is Operator.IN_LIST:
        return rule.values is not None and _list_has(rule.values, actual)
    if operator is Operator.NOT_IN_LIST:
        return rule.values is not None and not _list_has(rule.values, actual)
    return False


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------

def criterion_attr(criterion: Any, name: str, default: Any = None) -> Any:
    if isinstance(criterion, dict):
        return criterion.get(name, default)
    return getattr(criterion, name, default)


def _record_json(record: Any) -> dict:
    if isinstance(record, PatientRecord):
        return record.to_json()
    if isinstance(record, dict):
        return record
    raise TypeError(f"Unsupported patient record type: {type(record).__name__}")


def evaluate_criterion(data: dict, criterion: Any) -> CriteriaMatch:
    """Evaluate one criterion against the camelCase record dict."""
    name = criterion_attr(criterion, "name") or "Unnamed criterion"
    crit_id = criterion_attr(criterion, "id")
    crit_id = str(crit_id) if crit_id is not None else None
    category = criterion_attr(criterion, "category")

    def _no_match(rule: Optional[RuleDefinition] = None) -> CriteriaMatch:
        return CriteriaMatch(
            criterion_id=crit_id,
            criterion_name=name,
            category=category,
            matched=False,
            is_deal_breaker=False,
            score_impact=0,
            reason=None,
            flag_severity=rule.flag_severity if rule else None,
        )

    try:
        rule = RuleDefinition.model_validate(criterion_attr(criterion, "rule_definition") or {})
    except ValidationError as e:
        logger.warning("[criteria] Invalid rule definition for %r: %s", name, e)
        return _no_match()

    try:
        operator = Operator(rule.operator)
    except ValueError:
        logger.warning("[criteria] Unknown operator %r in criterion %r", rule.operator, name)
        return _no_match(rule)

    is_known_field_path(rule.field)
    matched = apply_operator(operator, resolve_field(data, rule.field), rule)
    if not matched:
        return _no_match(rule)

    return CriteriaMatch(
        criterion_id=crit_id,
        criterion_name=name,
        category=category,
        matched=True,
        is_deal_breaker=bool(criterion_attr(criterion, "is_deal_breaker", False)),
        score_impact=rule.score_impact or 0,
        reason=rule.message or f'Criterion "{name}" matched',
        flag_severity=rule.flag_severity,
    )


def evaluate(record: PatientRecord | dict, criteria: Iterable[Any]) -> CriteriaEvaluation:
    """Evaluate all *criteria* (ascending priority, stable) against *record*.

    Score starts at 100, adds every matched impact and is clamped to [0, 100].
    Deal-breakers are matched criteria flagged ``is_deal_breaker``; warnings are
    the other matches with a negative impact.
    """
    data = _record_json(record)
    ordered = sorted(criteria, key=lambda c: criterion_attr(c, "priority", 0) or 0)

    evaluation = CriteriaEvaluation()
    score: float = BASE_SCORE
    for criterion in ordered:
        match = evaluate_criterion(data, criterion)
        evaluation.matches.append(match)
        if not match.matched:
            continue
        score += match.score_impact
        if match.is_deal_breaker:
            evaluation.deal_breakers.append(match)
        elif match.score_impact < 0:
            evaluation.warnings.append(match)

    evaluation.total_score = max(MIN_SCORE, min(MAX_SCORE, score))
    return evaluation
