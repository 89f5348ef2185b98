"""Canonical patient record produced by extraction and consumed by the rule engine and scoring agents.

Stored per section as camelCase JSONB on ``ExtractedPatientData``. Booleans
default to False, optional strings/enums to None; enum-like fields accept any
casing and fall back to None (or ``Other``) when the value is not a known choice.
"""
from __future__ import annotations

from typing import Annotated, Any, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

GENDERS = ("male", "female", "other")
CODE_STATUSES = ("Full Code", "DNR", "DNR/DNI", "Comfort Care")
ISOLATION_PRECAUTIONS = ("None", "Contact", "Droplet", "Airborne")
DIAGNOSIS_TYPES = ("primary", "secondary")
DIAGNOSIS_ONSETS = ("acute", "chronic")
MEDICATION_ROUTES = ("PO", "IV", "IM", "SQ", "Topical", "Inhaled", "Other")
MOBILITY_LEVELS = ("Independent", "Supervision", "1 Person Assist", "2 Person Assist", "Non-ambulatory")
FALL_RISKS = ("Low", "Moderate", "High")
WOUND_TYPES = ("Pressure Ulcer", "Surgical", "Diabetic", "Other")
WOUND_STAGES = ("1", "2", "3", "4", "Unstageable")
ELOPEMENT_RISKS = ("None", "Low", "Moderate", "High")
PAYERS = ("Medicare A", "Medicare Advantage", "Medicaid", "Managed Care", "Commercial", "Self Pay")

_TRUE_STRINGS = {"true", "yes", "y", "1"}


def _to_flag(value: Any) -> bool:
    """Model output -> bool. None, empty and unrecognised strings are False."""
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return False


def _to_str_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if v is not None and str(v).strip()]
    return []


def _to_opt_number(value: Any) -> Any:
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped or stripped.lower() in ("null", "none", "unknown", "n/a"):
            return None
        try:
            return float(stripped) if "." in stripped else int(stripped)
        except ValueError:
            return None
    if isinstance(value, bool):
        return None
    return value


def _choice(value: Any, choices: tuple[str, ...], fallback: Optional[str] = None) -> Optional[str]:
    """Case-insensitive match of *value* against *choices*; unknown -> fallback."""
    if value is None:
        return None
    text = str(value).strip()
    if not text or text.lower() in ("null", "none", "unknown", "n/a"):
        # "None" is itself a valid choice for isolation / elopement risk
        if text.lower() == "none" and "None" in choices:
            return "None"
        return None
    for choice in choices:
        if choice.lower() == text.lower():
            return choice
    return fallback


Flag = Annotated[bool, BeforeValidator(_to_flag)]
StrList = Annotated[list[str], BeforeValidator(_to_str_list)]
OptInt = Annotated[Optional[int], BeforeValidator(_to_opt_number)]
OptFloat = Annotated[Optional[float], BeforeValidator(_to_opt_number)]


class RecordModel(BaseModel):
    """Base: camelCase aliases on the wire, snake_case in Python."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        coerce_numbers_to_str=True,
    )

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class Demographics(RecordModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    dob: Optional[str] = None
    age: OptInt = None
    gender: Optional[str] = None
    primary_language: Optional[str] = None
    interpreter_needed: Flag = False

    @field_validator("gender", mode="before")
    @classmethod
    def _gender(cls, v):
        if isinstance(v, str) and v.strip().upper() in ("M", "F"):
            return "male" if v.strip().upper() == "M" else "female"
        return _choice(v, GENDERS, fallback="other")


class ClinicalSummary(RecordModel):
    chief_complaint: Optional[str] = None
    hospital_course_summary: Optional[str] = None
    code_status: Optional[str] = None
    isolation_precautions: Optional[str] = None

    @field_validator("code_status", mode="before")
    @classmethod
    def _code_status(cls, v):
        return _choice(v, CODE_STATUSES)

    @field_validator("isolation_precautions", mode="before")
    @classmethod
    def _isolation(cls, v):
        return _choice(v, ISOLATION_PRECAUTIONS)


class Diagnosis(RecordModel):
    icd10_code: Optional[str] = None
    description: Optional[str] = None
    type: Optional[str] = None
    onset: Optional[str] = None

    @field_validator("type", mode="before")
    @classmethod
    def _type(cls, v):
        return _choice(v, DIAGNOSIS_TYPES)

    @field_validator("onset", mode="before")
    @classmethod
    def _onset(cls, v):
        return _choice(v, DIAGNOSIS_ONSETS)


class Medication(RecordModel):
    name: str
    dose: Optional[str] = None
    route: Optional[str] = None
    frequency: Optional[str] = None
    is_high_cost: Flag = False
    requires_monitoring: Flag = False

    @field_validator("route", mode="before")
    @classmethod
    def _route(cls, v):
        return _choice(v, MEDICATION_ROUTES, fallback="Other")


class FunctionalStatus(RecordModel):
    mobility: Optional[str] = None
    bims_score: OptInt = None
    fall_risk: Optional[str] = None
    weight_lbs: OptFloat = None

    @field_validator("mobility", mode="before")
    @classmethod
    def _mobility(cls, v):
        return _choice(v, MOBILITY_LEVELS)

    @field_validator("fall_risk", mode="before")
    @classmethod
    def _fall_risk(cls, v):
        # "Medium" is a common model synonym for Moderate
        if isinstance(v, str) and v.strip().lower() == "medium":
            return "Moderate"
        return _choice(v, FALL_RISKS)


class Wound(RecordModel):
    location: Optional[str] = None
    type: Optional[str] = None
    stage: Optional[str] = None

    @field_validator("type", mode="before")
    @classmethod
    def _type(cls, v):
        return _choice(v, WOUND_TYPES, fallback="Other")

    @field_validator("stage", mode="before")
    @classmethod
    def _stage(cls, v):
        if isinstance(v, int) and not isinstance(v, bool):
            v = str(v)
        return _choice(v, WOUND_STAGES)


class TherapyNeeds(RecordModel):
    physical_therapy: Flag = False
    occupational_therapy: Flag = False
    speech_therapy: Flag = False


class CareRequirements(RecordModel):
    requires_ventilator: Flag = False
    requires_tracheostomy: Flag = False
    requires_wound_care: Flag = False
    wounds: list[Wound] = Field(default_factory=list)
    requires_iv_therapy: Flag = False
    iv_medications: StrList = Field(default_factory=list)
    requires_dialysis: Flag = False
    requires_oxygen: Flag = False
    oxygen_liters_per_minute: OptFloat = None
    therapy_needs: TherapyNeeds = Field(default_factory=TherapyNeeds)

    @field_validator("wounds", mode="before")
    @classmethod
    def _wounds(cls, v):
        return [w for w in v if isinstance(w, dict)] if isinstance(v, list) else []

    @field_validator("therapy_needs", mode="before")
    @classmethod
    def _therapy(cls, v):
        return v if isinstance(v, (dict, TherapyNeeds)) else {}


class BehavioralStatus(RecordModel):
    has_behavioral_issues: Flag = False
    behaviors: StrList = Field(default_factory=list)
    elopement_risk: Optional[str] = None
    substance_use_active: Flag = False

    @field_validator("elopement_risk", mode="before")
    @classmethod
    def _elopement(cls, v):
        return _choice(v, ELOPEMENT_RISKS)


class InsuranceInfo(RecordModel):
    primary_payer: Optional[str] = None
    payer_name: Optional[str] = None
    member_id: Optional[str] = None
    snf_days_remaining: OptInt = None
    medicaid_pending: Flag = False

    @field_validator("primary_payer", mode="before")
    @classmethod
    def _payer(cls, v):
        return _choice(v, PAYERS)


def _section(value: Any) -> Any:
    return value if isinstance(value, (dict, BaseModel)) else {}


def _items(value: Any) -> list:
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, (dict, BaseModel))]


class PatientRecord(RecordModel):
    """Merged structured view of one referral's documents."""

    demographics: Demographics = Field(default_factory=Demographics)
    clinical_summary: ClinicalSummary = Field(default_factory=ClinicalSummary)
    diagnoses: list[Diagnosis] = Field(default_factory=list)
    medications: list[Medication] = Field(default_factory=list)
    functional_status: FunctionalStatus = Field(default_factory=FunctionalStatus)
    care_requirements: CareRequirements = Field(default_factory=CareRequirements)
    behavioral_status: BehavioralStatus = Field(default_factory=BehavioralStatus)
    insurance_info: InsuranceInfo = Field(default_factory=InsuranceInfo)

    @field_validator(
        "demographics", "clinical_summary", "functional_status",
        "care_requirements", "behavioral_status", "insurance_info",
        mode="before",
    )
    @classmethod
    def _sections(cls, v):
        return _section(v)

    @field_validator("diagnoses", mode="before")
    @classmethod
    def _diagnoses(cls, v):
        return _items(v)

    @field_validator("medications", mode="before")
    @classmethod
    def _medications(cls, v):
        # Nameless medication entries carry nothing the pipeline can use
        return [m for m in _items(v) if isinstance(m, BaseModel) or m.get("name")]

    @classmethod
    def empty(cls) -> "PatientRecord":
        """All nulls, all flags False, all lists empty."""
        return cls()

    @classmethod
    def from_row(cls, row) -> "PatientRecord":
        """Rebuild from an ``ExtractedPatientData`` ORM row."""
        return cls.model_validate({
            "demographics": row.demographics or {},
            "clinicalSummary": row.clinical_summary or {},
            "diagnoses": row.diagnoses or [],
            "medications": row.medications or [],
            "functionalStatus": row.functional_status or {},
            "careRequirements": row.care_requirements or {},
            "behavioralStatus": row.behavioral_status or {},
            "insuranceInfo": row.insurance_info or {},
        })
