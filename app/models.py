from sqlalchemy import Boolean, Column, String, DateTime, Integer, Text, ForeignKey, Float, BigInteger
from sqlalchemy.dialects.postgresql import UUID, JSONB
from datetime import datetime
import uuid
from app.database import Base


class Facility(Base):
    """Receiving facility. Only settings/capabilities are read by the pipeline."""
    __tablename__ = "facilities"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    settings = Column(JSONB, nullable=True)  # e.g. {"capabilities": {"ventilator": false, "dialysis": true}}
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Referral(Base):
    __tablename__ = "referrals"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    facility_id = Column(UUID(as_uuid=True), ForeignKey("facilities.id"), nullable=False)
    status = Column(String(30), default="new", nullable=False)  # new, processing, ready_for_decision, pending_review, accepted, declined

    # Pipeline state: pending, queued, processing, extracted, completed, failed, extraction_failed
    ai_processing_status = Column(String(30), default="pending", nullable=False)
    ai_processing_error = Column(Text, nullable=True)
    ai_processing_started_at = Column(DateTime, nullable=True)
    ai_processing_completed_at = Column(DateTime, nullable=True)

    # Denormalised from extraction / recommendation for list views
    patient_first_name = Column(String(100), nullable=True)
    patient_last_name = Column(String(100), nullable=True)
    patient_dob = Column(String(20), nullable=True)
    patient_gender = Column(String(20), nullable=True)
    ai_recommendation = Column(String(30), nullable=True)
    ai_confidence_score = Column(Float, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class Document(Base):
    __tablename__ = "documents"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    referral_id = Column(UUID(as_uuid=True), ForeignKey("referrals.id"), nullable=False)
    original_filename = Column(String(255), nullable=False)
    mime_type = Column(String(100), nullable=True)
    file_size = Column(BigInteger, nullable=True)
    storage_bucket = Column(String(255), nullable=False)
    storage_path = Column(String(500), nullable=False)

    ocr_status = Column(String(20), default="pending", nullable=False)  # pending, processing, completed, failed
    ocr_text = Column(Text, nullable=True)
    ocr_confidence = Column(Float, nullable=True)
    ocr_completed_at = Column(DateTime, nullable=True)

    document_type = Column(String(30), nullable=True)  # face_sheet, h_and_p, ... other
    document_type_confidence = Column(Float, nullable=True)
    classification_reasoning = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class ExtractedPatientData(Base):
    """Canonical patient record; one row per referral, replaced whole on each extraction."""
    __tablename__ = "extracted_patient_data"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    referral_id = Column(UUID(as_uuid=True), ForeignKey("referrals.id"), unique=True, nullable=False)

    # Each section is the camelCase JSON dump of the matching app.schemas model
    demographics = Column(JSONB, nullable=False, default=dict)
    clinical_summary = Column(JSONB, nullable=False, default=dict)
    diagnoses = Column(JSONB, nullable=False, default=list)
    medications = Column(JSONB, nullable=False, default=list)
    functional_status = Column(JSONB, nullable=False, default=dict)
    care_requirements = Column(JSONB, nullable=False, default=dict)
    behavioral_status = Column(JSONB, nullable=False, default=dict)
    insurance_info = Column(JSONB, nullable=False, default=dict)

    raw_extraction = Column(JSONB, nullable=True)  # parsed model output before validation
    extraction_model = Column(String(100), nullable=True)
    extraction_version = Column(String(50), nullable=True)
    source_document_ids = Column(JSONB, nullable=True)  # ["uuid", ...]

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class FacilityCriteria(Base):
    """Admission rule evaluated by app.services.criteria. Read-only to the pipeline."""
    __tablename__ = "facility_criteria"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    facility_id = Column(UUID(as_uuid=True), ForeignKey("facilities.id"), nullable=False)
    name = Column(String(255), nullable=False)
    category = Column(String(50), nullable=True)  # clinical, financial, operational, ...
    rule_type = Column(String(30), default="scoring", nullable=False)  # scoring, exclusion, warning
    # {"field", "operator", "value", "values", "min", "max", "score_impact", "message", "flag_severity"}
    rule_definition = Column(JSONB, nullable=False)
    is_deal_breaker = Column(Boolean, default=False, nullable=False)
    priority = Column(Integer, default=100, nullable=False)  # ascending evaluation order
    weight = Column(Float, default=1.0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class RiskFlag(Base):
    """Append-only finding from a scoring run. Tagged with the scoring attempt that produced it."""
    __tablename__ = "risk_flags"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    referral_id = Column(UUID(as_uuid=True), ForeignKey("referrals.id"), nullable=False)
    processing_attempt_id = Column(UUID(as_uuid=True), nullable=True)  # pipeline_jobs.id of the scoring job

    category = Column(String(30), nullable=False)  # clinical, financial, operational, documentation, behavioral, system
    flag_type = Column(String(100), nullable=False)
    severity = Column(String(20), nullable=False)  # low, medium, high, critical
    is_deal_breaker = Column(Boolean, default=False, nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    recommendation = Column(Text, nullable=True)
    source_agent = Column(String(30), nullable=True)  # admissions, reimbursement, clinical, documentation

    is_resolved = Column(Boolean, default=False, nullable=False)
    resolved_by = Column(String(255), nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    resolution_notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class AIRecommendation(Base):
    """Authoritative scoring outcome; one row per referral (upserted)."""
    __tablename__ = "ai_recommendations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    referral_id = Column(UUID(as_uuid=True), ForeignKey("referrals.id"), unique=True, nullable=False)
    processing_attempt_id = Column(UUID(as_uuid=True), nullable=True)

    recommendation = Column(String(30), nullable=False)  # strong_accept, accept, accept_with_conditions, review_required, decline
    confidence_score = Column(Float, nullable=False)
    overall_score = Column(Integer, nullable=False)
    clinical_fit_score = Column(Integer, nullable=False)
    financial_score = Column(Integer, nullable=False)
    operational_score = Column(Integer, nullable=False)
    clinical_complexity = Column(Integer, nullable=True)  # 1-10
    documentation_quality_score = Column(Integer, nullable=True)

    # {"nursing": .., "pt": .., "ot": .., "slp": .., "nta": .., "ntaCategory": ..}
    pdpm_components = Column(JSONB, nullable=True)
    estimated_daily_rate = Column(Float, nullable=True)
    estimated_los_days = Column(Integer, nullable=True)
    estimated_total_revenue = Column(Float, nullable=True)
    payer_analysis = Column(JSONB, nullable=True)

    summary = Column(Text, nullable=True)
    detailed_rationale = Column(Text, nullable=True)  # markdown
    positive_factors = Column(JSONB, nullable=True)
    missing_info = Column(JSONB, nullable=True)
    review_questions = Column(JSONB, nullable=True)
    agent_outputs = Column(JSONB, nullable=True)  # per-agent payloads for audit

    model_version = Column(String(100), nullable=True)
    processing_time_ms = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class PipelineJob(Base):
    """Durable stage queue. Claimed by stage worker pools with FOR UPDATE SKIP LOCKED."""
    __tablename__ = "pipeline_jobs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    stage = Column(String(20), nullable=False)  # ocr, classification, extraction, scoring
    referral_id = Column(UUID(as_uuid=True), ForeignKey("referrals.id"), nullable=False)
    document_id = Column(UUID(as_uuid=True), ForeignKey("documents.id"), nullable=True)
    status = Column(String(20), default="pending", nullable=False)  # pending, processing, completed, dead, skipped
    priority = Column(Integer, default=0, nullable=False)  # higher runs first
    attempts = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, default=3, nullable=False)
    available_at = Column(DateTime, default=datetime.utcnow, nullable=False)  # backoff gate
    payload = Column(JSONB, nullable=True)
    worker_id = Column(String(100), nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class ProcessingError(Base):
    """Errors encountered by stage workers - tracked for review."""
    __tablename__ = "processing_errors"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    referral_id = Column(UUID(as_uuid=True), ForeignKey("referrals.id"), nullable=True)
    document_id = Column(UUID(as_uuid=True), ForeignKey("documents.id"), nullable=True)
    job_id = Column(UUID(as_uuid=True), nullable=True)

    error_type = Column(String(50), nullable=False)  # provider_error, timeout, json_parse_error, not_found, invariant_violation, database_error, other
    severity = Column(String(20), nullable=False)  # critical, warning, info
    error_message = Column(Text, nullable=False)
    error_details = Column(JSONB, nullable=True)
    stage = Column(String(50), nullable=False)  # ocr, classification, extraction, scoring, other

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class AIProcessingLog(Base):
    """One row per scoring run: agent outputs and timing for audit."""
    __tablename__ = "ai_processing_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    referral_id = Column(UUID(as_uuid=True), ForeignKey("referrals.id"), nullable=False)
    agent_name = Column(String(50), nullable=False)  # orchestrator
    action = Column(String(50), nullable=False)  # score_referral
    input_summary = Column(Text, nullable=True)
    output_summary = Column(Text, nullable=True)
    full_output = Column(JSONB, nullable=True)
    model_used = Column(String(100), nullable=True)
    processing_time_ms = Column(Integer, nullable=True)
    success = Column(Boolean, default=True, nullable=False)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
