"""Scoring agents run concurrently by app.services.scoring."""
from app.services.agents.admissions import AdmissionsOutput, run_admissions
from app.services.agents.clinical import ClinicalOutput, run_clinical
from app.services.agents.documentation import DocumentationOutput, run_documentation
from app.services.agents.reimbursement import ReimbursementOutput, run_reimbursement

__all__ = [
    "AdmissionsOutput",
    "ClinicalOutput",
    "DocumentationOutput",
    "ReimbursementOutput",
    "run_admissions",
    "run_clinical",
    "run_documentation",
    "run_reimbursement",
]
