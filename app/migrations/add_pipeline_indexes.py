"""
Migration: indexes for queue claiming and flag/error lookups.

Safe to run multiple times (checks pg_indexes first).
"""
import logging

from sqlalchemy import text
from app.database import AsyncSessionLocal

logger = logging.getLogger(__name__)

INDEXES = [
    # claim(): stage + status filter, available_at gate, priority/created_at order
    ("ix_pipeline_jobs_claim", "pipeline_jobs(stage, status, available_at, priority DESC, created_at)"),
    # enqueue() dedupe lookup
    ("ix_pipeline_jobs_key", "pipeline_jobs(stage, referral_id, document_id, status)"),
    ("ix_documents_referral_id", "documents(referral_id)"),
    ("ix_risk_flags_referral_attempt", "risk_flags(referral_id, processing_attempt_id)"),
    ("ix_processing_errors_referral_id", "processing_errors(referral_id)"),
    ("ix_facility_criteria_facility_active", "facility_criteria(facility_id, is_active, priority)"),
]


async def migrate() -> None:
    async with AsyncSessionLocal() as db:
        created = 0
        for idx_name, idx_def in INDEXES:
            check = await db.execute(
                text("SELECT 1 FROM pg_indexes WHERE indexname = :name"),
                {"name": idx_name},
            )
            if check.scalar_one_or_none():
                continue
            await db.execute(text(f"CREATE INDEX {idx_name} ON {idx_def}"))
            created += 1
            logger.info("  Created index %s", idx_name)
        await db.commit()
        if not created:
            logger.info("  Pipeline indexes already exist")


if __name__ == "__main__":
    import asyncio

    logging.basicConfig(level=logging.INFO)
    asyncio.run(migrate())
