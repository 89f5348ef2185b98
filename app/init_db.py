import asyncio
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from sqlalchemy.ext.asyncio import create_async_engine
from app.database import Base
from app.config import DATABASE_URL
import app.models  # noqa: F401  register Referral, Document, PipelineJob etc. with Base.metadata


async def init_db():
    engine = create_async_engine(DATABASE_URL, echo=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await engine.dispose()
    print("Database tables created successfully!")

    print("Running migrations...")
    from app.migrations.add_pipeline_indexes import migrate as migrate_pipeline_indexes
    await migrate_pipeline_indexes()
    print("Migrations completed!")


if __name__ == "__main__":
    asyncio.run(init_db())
