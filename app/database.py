"""
Single async engine and session factory for the referral intake service.

The API (get_db) and every stage worker pool share the same connection pool.
One session = one connection from the pool; sessions are closed after each
request/job so connections return to the pool.
"""
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from app.config import DATABASE_URL

# Connection timeout (seconds) so a worker doesn't hang waiting for DB
_connect_args = {"timeout": 15} if "asyncpg" in DATABASE_URL else {}
# Four stage pools plus the API share this; keep headroom for their combined concurrency
engine = create_async_engine(
    DATABASE_URL,
    echo=False,
    connect_args=_connect_args,
    pool_size=5,
    max_overflow=10,
    pool_pre_ping=True,
    pool_recycle=300,
)
AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

Base = declarative_base()


async def get_db():
    async with AsyncSessionLocal() as session:
        yield session
