from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, AsyncEngine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy import text, inspect
from dotenv import load_dotenv
from pathlib import Path
import logging

from config import get_settings

logger = logging.getLogger(__name__)

# Load environment variables
ROOT_DIR = Path(__file__).parent.parent
load_dotenv(ROOT_DIR / '.env')


def build_engine(database_url: str, sslmode: str = "") -> AsyncEngine:
    """Create the async engine; pool sizing and SSL only apply to PostgreSQL."""
    if not database_url.startswith("postgresql"):
        return create_async_engine(database_url, echo=False)

    connect_args = {"ssl": sslmode} if sslmode else {}
    return create_async_engine(
        database_url,
        echo=False,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
        connect_args=connect_args
    )


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )


_settings = get_settings()

engine = build_engine(_settings.get_database_url(), _settings.POSTGRES_SSLMODE)

AsyncSessionLocal = build_session_factory(engine)


class Base(DeclarativeBase):
    pass


async def get_db():
    """Dependency to get database session"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db():
    """Initialize database connection and verify the reconciliation tables exist"""
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
            logger.info("Database connection successful")

            existing = await conn.run_sync(
                lambda sync_conn: set(inspect(sync_conn).get_table_names())
            )
            missing = sorted(set(Base.metadata.tables) - existing)
            if missing:
                logger.warning(f"Missing tables (run migrations/create_reconciliation_tables.py): {missing}")

            return True
    except Exception as e:
        logger.error(f"Database initialization error: {e}")
        raise
