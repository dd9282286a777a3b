from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    create_async_engine,
    async_sessionmaker,
)
from sqlalchemy.orm import DeclarativeBase
import structlog
from formsync.config import settings

log = structlog.get_logger(__name__)

engine = create_async_engine(
    settings.DATABASE_URL,
    pool_size=settings.DB_POOL_SIZE,
    max_overflow=settings.DB_MAX_OVERFLOW,
    pool_pre_ping=True,         # detect stale connections
    pool_recycle=3600,
    echo=False,
)

SessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    pass


# INSERT ... ON CONFLICT constructs for the dialects we run on.
_UPSERT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def upsert_insert(session: AsyncSession, model):
    """Dialect-specific ``insert()`` that supports ``on_conflict_do_update``."""
    dialect = session.bind.dialect.name
    try:
        return _UPSERT_INSERTS[dialect](model)
    except KeyError:
        raise NotImplementedError(f"Upsert is not supported on dialect {dialect!r}") from None


async def get_db():
    async with SessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    log.info("database.initialized")


async def close_db() -> None:
    await engine.dispose()
    log.info("database.closed")
