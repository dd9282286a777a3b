from __future__ import annotations

import sqlalchemy
import structlog
from fastapi import APIRouter
from sqlalchemy.exc import SQLAlchemyError

from formsync.cache import ping_redis
from formsync.config import settings
from formsync.database import engine
from formsync.schemas import HealthResponse

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


async def _database_ok() -> bool:
    try:
        async with engine.connect() as conn:
            await conn.execute(sqlalchemy.text("SELECT 1"))
    except (SQLAlchemyError, OSError) as exc:
        log.warning("health.database.unreachable", error=str(exc))
        return False
    return True


@router.get("/health", response_model=HealthResponse)
async def health():
    """No API key: load balancer health checks call this."""
    database_ok = await _database_ok()
    redis_ok = await ping_redis()
    return HealthResponse(
        status="ok" if database_ok and redis_ok else "degraded",
        database="ok" if database_ok else "error",
        redis="ok" if redis_ok else "error",
        version=settings.APP_VERSION,
    )
