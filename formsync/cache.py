"""Redis access. The only state kept here is the OAuth ``state`` nonce store."""
from __future__ import annotations

import hashlib
from typing import Any, Optional

import structlog
from redis.asyncio import ConnectionPool, Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import RedisError

from formsync.config import settings
from formsync.exceptions import CacheError

log = structlog.get_logger(__name__)

_pool: Optional[ConnectionPool] = None


async def init_redis_pool() -> None:
    global _pool
    _pool = ConnectionPool.from_url(
        settings.REDIS_URL,
        max_connections=settings.REDIS_POOL_SIZE,
        socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
        socket_connect_timeout=settings.REDIS_CONNECT_TIMEOUT,
        decode_responses=True,
        retry=Retry(ExponentialBackoff(cap=1.0), retries=2),
        retry_on_error=[RedisError],
    )
    log.info("redis.pool.initialized", url=f"{settings.REDIS_HOST}:{settings.REDIS_PORT}")


async def close_redis_pool() -> None:
    global _pool
    if _pool is None:
        return
    await _pool.aclose()
    _pool = None
    log.info("redis.pool.closed")


def get_redis() -> Redis:
    if _pool is None:
        raise CacheError("Redis pool not initialized")
    return Redis(connection_pool=_pool)


async def ping_redis() -> bool:
    try:
        return bool(await get_redis().ping())
    except (RedisError, CacheError, OSError):
        return False


def build_key(*parts: Any) -> str:
    """Namespaced key; the raw parts (which may hold secrets) are hashed."""
    raw = ":".join(str(p) for p in parts)
    return f"formsync:v1:{hashlib.sha256(raw.encode()).hexdigest()[:16]}"


# ── OAuth state nonces ────────────────────────────────────────────────────────
#
# The authorize step stores state -> user id; the callback consumes it exactly
# once. Unlike a read-through cache, losing Redis here must fail the flow.

async def remember_oauth_state(state: str, user_id: str) -> None:
    try:
        await get_redis().setex(
            build_key("oauth_state", state), settings.OAUTH_STATE_TTL_SECONDS, user_id
        )
    except RedisError as e:
        log.error("oauth.state.store_failed", error=str(e))
        raise CacheError("Could not start authorization, try again later") from e


async def consume_oauth_state(state: str) -> Optional[str]:
    """Return the user id bound to ``state`` and forget it, or None."""
    try:
        return await get_redis().getdel(build_key("oauth_state", state))
    except RedisError as e:
        log.error("oauth.state.consume_failed", error=str(e))
        raise CacheError("Could not complete authorization, try again later") from e
