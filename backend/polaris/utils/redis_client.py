from __future__ import annotations

import logging
import uuid
from typing import Optional

from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import RedisError

from backend.polaris.config import Settings


logger = logging.getLogger(__name__)


def make_key(settings: Settings, *parts: str) -> str:
    """Construct a namespaced Redis key with the standard polaris:{env}: prefix."""
    suffix = ":".join(part.strip(":") for part in parts if part)
    return f"{settings.POLARIS_REDIS_PREFIX}:{settings.APP_ENV}:{suffix}"


def create_redis_client(settings: Settings) -> Redis:
    """Return a new async Redis client; the caller closes it with ``aclose()``."""
    pool = ConnectionPool.from_url(
        settings.REDIS_URL,
        max_connections=settings.REDIS_MAX_CONNECTIONS or settings.REDIS_POOL_SIZE,
        decode_responses=True,
    )
    return Redis(connection_pool=pool)


_LOCK_RELEASE_SCRIPT = """\
if redis.call('get', KEYS[1]) == ARGV[1] then
  return redis.call('del', KEYS[1])
else
  return 0
end
"""


async def acquire_lock(
    client: Redis,
    key: str,
    *,
    ttl_seconds: int = 30,
) -> Optional[str]:
    """Try once to take a SET NX lock with a TTL.

    Returns the lock token if acquired, None if someone else holds it.

    Raises:
        RedisError: Redis is unreachable; callers decide whether to proceed
    """
    token = uuid.uuid4().hex
    ok = await client.set(key, token, nx=True, ex=ttl_seconds)
    return token if ok else None


async def release_lock(client: Redis, key: str, token: str) -> bool:
    """Release a lock previously acquired with acquire_lock."""
    try:
        result = await client.eval(_LOCK_RELEASE_SCRIPT, 1, key, token)
        return bool(result)
    except RedisError:
        logger.exception("redis_release_lock_failed", extra={"key": key})
        return False
