"""Redis client factory for the attempt store."""

import redis.asyncio as aioredis

from login_security.core.config import settings


def create_redis_client(url: str | None = None, timeout: float | None = None) -> aioredis.Redis | None:
    """Return a pooled asyncio Redis client, or None when no URL is configured.

    Socket timeouts mirror the store timeout so a dead server fails fast
    instead of stalling the login path.
    """
    url = settings.REDIS_URL if url is None else url
    if not url:
        return None
    timeout = settings.LOGIN_SECURITY_STORE_TIMEOUT_SECONDS if timeout is None else timeout
    return aioredis.from_url(
        url,
        decode_responses=True,
        socket_timeout=timeout,
        socket_connect_timeout=timeout,
        health_check_interval=30,
    )
