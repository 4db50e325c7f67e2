"""Async Redis client for conversation broadcasts."""

from functools import lru_cache

from redis.asyncio import ConnectionPool, Redis

from .config import settings


@lru_cache(maxsize=8)
def _pool_for(url: str) -> ConnectionPool:
    return ConnectionPool.from_url(url, max_connections=20, decode_responses=True)


def get_redis_client(url: str | None = None) -> Redis:
    """Get an async Redis client from the shared pool for ``url``."""
    return Redis(connection_pool=_pool_for(url or settings.redis_url))
