"""Async Redis client for event fan-out."""

from functools import lru_cache

from redis.asyncio import ConnectionPool, Redis

from .config import settings


@lru_cache(maxsize=1)
def _pool(url: str) -> ConnectionPool:
    return ConnectionPool.from_url(url, max_connections=20, decode_responses=True)


def get_redis_client(url: str | None = None) -> Redis:
    """Get an async Redis client from the shared pool."""
    return Redis(connection_pool=_pool(url or settings.redis_url))
