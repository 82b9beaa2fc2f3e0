from __future__ import annotations

import redis.asyncio as redis

from ..config import RedisConfig


def create_redis(config: RedisConfig) -> redis.Redis:
    """Build a ``redis.asyncio`` client from configuration (no I/O performed)."""
    if config.url:
        return redis.Redis.from_url(config.url, decode_responses=True)
    return redis.Redis(
        host=config.host,
        port=config.port,
        db=config.db,
        password=config.password,
        decode_responses=True,
    )
