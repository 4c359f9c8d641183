"""
Redis connection construction.

The queue and tracker share one client that the process entry point creates
at startup and closes at exit; nothing in the package keeps a module-level
connection.
"""

from __future__ import annotations

import logging
from typing import Optional

import redis

from . import config

logger = logging.getLogger(__name__)


def create_redis(settings: Optional[config.Settings] = None) -> redis.Redis:
    settings = settings or config.get_settings()
    client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
    logger.info("Redis client created for %s", settings.redis_url)
    return client


def close_redis(client: redis.Redis) -> None:
    try:
        client.close()
    except redis.RedisError as exc:
        logger.warning("Error while closing Redis client: %s", exc)
