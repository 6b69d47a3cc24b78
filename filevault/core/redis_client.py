"""
Redis Client Module

Provides the Redis client and the download token store built on it.
"""
import logging

import redis

from filevault.core.config import Settings, settings
from filevault.storage.tokens import InMemoryTokenStore, RedisTokenStore, TokenStore

logger = logging.getLogger(__name__)


def get_redis_client(url: str) -> redis.Redis:
    """
    Create a Redis client from a URL.

    Args:
        url: redis:// or rediss:// connection URL

    Returns:
        redis.Redis: Configured client (connections are opened lazily)
    """
    return redis.Redis.from_url(url, socket_connect_timeout=2)


def create_token_store(config: Settings = settings) -> TokenStore:
    """
    Build the download token store selected by TOKEN_STORE.

    Raises:
        ValueError: if the Redis backend is selected without REDIS_URL
    """
    if config.TOKEN_STORE == "redis":
        if not config.REDIS_URL:
            raise ValueError("REDIS_URL is required when TOKEN_STORE is 'redis'")
        logger.info("Using Redis download token store")
        return RedisTokenStore(get_redis_client(config.REDIS_URL))

    logger.info("Using in-memory download token store")
    return InMemoryTokenStore()
