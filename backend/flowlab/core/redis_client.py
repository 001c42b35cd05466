"""
Redis connection for assignment locks and advance idempotency keys
"""
import redis.asyncio as redis
from typing import Optional
import logging

from flowlab.core.config import settings

logger = logging.getLogger(__name__)


class RedisClient:
    """Redis connection manager"""

    client: Optional[redis.Redis] = None


redis_client = RedisClient()


async def connect_redis():
    logger.info(f"Connecting to Redis at {settings.REDIS_URL}")

    try:
        client = redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=settings.REDIS_TIMEOUT_SECONDS,
            socket_timeout=settings.REDIS_TIMEOUT_SECONDS,
        )
        await client.ping()
        redis_client.client = client

        logger.info("Redis connection established")
    except Exception as e:
        logger.error(f"Failed to connect to Redis at {settings.REDIS_URL}: {e}")
        raise


async def disconnect_redis():
    if redis_client.client:
        await redis_client.client.aclose()
        redis_client.client = None
        logger.info("Redis connection closed")


def get_redis() -> redis.Redis:
    """Connected client; locks and idempotency keys need one"""
    if redis_client.client is None:
        raise RuntimeError("Redis is not connected")
    return redis_client.client


class RedisKeys:
    """Key layout, prefixed per concern"""

    PREFIX = "flowlab"

    @classmethod
    def assignment_lock(cls, lock_key: str) -> str:
        # lock_key is "record:{scope}:{state}" or "balance:{balance_key}"
        return f"{cls.PREFIX}:lock:{lock_key}"

    @classmethod
    def advance_idempotency(cls, key: str) -> str:
        return f"{cls.PREFIX}:advance:{key}"


class RedisTTL:
    IDEMPOTENCY = 86400  # Advance keys are honoured for a day
