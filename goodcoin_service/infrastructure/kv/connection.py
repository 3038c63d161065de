"""
Redis connection and optimistic transaction helper
"""
import redis.asyncio as redis
from redis.asyncio.client import Pipeline
from redis.exceptions import WatchError
from typing import Awaitable, Callable, Optional, Sequence, TypeVar
import logging

from ...config import Settings, settings as default_settings
from ...domain.exceptions import ConcurrentUpdateError
from ..cache import redis_url

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RedisConnection:
    """Redis connection manager"""

    def __init__(self, client: Optional[redis.Redis] = None,
                 settings: Settings = default_settings):
        self.client: Optional[redis.Redis] = client
        self.settings = settings
        self._owns_client = client is None

    async def connect(self):
        """Create Redis client"""
        if self.client is not None:
            return
        try:
            self.client = redis.from_url(
                redis_url(self.settings),
                password=self.settings.REDIS_PASSWORD if self.settings.REDIS_PASSWORD else None,
                encoding="utf-8",
                decode_responses=True,
            )
            await self.client.ping()
            logger.info(f"Redis store connected at {self.settings.REDIS_HOST}:{self.settings.REDIS_PORT}")
        except Exception as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise

    async def disconnect(self):
        """Close Redis client"""
        if self.client and self._owns_client:
            await self.client.aclose()
            logger.info("Redis store connection closed")
        self.client = None


async def watch_transaction(
    client: redis.Redis,
    keys: Sequence[str],
    body: Callable[[Pipeline], Awaitable[T]],
    max_retries: Optional[int] = None,
) -> T:
    """
    Run ``body`` as a WATCH/MULTI/EXEC transaction, retrying on conflict

    ``body`` receives the pipeline in immediate mode with ``keys`` watched.
    It reads what it needs, calls ``pipe.multi()`` and queues its writes;
    its return value is returned once EXEC succeeds. Exceptions raised by
    ``body`` abort the transaction with nothing written.
    """
    attempts = max_retries or default_settings.LEDGER_MAX_RETRIES
    async with client.pipeline(transaction=True) as pipe:
        for attempt in range(1, attempts + 1):
            try:
                await pipe.watch(*keys)
                result = await body(pipe)
                await pipe.execute()
                return result
            except WatchError:
                logger.info(f"Concurrent update on {list(keys)}, retry {attempt}/{attempts}")
    raise ConcurrentUpdateError(f"Gave up updating {list(keys)} after {attempts} attempts")
