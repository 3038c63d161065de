"""
Redis cache for the ranked feed
"""
import redis.asyncio as redis
from typing import Optional, List, Tuple
import logging
import math

from ..config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

RANKED_FEED_KEY = "feed:ranked"


def redis_url(settings: Settings = default_settings) -> str:
    return f"redis://{settings.REDIS_HOST}:{settings.REDIS_PORT}/{settings.REDIS_DB}"


class RedisFeedCache:
    """Redis cache manager for the ranked feed (sorted set by score)"""

    def __init__(self, client: Optional[redis.Redis] = None,
                 settings: Settings = default_settings):
        self.client: Optional[redis.Redis] = client
        self.settings = settings
        self._owns_client = client is None

    async def connect(self):
        """Connect to Redis"""
        if self.client is not None:
            return
        if not self.settings.REDIS_ENABLED:
            logger.warning("Redis is disabled, ranked feed cache off")
            return

        try:
            self.client = redis.from_url(
                redis_url(self.settings),
                password=self.settings.REDIS_PASSWORD if self.settings.REDIS_PASSWORD else None,
                encoding="utf-8",
                decode_responses=True,
            )
            await self.client.ping()
            logger.info("Redis feed cache connected successfully")
        except Exception as e:
            logger.error(f"Failed to connect to Redis: {e}")
            self.client = None

    async def disconnect(self):
        """Disconnect from Redis"""
        if self.client and self._owns_client:
            await self.client.aclose()
            logger.info("Redis feed cache disconnected")
        self.client = None

    async def set_ranked_feed(self, items: List[Tuple[str, float]]) -> bool:
        """Replace the cached ranking with (post_id, score) pairs"""
        if not self.client:
            return False

        try:
            # Sorted sets reject NaN; park those posts at the bottom
            mapping = {
                post_id: (-math.inf if math.isnan(score) else score)
                for post_id, score in items
            }
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.delete(RANKED_FEED_KEY)
                if mapping:
                    pipe.zadd(RANKED_FEED_KEY, mapping)
                    pipe.expire(RANKED_FEED_KEY, self.settings.FEED_CACHE_TTL)
                await pipe.execute()
            return True
        except Exception as e:
            logger.error(f"Failed to set ranked feed cache: {e}")
            return False

    async def get_ranked_page(self, start: int = 0, end: int = 19) -> List[Tuple[str, float]]:
        """Get a slice of the ranking (highest score first)"""
        if not self.client:
            return []

        try:
            return await self.client.zrevrange(RANKED_FEED_KEY, start, end, withscores=True)
        except Exception as e:
            logger.error(f"Failed to get ranked feed from cache: {e}")
            return []

    async def get_feed_count(self) -> int:
        """Get count of items in the cached ranking"""
        if not self.client:
            return 0

        try:
            return await self.client.zcard(RANKED_FEED_KEY)
        except Exception as e:
            logger.error(f"Failed to get feed count from cache: {e}")
            return 0

    async def feed_exists(self) -> bool:
        """Check if a ranking is cached"""
        if not self.client:
            return False

        try:
            exists = await self.client.exists(RANKED_FEED_KEY)
            return exists > 0
        except Exception as e:
            logger.error(f"Failed to check feed existence: {e}")
            return False

    async def clear_feed(self) -> bool:
        """Drop the cached ranking"""
        if not self.client:
            return False

        try:
            await self.client.delete(RANKED_FEED_KEY)
            return True
        except Exception as e:
            logger.error(f"Failed to clear feed cache: {e}")
            return False
