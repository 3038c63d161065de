"""
Service container - wires stores, integrations and application services
"""
from typing import Optional
import logging

import redis.asyncio as redis

from .application.accounts import AccountService
from .application.feed import FeedService
from .application.ledger import DonationLedger
from .application.posts import PostService
from .config import Settings, settings as default_settings
from .infrastructure.cache import RedisFeedCache
from .infrastructure.database.connection import Database
from .infrastructure.database.repositories import (
    PostgresAccountRepository,
    PostgresCommentRepository,
    PostgresLedgerRepository,
    PostgresPostRepository,
)
from .infrastructure.kafka_producer import KafkaProducerManager
from .infrastructure.kv.connection import RedisConnection
from .infrastructure.kv.repositories import (
    RedisAccountRepository,
    RedisCommentRepository,
    RedisLedgerRepository,
    RedisPostRepository,
)
from .infrastructure.locks import KeyedLock

logger = logging.getLogger(__name__)


class ServiceContainer:
    """Owns every long-lived object of the service"""

    def __init__(
        self,
        settings: Settings = default_settings,
        redis_client: Optional[redis.Redis] = None,
        kafka_producer: Optional[KafkaProducerManager] = None
    ):
        self.settings = settings
        self.redis = RedisConnection(redis_client, settings)
        self.db: Optional[Database] = None
        self.cache = RedisFeedCache(redis_client, settings)
        self.kafka_producer = kafka_producer or KafkaProducerManager(settings)
        self.locks = KeyedLock()

        self.accounts: Optional[AccountService] = None
        self.posts: Optional[PostService] = None
        self.feed: Optional[FeedService] = None
        self.ledger: Optional[DonationLedger] = None

    async def connect(self):
        """Open connections and build the services"""
        backend = self.settings.STORAGE_BACKEND.lower()
        if backend == "postgres":
            self.db = Database(self.settings)
            await self.db.connect()
            account_repo = PostgresAccountRepository(self.db)
            post_repo = PostgresPostRepository(self.db)
            comment_repo = PostgresCommentRepository(self.db)
            ledger_repo = PostgresLedgerRepository(self.db)
        elif backend == "redis":
            await self.redis.connect()
            account_repo = RedisAccountRepository(self.redis.client, self.settings)
            post_repo = RedisPostRepository(self.redis.client, self.settings)
            comment_repo = RedisCommentRepository(self.redis.client)
            ledger_repo = RedisLedgerRepository(self.redis.client, self.settings)
        else:
            raise ValueError(f"Unknown storage backend: {self.settings.STORAGE_BACKEND}")
        logger.info(f"Using {backend} storage backend")

        await self.cache.connect()
        await self.kafka_producer.start()

        self.accounts = AccountService(account_repo, self.settings)
        self.posts = PostService(post_repo, comment_repo, self.cache, self.kafka_producer)
        self.feed = FeedService(post_repo, self.cache, settings=self.settings)
        self.ledger = DonationLedger(
            account_repo,
            post_repo,
            ledger_repo,
            self.locks,
            self.kafka_producer,
            self.settings,
        )

    async def disconnect(self):
        """Close everything in reverse order"""
        await self.kafka_producer.stop()
        await self.cache.disconnect()
        await self.redis.disconnect()
        if self.db:
            await self.db.disconnect()
            self.db = None
