from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Tuple

import pytest
import pytest_asyncio
from fakeredis.aioredis import FakeRedis

from goodcoin_service.application.accounts import AccountService
from goodcoin_service.application.feed import FeedService
from goodcoin_service.application.ledger import DonationLedger
from goodcoin_service.application.posts import PostService
from goodcoin_service.domain.models import PostSnapshot
from goodcoin_service.infrastructure.cache import RedisFeedCache
from goodcoin_service.infrastructure.kv.repositories import (
    RedisAccountRepository,
    RedisCommentRepository,
    RedisLedgerRepository,
    RedisPostRepository,
)
from goodcoin_service.infrastructure.locks import KeyedLock

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def snapshot(hours_old: float, likes: int = 0, comments: int = 0, flags=0) -> PostSnapshot:
    return PostSnapshot(
        likes_count=likes,
        comments_count=comments,
        created_at=NOW - timedelta(hours=hours_old),
        flag_count=flags,
    )


class RecordingProducer:
    """Stands in for KafkaProducerManager and keeps what was published"""

    def __init__(self) -> None:
        self.events: List[Tuple[str, Any]] = []

    async def publish_post_created(self, post) -> bool:
        self.events.append(("post_created", post))
        return True

    async def publish_post_flagged(self, post_id: str, user_id: str, flag_count: int) -> bool:
        self.events.append(("post_flagged", (post_id, user_id, flag_count)))
        return True

    async def publish_donation_created(self, donation) -> bool:
        self.events.append(("donation_created", donation))
        return True

    async def publish_purchase_completed(self, purchase) -> bool:
        self.events.append(("purchase_completed", purchase))
        return True

    def of_type(self, event_type: str) -> List[Any]:
        return [payload for kind, payload in self.events if kind == event_type]


@pytest_asyncio.fixture
async def fake_redis():
    client = FakeRedis(decode_responses=True)
    try:
        yield client
    finally:
        await client.flushall()
        await client.aclose()


@pytest.fixture
def account_repo(fake_redis):
    return RedisAccountRepository(fake_redis)


@pytest.fixture
def post_repo(fake_redis):
    return RedisPostRepository(fake_redis)


@pytest.fixture
def comment_repo(fake_redis):
    return RedisCommentRepository(fake_redis)


@pytest.fixture
def ledger_repo(fake_redis):
    return RedisLedgerRepository(fake_redis)


@pytest.fixture
def feed_cache(fake_redis):
    return RedisFeedCache(fake_redis)


@pytest.fixture
def producer():
    return RecordingProducer()


@pytest.fixture
def accounts(account_repo):
    return AccountService(account_repo)


@pytest.fixture
def posts(post_repo, comment_repo, feed_cache, producer):
    return PostService(post_repo, comment_repo, feed_cache, producer)


@pytest.fixture
def feed(post_repo, feed_cache):
    return FeedService(post_repo, feed_cache)


@pytest.fixture
def ledger(account_repo, post_repo, ledger_repo, producer):
    return DonationLedger(account_repo, post_repo, ledger_repo, KeyedLock(), producer)


@pytest_asyncio.fixture
async def funded(accounts, posts) -> Dict[str, Any]:
    """Alice holds 100, Bob holds 50, Bob authored one post"""
    await accounts.get_or_create_account("alice", "alice", "Alice", balance=Decimal("100"))
    await accounts.get_or_create_account("bob", "bob", "Bob", balance=Decimal("50"))
    post = await posts.create_post("bob", "Planted a tree today")
    return {"post": post}
