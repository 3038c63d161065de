from datetime import timedelta
import json

import pytest

from goodcoin_service.application.feed import FeedService
from goodcoin_service.domain.exceptions import PostNotFoundError
from goodcoin_service.domain.models import utcnow
from goodcoin_service.infrastructure.cache import RANKED_FEED_KEY


async def _age_post(fake_redis, post_id: str, hours: float):
    """Rewrite a stored post's creation time"""
    key = f"posts:{post_id}"
    doc = json.loads(await fake_redis.get(key))
    doc["created_at"] = (utcnow() - timedelta(hours=hours)).isoformat()
    await fake_redis.set(key, json.dumps(doc))


@pytest.mark.asyncio
async def test_ranked_feed_orders_by_score(posts, feed, fake_redis):
    old = await posts.create_post("bob", "Old but loved")
    fresh = await posts.create_post("bob", "Fresh")
    flagged = await posts.create_post("carol", "Questionable")
    await _age_post(fake_redis, old.id, 72)
    for user in ("u1", "u2", "u3"):
        await posts.like_post(old.id, user)
        await posts.like_post(fresh.id, user)
        await posts.like_post(flagged.id, user)
    await posts.flag_post(flagged.id, "u1")

    items, total, has_more = await feed.get_ranked_feed()

    assert [p.id for p in items] == [fresh.id, old.id, flagged.id]
    assert total == 3
    assert has_more is False


@pytest.mark.asyncio
async def test_ranked_feed_pagination(posts, feed):
    for i in range(5):
        await posts.create_post("bob", f"Post {i}")

    page1, total, more1 = await feed.get_ranked_feed(page=1, page_size=2)
    page3, _, more3 = await feed.get_ranked_feed(page=3, page_size=2)

    assert total == 5
    assert len(page1) == 2 and more1
    assert len(page3) == 1 and not more3


@pytest.mark.asyncio
async def test_ranked_feed_served_from_cache(posts, feed, feed_cache, fake_redis):
    post = await posts.create_post("bob", "Cached")
    await feed.get_ranked_feed()
    assert await fake_redis.zcard(RANKED_FEED_KEY) == 1

    # Bypass the service so the cache is not invalidated
    await fake_redis.srem("posts:all", post.id)
    items, total, _ = await feed.get_ranked_feed()

    assert [p.id for p in items] == [post.id]
    assert total == 1


@pytest.mark.asyncio
async def test_explicit_clock_bypasses_cache(posts, feed, feed_cache):
    await posts.create_post("bob", "Timeless")
    items, total, _ = await feed.get_ranked_feed(now=utcnow())
    assert total == 1
    assert not await feed_cache.feed_exists()


@pytest.mark.asyncio
async def test_feed_without_cache(post_repo, posts):
    await posts.create_post("bob", "No cache")
    items, total, has_more = await FeedService(post_repo).get_ranked_feed()
    assert total == 1 and not has_more


@pytest.mark.asyncio
async def test_empty_feed(feed):
    assert await feed.get_ranked_feed() == ([], 0, False)


@pytest.mark.asyncio
async def test_top_posts_and_listings(posts, feed):
    a = await posts.create_post("bob", "A")
    b = await posts.create_post("carol", "B")
    await posts.like_post(b.id, "alice")

    assert [p.id for p in await feed.get_top_posts(1)] == [b.id]
    assert [p.id for p in await feed.get_posts_by_creator("bob")] == [a.id]
    assert [p.id for p in await feed.get_liked_posts("alice")] == [b.id]


@pytest.mark.asyncio
async def test_score_breakdown(posts, feed):
    post = await posts.create_post("bob", "Explain me")
    await posts.like_post(post.id, "alice")
    await posts.add_comment(post.id, "alice", "Nice")

    breakdown = await feed.get_score_breakdown(post.id)

    assert breakdown.engagement == 3
    assert breakdown.flag_penalty == 0
    assert breakdown.score > 0
    with pytest.raises(PostNotFoundError):
        await feed.get_score_breakdown("post_missing")
