"""
Feed service - ranked positivity feed
"""
from datetime import datetime
from typing import List, Optional, Tuple
import logging

from ..config import Settings, settings as default_settings
from ..domain import ranking
from ..domain.exceptions import PostNotFoundError
from ..domain.models import Post
from ..domain.ranking import ScoreBreakdown, ScoringConfig
from ..domain.repositories import IPostRepository
from ..infrastructure.cache import RedisFeedCache

logger = logging.getLogger(__name__)


class FeedService:
    """Feed service - ranks every post and serves pages from the cache"""

    def __init__(
        self,
        posts: IPostRepository,
        cache: Optional[RedisFeedCache] = None,
        config: Optional[ScoringConfig] = None,
        settings: Settings = default_settings
    ):
        self.post_repo = posts
        self.cache = cache
        self.settings = settings
        self.config = config or ScoringConfig.from_settings(settings)

    def _page_bounds(self, page: int, page_size: Optional[int]) -> Tuple[int, int]:
        page = max(1, page)
        if page_size is None:
            page_size = self.settings.DEFAULT_PAGE_SIZE
        page_size = max(1, min(page_size, self.settings.MAX_PAGE_SIZE))
        start = (page - 1) * page_size
        return start, page_size

    async def get_ranked_feed(
        self,
        page: int = 1,
        page_size: Optional[int] = None,
        now: Optional[datetime] = None
    ) -> Tuple[List[Post], int, bool]:
        """
        Get a page of the ranked feed

        Returns:
            Tuple of (posts, total_count, has_more)
        """
        start, page_size = self._page_bounds(page, page_size)

        # A caller-supplied clock bypasses the cache so results are reproducible
        if now is None:
            cached = await self._try_get_from_cache(start, page_size)
            if cached is not None:
                logger.debug(f"Cache hit for ranked feed page {page}")
                return cached

        posts = await self.post_repo.list_posts()
        ranked = ranking.rank_posts(posts, now, self.config)
        if now is None and ranked and self.cache:
            await self.cache.set_ranked_feed([(post.id, score) for post, score in ranked])

        total = len(ranked)
        items = [post for post, _ in ranked[start:start + page_size]]
        return items, total, start + len(items) < total

    async def _try_get_from_cache(
        self,
        start: int,
        page_size: int
    ) -> Optional[Tuple[List[Post], int, bool]]:
        """Try to serve a page from the cached ranking"""
        if not self.cache or not await self.cache.feed_exists():
            return None

        total = await self.cache.get_feed_count()
        entries = await self.cache.get_ranked_page(start, start + page_size - 1)
        if start < total and not entries:
            return None

        posts: List[Post] = []
        for post_id, _ in entries:
            post = await self.post_repo.get_post(post_id)
            if post is None:
                # Ranking references a deleted post; rebuild it
                await self.cache.clear_feed()
                return None
            posts.append(post)

        return posts, total, start + len(posts) < total

    async def get_top_posts(self, limit: int, now: Optional[datetime] = None) -> List[Post]:
        """Get the highest scoring posts"""
        posts = await self.post_repo.list_posts()
        return ranking.get_top_posts(posts, limit, now, self.config)

    async def get_posts_by_creator(self, creator_id: str) -> List[Post]:
        """Posts created by a user, newest first"""
        return await self.post_repo.list_by_creator(creator_id)

    async def get_liked_posts(self, user_id: str) -> List[Post]:
        """Posts a user liked, newest first"""
        return await self.post_repo.list_liked_by(user_id)

    async def get_score_breakdown(
        self,
        post_id: str,
        now: Optional[datetime] = None
    ) -> ScoreBreakdown:
        """Explain how a post's score is made up"""
        post = await self.post_repo.get_post(post_id)
        if post is None:
            raise PostNotFoundError(post_id)
        return ranking.get_score_breakdown(post, now, self.config)

