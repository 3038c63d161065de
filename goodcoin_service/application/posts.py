"""
Post service - posts, likes, comments and flags
"""
from typing import List, Optional, Tuple
import logging

from ..domain.exceptions import PostNotFoundError, ValidationError
from ..domain.models import Comment, MediaType, Post
from ..domain.repositories import ICommentRepository, IPostRepository
from ..infrastructure.cache import RedisFeedCache
from ..infrastructure.kafka_producer import KafkaProducerManager

logger = logging.getLogger(__name__)


class PostService:
    """Post service - maintains the engagement counters the ranking reads"""

    def __init__(
        self,
        posts: IPostRepository,
        comments: ICommentRepository,
        cache: Optional[RedisFeedCache] = None,
        events: Optional[KafkaProducerManager] = None
    ):
        self.post_repo = posts
        self.comment_repo = comments
        self.cache = cache
        self.events = events

    async def _invalidate_feed(self):
        if self.cache:
            await self.cache.clear_feed()

    async def _require_post(self, post_id: str) -> Post:
        post = await self.post_repo.get_post(post_id)
        if post is None:
            raise PostNotFoundError(post_id)
        return post

    async def create_post(
        self,
        creator_id: str,
        description: str,
        media_url: Optional[str] = None,
        media_type: Optional[MediaType] = None
    ) -> Post:
        """Create a new post"""
        description = (description or "").strip()
        if not description:
            raise ValidationError("Post description must not be empty")

        post = await self.post_repo.create(
            creator_id=creator_id,
            description=description,
            media_url=media_url,
            media_type=MediaType(media_type) if media_type else None
        )
        logger.info(f"Post {post.id} created by {creator_id}")

        await self._invalidate_feed()
        if self.events:
            await self.events.publish_post_created(post)
        return post

    async def get_post(self, post_id: str) -> Post:
        """Get post by ID"""
        return await self._require_post(post_id)

    async def like_post(self, post_id: str, user_id: str) -> bool:
        """Like a post; returns False if it was already liked"""
        changed = await self.post_repo.add_like(post_id, user_id)
        if changed:
            await self._invalidate_feed()
        return changed

    async def unlike_post(self, post_id: str, user_id: str) -> bool:
        """Unlike a post; returns False if it was not liked"""
        changed = await self.post_repo.remove_like(post_id, user_id)
        if changed:
            await self._invalidate_feed()
        return changed

    async def has_liked(self, post_id: str, user_id: str) -> bool:
        return await self.post_repo.has_liked(post_id, user_id)

    async def add_comment(self, post_id: str, creator_id: str, text: str) -> Comment:
        """Add a comment to a post"""
        text = (text or "").strip()
        if not text:
            raise ValidationError("Comment text must not be empty")

        await self._require_post(post_id)
        comment = await self.comment_repo.create(post_id, creator_id, text)
        await self.post_repo.increment_comment_count(post_id)
        await self._invalidate_feed()
        return comment

    async def get_comments(self, post_id: str) -> List[Comment]:
        """Get comments for a post, oldest first"""
        await self._require_post(post_id)
        return await self.comment_repo.list_for_post(post_id)

    async def flag_post(self, post_id: str, user_id: str) -> Tuple[bool, int]:
        """
        Flag a post as inappropriate

        Returns:
            Tuple of (newly_flagged, flag_count)
        """
        count = await self.post_repo.add_flag(post_id, user_id)
        if count is None:
            post = await self._require_post(post_id)
            return False, post.flag_count

        logger.info(f"Post {post_id} flagged by {user_id} ({count} flags)")
        await self._invalidate_feed()
        if self.events:
            await self.events.publish_post_flagged(post_id, user_id, count)
        return True, count

    async def unflag_post(self, post_id: str, user_id: str) -> Tuple[bool, int]:
        """
        Withdraw a flag

        Returns:
            Tuple of (flag_removed, flag_count)
        """
        count = await self.post_repo.remove_flag(post_id, user_id)
        if count is None:
            post = await self._require_post(post_id)
            return False, post.flag_count

        await self._invalidate_feed()
        return True, count

    async def get_flag_status(self, post_id: str, user_id: str) -> Tuple[bool, int]:
        """
        Returns:
            Tuple of (flagged_by_user, flag_count)
        """
        post = await self._require_post(post_id)
        flagged = await self.post_repo.has_flagged(post_id, user_id)
        return flagged, post.flag_count
