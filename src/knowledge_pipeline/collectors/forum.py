"""Discourse forum collector."""

import html
import logging
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import httpx

from knowledge_pipeline.collectors.base import USER_AGENT, HttpCollector
from knowledge_pipeline.rate_limiter import RateLimitConfig, RateLimiter
from knowledge_pipeline.schemas.sources import ForumCategory, ForumPost, TopicDetails, TopicPost

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_BASE_URL = "https://community.openai.com"
FORUM_RATE_LIMIT = RateLimitConfig(requests_per_minute=8, retry_attempts=3, base_delay_ms=8000)

_TAG = re.compile(r"<[^>]*>")
_WHITESPACE = re.compile(r"\s+")


def clean_post_content(markup: str) -> str:
    """Rendered post HTML to plain text."""
    text = html.unescape(_TAG.sub("", markup))
    return _WHITESPACE.sub(" ", text).strip()


def _tag_names(tags: Optional[List[Any]]) -> List[str]:
    # Newer Discourse versions return tag objects instead of plain names.
    names = []
    for tag in tags or []:
        name = tag.get("name") if isinstance(tag, dict) else tag
        if name:
            names.append(str(name))
    return names


def is_high_quality_post(post: ForumPost) -> bool:
    not_deleted = "[deleted]" not in post.content
    engaged = post.reply_count > 0 or post.like_count > 0
    length = len(post.content)
    return (engaged and length > 50 and not_deleted) or (length > 200 and not_deleted)


class ForumCollector(HttpCollector):
    source = "forum"

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str = DEFAULT_BASE_URL,
        rate_limiter: Optional[RateLimiter] = None,
    ) -> None:
        super().__init__(client, rate_limiter or RateLimiter(FORUM_RATE_LIMIT))
        self.base_url = base_url.rstrip("/")

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        headers = {"User-Agent": USER_AGENT, "Accept": "application/json"}
        response = await self._get(f"{self.base_url}{path}", headers=headers, params=params)
        return response.json()

    async def fetch_categories(self) -> List[ForumCategory]:
        data = await self._get_json("/categories.json")
        categories = [
            ForumCategory(
                id=raw.get("id") or 0,
                name=raw.get("name") or "",
                slug=raw.get("slug") or "",
                description=raw.get("description") or "",
                topic_count=raw.get("topic_count") or 0,
            )
            for raw in (data.get("category_list") or {}).get("categories") or []
        ]
        logger.debug(f"Fetched {len(categories)} forum categories")
        return categories

    async def fetch_category_posts(self, slug: str, page: int = 1, since: Optional[str] = None) -> List[ForumPost]:
        categories = await self.fetch_categories()
        category = next((c for c in categories if c.slug == slug), None)
        if category is None:
            logger.warning(f"Category '{slug}' not found. Available: {[c.slug for c in categories]}")
            return []
        return await self.fetch_category_posts_with_id(slug, category.id, page, since)

    async def fetch_category_posts_with_id(
        self, slug: str, category_id: int, page: int = 1, since: Optional[str] = None
    ) -> List[ForumPost]:
        params: Dict[str, Any] = {"page": page}
        if since:
            params["before"] = since
        data = await self._get_json(f"/c/{slug}/{category_id}.json", params=params)
        posts = self._to_posts(data)
        logger.debug(f"Fetched {len(posts)} posts from category {slug} page {page}")
        return posts

    async def fetch_latest_posts(self, page: int = 1, since: Optional[str] = None) -> List[ForumPost]:
        params: Dict[str, Any] = {"page": page}
        if since:
            params["before"] = since
        return self._to_posts(await self._get_json("/latest.json", params=params))

    async def fetch_multiple_pages(
        self,
        fetch_page: Callable[[int], Awaitable[List[T]]],
        max_pages: int = 20,
        max_items: int = 500,
    ) -> List[T]:
        items: List[T] = []
        for page in range(1, max_pages + 1):
            if len(items) >= max_items:
                break
            page_items = await fetch_page(page)
            if not page_items:
                break
            items.extend(page_items)
            logger.debug(f"Fetched page {page}: {len(page_items)} items, total: {len(items)}")
        return items[:max_items]

    async def fetch_topic_details(self, topic_id: int) -> TopicDetails:
        data = await self._get_json(f"/t/{topic_id}.json")
        posts = [
            TopicPost(
                id=raw.get("id") or 0,
                content=clean_post_content(raw.get("cooked") or raw.get("raw") or ""),
                author=raw.get("username") or "unknown",
                created_at=raw.get("created_at"),
                like_count=int(raw.get("score") or 0),
            )
            for raw in (data.get("post_stream") or {}).get("posts") or []
        ]
        return TopicDetails(
            id=data.get("id", topic_id),
            title=data.get("title") or data.get("fancy_title") or "",
            posts=posts,
            category_id=data.get("category_id") or 0,
            tags=_tag_names(data.get("tags")),
            last_posted_at=data.get("last_posted_at"),
        )

    def filter_high_quality_posts(self, posts: List[ForumPost]) -> List[ForumPost]:
        kept = [post for post in posts if is_high_quality_post(post)]
        logger.debug(f"Kept {len(kept)} of {len(posts)} posts after quality filtering")
        return kept

    @staticmethod
    def _to_posts(data: Dict[str, Any]) -> List[ForumPost]:
        posts = []
        for topic in (data.get("topic_list") or {}).get("topics") or []:
            title = topic.get("title") or topic.get("fancy_title") or ""
            excerpt = topic.get("excerpt") or ""
            posts.append(
                ForumPost(
                    id=topic.get("id") or 0,
                    title=title,
                    content=f"{title}\n\n{excerpt}" if title and excerpt else title or excerpt,
                    author=topic.get("last_poster_username") or "unknown",
                    created_at=topic.get("created_at"),
                    reply_count=topic.get("reply_count") or 0,
                    like_count=topic.get("like_count") or 0,
                    category_id=topic.get("category_id") or 0,
                    tags=_tag_names(topic.get("tags")),
                )
            )
        return posts
