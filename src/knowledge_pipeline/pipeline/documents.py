"""Turns raw work item data into summarized, storage-ready documents."""

import logging
import re
from typing import Any, Awaitable, Callable, Dict, Optional

from knowledge_pipeline.collectors.forum import DEFAULT_BASE_URL as DEFAULT_FORUM_URL
from knowledge_pipeline.collectors.forum import ForumCollector
from knowledge_pipeline.processors.ids import ensure_safe_id
from knowledge_pipeline.schemas.documents import ContentMetadata, Document
from knowledge_pipeline.schemas.jobs import ItemType
from knowledge_pipeline.schemas.sources import (
    ForumPostItem,
    GitHubContent,
    GitHubIssue,
    TopicDetails,
    TopicPost,
)
from knowledge_pipeline.summarizers import Summarizer
from knowledge_pipeline.tokens.counter import SAFE_CONTENT_SIZE, TokenCounter, token_counter

logger = logging.getLogger(__name__)

_NON_ALPHANUMERIC = re.compile(r"[^a-zA-Z0-9]")


def issue_item_id(owner: str, repo: str, number: int) -> str:
    """Issue numbers repeat across repositories, so item ids carry the repository."""
    return f"{owner}_{repo}_{number}"


def file_item_id(owner: str, repo: str, path: str) -> str:
    return f"{owner}/{repo}/{path}"


def issue_document_id(item_id: str) -> str:
    return ensure_safe_id(f"github_issue_{item_id}")


def file_document_id(path: str) -> str:
    return ensure_safe_id(f"github_file_{_NON_ALPHANUMERIC.sub('_', path)}")


def forum_document_id(item_id: str) -> str:
    return ensure_safe_id(f"forum_{item_id}")


class DocumentBuilder:
    """Runs an item through its summarizer and maps the result onto a Document.

    Returns None from every builder when the summarizer filters the item out.
    """

    def __init__(
        self,
        summarizer: Summarizer,
        forum_collector: Optional[ForumCollector] = None,
        counter: Optional[TokenCounter] = None,
        forum_base_url: str = DEFAULT_FORUM_URL,
        max_content_bytes: int = SAFE_CONTENT_SIZE,
    ) -> None:
        self.summarizer = summarizer
        self.forum_collector = forum_collector
        self.counter = counter or token_counter
        self.forum_base_url = forum_base_url.rstrip("/")
        self.max_content_bytes = max_content_bytes
        self._builders: Dict[ItemType, Callable[[str, Dict[str, Any]], Awaitable[Optional[Document]]]] = {
            ItemType.GITHUB_ISSUE: lambda item_id, data: self.build_issue(GitHubIssue.model_validate(data), item_id),
            ItemType.GITHUB_FILE: lambda item_id, data: self.build_file(GitHubContent.model_validate(data), item_id),
            ItemType.FORUM_POST: lambda item_id, data: self.build_forum_post(
                ForumPostItem.model_validate(data), item_id
            ),
        }

    async def build(self, item_type: ItemType, item_id: str, source_data: Dict[str, Any]) -> Optional[Document]:
        return await self._builders[item_type](item_id, source_data)

    def _fit_content(self, label: str, content: str) -> str:
        validated = self.counter.validate_and_truncate_content(content, self.max_content_bytes)
        if validated != content:
            logger.warning(
                f"{label} content truncated from {len(content.encode('utf-8'))} to "
                f"{len(validated.encode('utf-8'))} bytes"
            )
        return validated

    async def build_issue(self, issue: GitHubIssue, item_id: str) -> Optional[Document]:
        summary = await self.summarizer.summarize_issue(issue)
        if summary is None:
            logger.info(f"Issue #{issue.number} filtered out: no useful solution or conclusion")
            return None

        return Document(
            id=issue_document_id(item_id),
            content=self._fit_content(f"GitHub issue #{issue.number}", f"{summary.title}\n\n{summary.summary}"),
            metadata=ContentMetadata(
                title=issue.title,
                author=issue.author,
                created_at=issue.created_at,
                updated_at=issue.updated_at,
                source_url=issue.url,
                tags=issue.labels,
            ),
            source="github",
        )

    async def build_file(self, file: GitHubContent, item_id: str) -> Optional[Document]:
        snippet = await self.summarizer.generate_snippet(file)
        if snippet is None:
            logger.info(f"File {file.path} filtered out")
            return None

        return Document(
            id=file_document_id(item_id),
            content=self._fit_content(f"GitHub file {file.path}", snippet.summary),
            metadata=ContentMetadata(
                title=file.name,
                source_url=file.download_url,
                language=snippet.language,
                category=snippet.category,
            ),
            source="github",
        )

    async def build_forum_post(self, item: ForumPostItem, item_id: str) -> Optional[Document]:
        post = item.post
        if self.forum_collector is not None:
            topic = await self.forum_collector.fetch_topic_details(post.id)
        else:
            # Without a collector the listing excerpt stands in for the thread.
            topic = TopicDetails(
                id=post.id,
                title=post.title,
                posts=[
                    TopicPost(
                        id=post.id,
                        content=post.content,
                        author=post.author,
                        created_at=post.created_at,
                        like_count=post.like_count,
                    )
                ],
                category_id=post.category_id,
                tags=post.tags,
            )

        summary = await self.summarizer.summarize_forum_topic(topic)
        if summary is None:
            logger.info(f"Forum post #{post.id} filtered out: no useful content or solution")
            return None

        return Document(
            id=forum_document_id(item_id),
            content=self._fit_content(f"Forum post #{post.id}", f"{summary.title}\n\n{summary.summary}"),
            metadata=ContentMetadata(
                title=topic.title,
                author=post.author,
                created_at=post.created_at,
                updated_at=topic.last_posted_at or post.created_at,
                source_url=f"{self.forum_base_url}/t/{post.id}",
                category=item.category.name if item.category else "forum",
                tags=topic.tags,
            ),
            source="forum",
        )
