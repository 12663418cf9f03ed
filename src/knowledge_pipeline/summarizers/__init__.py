from typing import Optional, Protocol

from knowledge_pipeline.schemas.documents import Summary
from knowledge_pipeline.schemas.sources import GitHubContent, GitHubIssue, TopicDetails


class Summarizer(Protocol):
    """Turns a raw item into a Summary, or None when the item is not worth indexing."""

    async def summarize_issue(self, issue: GitHubIssue) -> Optional[Summary]: ...

    async def summarize_forum_topic(self, topic: TopicDetails) -> Optional[Summary]: ...

    async def generate_snippet(self, file: GitHubContent) -> Optional[Summary]: ...
