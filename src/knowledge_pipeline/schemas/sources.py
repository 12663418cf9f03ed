"""Raw items as returned by the source collectors."""

from typing import Generic, List, Literal, Optional, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class GitHubIssueComment(BaseModel):
    id: int
    body: str = ""
    author: str = "unknown"
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class GitHubIssue(BaseModel):
    id: int
    url: str
    number: int
    title: str = ""
    body: str = ""
    state: str = "open"
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    labels: List[str] = Field(default_factory=list)
    author: str = "unknown"
    comments: List[GitHubIssueComment] = Field(default_factory=list)


class GitHubContent(BaseModel):
    """A file or directory entry. ``path`` is unique within a repository."""

    name: str
    url: str
    path: str
    type: Literal["file", "dir"]
    content: Optional[str] = None
    download_url: Optional[str] = None


class ForumCategory(BaseModel):
    id: int
    name: str
    slug: str
    description: Optional[str] = None
    topic_count: int = 0


class ForumPost(BaseModel):
    """A topic listing entry; ``content`` is the title plus the topic excerpt."""

    id: int
    title: str
    content: str = ""
    author: str = "unknown"
    created_at: Optional[str] = None
    reply_count: int = 0
    like_count: int = 0
    category_id: Optional[int] = None
    tags: List[str] = Field(default_factory=list)


class TopicPost(BaseModel):
    id: int
    content: str = ""
    author: str = "unknown"
    created_at: Optional[str] = None
    like_count: int = 0


class TopicDetails(BaseModel):
    id: int
    title: str
    posts: List[TopicPost] = Field(default_factory=list)
    category_id: Optional[int] = None
    tags: List[str] = Field(default_factory=list)
    last_posted_at: Optional[str] = None


class ConditionalResponse(BaseModel, Generic[T]):
    """Result of a fetch sent with ETag/Last-Modified validators."""

    data: Optional[T] = None
    not_modified: bool = False
    etag: Optional[str] = None
    last_modified: Optional[str] = None


class ForumPostItem(BaseModel):
    """Source data of a forum work item: the listing entry and the category it was found in."""

    post: ForumPost
    category: Optional[ForumCategory] = None
