import pytest
from conftest import FakeSummarizer, issue_data

from knowledge_pipeline.pipeline.documents import (
    DocumentBuilder,
    file_document_id,
    file_item_id,
    issue_document_id,
    issue_item_id,
)
from knowledge_pipeline.schemas.jobs import ItemType
from knowledge_pipeline.schemas.sources import (
    ForumCategory,
    ForumPost,
    ForumPostItem,
    GitHubIssue,
    TopicDetails,
    TopicPost,
)
from knowledge_pipeline.tokens.counter import TRUNCATION_MARKER


class FakeForumCollector:
    async def fetch_topic_details(self, topic_id: int) -> TopicDetails:
        return TopicDetails(
            id=topic_id,
            title="Batch API returns 429",
            posts=[TopicPost(id=1, content="Lower the request rate"), TopicPost(id=2, content="That solved it")],
            tags=["rate-limits"],
            last_posted_at="2026-10-03T00:00:00Z",
        )


def test_item_ids_include_the_repository() -> None:
    assert issue_item_id("openai", "openai-python", 12) == "openai_openai-python_12"
    assert issue_item_id("openai", "openai-node", 12) != issue_item_id("openai", "openai-python", 12)
    assert file_item_id("openai", "openai-node", "README.md") == "openai/openai-node/README.md"
    assert file_document_id("openai/openai-node/README.md") == "github_file_openai_openai_node_README_md"


def test_long_document_ids_are_shortened() -> None:
    document_id = issue_document_id("some-organization_" + "very-long-repository-name" * 3 + "_1")
    assert len(document_id) == 64
    assert document_id.startswith("github_issue_some-organization_")


@pytest.mark.asyncio
async def test_issue_document() -> None:
    builder = DocumentBuilder(FakeSummarizer())

    document = await builder.build(
        ItemType.GITHUB_ISSUE, "openai_openai-python_4", issue_data(4, labels=["bug"], author="octocat")
    )

    assert document is not None
    assert document.id == "github_issue_openai_openai-python_4"
    assert document.content == f"Streaming responses hang\n\nSummary of {'x' * 150}"
    assert document.source == "github"
    assert document.metadata.tags == ["bug"]
    assert document.metadata.author == "octocat"
    assert document.metadata.source_url == "https://github.com/openai/openai-python/issues/4"


@pytest.mark.asyncio
async def test_filtered_items_build_no_document() -> None:
    builder = DocumentBuilder(FakeSummarizer())
    assert await builder.build(ItemType.GITHUB_ISSUE, "openai_openai-python_5", issue_data(5, "skip me")) is None


@pytest.mark.asyncio
async def test_file_document() -> None:
    builder = DocumentBuilder(FakeSummarizer())
    data = {
        "name": "streaming.py",
        "url": "u",
        "path": "examples/streaming.py",
        "type": "file",
        "content": "stream = client.chat.completions.create(stream=True)",
        "download_url": "https://raw.test/examples/streaming.py",
    }

    document = await builder.build(ItemType.GITHUB_FILE, "openai/openai-python/examples/streaming.py", data)

    assert document is not None
    assert document.id == "github_file_openai_openai_python_examples_streaming_py"
    assert document.metadata.language == "python"
    assert document.metadata.category == "source-code"
    assert document.metadata.source_url == "https://raw.test/examples/streaming.py"


@pytest.mark.asyncio
async def test_oversized_content_is_truncated() -> None:
    builder = DocumentBuilder(FakeSummarizer(), max_content_bytes=200)
    issue = GitHubIssue.model_validate(issue_data(6, body="word " * 200))

    document = await builder.build_issue(issue, "openai_openai-python_6")

    assert document is not None
    assert document.content.endswith(TRUNCATION_MARKER)
    assert len(document.content.encode("utf-8")) <= 200


@pytest.mark.asyncio
async def test_forum_document_uses_full_topic() -> None:
    builder = DocumentBuilder(
        FakeSummarizer(), forum_collector=FakeForumCollector(), forum_base_url="https://forum.test/"
    )
    item = ForumPostItem(
        post=ForumPost(id=77, title="Batch API returns 429", author="dev", created_at="2026-10-01T00:00:00Z"),
        category=ForumCategory(id=5, name="API", slug="api"),
    )

    document = await builder.build(ItemType.FORUM_POST, "77", item.model_dump())

    assert document is not None
    assert document.id == "forum_77"
    assert document.source == "forum"
    assert document.content == "Batch API returns 429\n\nLower the request rate That solved it"
    assert document.metadata.category == "API"
    assert document.metadata.tags == ["rate-limits"]
    assert document.metadata.updated_at == "2026-10-03T00:00:00Z"
    assert document.metadata.source_url == "https://forum.test/t/77"
