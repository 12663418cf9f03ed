"""Rule-based usefulness checks run before any model call."""

import json
import re

from knowledge_pipeline.schemas.sources import GitHubIssue, TopicDetails

_SOLUTION_INDICATORS = re.compile(r"\b(solved|fixed|resolved|solution|answer|working|thanks|helped|workaround)\b")
_FORUM_SOLUTION_INDICATORS = re.compile(
    r"\b(solved|fixed|resolved|solution|answer|working|thanks|helped|workaround|success)\b"
)
_CODE_EXAMPLES = re.compile(r"```|`[^`]+`|\bcode\b|\bexample\b|\bapi\b|\bparameter\b|\bsetting\b")
_FORUM_CODE_EXAMPLES = re.compile(r"```|`[^`]+`|\bcode\b|\bexample\b|\bapi\b|\bparameter\b|\bsetting\b|\bopenai\b")
_BUG_REPORT = re.compile(r"\b(bug|error|issue|problem|broken|fail|crash)\b")
_API_CONTENT = re.compile(r"\b(api|sdk|openai|gpt|embedding|completion|chat|model|token)\b")
_COMPLAINT = re.compile(r"\b(terrible|awful|hate|worst|useless|broken)\b")

_UNIT_TEST_PATH = [
    re.compile(r"\.(test|spec)\.(js|ts|py)$", re.IGNORECASE),
    re.compile(r"/tests?/", re.IGNORECASE),
    re.compile(r"__tests__", re.IGNORECASE),
]
_DOCUMENTATION_PATH = [
    re.compile(r"\.md$", re.IGNORECASE),
    re.compile(r"/docs?/", re.IGNORECASE),
    re.compile(r"/examples?/", re.IGNORECASE),
    re.compile(r"/cookbook/", re.IGNORECASE),
    re.compile(r"README|CHANGELOG|CONTRIBUTING", re.IGNORECASE),
]
_SOURCE_PATH = re.compile(r"\.(js|ts|py)$", re.IGNORECASE)


def build_issue_conversation(issue: GitHubIssue) -> str:
    conversation = f"Title: {issue.title}\n\n{issue.body}"
    if issue.comments:
        conversation += "\n\nComments:\n"
        for comment in issue.comments:
            conversation += f"\n{comment.author}: {comment.body}\n"
    return conversation


def issue_has_useful_solution(issue: GitHubIssue) -> bool:
    """Whether an issue looks like it holds a solution worth indexing.

    Bug reports and open issues need a solution indicator or code to pass at all.
    Beyond that the body must be substantial and the issue must be closed with a
    solution, show code, or have an engaged discussion that reached one.
    """
    is_closed = issue.state == "closed"
    has_substantial_content = len(issue.body) > 200
    has_engagement = bool(issue.comments) or bool(issue.labels)

    comments = " ".join(comment.body for comment in issue.comments)
    full_text = f"{issue.title} {issue.body} {comments}".lower()
    has_solution = _SOLUTION_INDICATORS.search(full_text) is not None
    has_code = _CODE_EXAMPLES.search(full_text) is not None
    is_bug_report = _BUG_REPORT.search(full_text) is not None

    if is_bug_report and not has_solution and not has_code:
        return False
    if not is_closed and not has_solution and not has_code:
        return False

    return has_substantial_content and (
        (is_closed and has_solution) or has_code or (has_engagement and len(full_text) > 500 and has_solution)
    )


def build_forum_content(topic: TopicDetails) -> str:
    content = f"Title: {topic.title}\n\n"
    for post in topic.posts:
        content += f"{post.author}: {post.content}\n\n"
    return content


def forum_has_useful_content(topic: TopicDetails) -> bool:
    full_text = f"{topic.title} {' '.join(post.content for post in topic.posts)}".lower()
    has_solution = _FORUM_SOLUTION_INDICATORS.search(full_text) is not None
    has_code = _FORUM_CODE_EXAMPLES.search(full_text) is not None
    has_api_content = _API_CONTENT.search(full_text) is not None
    has_engagement = any(post.like_count > 0 for post in topic.posts)

    is_complaint = _COMPLAINT.search(full_text) is not None and not has_solution
    is_off_topic = not has_api_content and not has_code and len(full_text) > 200
    if is_complaint or is_off_topic:
        return False

    return (
        len(topic.title) > 10
        and bool(topic.posts)
        and (has_solution or has_code or has_api_content or (has_engagement and len(full_text) > 300))
    )


def is_unit_test_file(path: str) -> bool:
    return any(pattern.search(path) for pattern in _UNIT_TEST_PATH)


def is_documentation_file(path: str) -> bool:
    return any(pattern.search(path) for pattern in _DOCUMENTATION_PATH)


def is_sdk_source_file(path: str) -> bool:
    return _SOURCE_PATH.search(path) is not None and not is_unit_test_file(path)


def detect_file_language(content: str, path: str) -> str:
    if path.endswith(".py"):
        return "python"
    if path.endswith(".ts"):
        return "typescript"
    if path.endswith(".js"):
        return "javascript"
    if path.endswith(".ipynb"):
        try:
            metadata = json.loads(content).get("metadata") or {}
        except (ValueError, AttributeError):
            return "python"
        return (
            (metadata.get("language_info") or {}).get("name")
            or (metadata.get("kernelspec") or {}).get("language")
            or "python"
        )
    if re.search(r"import\s+\w+", content):
        return "python"
    if re.search(r"const\s+\w+\s*=", content):
        return "javascript"
    return "text"
