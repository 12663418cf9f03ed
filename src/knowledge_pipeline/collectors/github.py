"""GitHub REST collector for issues and repository files."""

import asyncio
import logging
import random
import re
from typing import Any, Dict, List, Optional

import httpx

from knowledge_pipeline.collectors.base import USER_AGENT, HttpCollector
from knowledge_pipeline.rate_limiter import JitterStrategy, RateLimitConfig, RateLimiter, SleepFn
from knowledge_pipeline.schemas.sources import ConditionalResponse, GitHubContent, GitHubIssue, GitHubIssueComment

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.github.com"
ISSUES_PER_PAGE = 100
DEFAULT_MAX_DEPTH = 5

BINARY_EXTENSIONS = (
    ".png", ".jpg", ".jpeg", ".gif", ".svg", ".ico", ".webp",
    ".mp4", ".avi", ".mov", ".wmv", ".flv", ".webm",
    ".mp3", ".wav", ".flac", ".aac", ".ogg",
    ".zip", ".tar", ".gz", ".rar", ".7z",
    ".exe", ".dll", ".so", ".dylib", ".bin", ".dat",
    ".db", ".sqlite", ".log", ".tmp", ".cache", ".lock",
)  # fmt: skip

EXCLUDED_DIRECTORIES = frozenset(
    {
        "node_modules", ".git", ".svn", ".hg", "dist", "build", "target", "bin", "obj",
        ".next", ".nuxt", ".vscode", ".idea", "coverage", ".nyc_output", "__pycache__",
    }
)  # fmt: skip

LOCK_FILES = frozenset(
    {
        "package-lock.json", "yarn.lock", "pnpm-lock.yaml", "poetry.lock", "pipfile.lock", "uv.lock",
        "cargo.lock", "go.sum", "go.mod", "gemfile.lock", "composer.lock", "mix.lock", "pubspec.lock",
        "podfile.lock", "flake.lock", "deno.lock", "bun.lockb",
    }
)  # fmt: skip

# SDK implementation code; only user-facing files under these paths are kept.
INTERNAL_PATH_FRAGMENTS = (
    "openai/lib/", "openai/api/", "openai/types/", "openai/_",
    "src/", "lib/", "dist/", "build/", "internal/", "private/", "__", "node_modules/", "/.",
)  # fmt: skip
INTERNAL_PATTERNS = [
    re.compile(r"/_[^/]*\.(py|js|ts)$"),
    re.compile(r"\.d\.ts$"),
    re.compile(r"\.min\.(js|css)$"),
    re.compile(r"\.map$"),
]
USER_FACING_PATTERNS = [
    re.compile(r"README\.md$", re.IGNORECASE),
    re.compile(r"CHANGELOG\.md$", re.IGNORECASE),
    re.compile(r"CONTRIBUTING\.md$", re.IGNORECASE),
    re.compile(r"/docs?/"),
    re.compile(r"\.md$"),
]
EXAMPLE_PATTERNS = [
    re.compile(r"/examples?/"),
    re.compile(r"/tests?/"),
    re.compile(r"\.(test|spec)\.(js|ts|py)$"),
    re.compile(r"/cookbook/"),
    re.compile(r"/guides?/"),
    re.compile(r"/samples?/"),
    re.compile(r"/demos?/"),
]


def github_rate_limit(has_token: bool) -> RateLimitConfig:
    return RateLimitConfig(
        requests_per_minute=180 if has_token else 55,
        retry_attempts=3,
        base_delay_ms=1000,
        jitter_strategy=JitterStrategy.DECORRELATED,
    )


def is_relevant_file(path: str, owner: Optional[str] = None, repo: Optional[str] = None) -> bool:
    """Decide whether a repository file is meaningful text for SDK users.

    Binary files, build output, lock files and SDK internals are dropped; examples,
    tests, guides and documentation are kept.
    """
    if "/ja/" in path:
        return False
    lowered = path.lower()
    if path == "README.md" or path.startswith("src/main."):
        return not lowered.endswith(BINARY_EXTENSIONS)

    parts = path.split("/")
    if any(part in EXCLUDED_DIRECTORIES for part in parts):
        return False
    if lowered.endswith(BINARY_EXTENSIONS + (".json",)):
        return False
    if parts[-1].lower() in LOCK_FILES:
        return False

    is_example = any(pattern.search(path) for pattern in EXAMPLE_PATTERNS)
    is_sdk_repo = not (owner == "openai" and repo and not repo.startswith("openai-"))
    if is_sdk_repo:
        is_internal = any(fragment in path for fragment in INTERNAL_PATH_FRAGMENTS) or any(
            pattern.search(path) for pattern in INTERNAL_PATTERNS
        )
        if is_internal and not is_example and not any(pattern.search(path) for pattern in USER_FACING_PATTERNS):
            return False

    if is_example:
        return True
    if is_sdk_repo and parts[-1].startswith("_"):
        return False
    return True


class GitHubCollector(HttpCollector):
    source = "github"

    def __init__(
        self,
        client: httpx.AsyncClient,
        token: Optional[str] = None,
        base_url: str = DEFAULT_BASE_URL,
        rate_limiter: Optional[RateLimiter] = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        super().__init__(client, rate_limiter or RateLimiter(github_rate_limit(bool(token)), sleep=sleep))
        self.token = token
        self.base_url = base_url.rstrip("/")
        self._sleep = sleep

    def _headers(self, etag: Optional[str] = None, last_modified: Optional[str] = None) -> Dict[str, str]:
        headers = {"Accept": "application/vnd.github.v3+json", "User-Agent": USER_AGENT}
        if self.token:
            headers["Authorization"] = f"token {self.token}"
        if etag:
            headers["If-None-Match"] = etag
        if last_modified:
            headers["If-Modified-Since"] = last_modified
        return headers

    # Issues

    async def fetch_issues(
        self,
        owner: str,
        repo: str,
        state: str = "all",
        since: Optional[str] = None,
        max_pages: int = 1,
    ) -> List[GitHubIssue]:
        result = await self.fetch_issues_conditional(owner, repo, state, since, max_pages)
        return result.data or []

    async def fetch_issues_conditional(
        self,
        owner: str,
        repo: str,
        state: str = "all",
        since: Optional[str] = None,
        max_pages: int = 1,
        etag: Optional[str] = None,
        last_modified: Optional[str] = None,
    ) -> ConditionalResponse[List[GitHubIssue]]:
        """Fetch issue pages, skipping pull requests.

        Validators are only sent with the first page; a 304 there means nothing changed.
        """
        url = f"{self.base_url}/repos/{owner}/{repo}/issues"
        issues: List[GitHubIssue] = []
        response_etag: Optional[str] = None
        response_last_modified: Optional[str] = None

        for page in range(1, max_pages + 1):
            params: Dict[str, Any] = {"state": state, "per_page": ISSUES_PER_PAGE, "page": page}
            if since:
                params["since"] = since
            headers = self._headers(etag, last_modified) if page == 1 else self._headers()
            response = await self._get(url, headers=headers, params=params, allow_not_modified=True)

            if response.status_code == 304:
                logger.debug(f"Issues for {owner}/{repo} not modified (304)")
                return ConditionalResponse(not_modified=True, etag=etag, last_modified=last_modified)

            if page == 1:
                response_etag = response.headers.get("ETag")
                response_last_modified = response.headers.get("Last-Modified")

            data = response.json()
            if not data:
                break
            issues.extend(self._to_issue(raw) for raw in data if not raw.get("pull_request"))

        logger.info(f"Fetched {len(issues)} issues from {owner}/{repo}")
        return ConditionalResponse(
            data=issues, not_modified=False, etag=response_etag, last_modified=response_last_modified
        )

    @staticmethod
    def _to_issue(raw: Dict[str, Any]) -> GitHubIssue:
        return GitHubIssue(
            id=raw["id"],
            url=raw.get("html_url") or raw.get("url", ""),
            number=raw["number"],
            title=raw.get("title") or "",
            body=raw.get("body") or "",
            state=raw.get("state") or "open",
            created_at=raw.get("created_at"),
            updated_at=raw.get("updated_at"),
            labels=[label["name"] for label in raw.get("labels") or [] if label.get("name")],
            author=(raw.get("user") or {}).get("login") or "unknown",
        )

    async def fetch_issue_comments(self, owner: str, repo: str, issue_number: int) -> List[GitHubIssueComment]:
        url = f"{self.base_url}/repos/{owner}/{repo}/issues/{issue_number}/comments"
        response = await self._get(url, headers=self._headers())
        return [
            GitHubIssueComment(
                id=raw["id"],
                body=raw.get("body") or "",
                author=(raw.get("user") or {}).get("login") or "unknown",
                created_at=raw.get("created_at"),
                updated_at=raw.get("updated_at"),
            )
            for raw in response.json()
        ]

    # Repository content

    async def fetch_repository_content(
        self, owner: str, repo: str, path: str = "", max_depth: int = DEFAULT_MAX_DEPTH
    ) -> List[GitHubContent]:
        result = await self.fetch_repository_content_conditional(owner, repo, path, max_depth)
        return result.data or []

    async def fetch_repository_content_conditional(
        self,
        owner: str,
        repo: str,
        path: str = "",
        max_depth: int = DEFAULT_MAX_DEPTH,
        etag: Optional[str] = None,
        last_modified: Optional[str] = None,
    ) -> ConditionalResponse[List[GitHubContent]]:
        """Walk the contents API depth-first, downloading relevant files.

        Subdirectories are visited one at a time with a short random pause between them.
        """
        if max_depth < 0:
            logger.debug(f"Max depth reached for {path}, skipping further traversal")
            return ConditionalResponse(data=[])

        url = f"{self.base_url}/repos/{owner}/{repo}/contents/{path}"
        response = await self._get(url, headers=self._headers(etag, last_modified), allow_not_modified=True)
        if response.status_code == 304:
            logger.debug(f"Repository content for {owner}/{repo} not modified (304)")
            return ConditionalResponse(not_modified=True, etag=etag, last_modified=last_modified)

        data = response.json()
        entries = data if isinstance(data, list) else [data]
        results: List[GitHubContent] = []
        subdirectories: List[str] = []

        for entry in entries:
            entry_type = entry.get("type")
            entry_path = entry.get("path", "")
            if entry_type == "file" and is_relevant_file(entry_path, owner, repo):
                download_url = entry.get("download_url")
                content = await self._fetch_file_content(download_url) if download_url else None
                results.append(
                    GitHubContent(
                        name=entry.get("name", ""),
                        url=download_url or entry.get("url", ""),
                        path=entry_path,
                        type="file",
                        content=content,
                        download_url=download_url,
                    )
                )
            elif entry_type == "dir":
                results.append(
                    GitHubContent(name=entry.get("name", ""), url=entry.get("url", ""), path=entry_path, type="dir")
                )
                if max_depth > 0:
                    subdirectories.append(entry_path)

        for index, subdirectory in enumerate(subdirectories):
            results.extend(await self.fetch_repository_content(owner, repo, subdirectory, max_depth - 1))
            if index < len(subdirectories) - 1:
                await self._sleep(random.uniform(1.0, 3.0))

        logger.debug(f"Fetched {len(results)} items from {owner}/{repo}/{path}")
        return ConditionalResponse(
            data=results,
            not_modified=False,
            etag=response.headers.get("ETag"),
            last_modified=response.headers.get("Last-Modified"),
        )

    async def _fetch_file_content(self, download_url: str) -> str:
        response = await self._get(download_url, headers={"User-Agent": USER_AGENT})
        return response.text
