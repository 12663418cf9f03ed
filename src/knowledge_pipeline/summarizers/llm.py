import logging
from typing import Callable, Optional

import openai
from openai import AsyncOpenAI

from knowledge_pipeline.errors import PipelineError
from knowledge_pipeline.rate_limiter import RateLimiter
from knowledge_pipeline.schemas.documents import Summary
from knowledge_pipeline.schemas.sources import GitHubContent, GitHubIssue, TopicDetails
from knowledge_pipeline.summarizers.rules import (
    build_forum_content,
    build_issue_conversation,
    detect_file_language,
    forum_has_useful_content,
    is_documentation_file,
    is_sdk_source_file,
    is_unit_test_file,
    issue_has_useful_solution,
)

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4.1-mini"
ASSESSMENT_INPUT_LIMIT = 4000
# Conversations shorter than this are judged by the rules alone.
ASSESSMENT_MIN_LENGTH = 300
# Conversations shorter than this are stored as-is.
SUMMARY_MIN_LENGTH = 500
SUMMARY_MAX_TOKENS = 2000

_SKIPPED_DETAILS = """Exclude operating system and runtime versions, hardware and system-specific configuration,
and anything else that does not help with API usage. Keep working code examples, error messages and
links to official documentation. Provide only the summary in your response."""

ISSUE_SUMMARY_PROMPT = f"""Summarize this GitHub issue for developers using OpenAI APIs and SDKs.
Focus on API usage patterns, code examples and solutions.
{_SKIPPED_DETAILS}"""

FORUM_SUMMARY_PROMPT = f"""Summarize this OpenAI community forum discussion for developers using OpenAI APIs and SDKs.
Focus on API usage patterns, code examples and solutions; drop off-topic chatter and complaints without fixes.
{_SKIPPED_DETAILS}"""

ASSESSMENT_PROMPT = """Decide whether this discussion is useful to developers using OpenAI APIs and SDKs.

USEFUL: working code or API usage patterns, solutions or workarounds, explanations of parameters or
behavior, clear error resolution steps, best practices.
NOT_USEFUL: bug reports without a fix, system-specific details without API insight, feature requests,
complaints or off-topic conversation.

Respond with only "USEFUL" or "NOT_USEFUL"."""

UNIT_TEST_SNIPPET_PROMPT = """Turn this SDK unit test into a single runnable script that performs the operations
under test, including the client setup they need. Explain parameters, settings and configuration options in
comments. Assertions need not be converted, but note returned values that show parameter effects.
Provide only the script."""

DOCUMENTATION_PROMPT = """Clean up this documentation for OpenAI API users. Keep practical examples and
clear explanations and remove internal implementation details. Provide only the improved documentation."""

SOURCE_SNIPPET_PROMPT = """Convert this SDK source code into a practical, reusable usage example. Explain each
parameter and setting in comments and show error handling and input/output. Provide only the example code."""


class OpenAISummarizer:
    """Filters and condenses raw items with a chat model.

    A rule-based gate runs first so that obviously unhelpful items never cost a model call.
    """

    def __init__(
        self,
        client: AsyncOpenAI,
        model: str = DEFAULT_MODEL,
        rate_limiter: Optional[RateLimiter] = None,
    ) -> None:
        self.client = client
        self.model = model
        self.rate_limiter = rate_limiter

    async def _complete(self, instructions: str, text: str, max_tokens: int) -> str:
        async def call() -> str:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": instructions},
                    {"role": "user", "content": text},
                ],
                max_tokens=max_tokens,
                temperature=0.1,
            )
            return (response.choices[0].message.content or "").strip()

        if self.rate_limiter is None:
            return await call()
        return await self.rate_limiter.execute(call)

    async def _is_useful(self, label: str, conversation: str, passes_rules: Callable[[], bool]) -> bool:
        if not passes_rules():
            return False
        if len(conversation) < ASSESSMENT_MIN_LENGTH:
            return True
        try:
            assessment = await self._complete(ASSESSMENT_PROMPT, conversation[:ASSESSMENT_INPUT_LIMIT], 16)
        except (openai.OpenAIError, PipelineError) as e:
            logger.warning(f"Model assessment failed for {label}, using rule-based result: {e}")
            return True
        logger.debug(f"Model assessment for {label}: {assessment}")
        return assessment.upper() == "USEFUL"

    async def _summarize(
        self,
        label: str,
        title: str,
        conversation: str,
        prompt: str,
        passes_rules: Callable[[], bool],
    ) -> Optional[Summary]:
        try:
            if not await self._is_useful(label, conversation, passes_rules):
                logger.info(f"Skipping {label}: no useful solution or content")
                return None
            if len(conversation) < SUMMARY_MIN_LENGTH:
                return Summary(
                    title=title,
                    summary=conversation,
                    original_length=len(conversation),
                    summary_length=len(conversation),
                )
            summary = await self._complete(prompt, conversation, SUMMARY_MAX_TOKENS) or conversation
        except (openai.OpenAIError, PipelineError) as e:
            logger.error(f"Failed to summarize {label}, keeping the full conversation: {e}")
            summary = conversation

        logger.info(f"Summarized {label}: {len(conversation)} -> {len(summary)} chars")
        return Summary(
            title=title,
            summary=summary,
            original_length=len(conversation),
            summary_length=len(summary),
        )

    async def summarize_issue(self, issue: GitHubIssue) -> Optional[Summary]:
        return await self._summarize(
            f"issue #{issue.number}",
            issue.title,
            build_issue_conversation(issue),
            ISSUE_SUMMARY_PROMPT,
            lambda: issue_has_useful_solution(issue),
        )

    async def summarize_forum_topic(self, topic: TopicDetails) -> Optional[Summary]:
        return await self._summarize(
            f"forum topic #{topic.id}",
            topic.title,
            build_forum_content(topic),
            FORUM_SUMMARY_PROMPT,
            lambda: forum_has_useful_content(topic),
        )

    async def generate_snippet(self, file: GitHubContent) -> Optional[Summary]:
        """Rewrite a repository file into a reusable example.

        Files that are neither tests, SDK sources nor documentation are returned unchanged.
        """
        content = file.content or ""
        is_unit_test = is_unit_test_file(file.path)
        language = detect_file_language(content, file.path)
        category = "unit-test" if is_unit_test else "source-code"

        if is_unit_test:
            prompt: Optional[str] = UNIT_TEST_SNIPPET_PROMPT
        elif is_documentation_file(file.path):
            prompt = DOCUMENTATION_PROMPT
        elif is_sdk_source_file(file.path):
            prompt = SOURCE_SNIPPET_PROMPT
        else:
            prompt = None

        snippet = content
        if prompt is not None:
            try:
                snippet = await self._complete(prompt, content, SUMMARY_MAX_TOKENS) or content
                logger.info(f"Generated snippet for {file.path}: {len(content)} -> {len(snippet)} chars")
            except (openai.OpenAIError, PipelineError) as e:
                logger.error(f"Failed to generate snippet for {file.path}, keeping the original: {e}")

        return Summary(
            title=file.name,
            summary=snippet,
            language=language,
            category=category,
            original_length=len(content),
            summary_length=len(snippet),
        )
