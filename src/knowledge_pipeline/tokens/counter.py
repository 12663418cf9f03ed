"""Token and byte budget helpers used by batching and storage."""

import math
from typing import List, Optional, Protocol, Sequence

CHARS_PER_TOKEN = 4
MAX_TOKENS_PER_REQUEST = 8192
SAFETY_MARGIN = 1000
SAFE_TOKEN_LIMIT = MAX_TOKENS_PER_REQUEST - SAFETY_MARGIN

# Storage ceilings for a single row
MAX_ROW_SIZE = 2_000_000
SAFE_CONTENT_SIZE = 1_500_000
SAFE_JSON_SIZE = 100_000

TRUNCATION_MARKER = "... [TRUNCATED]"


class TokenEstimator(Protocol):
    def estimate(self, text: str) -> int: ...


class HeuristicTokenEstimator:
    """Four characters per token. Not a tokenizer, but close enough for budgeting."""

    def estimate(self, text: str) -> int:
        return math.ceil(len(text) / CHARS_PER_TOKEN)


def _cut_at_word_boundary(text: str, max_chars: int) -> str:
    truncated = text[:max_chars]
    last_space = truncated.rfind(" ")
    if last_space > max_chars * 0.8:
        return truncated[:last_space]
    return truncated


class TokenCounter:
    def __init__(
        self,
        estimator: Optional[TokenEstimator] = None,
        max_tokens_per_request: int = MAX_TOKENS_PER_REQUEST,
        safety_margin: int = SAFETY_MARGIN,
    ) -> None:
        self.estimator = estimator or HeuristicTokenEstimator()
        self.safe_token_limit = max_tokens_per_request - safety_margin

    def estimate_tokens(self, text: str) -> int:
        return self.estimator.estimate(text)

    def estimate_tokens_for_array(self, texts: Sequence[str]) -> int:
        return sum(self.estimate_tokens(text) for text in texts)

    def is_within_limit(self, texts: Sequence[str]) -> bool:
        return self.estimate_tokens_for_array(texts) <= self.safe_token_limit

    def find_max_batch_size(self, texts: List[str], start_size: int = 100) -> int:
        """Largest prefix length of ``texts`` that fits the token budget.

        Never returns 0. When even the first text is over budget the answer is 1 and the
        caller is expected to truncate or split before sending it.
        """
        for size in range(min(start_size, len(texts)), 0, -1):
            if self.is_within_limit(texts[:size]):
                return size
        return 1

    def truncate_text(self, text: str, max_tokens: int) -> str:
        max_chars = max_tokens * CHARS_PER_TOKEN
        if len(text) <= max_chars:
            return text
        return _cut_at_word_boundary(text, max_chars)

    def validate_and_truncate_content(self, content: str, max_bytes: int = SAFE_CONTENT_SIZE) -> str:
        """Trim ``content`` so its UTF-8 encoding fits under ``max_bytes``.

        Cuts to ``max_bytes // 2`` characters, which is safe for mostly-multibyte text,
        and appends a truncation marker.
        """
        if len(content.encode("utf-8")) <= max_bytes:
            return content
        return _cut_at_word_boundary(content, max_bytes // 2) + TRUNCATION_MARKER


token_counter = TokenCounter()

estimate_tokens = token_counter.estimate_tokens
estimate_tokens_for_array = token_counter.estimate_tokens_for_array
is_within_limit = token_counter.is_within_limit
find_max_batch_size = token_counter.find_max_batch_size
truncate_text = token_counter.truncate_text
validate_and_truncate_content = token_counter.validate_and_truncate_content
