"""Request pacing and retry with jittered backoff for external calls."""

import asyncio
import logging
import random
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]
ClockFn = Callable[[], float]

NON_RETRYABLE_STATUS_CODES = frozenset({400, 401, 403, 404, 422})
_NON_RETRYABLE_MESSAGE = re.compile(r"\b(400|401|403|404|422)\b")

WINDOW_SECONDS = 60.0
MIN_REQUEST_SPACING_MS = 25.0


class JitterStrategy(str, Enum):
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    DECORRELATED = "decorrelated"


@dataclass(frozen=True)
class RateLimitConfig:
    requests_per_minute: int
    retry_attempts: int
    base_delay_ms: int
    jitter_strategy: JitterStrategy = JitterStrategy.EXPONENTIAL
    # Upper bound of the random extra wait added to a full-window pause, as a percentage of the pause.
    jitter_percent: int = 25


def extract_status_code(error: BaseException) -> Optional[int]:
    status = getattr(error, "status_code", None)
    if isinstance(status, int):
        return status
    response = getattr(error, "response", None)
    status = getattr(response, "status_code", None)
    if isinstance(status, int):
        return status
    return None


def is_retryable_error(error: BaseException) -> bool:
    """Client errors (bad request, auth, not found, unprocessable) are final; everything else may be retried."""
    status = extract_status_code(error)
    if status is not None:
        return status not in NON_RETRYABLE_STATUS_CODES
    return _NON_RETRYABLE_MESSAGE.search(str(error)) is None


class RateLimiter:
    """Keeps one external dependency under a requests-per-minute budget.

    Counters live on the instance, so each collector or client should own its own limiter.
    """

    def __init__(
        self,
        config: RateLimitConfig,
        *,
        sleep: SleepFn = asyncio.sleep,
        clock: ClockFn = time.monotonic,
    ) -> None:
        self.config = config
        self._sleep = sleep
        self._clock = clock
        self.request_count = 0
        self.reset_time = 0.0

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` after pacing, retrying retryable failures.

        Args:
            fn: Zero-argument coroutine factory, called once per attempt
        Returns:
            Whatever ``fn`` returns on its first successful attempt
        """
        await self._wait_for_rate_limit()

        attempts = max(1, self.config.retry_attempts)
        attempt = 0
        while True:
            try:
                result = await fn()
            except Exception as e:
                attempt += 1
                if not is_retryable_error(e) or attempt >= attempts:
                    raise
                delay_ms = self.backoff_delay_ms(attempt - 1)
                logger.warning(f"Request failed (attempt {attempt}/{attempts}), retrying in {delay_ms:.0f}ms: {e}")
                await self._sleep(delay_ms / 1000)
            else:
                self.request_count += 1
                return result

    def backoff_delay_ms(self, attempt: int) -> float:
        return self._apply_jitter(self.config.base_delay_ms * (2**attempt))

    def _apply_jitter(self, base_delay: float) -> float:
        strategy = self.config.jitter_strategy
        if strategy == JitterStrategy.EXPONENTIAL:
            return base_delay + random.random() * base_delay * 0.5
        if strategy == JitterStrategy.DECORRELATED:
            return random.random() * base_delay * 3
        return base_delay + random.random() * 1000

    async def _wait_for_rate_limit(self) -> None:
        now = self._clock()
        if now >= self.reset_time:
            self.request_count = 0
            self.reset_time = now + WINDOW_SECONDS

        if self.request_count >= self.config.requests_per_minute:
            remaining_ms = (self.reset_time - now) * 1000
            jitter_ms = random.random() * remaining_ms * self.config.jitter_percent / 100
            wait_ms = max(1000.0, remaining_ms + jitter_ms)
            logger.info(f"Rate limit reached, waiting {wait_ms:.0f}ms")
            await self._sleep(wait_ms / 1000)
            self.request_count = 0
            self.reset_time = self._clock() + WINDOW_SECONDS

        load_factor = self.request_count / self.config.requests_per_minute
        spacing_ms = self._apply_jitter(100 + load_factor * 400)
        await self._sleep(max(MIN_REQUEST_SPACING_MS, spacing_ms) / 1000)
