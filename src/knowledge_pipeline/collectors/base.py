import logging
from typing import Any, Dict, Optional

import httpx

from knowledge_pipeline.errors import ExternalServiceError
from knowledge_pipeline.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

USER_AGENT = "knowledge-pipeline/0.1"


class HttpCollector:
    """Shared GET plumbing: every request goes through the collector's own rate limiter."""

    source = "http"

    def __init__(self, client: httpx.AsyncClient, rate_limiter: RateLimiter) -> None:
        self.client = client
        self.rate_limiter = rate_limiter

    async def _get(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        allow_not_modified: bool = False,
    ) -> httpx.Response:
        async def send() -> httpx.Response:
            try:
                response = await self.client.get(url, headers=headers, params=params)
            except httpx.RequestError as e:
                raise ExternalServiceError(f"{self.source} request failed: {e}") from e

            if response.status_code == 304 and allow_not_modified:
                return response
            if not response.is_success:
                body = response.text
                raise ExternalServiceError(
                    f"HTTP {response.status_code}: {response.reason_phrase}. Response: {body[:500]}",
                    status_code=response.status_code,
                    body=body,
                )
            return response

        return await self.rate_limiter.execute(send)
