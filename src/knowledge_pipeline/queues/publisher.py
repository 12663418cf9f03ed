import logging
import time
from typing import Any, Dict, Protocol

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


class JobPublisher(Protocol):
    async def publish(self, message: Dict[str, Any]) -> None: ...


class WebhookJobPublisher:
    """Announces new job ids to a webhook so consumers can wake before their next poll."""

    def __init__(self, url: str, client: httpx.AsyncClient) -> None:
        self.url = url
        self.client = client

    async def publish(self, message: Dict[str, Any]) -> None:
        """Post the notification. Failures are logged and never raised.

        Args:
            message: Notification body, e.g. ``{"job_id": 12}``
        """
        payload = {"event": "job.created", "created_at": int(time.time()), **message}
        try:
            response = await self.client.post(self.url, json=payload, timeout=DEFAULT_TIMEOUT)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.warning(f"Job notification failed with status {e.response.status_code}: {e.response.text}")
        except httpx.HTTPError as e:
            logger.warning(f"Job notification failed: {e}")
