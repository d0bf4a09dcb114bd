"""Delay queue publisher (Upstash QStash REST API).

Delivery is at-least-once; the receiving handler must be idempotent.
"""

from typing import Any, Protocol

import httpx
import structlog

from pixelrelay.services.exceptions import QueueError

logger = structlog.get_logger()


class DelayQueue(Protocol):
    async def publish(
        self,
        url: str,
        payload: dict[str, Any],
        delay_seconds: int,
        deduplication_id: str | None = None,
    ) -> str | None: ...


class QStashQueue:
    """Publishes JSON messages that QStash delivers to `url` after a delay."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        token: str,
        base_url: str = "https://qstash.upstash.io",
        timeout: float = 10.0,
    ):
        self.http_client = http_client
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def publish(
        self,
        url: str,
        payload: dict[str, Any],
        delay_seconds: int,
        deduplication_id: str | None = None,
    ) -> str | None:
        """Publish a delayed message.

        Args:
            url: Destination URL the queue will POST to
            payload: JSON body
            delay_seconds: Delivery delay
            deduplication_id: Optional id the queue uses to drop duplicate publishes

        Returns:
            Queue message id, if returned

        Raises:
            QueueError: If the publish request failed
        """
        if not self.token:
            raise QueueError("QSTASH_TOKEN not configured")

        headers = {
            "Authorization": f"Bearer {self.token}",
            "Upstash-Delay": f"{max(0, int(delay_seconds))}s",
        }
        if deduplication_id:
            headers["Upstash-Deduplication-Id"] = deduplication_id

        try:
            response = await self.http_client.post(
                f"{self.base_url}/v2/publish/{url}",
                json=payload,
                headers=headers,
                timeout=self.timeout,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise QueueError(f"Queue publish failed: {e}") from e

        try:
            message_id = response.json().get("messageId")
        except ValueError:
            message_id = None

        logger.info("queue.published", url=url, delay_seconds=delay_seconds, message_id=message_id)
        return message_id
