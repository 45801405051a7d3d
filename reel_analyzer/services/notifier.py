"""Content API notifier.

Pushes analysis text and failure statuses to the external content API.
Both calls are fire-and-forget: the request runs as a background task,
any HTTP status is accepted, nothing is retried, and failures are only
logged. A notification never changes the outcome of a request.
"""

import asyncio
import logging
from typing import Any

import httpx

from reel_analyzer.core.http_client import create_client

logger = logging.getLogger(__name__)

MAX_REDIRECTS = 3
FAILED_STATUS = "FAILED"


class ContentNotifier:
    """Notifier collaborator used by the pipeline.

    Attributes:
        content_api_url: Receives {"content_id", "content"} via POST.
        content_status_url: Receives {"contentId", "status"} via PATCH.
        timeout: Seconds allowed per callback request.
        sent: Number of callbacks dispatched.
        failed: Number of callbacks that raised a transport error.
    """

    def __init__(
        self,
        content_api_url: str,
        content_status_url: str,
        *,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.content_api_url = content_api_url
        self.content_status_url = content_status_url
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None
        self._pending: set[asyncio.Task] = set()
        self.sent = 0
        self.failed = 0

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = create_client(
                timeout=httpx.Timeout(self.timeout),
                max_redirects=MAX_REDIRECTS,
            )
        return self._client

    @property
    def pending(self) -> int:
        return len(self._pending)

    def send(self, content_id: str | None, text: str) -> dict[str, Any]:
        """Dispatch analysis text for a content id.

        Returns immediately with the acknowledgement included in pipeline
        responses. A missing content_id skips the callback.
        """
        if not content_id:
            logger.debug("No content_id supplied, skipping content update")
            return {"success": False, "message": "No content_id supplied", "contentId": None}

        self._dispatch(
            "POST",
            self.content_api_url,
            {"content_id": content_id, "content": text},
            content_id,
        )
        return {
            "success": True,
            "message": "Content sent to external API (fire and forget)",
            "contentId": content_id,
        }

    def send_failure(self, content_id: str | None, message: str) -> None:
        """Mark a content id as FAILED. No-op without a content_id."""
        if not content_id:
            return
        logger.info("Reporting failure for %s: %s", content_id, message)
        self._dispatch(
            "PATCH",
            self.content_status_url,
            {"contentId": content_id, "status": FAILED_STATUS},
            content_id,
        )

    def _dispatch(
        self, method: str, url: str, payload: dict[str, Any], content_id: str
    ) -> None:
        task = asyncio.create_task(self._request(method, url, payload, content_id))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        self.sent += 1

    async def _request(
        self, method: str, url: str, payload: dict[str, Any], content_id: str
    ) -> None:
        try:
            response = await self._get_client().request(method, url, json=payload)
            logger.debug(
                "%s %s for %s answered %d", method, url, content_id, response.status_code
            )
        except Exception as e:
            self.failed += 1
            logger.warning("Callback %s %s failed for %s: %s", method, url, content_id, e)

    async def drain(self) -> None:
        """Wait for dispatched callbacks to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def get_stats(self) -> dict[str, int]:
        return {"sent": self.sent, "failed": self.failed, "pending": self.pending}
