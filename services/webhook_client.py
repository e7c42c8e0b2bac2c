"""
Webhook Client

Forwards session events to an external HTTP callback when WEBHOOK_URL is
configured. Delivery happens in background tasks so a slow or failing
callback never holds up the event pipeline.
"""

import asyncio
from typing import Any, Dict, Optional, Set

import aiohttp

from config.settings import settings
from services.event_broadcaster import now_ms
from utils.error_handler import WebhookError
from utils.logger import setup_logger
from utils.retry import with_retry

logger = setup_logger(__name__)

class WebhookClient:
    """
    Client for posting session events to the configured webhook.

    Each event is sent as JSON: {"sessionId", "event", "data", "ts"}.
    """

    def __init__(self, url: Optional[str] = None, timeout: Optional[float] = None):
        self.url = url if url is not None else settings.WEBHOOK_URL
        self.timeout = timeout or settings.WEBHOOK_TIMEOUT_SECONDS
        self.session: Optional[aiohttp.ClientSession] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    async def __aenter__(self):
        """Async context manager entry."""
        await self.get_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    async def get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if not self.session:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self.session

    async def close(self):
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self.session:
            await self.session.close()
            self.session = None

    @with_retry(
        max_retries=settings.MAX_RETRIES,
        delay=settings.RETRY_DELAY,
        backoff_factor=2.0,
        exceptions=[aiohttp.ClientError, asyncio.TimeoutError, WebhookError]
    )
    async def post_event(self, session_id: str, event: str, data: Dict[str, Any]) -> int:
        """
        Post one event to the webhook.

        Server errors (5xx) raise WebhookError and are retried; client errors
        (4xx) are logged and returned since repeating them cannot succeed.

        Returns:
            int: HTTP status of the final attempt
        """
        session = await self.get_session()
        body = {
            "sessionId": session_id,
            "event": event,
            "data": data,
            "ts": now_ms(),
        }

        async with session.post(
            self.url,
            json=body,
            headers={"Content-Type": "application/json"}
        ) as response:
            if response.status >= 500:
                error_text = await response.text()
                raise WebhookError(f"HTTP {response.status}: {error_text[:200]}", response.status)
            if response.status >= 400:
                error_text = await response.text()
                logger.warning(f"Webhook rejected {event} for {session_id}: HTTP {response.status}: {error_text[:200]}")
            return response.status

    def dispatch(self, session_id: str, event: str, data: Dict[str, Any]) -> Optional[asyncio.Task]:
        """Schedule delivery of an event; returns the task, or None when disabled."""
        if not self.enabled:
            return None
        task = asyncio.create_task(self._deliver(session_id, event, data))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _deliver(self, session_id: str, event: str, data: Dict[str, Any]):
        try:
            await self.post_event(session_id, event, data)
        except (aiohttp.ClientError, asyncio.TimeoutError, WebhookError) as e:
            logger.error(f"Webhook delivery of {event} for {session_id} failed: {e}")
