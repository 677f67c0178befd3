"""HTTP webhook dispatcher.

Posts JSON notifications to subscriber and integration webhook URLs.
"""

from typing import Any

import httpx

from alerting.config import settings
from alerting.logging_config import get_logger
from alerting.providers.base import ProviderError

logger = get_logger(__name__)


class HttpWebhookDispatcher:
    """``WebhookDispatcher`` backed by ``httpx.AsyncClient``.

    A non-2xx response counts as not sent. Transport failures and
    timeouts raise :class:`ProviderError`.
    """

    def __init__(self, timeout: float | None = None):
        self.timeout = timeout if timeout is not None else settings.webhook_timeout_seconds

    async def _post(self, url: str, payload: dict[str, Any]) -> bool:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, json=payload)
        except httpx.HTTPError as e:
            raise ProviderError(f"Webhook request to {url} failed: {e}") from e

        if response.is_success:
            return True

        logger.warning(
            "Webhook endpoint rejected notification",
            url=url,
            status_code=response.status_code,
        )
        return False

    async def send_subscriber_notification(self, url: str, payload: dict[str, Any]) -> bool:
        return await self._post(url, payload)

    async def send_integration_notification(self, url: str, payload: dict[str, Any]) -> bool:
        return await self._post(url, payload)
