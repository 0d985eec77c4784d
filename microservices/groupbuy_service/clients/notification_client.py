"""
Notification Service Client

Client for calling notification_service to deliver group-buy notices.
"""

import logging
from typing import Any, Dict, Optional

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from core.config import GroupBuyConfig

from ..models import NotificationEvent

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (httpx.TransportError,)


class NotificationClient:
    """Client for notification_service"""

    def __init__(
        self,
        config: Optional[GroupBuyConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        config = config or GroupBuyConfig.from_env()
        self.base_url = config.notification_service_url.rstrip("/")
        self.timeout = config.notification_timeout_seconds
        self.retry_attempts = max(config.notification_retry_attempts, 1)
        self._client = http_client or httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)

    async def send(self, event: NotificationEvent) -> None:
        """
        Deliver one notification event.

        Transport errors are retried with exponential backoff; HTTP error
        statuses are raised to the caller.
        """
        sender = retry(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            reraise=True,
        )(self._post)

        try:
            await sender(event.model_dump(mode="json"))
            logger.debug(
                f"Sent {event.notification_type.value} notification to {event.recipient_org_id}"
            )
        except httpx.HTTPStatusError as e:
            logger.error(f"Error sending notification: {e.response.status_code} {e.response.text}")
            raise
        except Exception as e:
            logger.error(f"Error sending notification: {e}")
            raise

    async def _post(self, body: Dict[str, Any]) -> None:
        response = await self._client.post("/api/v1/notifications/groupbuy", json=body)
        response.raise_for_status()

    async def close(self) -> None:
        await self._client.aclose()
