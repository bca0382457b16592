"""Notification sink client with exponential backoff retry logic"""

import httpx

from lease_billing.config import settings
from lease_billing.domain.models import BillingEvent
from lease_billing.domain.retry import RetryPolicy, run_with_retry


def notification_retry_policy() -> RetryPolicy:
    """Retries on 5xx/4xx responses and network failures: 1s, 2s, 4s, 8s"""
    return RetryPolicy(
        max_attempts=settings.notification_max_retries,
        backoff_base=settings.notification_backoff_base,
        retryable=(httpx.HTTPStatusError, httpx.RequestError),
    )


class NotificationClient:
    """Client for delivering billing events to the notification service"""

    def __init__(
        self,
        webhook_url: str | None = None,
        policy: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.webhook_url = webhook_url or settings.notification_webhook_url
        self.policy = policy or notification_retry_policy()
        self.transport = transport

    async def deliver(self, event: BillingEvent) -> None:
        """
        Send one billing event, retrying per the notification policy.

        Raises the last httpx error once retries are exhausted.
        """
        async with httpx.AsyncClient(transport=self.transport) as client:

            async def post() -> None:
                response = await client.post(self.webhook_url, json=event.to_dict(), timeout=10.0)
                response.raise_for_status()

            await run_with_retry(post, self.policy, task_name=f"deliver {event.kind.value}")
