"""
Notification sink collaborators and the fire-and-forget Notifier.

Sinks accept (recipient_id, event_type, payload) and raise NotificationError
when delivery fails. The Notifier wraps a sink so that workflow transitions
never see a delivery failure: it logs and reports False instead.

Webhook retry strategy:
- 2xx: delivered
- 4xx: persistent error, no retry
- 5xx / network error: retry with exponential backoff
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Protocol, runtime_checkable

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from ..config import config
from ..errors import NotificationError
from ..utils import utc_now

logger = structlog.get_logger(__name__)


@runtime_checkable
class NotificationSink(Protocol):
    async def send(self, recipient_id: str, event_type: str, payload: dict[str, Any]) -> None: ...


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return isinstance(exc, httpx.TransportError)


class WebhookNotificationSink:
    """
    Posts notifications as JSON to a webhook endpoint.

    Configuration via environment variables:
    - NOTIFICATION_WEBHOOK_URL: Required endpoint
    - NOTIFICATION_API_KEY: Optional bearer token
    - NOTIFICATION_TIMEOUT_SECONDS: Per-request timeout (default: 10)
    """

    def __init__(
        self,
        url: str | None = None,
        api_key: str | None = None,
        timeout_seconds: float | None = None,
        max_attempts: int = 3,
        retry_wait: wait_base | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.url = url or config.NOTIFICATION_WEBHOOK_URL
        if not self.url:
            raise ValueError('NOTIFICATION_WEBHOOK_URL environment variable is required')
        self.api_key = api_key if api_key is not None else config.NOTIFICATION_API_KEY
        self.timeout_seconds = timeout_seconds or config.NOTIFICATION_TIMEOUT_SECONDS
        self.max_attempts = max_attempts
        self.retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=10)
        self._client = client or httpx.AsyncClient(timeout=self.timeout_seconds)

    def _headers(self) -> dict[str, str]:
        headers = {'Content-Type': 'application/json'}
        if self.api_key:
            headers['Authorization'] = f'Bearer {self.api_key}'
        return headers

    async def _post(self, body: dict[str, Any]) -> httpx.Response:
        response = await self._client.post(self.url, json=body, headers=self._headers())
        response.raise_for_status()
        return response

    async def send(self, recipient_id: str, event_type: str, payload: dict[str, Any]) -> None:
        """
        Deliver one notification.

        Raises:
            NotificationError: Delivery failed (4xx, or retries exhausted)
        """
        body = {
            'recipient_id': recipient_id,
            'event_type': event_type,
            'payload': payload,
            'sent_at': utc_now().isoformat(),
        }
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=self.retry_wait,
                retry=retry_if_exception(_is_retryable),
                reraise=True,
            ):
                with attempt:
                    await self._post(body)
        except httpx.HTTPStatusError as e:
            raise NotificationError(
                f"Webhook returned HTTP {e.response.status_code}",
                context={
                    'recipient_id': recipient_id,
                    'event_type': event_type,
                    'status_code': e.response.status_code,
                },
            ) from e
        except httpx.HTTPError as e:
            raise NotificationError(
                f"Webhook delivery failed: {type(e).__name__}: {e}",
                context={'recipient_id': recipient_id, 'event_type': event_type},
            ) from e

    async def close(self):
        """Close the underlying HTTP client."""
        await self._client.aclose()


@dataclass
class Delivery:
    recipient_id: str
    event_type: str
    payload: dict[str, Any]
    sent_at: datetime = field(default_factory=utc_now)


class InMemoryNotificationSink:
    """Records deliveries in memory. Recipients in `fail_for` raise NotificationError."""

    def __init__(self, fail_for: Iterable[str] = ()):
        self.deliveries: list[Delivery] = []
        self.fail_for = set(fail_for)

    async def send(self, recipient_id: str, event_type: str, payload: dict[str, Any]) -> None:
        if recipient_id in self.fail_for:
            raise NotificationError(
                'Simulated delivery failure',
                context={'recipient_id': recipient_id, 'event_type': event_type},
            )
        self.deliveries.append(Delivery(recipient_id, event_type, dict(payload)))

    def sent_to(self, recipient_id: str) -> list[Delivery]:
        return [d for d in self.deliveries if d.recipient_id == recipient_id]

    def of_type(self, event_type: str) -> list[Delivery]:
        return [d for d in self.deliveries if d.event_type == event_type]


class Notifier:
    """
    Fire-and-forget wrapper around a NotificationSink.

    Delivery failures are logged and reported as False; they never propagate
    into the transition that triggered the notification.
    """

    def __init__(self, sink: NotificationSink | None = None):
        self.sink = sink

    async def notify(
        self,
        recipient_id: str,
        event_type: str,
        payload: dict[str, Any] | None = None,
    ) -> bool:
        if self.sink is None:
            logger.debug('notify.no_sink', recipient_id=recipient_id, event_type=event_type)
            return False
        try:
            await self.sink.send(recipient_id, event_type, payload or {})
        except Exception as e:
            logger.warning(
                'notify.delivery_failed',
                recipient_id=recipient_id,
                event_type=event_type,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False
        logger.debug('notify.delivered', recipient_id=recipient_id, event_type=event_type)
        return True

    async def notify_many(
        self,
        recipient_ids: Iterable[str],
        event_type: str,
        payload: dict[str, Any] | None = None,
    ) -> int:
        """Notify each recipient independently. Returns the number delivered."""
        delivered = 0
        for recipient_id in dict.fromkeys(recipient_ids):
            if await self.notify(recipient_id, event_type, payload):
                delivered += 1
        return delivered
