"""
Notification Engine - Webhook Fan-out.

After every delivery attempt the outcome is POSTed to each active webhook
subscription whose event filter matches the notification type. Bodies are
signed with HMAC-SHA256 over the raw JSON using the subscription secret.
Subscriptions are dispatched concurrently; one failing subscriber never
affects another or the notification itself.
"""
from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import re
from typing import TYPE_CHECKING, Any
from uuid import UUID

import httpx
from pydantic import BaseModel
import structlog

from ..config import WebhookConfig
from ..exceptions import WebhookDeliveryError
from .entities import Notification, WebhookSubscription, utc_now

if TYPE_CHECKING:
    from ..infrastructure.repository import NotificationStore

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "X-Notification-Signature"
EVENT_HEADER = "X-Notification-Event"
WILDCARD_EVENT = "*"

_EVENT_DELIMITER_PATTERN = re.compile(r"[,;\s]+")


def sign_payload(body: bytes | str, secret: str) -> str:
    """Hex HMAC-SHA256 of the raw request body."""
    if isinstance(body, str):
        body = body.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes | str, secret: str, signature: str) -> bool:
    """Constant-time check of a received signature header."""
    return hmac.compare_digest(sign_payload(body, secret), signature)


def parse_events(raw: Any) -> set[str]:
    """
    Normalize a subscription's event filter to an upper-cased set.

    Accepts a list, a JSON array string, a `,`/`;`/whitespace delimited
    string, or a mapping whose values are the events. Anything else is an
    empty filter, which matches every event.
    """
    if raw is None:
        return set()
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return set()
        try:
            decoded = json.loads(text)
        except json.JSONDecodeError:
            decoded = None
        if isinstance(decoded, (list, dict)):
            return parse_events(decoded)
        items: list[Any] = _EVENT_DELIMITER_PATTERN.split(text)
    elif isinstance(raw, dict):
        items = list(raw.values())
    elif isinstance(raw, (list, tuple, set)):
        items = list(raw)
    else:
        logger.warning("webhook_events_unparseable", events_type=type(raw).__name__)
        return set()
    return {str(item).strip().upper() for item in items if str(item).strip()}


def should_trigger(events: set[str], event_key: str) -> bool:
    """Empty filter or `*` matches everything; otherwise exact type match."""
    if not events:
        return True
    return WILDCARD_EVENT in events or event_key.upper() in events


class WebhookDispatchResult(BaseModel):
    webhook_id: UUID
    url: str
    success: bool
    status_code: int | None = None
    error: str | None = None


class WebhookDispatcher:
    """Signed, concurrent delivery of notification outcomes to subscribers."""

    def __init__(
        self,
        store: NotificationStore,
        config: WebhookConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._store = store
        self._config = config or WebhookConfig()
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._config.timeout_seconds)
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    @staticmethod
    def build_body(notification: Notification) -> bytes:
        payload = {
            "notification": notification.public_snapshot(),
            "deliveredAt": utc_now().isoformat(),
        }
        return json.dumps(payload, separators=(",", ":")).encode("utf-8")

    async def trigger_for_notification(self, notification: Notification) -> list[WebhookDispatchResult]:
        """Fan the notification out to every matching active subscription."""
        event_key = notification.notification_type.value
        webhooks = [
            w for w in await self._store.list_active_webhooks()
            if should_trigger(parse_events(w.events), event_key)
        ]
        if not webhooks:
            return []

        body = self.build_body(notification)
        results = await asyncio.gather(
            *(self._dispatch(webhook, event_key, body) for webhook in webhooks)
        )
        logger.info(
            "webhooks_dispatched",
            notification_id=str(notification.notification_id),
            event_type=event_key,
            total=len(results),
            succeeded=sum(1 for r in results if r.success),
        )
        return list(results)

    async def _dispatch(self, webhook: WebhookSubscription, event_key: str,
                        body: bytes) -> WebhookDispatchResult:
        status_code: int | None = None
        try:
            headers = {
                "Content-Type": "application/json",
                "User-Agent": self._config.user_agent,
                EVENT_HEADER: event_key,
                SIGNATURE_HEADER: sign_payload(body, webhook.secret),
            }
            if webhook.auth_header:
                headers["Authorization"] = webhook.auth_header
            client = await self._get_client()
            response = await client.post(webhook.url, content=body, headers=headers,
                                         timeout=self._config.timeout_seconds)
            status_code = response.status_code
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            error = WebhookDeliveryError(webhook.webhook_id, webhook.url,
                                         f"HTTP {e.response.status_code}", cause=e)
        except Exception as e:
            # Transport errors, invalid URLs and unencodable headers alike
            # only fail this subscription.
            error = WebhookDeliveryError(webhook.webhook_id, webhook.url,
                                         str(e) or type(e).__name__, cause=e)
        else:
            await self._record(webhook, success=True)
            return WebhookDispatchResult(webhook_id=webhook.webhook_id, url=webhook.url,
                                         success=True, status_code=status_code)

        logger.error("webhook_delivery_failed", webhook_id=str(webhook.webhook_id),
                     url=webhook.url, error=error.reason)
        await self._record(webhook, success=False)
        return WebhookDispatchResult(webhook_id=webhook.webhook_id, url=webhook.url,
                                     success=False, status_code=status_code, error=error.reason)

    async def _record(self, webhook: WebhookSubscription, success: bool) -> None:
        try:
            await self._store.record_webhook_result(webhook.webhook_id, success, utc_now())
        except Exception as e:
            logger.warning("webhook_counter_update_failed", webhook_id=str(webhook.webhook_id),
                           error=str(e))
