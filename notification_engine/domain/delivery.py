"""
Notification Engine - Delivery Engine.

Runs one delivery attempt across every requested channel of a notification.
Channels are isolated: a failing or hanging sender only fails its own
channel. After the attempt the retry policy is applied, the notification is
persisted and the outcome is fanned out to webhooks.

Architecture Layer: Domain
Principles: Fault Isolation, Single Responsibility
"""
from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING
from uuid import UUID

from pydantic import BaseModel, Field
import structlog

from ..config import DeliveryConfig
from ..exceptions import NotificationNotFoundError
from .channels import ChannelRegistry
from .entities import DeliveryStatus, Notification, NotificationChannel
from .retry import RetryScheduler
from .templates import TemplateRenderer
from .webhooks import WebhookDispatcher

if TYPE_CHECKING:
    from ..infrastructure.repository import NotificationStore

logger = structlog.get_logger(__name__)

MISSING_DESTINATION = "missing destination"
NO_SENDER = "no sender configured"


class DeliveryOutcome(BaseModel):
    """Result of one attempt."""
    notification: Notification
    attempted: bool = True
    delivered: bool = False
    channel_results: dict[NotificationChannel, DeliveryStatus] = Field(default_factory=dict)
    failures: list[str] = Field(default_factory=list)


class DeliveryEngine:
    """Executes delivery attempts for persisted notifications."""

    def __init__(
        self,
        store: NotificationStore,
        channels: ChannelRegistry,
        renderer: TemplateRenderer,
        retry: RetryScheduler,
        webhooks: WebhookDispatcher,
        config: DeliveryConfig | None = None,
    ) -> None:
        self._store = store
        self._channels = channels
        self._renderer = renderer
        self._retry = retry
        self._webhooks = webhooks
        self._config = config or DeliveryConfig()

    async def deliver(self, notification_id: UUID) -> DeliveryOutcome:
        """
        Attempt every channel of one notification once.

        Raises:
            NotificationNotFoundError: No notification with this id
        """
        notification = await self._store.get_notification(notification_id)
        if notification is None:
            raise NotificationNotFoundError(notification_id)
        if notification.is_terminal:
            logger.info("delivery_skipped_terminal", notification_id=str(notification_id),
                        status=notification.status.value)
            return DeliveryOutcome(notification=notification, attempted=False,
                                   delivered=notification.any_channel_delivered())

        notification.mark_sending()
        await self._store.save_notification(notification)

        failures: list[str] = []
        for channel in notification.channels:
            if notification.channel_state(channel).is_delivered:
                continue
            reason = await self._attempt_channel(notification, channel)
            if reason is not None:
                notification.mark_channel_failed(channel, reason)
                failures.append(f"{channel.value}: {reason}")
                logger.warning("channel_delivery_failed",
                               notification_id=str(notification_id),
                               channel=channel.value, reason=reason)
            else:
                notification.mark_channel_delivered(channel)

        delivered = notification.any_channel_delivered()
        notification.last_error = "; ".join(failures) or None
        self._retry.apply(notification, delivered)
        await self._store.save_notification(notification)

        logger.info(
            "notification_attempted",
            notification_id=str(notification_id),
            status=notification.status.value,
            delivered=delivered,
            retry_count=notification.retry_count,
            failed_channels=len(failures),
        )

        try:
            await self._webhooks.trigger_for_notification(notification)
        except Exception as e:
            logger.error("webhook_fanout_failed", notification_id=str(notification_id), error=str(e))

        return DeliveryOutcome(
            notification=notification,
            delivered=delivered,
            channel_results={c: notification.channel_state(c).status for c in notification.channels},
            failures=failures,
        )

    async def _attempt_channel(self, notification: Notification,
                               channel: NotificationChannel) -> str | None:
        """Send on one channel; returns a failure reason or None on success."""
        sender = self._channels.get(channel)
        destination = notification.destination_for(channel)
        needs_destination = sender.requires_destination if sender else channel != NotificationChannel.IN_APP
        if needs_destination and not destination:
            return MISSING_DESTINATION
        if sender is None:
            return NO_SENDER

        try:
            content = await self._renderer.render_for_notification(notification, channel)
            sent = await asyncio.wait_for(sender.send(destination, content),
                                          timeout=self._config.channel_timeout_seconds)
        except asyncio.TimeoutError:
            return f"timed out after {self._config.channel_timeout_seconds}s"
        except Exception as e:
            return str(e) or type(e).__name__
        return None if sent else "provider rejected the message"
