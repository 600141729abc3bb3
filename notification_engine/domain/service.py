"""
Notification Engine - Notification Orchestration.

Entry point for callers: accepts notifications, decides between immediate
and scheduled delivery, and exposes cancellation, read receipts and queue
statistics. Owns the lifecycle of the worker pool and network clients.

Architecture Layer: Domain
Principles: Facade Pattern, Async Processing
"""
from __future__ import annotations

import asyncio
from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

import httpx
from pydantic import BaseModel, Field
import structlog

from ..config import NotificationEngineConfig
from ..exceptions import QueueError, ValidationError
from .channels import ChannelRegistry, ChannelSender, EmailSender, InAppSender, PushSender, SMSSender
from .delivery import DeliveryEngine, DeliveryOutcome
from .entities import (
    Notification,
    NotificationCategory,
    NotificationChannel,
    NotificationPriority,
    NotificationStatus,
    NotificationType,
    Primitive,
    Template,
    WebhookSubscription,
    resolve_category,
    resolve_channels,
    resolve_notification_priority,
    resolve_notification_type,
    resolve_scheduled_for,
    utc_now,
)
from .queue import QueueCoordinator, QueueStats
from .retry import RetryScheduler
from .templates import TemplateInput, TemplateRenderer
from .webhooks import WebhookDispatcher

if TYPE_CHECKING:
    from ..infrastructure.broker import JobBroker
    from ..infrastructure.repository import NotificationStore

logger = structlog.get_logger(__name__)


class SendNotificationOptions(BaseModel):
    """Caller input for `send`. Enumerated fields accept loose strings and are normalized."""
    recipient_id: str = Field(default="")
    recipient_email: str | None = None
    recipient_phone: str | None = None
    recipient_device_token: str | None = None
    recipient_name: str | None = None
    sender_id: str | None = None
    sender_name: str | None = None
    title: str = Field(default="")
    message: str = Field(default="")
    notification_type: NotificationType | str | None = None
    category: NotificationCategory | str | None = None
    priority: NotificationPriority | str | None = None
    channels: list[NotificationChannel | str] | None = None
    scheduled_for: datetime | str | None = None
    template_id: UUID | None = None
    template_variables: dict[str, Primitive] = Field(default_factory=dict)
    context_type: str | None = None
    context_id: str | None = None
    metadata: dict[str, Primitive] = Field(default_factory=dict)
    max_retries: int | None = None


class NotificationService:
    """
    Orchestrates persistence, scheduling and delivery of notifications.

    Immediate notifications are attempted out of band right after `send`
    returns; scheduled ones go through the queue coordinator. Retries of
    either kind are always driven by the queue.
    """

    def __init__(
        self,
        store: NotificationStore,
        broker: JobBroker,
        channels: ChannelRegistry,
        config: NotificationEngineConfig | None = None,
        *,
        webhook_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config or NotificationEngineConfig()
        self._store = store
        self._broker = broker
        self._channels = channels
        self._retry = RetryScheduler(self._config.retry)
        self._templates = TemplateRenderer(store)
        self._webhooks = WebhookDispatcher(store, self._config.webhook, client=webhook_client)
        self._engine = DeliveryEngine(
            store, channels, self._templates, self._retry, self._webhooks, self._config.delivery,
        )
        self._coordinator = QueueCoordinator(store, broker, self._engine, self._config.queue)
        self._pending: set[asyncio.Task[None]] = set()
        logger.info("notification_service_initialized", channels=[c.value for c in channels.channels()])

    @property
    def templates(self) -> TemplateRenderer:
        return self._templates

    @property
    def coordinator(self) -> QueueCoordinator:
        return self._coordinator

    @property
    def engine(self) -> DeliveryEngine:
        return self._engine

    async def init(self) -> None:
        """Connect the broker, recover interrupted jobs and start the worker pool."""
        await self._broker.connect()
        await self._coordinator.recover()
        await self._coordinator.start()

    async def shutdown(self) -> None:
        """Drain immediate deliveries, stop workers and release clients."""
        await self.wait_idle()
        await self._coordinator.stop()
        await self._channels.close()
        await self._webhooks.close()
        await self._broker.close()
        await self._store.close()
        logger.info("notification_service_shutdown")

    async def wait_idle(self) -> None:
        """Await immediate delivery attempts started by `send`."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @staticmethod
    def _validate(options: SendNotificationOptions) -> None:
        missing = [
            name for name in ("recipient_id", "title", "message")
            if not getattr(options, name).strip()
        ]
        if missing:
            errors = [f"{name} is required" for name in missing]
            raise ValidationError("; ".join(errors), field=missing[0], errors=errors)

    async def send(self, options: SendNotificationOptions) -> UUID:
        """
        Persist a notification and start its delivery.

        Args:
            options: Recipient, content and routing of the notification

        Returns:
            The new notification id

        Raises:
            ValidationError: recipient_id, title or message is blank
            QueueError: A future-scheduled notification could not be enqueued
        """
        self._validate(options)
        notification_type = resolve_notification_type(options.notification_type)
        scheduled_for = resolve_scheduled_for(options.scheduled_for)
        max_retries = options.max_retries if options.max_retries is not None else self._retry.default_max_retries

        notification = Notification(
            recipient_id=options.recipient_id.strip(),
            recipient_email=options.recipient_email,
            recipient_phone=options.recipient_phone,
            recipient_device_token=options.recipient_device_token,
            recipient_name=options.recipient_name,
            sender_id=options.sender_id,
            sender_name=options.sender_name,
            title=options.title,
            message=options.message,
            notification_type=notification_type,
            category=resolve_category(options.category, notification_type),
            priority=resolve_notification_priority(options.priority),
            channels=resolve_channels(options.channels),
            scheduled_for=scheduled_for,
            template_id=options.template_id,
            template_variables=dict(options.template_variables),
            context_type=options.context_type,
            context_id=options.context_id,
            metadata=dict(options.metadata),
            max_retries=max(1, max_retries),
        )
        notification.mark_channels_queued()
        await self._store.save_notification(notification)
        notification_id = notification.notification_id

        logger.info(
            "notification_created",
            notification_id=str(notification_id),
            notification_type=notification.notification_type.value,
            channels=[c.value for c in notification.channels],
            scheduled_for=scheduled_for.isoformat() if scheduled_for else None,
        )

        if scheduled_for is not None and scheduled_for > utc_now():
            try:
                await self._coordinator.enqueue(notification_id, scheduled_for)
            except QueueError as e:
                notification.mark_failed(e.message)
                await self._store.save_notification(notification)
                raise
            return notification_id

        task = asyncio.create_task(self._deliver_now(notification_id),
                                   name=f"deliver-{notification_id}")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return notification_id

    async def _deliver_now(self, notification_id: UUID) -> None:
        try:
            outcome = await self._engine.deliver(notification_id)
            notification = outcome.notification
            if notification.status == NotificationStatus.PENDING and notification.next_retry_at:
                try:
                    await self._coordinator.enqueue(notification_id, notification.next_retry_at,
                                                    error_message=notification.last_error)
                except QueueError as e:
                    await self._coordinator.fail_notification(notification, e.message)
        except Exception as e:
            logger.error("immediate_delivery_failed", notification_id=str(notification_id),
                         error=str(e))

    async def deliver(self, notification_id: UUID) -> DeliveryOutcome:
        """Run one delivery attempt now."""
        return await self._engine.deliver(notification_id)

    async def cancel(self, notification_id: UUID) -> bool:
        """Cancel a QUEUED or PENDING notification; anything else is a no-op returning False."""
        notification = await self._store.get_notification(notification_id)
        if notification is None or not notification.is_cancellable:
            logger.info("notification_cancel_ignored", notification_id=str(notification_id),
                        status=notification.status.value if notification else None)
            return False

        await self._coordinator.cancel(notification_id)
        notification.mark_cancelled()
        await self._store.save_notification(notification)
        logger.info("notification_cancelled", notification_id=str(notification_id))
        return True

    async def mark_read(self, notification_id: UUID, user_id: str) -> bool:
        """Record that the recipient opened a displayed in-app notification."""
        notification = await self._store.get_notification(notification_id)
        if notification is None or notification.recipient_id != user_id:
            return False
        if NotificationChannel.IN_APP not in notification.channels:
            return False
        if not notification.channel_state(NotificationChannel.IN_APP).is_delivered:
            return False
        if not notification.is_read:
            notification.mark_read()
            await self._store.save_notification(notification)
            logger.info("notification_read", notification_id=str(notification_id))
        return True

    async def get_notification(self, notification_id: UUID) -> Notification | None:
        return await self._store.get_notification(notification_id)

    async def get_queue_stats(self) -> QueueStats:
        return await self._coordinator.get_queue_stats()

    async def register_webhook(self, webhook: WebhookSubscription) -> WebhookSubscription:
        return await self._store.save_webhook(webhook)

    async def create_template(self, data: TemplateInput) -> Template:
        return await self._templates.create_template(data)


def build_channel_registry(config: NotificationEngineConfig) -> ChannelRegistry:
    """Register a sender for every enabled channel; IN_APP is always available."""
    senders: list[ChannelSender] = [InAppSender()]
    if config.email.enabled:
        senders.append(EmailSender(config.email))
    if config.sms.enabled:
        senders.append(SMSSender(config.sms))
    if config.push.enabled:
        senders.append(PushSender(config.push))
    return ChannelRegistry(senders)


def create_notification_service(
    store: NotificationStore,
    broker: JobBroker,
    config: NotificationEngineConfig | None = None,
    senders: list[ChannelSender] | None = None,
) -> NotificationService:
    """
    Factory function to create a configured NotificationService.

    Args:
        store: Persistence backend
        broker: Job broker backend
        config: Engine configuration; loaded from the environment when omitted
        senders: Explicit senders; by default built from the enabled channel configs

    Returns:
        Configured NotificationService instance
    """
    config = config or NotificationEngineConfig()
    channels = ChannelRegistry(senders) if senders is not None else build_channel_registry(config)
    return NotificationService(store, broker, channels, config)
