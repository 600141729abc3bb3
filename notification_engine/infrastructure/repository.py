"""
Notification Engine - Repository Layer.

Durable record of notifications, queue entries, webhook subscriptions and
templates. The store holds no business logic; every lifecycle decision is
made by the domain layer before an entity is saved.
"""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections import Counter
from datetime import datetime
from uuid import UUID

import structlog

from ..domain.entities import (
    Notification,
    QueueEntry,
    QueueStatus,
    Template,
    WebhookSubscription,
    utc_now,
)
from .redis import RedisClient

logger = structlog.get_logger(__name__)


class NotificationStore(ABC):
    """Abstract persistence boundary for the four engine entities."""

    @abstractmethod
    async def save_notification(self, notification: Notification) -> Notification:
        """Insert or replace a notification."""

    @abstractmethod
    async def get_notification(self, notification_id: UUID) -> Notification | None:
        """Get notification by ID."""

    @abstractmethod
    async def list_notifications(self, recipient_id: str | None = None,
                                 limit: int = 100) -> list[Notification]:
        """List notifications, newest first, optionally for one recipient."""

    @abstractmethod
    async def save_queue_entry(self, entry: QueueEntry) -> QueueEntry:
        """Insert or replace the queue entry of a notification."""

    @abstractmethod
    async def get_queue_entry(self, notification_id: UUID) -> QueueEntry | None:
        """Get the queue entry for a notification."""

    @abstractmethod
    async def count_queue_entries_by_status(self) -> dict[QueueStatus, int]:
        """Count persisted queue entries grouped by status."""

    @abstractmethod
    async def list_queue_entries(self, status: QueueStatus | None = None) -> list[QueueEntry]:
        """List persisted queue entries, optionally only those in one status."""

    @abstractmethod
    async def save_webhook(self, webhook: WebhookSubscription) -> WebhookSubscription:
        """Insert or replace a webhook subscription."""

    @abstractmethod
    async def get_webhook(self, webhook_id: UUID) -> WebhookSubscription | None:
        """Get webhook subscription by ID."""

    @abstractmethod
    async def list_active_webhooks(self) -> list[WebhookSubscription]:
        """All subscriptions with is_active set."""

    @abstractmethod
    async def record_webhook_result(self, webhook_id: UUID, success: bool,
                                    triggered_at: datetime | None = None) -> None:
        """Bump the success or failure counter and last_triggered."""

    @abstractmethod
    async def save_template(self, template: Template) -> Template:
        """Insert or replace a template."""

    @abstractmethod
    async def get_template(self, template_id: UUID) -> Template | None:
        """Get template by ID."""

    @abstractmethod
    async def list_templates(self) -> list[Template]:
        """All templates ordered by category then name."""

    async def close(self) -> None:
        """Release backend resources."""


class InMemoryNotificationStore(NotificationStore):
    """In-memory implementation for development and testing."""

    def __init__(self) -> None:
        self._notifications: dict[UUID, Notification] = {}
        self._queue_entries: dict[UUID, QueueEntry] = {}
        self._webhooks: dict[UUID, WebhookSubscription] = {}
        self._templates: dict[UUID, Template] = {}
        self._lock = asyncio.Lock()

    # Entities are copied on the way in and out so callers never share
    # mutable state with the store, mirroring a real database round-trip.

    async def save_notification(self, notification: Notification) -> Notification:
        async with self._lock:
            self._notifications[notification.notification_id] = notification.model_copy(deep=True)
            logger.debug("notification_saved", notification_id=str(notification.notification_id),
                         status=notification.status.value)
            return notification

    async def get_notification(self, notification_id: UUID) -> Notification | None:
        notification = self._notifications.get(notification_id)
        return notification.model_copy(deep=True) if notification else None

    async def list_notifications(self, recipient_id: str | None = None,
                                 limit: int = 100) -> list[Notification]:
        notifications = [
            n for n in self._notifications.values()
            if recipient_id is None or n.recipient_id == recipient_id
        ]
        notifications.sort(key=lambda n: n.created_at, reverse=True)
        return [n.model_copy(deep=True) for n in notifications[:limit]]

    async def save_queue_entry(self, entry: QueueEntry) -> QueueEntry:
        async with self._lock:
            self._queue_entries[entry.notification_id] = entry.model_copy(deep=True)
            return entry

    async def get_queue_entry(self, notification_id: UUID) -> QueueEntry | None:
        entry = self._queue_entries.get(notification_id)
        return entry.model_copy(deep=True) if entry else None

    async def count_queue_entries_by_status(self) -> dict[QueueStatus, int]:
        return dict(Counter(e.status for e in self._queue_entries.values()))

    async def list_queue_entries(self, status: QueueStatus | None = None) -> list[QueueEntry]:
        return [e.model_copy(deep=True) for e in self._queue_entries.values()
                if status is None or e.status == status]

    async def save_webhook(self, webhook: WebhookSubscription) -> WebhookSubscription:
        async with self._lock:
            self._webhooks[webhook.webhook_id] = webhook.model_copy(deep=True)
            return webhook

    async def get_webhook(self, webhook_id: UUID) -> WebhookSubscription | None:
        webhook = self._webhooks.get(webhook_id)
        return webhook.model_copy(deep=True) if webhook else None

    async def list_active_webhooks(self) -> list[WebhookSubscription]:
        return [w.model_copy(deep=True) for w in self._webhooks.values() if w.is_active]

    async def record_webhook_result(self, webhook_id: UUID, success: bool,
                                    triggered_at: datetime | None = None) -> None:
        async with self._lock:
            webhook = self._webhooks.get(webhook_id)
            if webhook is None:
                return
            if success:
                webhook.success_count += 1
            else:
                webhook.failure_count += 1
            webhook.last_triggered = triggered_at or utc_now()

    async def save_template(self, template: Template) -> Template:
        async with self._lock:
            self._templates[template.template_id] = template.model_copy(deep=True)
            return template

    async def get_template(self, template_id: UUID) -> Template | None:
        template = self._templates.get(template_id)
        return template.model_copy(deep=True) if template else None

    async def list_templates(self) -> list[Template]:
        templates = sorted(self._templates.values(), key=lambda t: (t.category.value, t.name))
        return [t.model_copy(deep=True) for t in templates]


class RedisNotificationStore(NotificationStore):
    """
    Redis-backed store: one hash per entity type, JSON documents per field.

    Queue entries are keyed by notification id, which enforces the
    one-entry-per-notification invariant at the storage level.
    """
    NOTIFICATIONS = "store:notifications"
    QUEUE_ENTRIES = "store:queue_entries"
    WEBHOOKS = "store:webhooks"
    TEMPLATES = "store:templates"

    def __init__(self, client: RedisClient) -> None:
        self._client = client

    async def save_notification(self, notification: Notification) -> Notification:
        await self._client.hset(self.NOTIFICATIONS, {
            str(notification.notification_id): notification.model_dump_json(),
        })
        return notification

    async def get_notification(self, notification_id: UUID) -> Notification | None:
        data = await self._client.hget(self.NOTIFICATIONS, str(notification_id))
        return Notification.model_validate(data) if data else None

    async def list_notifications(self, recipient_id: str | None = None,
                                 limit: int = 100) -> list[Notification]:
        notifications = [Notification.model_validate(v) for v in await self._client.hvals(self.NOTIFICATIONS)]
        if recipient_id is not None:
            notifications = [n for n in notifications if n.recipient_id == recipient_id]
        notifications.sort(key=lambda n: n.created_at, reverse=True)
        return notifications[:limit]

    async def save_queue_entry(self, entry: QueueEntry) -> QueueEntry:
        await self._client.hset(self.QUEUE_ENTRIES, {str(entry.notification_id): entry.model_dump_json()})
        return entry

    async def get_queue_entry(self, notification_id: UUID) -> QueueEntry | None:
        data = await self._client.hget(self.QUEUE_ENTRIES, str(notification_id))
        return QueueEntry.model_validate(data) if data else None

    async def count_queue_entries_by_status(self) -> dict[QueueStatus, int]:
        entries = [QueueEntry.model_validate(v) for v in await self._client.hvals(self.QUEUE_ENTRIES)]
        return dict(Counter(e.status for e in entries))

    async def list_queue_entries(self, status: QueueStatus | None = None) -> list[QueueEntry]:
        entries = [QueueEntry.model_validate(v) for v in await self._client.hvals(self.QUEUE_ENTRIES)]
        return [e for e in entries if status is None or e.status == status]

    async def save_webhook(self, webhook: WebhookSubscription) -> WebhookSubscription:
        await self._client.hset(self.WEBHOOKS, {str(webhook.webhook_id): webhook.model_dump_json()})
        return webhook

    async def get_webhook(self, webhook_id: UUID) -> WebhookSubscription | None:
        data = await self._client.hget(self.WEBHOOKS, str(webhook_id))
        return WebhookSubscription.model_validate(data) if data else None

    async def list_active_webhooks(self) -> list[WebhookSubscription]:
        webhooks = [WebhookSubscription.model_validate(v) for v in await self._client.hvals(self.WEBHOOKS)]
        return [w for w in webhooks if w.is_active]

    async def record_webhook_result(self, webhook_id: UUID, success: bool,
                                    triggered_at: datetime | None = None) -> None:
        # Plain read-modify-write; counters are observability only.
        webhook = await self.get_webhook(webhook_id)
        if webhook is None:
            return
        if success:
            webhook.success_count += 1
        else:
            webhook.failure_count += 1
        webhook.last_triggered = triggered_at or utc_now()
        await self.save_webhook(webhook)

    async def save_template(self, template: Template) -> Template:
        await self._client.hset(self.TEMPLATES, {str(template.template_id): template.model_dump_json()})
        return template

    async def get_template(self, template_id: UUID) -> Template | None:
        data = await self._client.hget(self.TEMPLATES, str(template_id))
        return Template.model_validate(data) if data else None

    async def list_templates(self) -> list[Template]:
        templates = [Template.model_validate(v) for v in await self._client.hvals(self.TEMPLATES)]
        return sorted(templates, key=lambda t: (t.category.value, t.name))
