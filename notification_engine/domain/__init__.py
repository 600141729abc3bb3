"""
Notification Engine - Domain Layer.

Entities, template rendering, channel senders, the delivery engine, retry
policy, webhook fan-out, queue coordination and the orchestrating service.
"""
from .entities import (
    NotificationChannel,
    NotificationType,
    NotificationCategory,
    NotificationPriority,
    NotificationStatus,
    DeliveryStatus,
    QueueStatus,
    ChannelDeliveryState,
    Notification,
    QueueEntry,
    QueueJob,
    WebhookSubscription,
    Template,
)
from .templates import (
    RenderedContent,
    TemplateInput,
    TemplateRenderer,
    TemplateValidationResult,
    apply_variables,
)
from .channels import (
    ChannelSender,
    ChannelRegistry,
    EmailSender,
    SMSSender,
    PushSender,
    InAppSender,
)
from .retry import RetryScheduler
from .webhooks import (
    WebhookDispatcher,
    WebhookDispatchResult,
    parse_events,
    should_trigger,
    sign_payload,
    verify_signature,
)
from .delivery import DeliveryEngine, DeliveryOutcome
from .queue import QueueCoordinator, QueueStats
from .service import (
    NotificationService,
    SendNotificationOptions,
    build_channel_registry,
    create_notification_service,
)

__all__ = [
    # Entities
    "NotificationChannel",
    "NotificationType",
    "NotificationCategory",
    "NotificationPriority",
    "NotificationStatus",
    "DeliveryStatus",
    "QueueStatus",
    "ChannelDeliveryState",
    "Notification",
    "QueueEntry",
    "QueueJob",
    "WebhookSubscription",
    "Template",
    # Templates
    "RenderedContent",
    "TemplateInput",
    "TemplateRenderer",
    "TemplateValidationResult",
    "apply_variables",
    # Channels
    "ChannelSender",
    "ChannelRegistry",
    "EmailSender",
    "SMSSender",
    "PushSender",
    "InAppSender",
    # Delivery
    "RetryScheduler",
    "DeliveryEngine",
    "DeliveryOutcome",
    # Webhooks
    "WebhookDispatcher",
    "WebhookDispatchResult",
    "parse_events",
    "should_trigger",
    "sign_payload",
    "verify_signature",
    # Queue
    "QueueCoordinator",
    "QueueStats",
    # Service
    "NotificationService",
    "SendNotificationOptions",
    "build_channel_registry",
    "create_notification_service",
]
