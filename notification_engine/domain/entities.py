"""
Notification Engine - Domain Entities.

Core domain entities with identity for notifications, queue entries,
webhook subscriptions and templates, plus the closed enumerations and the
normalization rules applied to caller input.

Architecture Layer: Domain
Principles: Rich Domain Model, Entity Identity, Closed Enumerations
"""
from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator
import structlog

logger = structlog.get_logger(__name__)

# Typed open map value: extensible keys, primitive values only.
Primitive = Union[str, int, float, bool, None]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class NotificationChannel(str, Enum):
    """Delivery media."""
    EMAIL = "EMAIL"
    SMS = "SMS"
    PUSH = "PUSH"
    IN_APP = "IN_APP"


class NotificationType(str, Enum):
    """Business event that produced the notification."""
    APPOINTMENT_CONFIRMATION = "APPOINTMENT_CONFIRMATION"
    APPOINTMENT_REMINDER_24H = "APPOINTMENT_REMINDER_24H"
    APPOINTMENT_REMINDER_1H = "APPOINTMENT_REMINDER_1H"
    APPOINTMENT_REMINDER_15M = "APPOINTMENT_REMINDER_15M"
    APPOINTMENT_CANCELLED = "APPOINTMENT_CANCELLED"
    APPOINTMENT_RESCHEDULED = "APPOINTMENT_RESCHEDULED"
    CONSULTATION_STARTING = "CONSULTATION_STARTING"
    CONSULTATION_ENDED = "CONSULTATION_ENDED"
    PAYMENT_AUTHORIZED = "PAYMENT_AUTHORIZED"
    PAYMENT_CAPTURED = "PAYMENT_CAPTURED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    REFUND_PROCESSED = "REFUND_PROCESSED"
    PAYOUT_SENT = "PAYOUT_SENT"
    INVOICE_GENERATED = "INVOICE_GENERATED"
    NEW_MESSAGE = "NEW_MESSAGE"
    VIDEO_CALL_INVITATION = "VIDEO_CALL_INVITATION"
    COMMENT_ADDED = "COMMENT_ADDED"
    MENTION_IN_COMMENT = "MENTION_IN_COMMENT"
    SECURITY_ALERT = "SECURITY_ALERT"
    LOGIN_ALERT = "LOGIN_ALERT"
    ACCOUNT_VERIFICATION = "ACCOUNT_VERIFICATION"
    PASSWORD_RESET = "PASSWORD_RESET"
    DOCUMENT_SHARED = "DOCUMENT_SHARED"
    DOCUMENT_SIGNED = "DOCUMENT_SIGNED"
    NEWSLETTER = "NEWSLETTER"
    PROMOTION = "PROMOTION"
    SYSTEM_MAINTENANCE = "SYSTEM_MAINTENANCE"
    FEATURE_ANNOUNCEMENT = "FEATURE_ANNOUNCEMENT"
    LEGAL_NOTICE = "LEGAL_NOTICE"
    PRIVACY_UPDATE = "PRIVACY_UPDATE"
    TERMS_UPDATE = "TERMS_UPDATE"


class NotificationCategory(str, Enum):
    """Coarse grouping of notification types."""
    BOOKING = "BOOKING"
    PAYMENT = "PAYMENT"
    COMMUNICATION = "COMMUNICATION"
    SECURITY = "SECURITY"
    LEGAL = "LEGAL"
    MARKETING = "MARKETING"
    SYSTEM = "SYSTEM"
    ALERT = "ALERT"
    UPDATE = "UPDATE"


class NotificationPriority(str, Enum):
    """Caller-declared importance."""
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    URGENT = "URGENT"
    CRITICAL = "CRITICAL"


class NotificationStatus(str, Enum):
    """Overall notification lifecycle status."""
    QUEUED = "QUEUED"
    SENDING = "SENDING"
    PENDING = "PENDING"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class DeliveryStatus(str, Enum):
    """Status of one channel of one notification."""
    NOT_SENT = "NOT_SENT"
    QUEUED = "QUEUED"
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"
    OPENED = "OPENED"


class QueueStatus(str, Enum):
    """Status of the queue entry tracking a notification's scheduling."""
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_NOTIFICATION_STATUSES = frozenset({
    NotificationStatus.DELIVERED,
    NotificationStatus.FAILED,
    NotificationStatus.CANCELLED,
})

TERMINAL_QUEUE_STATUSES = frozenset({
    QueueStatus.COMPLETED,
    QueueStatus.FAILED,
    QueueStatus.CANCELLED,
})

CANCELLABLE_STATUSES = frozenset({NotificationStatus.QUEUED, NotificationStatus.PENDING})

_DISPLAYED_STATUSES = frozenset({DeliveryStatus.DELIVERED, DeliveryStatus.OPENED})

LEGACY_TYPE_ALIASES: dict[str, NotificationType] = {
    "BOOKING_CONFIRMED": NotificationType.APPOINTMENT_CONFIRMATION,
    "BOOKING_CONFIRMATION": NotificationType.APPOINTMENT_CONFIRMATION,
    "NEW_BOOKING": NotificationType.APPOINTMENT_CONFIRMATION,
    "BOOKING_CANCELLED": NotificationType.APPOINTMENT_CANCELLED,
    "BOOKING_RESCHEDULED": NotificationType.APPOINTMENT_RESCHEDULED,
    "APPOINTMENT_REMINDER": NotificationType.APPOINTMENT_REMINDER_1H,
    "URGENT_MESSAGE": NotificationType.NEW_MESSAGE,
    "MESSAGE_RECEIVED": NotificationType.NEW_MESSAGE,
    "CALL_INCOMING": NotificationType.VIDEO_CALL_INVITATION,
    "PAYMENT_CONFIRMATION": NotificationType.PAYMENT_CAPTURED,
    "SYSTEM_UPDATE": NotificationType.SYSTEM_MAINTENANCE,
    "ACCOUNT_SECURITY": NotificationType.SECURITY_ALERT,
}

_TYPE_CATEGORIES: dict[NotificationCategory, tuple[NotificationType, ...]] = {
    NotificationCategory.BOOKING: (
        NotificationType.APPOINTMENT_CONFIRMATION,
        NotificationType.APPOINTMENT_REMINDER_24H,
        NotificationType.APPOINTMENT_REMINDER_1H,
        NotificationType.APPOINTMENT_REMINDER_15M,
        NotificationType.APPOINTMENT_CANCELLED,
        NotificationType.APPOINTMENT_RESCHEDULED,
        NotificationType.CONSULTATION_STARTING,
        NotificationType.CONSULTATION_ENDED,
    ),
    NotificationCategory.PAYMENT: (
        NotificationType.PAYMENT_AUTHORIZED,
        NotificationType.PAYMENT_CAPTURED,
        NotificationType.PAYMENT_FAILED,
        NotificationType.REFUND_PROCESSED,
        NotificationType.PAYOUT_SENT,
        NotificationType.INVOICE_GENERATED,
    ),
    NotificationCategory.COMMUNICATION: (
        NotificationType.NEW_MESSAGE,
        NotificationType.VIDEO_CALL_INVITATION,
        NotificationType.COMMENT_ADDED,
        NotificationType.MENTION_IN_COMMENT,
    ),
    NotificationCategory.SECURITY: (
        NotificationType.SECURITY_ALERT,
        NotificationType.LOGIN_ALERT,
        NotificationType.ACCOUNT_VERIFICATION,
        NotificationType.PASSWORD_RESET,
    ),
    NotificationCategory.LEGAL: (
        NotificationType.DOCUMENT_SHARED,
        NotificationType.DOCUMENT_SIGNED,
    ),
    NotificationCategory.MARKETING: (
        NotificationType.NEWSLETTER,
        NotificationType.PROMOTION,
    ),
    NotificationCategory.SYSTEM: (
        NotificationType.SYSTEM_MAINTENANCE,
        NotificationType.FEATURE_ANNOUNCEMENT,
        NotificationType.LEGAL_NOTICE,
        NotificationType.PRIVACY_UPDATE,
        NotificationType.TERMS_UPDATE,
    ),
}

CATEGORY_BY_TYPE: dict[NotificationType, NotificationCategory] = {
    notification_type: category
    for category, types in _TYPE_CATEGORIES.items()
    for notification_type in types
}

DEFAULT_NOTIFICATION_TYPE = NotificationType.SYSTEM_MAINTENANCE
DEFAULT_CATEGORY = NotificationCategory.UPDATE
DEFAULT_PRIORITY = NotificationPriority.NORMAL
DEFAULT_CHANNELS: tuple[NotificationChannel, ...] = (NotificationChannel.IN_APP,)


def _normalize(value: Any) -> str:
    if isinstance(value, Enum):
        value = value.value
    return str(value).strip().upper()


def resolve_notification_type(value: str | NotificationType | None) -> NotificationType:
    """Map caller input to a NotificationType; unknown input falls back to SYSTEM_MAINTENANCE."""
    if value is None or value == "":
        return DEFAULT_NOTIFICATION_TYPE
    normalized = _normalize(value)
    if normalized in NotificationType.__members__:
        return NotificationType(normalized)
    resolved = LEGACY_TYPE_ALIASES.get(normalized)
    if resolved is None:
        logger.info("notification_type_defaulted", requested=normalized,
                    resolved=DEFAULT_NOTIFICATION_TYPE.value)
        return DEFAULT_NOTIFICATION_TYPE
    return resolved


def resolve_category(
    value: str | NotificationCategory | None,
    notification_type: NotificationType,
) -> NotificationCategory:
    """Explicit valid category wins, otherwise derive it from the type."""
    if value:
        normalized = _normalize(value)
        if normalized in NotificationCategory.__members__:
            return NotificationCategory(normalized)
    return CATEGORY_BY_TYPE.get(notification_type, DEFAULT_CATEGORY)


def resolve_notification_priority(value: str | NotificationPriority | None) -> NotificationPriority:
    if value:
        normalized = _normalize(value)
        if normalized in NotificationPriority.__members__:
            return NotificationPriority(normalized)
    return DEFAULT_PRIORITY


def resolve_channels(
    values: Iterable[str | NotificationChannel] | str | None,
) -> list[NotificationChannel]:
    """Normalize a requested channel list; unknown entries are dropped, empty -> IN_APP."""
    if values is None:
        return list(DEFAULT_CHANNELS)
    if isinstance(values, (str, NotificationChannel)):
        values = [values]
    resolved: list[NotificationChannel] = []
    for value in values:
        normalized = _normalize(value)
        if normalized not in NotificationChannel.__members__:
            logger.info("notification_channel_ignored", channel=normalized)
            continue
        channel = NotificationChannel(normalized)
        if channel not in resolved:
            resolved.append(channel)
    return resolved or list(DEFAULT_CHANNELS)


def resolve_scheduled_for(value: datetime | str | None) -> datetime | None:
    """Parse a datetime or ISO-8601 string; unparseable input means 'now'."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    try:
        parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except ValueError:
        logger.warning("scheduled_for_unparseable", value=str(value))
        return None
    return ensure_utc(parsed)


class ChannelDeliveryState(BaseModel):
    """Independent delivery state for one channel of a notification."""
    status: DeliveryStatus = Field(default=DeliveryStatus.NOT_SENT)
    sent_at: datetime | None = Field(default=None)
    delivered_at: datetime | None = Field(default=None)
    displayed_at: datetime | None = Field(default=None)
    failure_reason: str | None = Field(default=None)

    @property
    def is_delivered(self) -> bool:
        return self.status in _DISPLAYED_STATUSES


class Notification(BaseModel):
    """
    Core notification entity with full lifecycle tracking.

    Owned by the store; mutated only by the delivery engine, the retry
    scheduler and explicit cancellation/read operations.
    """
    notification_id: UUID = Field(default_factory=uuid4)
    recipient_id: str = Field(..., min_length=1)
    recipient_email: str | None = Field(default=None)
    recipient_phone: str | None = Field(default=None)
    recipient_device_token: str | None = Field(default=None)
    recipient_name: str | None = Field(default=None)
    sender_id: str | None = Field(default=None)
    sender_name: str | None = Field(default=None)
    title: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)
    notification_type: NotificationType = Field(default=DEFAULT_NOTIFICATION_TYPE)
    category: NotificationCategory = Field(default=DEFAULT_CATEGORY)
    priority: NotificationPriority = Field(default=DEFAULT_PRIORITY)
    channels: list[NotificationChannel] = Field(default_factory=lambda: list(DEFAULT_CHANNELS),
                                                min_length=1)
    status: NotificationStatus = Field(default=NotificationStatus.QUEUED)
    channel_states: dict[NotificationChannel, ChannelDeliveryState] = Field(default_factory=dict)
    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=3, ge=1)
    next_retry_at: datetime | None = Field(default=None)
    scheduled_for: datetime | None = Field(default=None)
    template_id: UUID | None = Field(default=None)
    template_variables: dict[str, Primitive] = Field(default_factory=dict)
    context_type: str | None = Field(default=None)
    context_id: str | None = Field(default=None)
    metadata: dict[str, Primitive] = Field(default_factory=dict)
    last_error: str | None = Field(default=None)
    is_read: bool = Field(default=False)
    read_at: datetime | None = Field(default=None)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    last_interaction_at: datetime | None = Field(default=None)

    @field_validator("channels", mode="before")
    @classmethod
    def normalize_channels(cls, v: Any) -> list[NotificationChannel]:
        return resolve_channels(v)

    @field_validator("recipient_email", mode="before")
    @classmethod
    def normalize_email(cls, v: str | None) -> str | None:
        if v is not None:
            v = v.strip().lower() or None
        return v

    def model_post_init(self, __context: Any) -> None:
        for channel in self.channels:
            self.channel_states.setdefault(channel, ChannelDeliveryState())

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_NOTIFICATION_STATUSES

    @property
    def is_cancellable(self) -> bool:
        return self.status in CANCELLABLE_STATUSES

    def destination_for(self, channel: NotificationChannel) -> str | None:
        """Address used by a channel sender; IN_APP targets the recipient id."""
        mapping = {
            NotificationChannel.EMAIL: self.recipient_email,
            NotificationChannel.SMS: self.recipient_phone,
            NotificationChannel.PUSH: self.recipient_device_token,
            NotificationChannel.IN_APP: self.recipient_id,
        }
        return mapping.get(channel)

    def channel_state(self, channel: NotificationChannel) -> ChannelDeliveryState:
        return self.channel_states.setdefault(channel, ChannelDeliveryState())

    def _touch(self) -> None:
        self.updated_at = utc_now()

    def mark_channels_queued(self) -> None:
        """Mark every requested channel QUEUED."""
        for channel in self.channels:
            self.channel_state(channel).status = DeliveryStatus.QUEUED
        self._touch()

    def mark_sending(self) -> None:
        """Mark the notification as currently being attempted."""
        self.status = NotificationStatus.SENDING
        self.last_interaction_at = utc_now()
        self._touch()

    def mark_channel_delivered(self, channel: NotificationChannel, at: datetime | None = None) -> None:
        at = at or utc_now()
        state = self.channel_state(channel)
        state.status = DeliveryStatus.DELIVERED
        state.failure_reason = None
        if channel == NotificationChannel.IN_APP:
            state.displayed_at = at
        else:
            state.sent_at = at
            state.delivered_at = at
        self._touch()

    def mark_channel_failed(self, channel: NotificationChannel, reason: str) -> None:
        state = self.channel_state(channel)
        state.status = DeliveryStatus.FAILED
        state.failure_reason = reason
        self._touch()

    def any_channel_delivered(self) -> bool:
        return any(self.channel_state(c).is_delivered for c in self.channels)

    def mark_failed(self, error: str | None) -> None:
        """Finalize as FAILED without another attempt."""
        self.status = NotificationStatus.FAILED
        self.next_retry_at = None
        self.last_error = error
        self._touch()

    def mark_cancelled(self) -> None:
        self.status = NotificationStatus.CANCELLED
        self.next_retry_at = None
        for channel in self.channels:
            state = self.channel_state(channel)
            if not state.is_delivered:
                state.status = DeliveryStatus.NOT_SENT
        self._touch()

    def mark_read(self, at: datetime | None = None) -> None:
        """Record that the recipient opened the in-app notification."""
        at = at or utc_now()
        self.is_read = True
        self.read_at = self.read_at or at
        self.channel_state(NotificationChannel.IN_APP).status = DeliveryStatus.OPENED
        self._touch()

    def public_snapshot(self) -> dict[str, Any]:
        """JSON-safe record for third parties; template variables are withheld."""
        return self.model_dump(mode="json", exclude={"template_variables"})


class QueueEntry(BaseModel):
    """Persisted, auditable scheduling record; one per notification."""
    entry_id: UUID = Field(default_factory=uuid4)
    notification_id: UUID = Field(...)
    queue_name: str = Field(default="notification-delivery")
    status: QueueStatus = Field(default=QueueStatus.QUEUED)
    attempts: int = Field(default=0, ge=0)
    next_attempt: datetime | None = Field(default=None)
    error_message: str | None = Field(default=None)
    processed_at: datetime | None = Field(default=None)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_active(self) -> bool:
        return self.status not in TERMINAL_QUEUE_STATUSES

    def mark_queued(self, next_attempt: datetime, error_message: str | None = None) -> None:
        self.status = QueueStatus.QUEUED
        self.next_attempt = next_attempt
        self.error_message = error_message
        self.processed_at = None
        self.updated_at = utc_now()

    def mark_processing(self) -> None:
        self.status = QueueStatus.PROCESSING
        self.attempts += 1
        self.error_message = None
        self.updated_at = utc_now()

    def mark_completed(self) -> None:
        self.status = QueueStatus.COMPLETED
        self.error_message = None
        self.processed_at = utc_now()
        self.updated_at = utc_now()

    def mark_failed(self, error_message: str | None) -> None:
        self.status = QueueStatus.FAILED
        self.error_message = error_message
        self.processed_at = utc_now()
        self.updated_at = utc_now()

    def mark_cancelled(self, reason: str = "Cancelled by user") -> None:
        self.status = QueueStatus.CANCELLED
        self.error_message = reason
        self.processed_at = utc_now()
        self.updated_at = utc_now()


class QueueJob(BaseModel):
    """Broker-side job; at most one waiting or delayed job per notification."""
    notification_id: UUID
    priority: int = Field(default=5, ge=1, le=10)
    ready_at: datetime = Field(default_factory=utc_now)
    enqueued_at: datetime = Field(default_factory=utc_now)

    def is_ready(self, now: datetime | None = None) -> bool:
        return self.ready_at <= (now or utc_now())

    def sort_key(self) -> tuple[int, datetime, datetime]:
        return (self.priority, self.ready_at, self.enqueued_at)


class WebhookSubscription(BaseModel):
    """External subscriber to delivery events."""
    webhook_id: UUID = Field(default_factory=uuid4)
    name: str = Field(default="")
    url: str = Field(..., min_length=1)
    secret: str = Field(..., min_length=1)
    events: list[Any] | dict[str, Any] | str | None = Field(default_factory=list)
    auth_header: str | None = Field(default=None)
    is_active: bool = Field(default=True)
    success_count: int = Field(default=0, ge=0)
    failure_count: int = Field(default=0, ge=0)
    last_triggered: datetime | None = Field(default=None)
    created_at: datetime = Field(default_factory=utc_now)


class Template(BaseModel):
    """Reusable per-channel notification content with `{{variable}}` placeholders."""
    template_id: UUID = Field(default_factory=uuid4)
    name: str = Field(..., min_length=1)
    template_key: str = Field(default="")
    description: str | None = Field(default=None)
    notification_type: NotificationType
    category: NotificationCategory
    email_subject: str | None = Field(default=None)
    email_body_text: str | None = Field(default=None)
    email_body_html: str | None = Field(default=None)
    sms_content: str | None = Field(default=None)
    push_title: str | None = Field(default=None)
    push_body: str | None = Field(default=None)
    in_app_title: str | None = Field(default=None)
    in_app_message: str | None = Field(default=None)
    variables: list[str] = Field(default_factory=list)
    sample_data: dict[str, Primitive] = Field(default_factory=dict)
    is_active: bool = Field(default=True)
    is_public: bool = Field(default=False)
    requires_approval: bool = Field(default=False)
    version: str = Field(default="1.0")
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
