"""
Unit tests for domain entities and input normalization.
"""
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from pydantic import ValidationError

from notification_engine.domain.entities import (
    DeliveryStatus,
    Notification,
    NotificationCategory,
    NotificationChannel,
    NotificationPriority,
    NotificationStatus,
    NotificationType,
    QueueEntry,
    QueueJob,
    QueueStatus,
    resolve_category,
    resolve_channels,
    resolve_notification_priority,
    resolve_notification_type,
    resolve_scheduled_for,
    utc_now,
)


class TestResolveNotificationType:
    """Tests for notification type normalization."""

    def test_known_type(self):
        assert resolve_notification_type("PAYMENT_CAPTURED") == NotificationType.PAYMENT_CAPTURED

    def test_case_insensitive(self):
        assert resolve_notification_type("new_message") == NotificationType.NEW_MESSAGE

    @pytest.mark.parametrize("legacy,expected", [
        ("BOOKING_CONFIRMED", NotificationType.APPOINTMENT_CONFIRMATION),
        ("APPOINTMENT_REMINDER", NotificationType.APPOINTMENT_REMINDER_1H),
        ("URGENT_MESSAGE", NotificationType.NEW_MESSAGE),
        ("CALL_INCOMING", NotificationType.VIDEO_CALL_INVITATION),
        ("PAYMENT_CONFIRMATION", NotificationType.PAYMENT_CAPTURED),
        ("SYSTEM_UPDATE", NotificationType.SYSTEM_MAINTENANCE),
    ])
    def test_legacy_aliases(self, legacy, expected):
        assert resolve_notification_type(legacy) == expected

    def test_unknown_falls_back(self):
        assert resolve_notification_type("SOMETHING_ELSE") == NotificationType.SYSTEM_MAINTENANCE
        assert resolve_notification_type(None) == NotificationType.SYSTEM_MAINTENANCE


class TestResolveCategory:
    """Tests for category derivation."""

    def test_explicit_category_wins(self):
        assert resolve_category("marketing", NotificationType.PAYMENT_CAPTURED) == NotificationCategory.MARKETING

    def test_derived_from_type(self):
        assert resolve_category(None, NotificationType.PAYMENT_FAILED) == NotificationCategory.PAYMENT
        assert resolve_category(None, NotificationType.LOGIN_ALERT) == NotificationCategory.SECURITY
        assert resolve_category(None, NotificationType.DOCUMENT_SIGNED) == NotificationCategory.LEGAL

    def test_invalid_category_is_derived(self):
        assert resolve_category("BOGUS", NotificationType.NEW_MESSAGE) == NotificationCategory.COMMUNICATION


class TestResolvePriority:

    def test_valid_and_default(self):
        assert resolve_notification_priority("urgent") == NotificationPriority.URGENT
        assert resolve_notification_priority("nope") == NotificationPriority.NORMAL
        assert resolve_notification_priority(None) == NotificationPriority.NORMAL


class TestResolveChannels:
    """Tests for channel list normalization."""

    def test_empty_defaults_to_in_app(self):
        assert resolve_channels([]) == [NotificationChannel.IN_APP]
        assert resolve_channels(None) == [NotificationChannel.IN_APP]

    def test_unknown_dropped_and_deduplicated(self):
        assert resolve_channels(["email", "FAX", "EMAIL", "sms"]) == [
            NotificationChannel.EMAIL, NotificationChannel.SMS,
        ]

    def test_only_unknown_defaults(self):
        assert resolve_channels(["CARRIER_PIGEON"]) == [NotificationChannel.IN_APP]


class TestResolveScheduledFor:

    def test_iso_string_with_z(self):
        parsed = resolve_scheduled_for("2030-01-01T10:00:00Z")
        assert parsed == datetime(2030, 1, 1, 10, 0, tzinfo=timezone.utc)

    def test_naive_datetime_is_utc(self):
        parsed = resolve_scheduled_for(datetime(2030, 1, 1, 10, 0))
        assert parsed.tzinfo is not None

    def test_unparseable_is_none(self):
        assert resolve_scheduled_for("not a date") is None
        assert resolve_scheduled_for("") is None


class TestNotification:
    """Tests for the Notification entity."""

    def test_channel_states_seeded(self, make_notification):
        notification = make_notification()
        assert set(notification.channel_states) == {NotificationChannel.EMAIL, NotificationChannel.IN_APP}
        assert all(s.status == DeliveryStatus.NOT_SENT for s in notification.channel_states.values())

    def test_requires_title(self):
        with pytest.raises(ValidationError):
            Notification(recipient_id="u", title="", message="m")

    def test_max_retries_floor(self):
        with pytest.raises(ValidationError):
            Notification(recipient_id="u", title="t", message="m", max_retries=0)

    def test_destination_for(self, make_notification):
        notification = make_notification(recipient_phone="+15550001111")
        assert notification.destination_for(NotificationChannel.EMAIL) == "user@example.com"
        assert notification.destination_for(NotificationChannel.SMS) == "+15550001111"
        assert notification.destination_for(NotificationChannel.PUSH) is None
        assert notification.destination_for(NotificationChannel.IN_APP) == "user-1"

    def test_mark_channel_delivered_in_app_sets_displayed(self, make_notification):
        notification = make_notification()
        notification.mark_channel_delivered(NotificationChannel.IN_APP)
        state = notification.channel_state(NotificationChannel.IN_APP)
        assert state.status == DeliveryStatus.DELIVERED
        assert state.displayed_at is not None
        assert state.sent_at is None

    def test_mark_channel_delivered_email_sets_sent(self, make_notification):
        notification = make_notification()
        notification.mark_channel_delivered(NotificationChannel.EMAIL)
        state = notification.channel_state(NotificationChannel.EMAIL)
        assert state.sent_at is not None
        assert state.delivered_at is not None

    def test_mark_cancelled_keeps_delivered_channels(self, make_notification):
        notification = make_notification()
        notification.mark_channels_queued()
        notification.mark_channel_delivered(NotificationChannel.IN_APP)
        notification.mark_cancelled()
        assert notification.status == NotificationStatus.CANCELLED
        assert notification.channel_state(NotificationChannel.EMAIL).status == DeliveryStatus.NOT_SENT
        assert notification.channel_state(NotificationChannel.IN_APP).status == DeliveryStatus.DELIVERED

    def test_mark_failed_is_final(self, make_notification):
        notification = make_notification(status=NotificationStatus.PENDING,
                                         next_retry_at=utc_now())
        notification.mark_failed("queue unavailable")
        assert notification.status == NotificationStatus.FAILED
        assert notification.next_retry_at is None
        assert notification.last_error == "queue unavailable"
        assert notification.is_terminal
        assert not notification.is_cancellable

    def test_mark_read(self, make_notification):
        notification = make_notification()
        notification.mark_channel_delivered(NotificationChannel.IN_APP)
        notification.mark_read()
        assert notification.is_read is True
        assert notification.read_at is not None
        assert notification.channel_state(NotificationChannel.IN_APP).status == DeliveryStatus.OPENED
        assert notification.channel_state(NotificationChannel.IN_APP).is_delivered

    def test_public_snapshot_omits_variables(self, make_notification):
        notification = make_notification(template_variables={"secret": "x"})
        snapshot = notification.public_snapshot()
        assert "template_variables" not in snapshot
        assert snapshot["notification_id"] == str(notification.notification_id)

    def test_json_round_trip_keeps_channel_states(self, make_notification):
        notification = make_notification()
        notification.mark_channel_failed(NotificationChannel.EMAIL, "boom")
        restored = Notification.model_validate_json(notification.model_dump_json())
        assert restored.channel_state(NotificationChannel.EMAIL).failure_reason == "boom"


class TestQueueEntry:

    def test_lifecycle(self):
        entry = QueueEntry(notification_id=uuid4())
        entry.mark_processing()
        assert entry.status == QueueStatus.PROCESSING
        assert entry.attempts == 1
        entry.mark_queued(datetime.now(timezone.utc), error_message="EMAIL: down")
        assert entry.is_active
        assert entry.error_message == "EMAIL: down"
        entry.mark_cancelled()
        assert entry.status == QueueStatus.CANCELLED
        assert entry.error_message == "Cancelled by user"
        assert entry.processed_at is not None
        assert not entry.is_active


class TestQueueJob:

    def test_sort_key_orders_by_priority_then_ready_time(self):
        now = datetime.now(timezone.utc)
        urgent_late = QueueJob(notification_id=uuid4(), priority=1, ready_at=now)
        relaxed_early = QueueJob(notification_id=uuid4(), priority=5, ready_at=now - timedelta(minutes=5))
        assert min([relaxed_early, urgent_late], key=QueueJob.sort_key) is urgent_late

    def test_is_ready(self):
        now = datetime.now(timezone.utc)
        assert QueueJob(notification_id=uuid4(), ready_at=now - timedelta(seconds=1)).is_ready(now)
        assert not QueueJob(notification_id=uuid4(), ready_at=now + timedelta(minutes=1)).is_ready(now)
