"""Notification Engine - Retry policy: finalize-or-retry decisions, backoff and queue priority."""
from __future__ import annotations

from datetime import datetime, timedelta

import structlog

from ..config import RetryConfig
from .entities import Notification, NotificationStatus, ensure_utc, utc_now

logger = structlog.get_logger(__name__)

# (minutes until due, queue priority); lower numbers are served first
_PRIORITY_BUCKETS: tuple[tuple[float, int], ...] = ((5, 1), (30, 3), (120, 5))
_LOWEST_PRIORITY = 8


class RetryScheduler:
    """Decides the outcome of an attempt and when the next one runs."""

    def __init__(self, config: RetryConfig | None = None) -> None:
        self._config = config or RetryConfig()

    @property
    def default_max_retries(self) -> int:
        return self._config.max_retries

    def backoff(self, attempt: int) -> timedelta:
        """Delay before the retry that follows `attempt`: 2**attempt * base minutes."""
        return timedelta(minutes=(2 ** attempt) * self._config.base_delay_minutes)

    @staticmethod
    def resolve_priority(scheduled_for: datetime | None, now: datetime | None = None) -> int:
        """Map time-until-due onto a queue priority; due sooner means more urgent."""
        if scheduled_for is None:
            return _PRIORITY_BUCKETS[0][1]
        now = now or utc_now()
        minutes = (ensure_utc(scheduled_for) - now).total_seconds() / 60
        for limit, priority in _PRIORITY_BUCKETS:
            if minutes <= limit:
                return priority
        return _LOWEST_PRIORITY

    def apply(self, notification: Notification, delivered: bool,
              now: datetime | None = None) -> Notification:
        """
        Apply the retry policy to a notification after one attempt.

        Delivered notifications are finalized as DELIVERED. Otherwise the
        attempt counter advances and the notification either becomes FAILED
        (limit reached) or PENDING with `next_retry_at` set.
        """
        now = now or utc_now()
        if delivered:
            notification.status = NotificationStatus.DELIVERED
            notification.next_retry_at = None
            notification.updated_at = now
            return notification

        attempt = notification.retry_count + 1
        notification.retry_count = attempt
        if attempt >= max(1, notification.max_retries):
            notification.status = NotificationStatus.FAILED
            notification.next_retry_at = None
            logger.warning("notification_retries_exhausted",
                           notification_id=str(notification.notification_id),
                           attempts=attempt, last_error=notification.last_error)
        else:
            notification.status = NotificationStatus.PENDING
            notification.next_retry_at = now + self.backoff(attempt)
            logger.info("notification_retry_scheduled",
                        notification_id=str(notification.notification_id),
                        attempt=attempt, next_retry_at=notification.next_retry_at.isoformat())
        notification.updated_at = now
        return notification
