"""
Pytest configuration and fixtures for notification engine tests.
"""
from __future__ import annotations

from typing import Any

import pytest

from notification_engine.config import (
    NotificationEngineConfig,
    QueueConfig,
    RetryConfig,
    reset_config,
)
from notification_engine.domain.entities import Notification
from notification_engine.infrastructure.broker import InMemoryJobBroker
from notification_engine.infrastructure.repository import InMemoryNotificationStore


@pytest.fixture(autouse=True)
def _reset_config():
    reset_config()
    yield
    reset_config()


@pytest.fixture
def store():
    return InMemoryNotificationStore()


@pytest.fixture
def broker():
    return InMemoryJobBroker()


@pytest.fixture
def engine_config():
    """Config with fast polling so worker tests finish quickly."""
    return NotificationEngineConfig(
        queue=QueueConfig(poll_interval_seconds=0.01, lease_retry_delay_seconds=0.0),
        retry=RetryConfig(max_retries=3, base_delay_minutes=5.0),
    )


@pytest.fixture
def make_notification():
    """Factory for notifications with sensible defaults."""
    def _make(**overrides: Any) -> Notification:
        data: dict[str, Any] = {
            "recipient_id": "user-1",
            "recipient_email": "user@example.com",
            "title": "Hello",
            "message": "World",
            "channels": ["EMAIL", "IN_APP"],
        }
        data.update(overrides)
        return Notification(**data)
    return _make
