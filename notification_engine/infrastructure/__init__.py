"""Notification Engine - Infrastructure Layer: Redis client, stores and job brokers."""
from .redis import RedisClient
from .repository import InMemoryNotificationStore, NotificationStore, RedisNotificationStore
from .broker import InMemoryJobBroker, JobBroker, RedisJobBroker

__all__ = [
    "RedisClient",
    "NotificationStore",
    "InMemoryNotificationStore",
    "RedisNotificationStore",
    "JobBroker",
    "InMemoryJobBroker",
    "RedisJobBroker",
]
