"""
Multi-channel notification delivery engine.

Durable job queue, per-channel delivery and retry state machine, template
rendering and signed webhook fan-out across EMAIL, SMS, PUSH and IN_APP.

Architecture:
    - Domain Layer: Entities, templates, channels, delivery, retry, queue, service
    - Infrastructure Layer: Redis client, stores, job brokers
    - Interface Layer: REST API endpoints

Usage:
    from notification_engine.domain import NotificationService, SendNotificationOptions
    from notification_engine.api import router as notification_router
"""
__version__ = "1.0.0"
