"""
Notification Engine - Exception Hierarchy.

Structured exceptions for the delivery engine. Every error carries a stable
error code, a category and an HTTP status so the API layer can map it without
inspecting messages.
"""
from __future__ import annotations

from enum import Enum
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


class ErrorCategory(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CHANNEL = "channel"
    QUEUE = "queue"
    TEMPLATE = "template"
    WEBHOOK = "webhook"
    INTERNAL = "internal"


class NotificationEngineError(Exception):
    """Base exception for all notification engine errors."""
    error_code: str = "NOTIFICATION_ENGINE_ERROR"
    category: ErrorCategory = ErrorCategory.INTERNAL
    http_status: int = 500

    def __init__(self, message: str, *, cause: Exception | None = None,
                 details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.details = details or {}
        self._log_error()

    def _log_error(self) -> None:
        log_data: dict[str, Any] = {
            "error_code": self.error_code,
            "category": self.category.value,
            "details": self.details,
        }
        if self.cause:
            log_data["cause_type"] = type(self.cause).__name__
            log_data["cause_message"] = str(self.cause)
        logger.debug(self.message, **log_data)

    def to_dict(self) -> dict[str, Any]:
        return {"error": {"code": self.error_code, "message": self.message,
                          "details": self.details}}


class ValidationError(NotificationEngineError):
    """Bad or missing field, rejected before anything is persisted."""
    error_code = "VALIDATION_ERROR"
    category = ErrorCategory.VALIDATION
    http_status = 400

    def __init__(self, message: str, *, field: str | None = None,
                 errors: list[str] | None = None, **kwargs: Any) -> None:
        details = kwargs.pop("details", {})
        if field:
            details["field"] = field
        if errors:
            details["errors"] = list(errors)
        super().__init__(message, details=details, **kwargs)
        self.field = field
        self.errors = list(errors or [])


class NotificationNotFoundError(NotificationEngineError):
    error_code = "NOTIFICATION_NOT_FOUND"
    category = ErrorCategory.NOT_FOUND
    http_status = 404

    def __init__(self, notification_id: Any, **kwargs: Any) -> None:
        self.notification_id = notification_id
        super().__init__(f"Notification '{notification_id}' not found",
                         details={"notification_id": str(notification_id)}, **kwargs)


class ChannelDeliveryError(NotificationEngineError):
    """One channel's send failed. Recorded on that channel, never propagated."""
    error_code = "CHANNEL_DELIVERY_ERROR"
    category = ErrorCategory.CHANNEL
    http_status = 502

    def __init__(self, channel: str, reason: str, **kwargs: Any) -> None:
        self.channel = channel
        self.reason = reason
        super().__init__(f"[{channel}] {reason}", details={"channel": channel}, **kwargs)


class QueueError(NotificationEngineError):
    """Broker unreachable or a queued job crashed."""
    error_code = "QUEUE_ERROR"
    category = ErrorCategory.QUEUE
    http_status = 503


class TemplateNotFoundError(NotificationEngineError):
    error_code = "TEMPLATE_NOT_FOUND"
    category = ErrorCategory.TEMPLATE
    http_status = 404

    def __init__(self, template_id: Any, **kwargs: Any) -> None:
        self.template_id = template_id
        super().__init__(f"Template not found: {template_id}",
                         details={"template_id": str(template_id)}, **kwargs)


class TemplateRenderError(NotificationEngineError):
    error_code = "TEMPLATE_RENDER_ERROR"
    category = ErrorCategory.TEMPLATE
    http_status = 422

    def __init__(self, template_id: Any, reason: str, **kwargs: Any) -> None:
        self.template_id = template_id
        self.reason = reason
        super().__init__(f"Failed to render template {template_id}: {reason}",
                         details={"template_id": str(template_id)}, **kwargs)


class WebhookDeliveryError(NotificationEngineError):
    """Delivery to one webhook subscription failed."""
    error_code = "WEBHOOK_DELIVERY_ERROR"
    category = ErrorCategory.WEBHOOK
    http_status = 502

    def __init__(self, webhook_id: Any, url: str, reason: str, **kwargs: Any) -> None:
        self.webhook_id = webhook_id
        self.url = url
        self.reason = reason
        super().__init__(f"Webhook {webhook_id} delivery to {url} failed: {reason}",
                         details={"webhook_id": str(webhook_id), "url": url}, **kwargs)
