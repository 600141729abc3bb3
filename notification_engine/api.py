"""
Notification Engine - REST API Endpoints.

FastAPI router exposing the orchestrator: send, inspect, cancel, mark read
and queue statistics.

Architecture Layer: Interface/Adapter
Principles: REST, Input Validation, Structured Responses
"""
from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field
import structlog

from .domain import NotificationService, QueueStats, SendNotificationOptions
from .domain.entities import Primitive
from .exceptions import QueueError, ValidationError

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1/notifications", tags=["notifications"])


class SendNotificationRequest(BaseModel):
    """API request to send a notification."""
    recipient_id: str = Field(..., description="Recipient user id")
    recipient_email: str | None = Field(default=None)
    recipient_phone: str | None = Field(default=None)
    recipient_device_token: str | None = Field(default=None)
    recipient_name: str | None = Field(default=None)
    sender_id: str | None = Field(default=None)
    sender_name: str | None = Field(default=None)
    title: str = Field(..., description="Notification title")
    message: str = Field(..., description="Notification body")
    notification_type: str | None = Field(default=None, description="Type; unknown values fall back")
    category: str | None = Field(default=None)
    priority: str | None = Field(default=None)
    channels: list[str] | None = Field(default=None, description="EMAIL, SMS, PUSH, IN_APP")
    scheduled_for: datetime | str | None = Field(default=None, description="ISO-8601 delivery time")
    template_id: UUID | None = Field(default=None)
    template_variables: dict[str, Primitive] = Field(default_factory=dict)
    context_type: str | None = Field(default=None)
    context_id: str | None = Field(default=None)
    metadata: dict[str, Primitive] = Field(default_factory=dict)
    max_retries: int | None = Field(default=None, ge=1)

    model_config = {"json_schema_extra": {
        "example": {
            "recipient_id": "user-123",
            "recipient_email": "user@example.com",
            "title": "Appointment confirmed",
            "message": "See you tomorrow at 10:00",
            "notification_type": "APPOINTMENT_CONFIRMATION",
            "channels": ["EMAIL", "IN_APP"],
        }
    }}


class SendNotificationResponse(BaseModel):
    notification_id: str
    status: str = "accepted"


class CancelResponse(BaseModel):
    notification_id: str
    cancelled: bool


class MarkReadRequest(BaseModel):
    user_id: str = Field(..., min_length=1)


class MarkReadResponse(BaseModel):
    notification_id: str
    read: bool


def _get_notification_service(request: Request) -> NotificationService:
    """Dependency to get the notification service from application state."""
    service = getattr(request.app.state, "notification_service", None)
    if service is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                            detail="Notification service not initialized")
    return service


@router.post("", response_model=SendNotificationResponse, status_code=status.HTTP_202_ACCEPTED)
async def send_notification(
    request: SendNotificationRequest,
    service: NotificationService = Depends(_get_notification_service),
) -> SendNotificationResponse:
    """Accept a notification for immediate or scheduled delivery."""
    logger.info("api_send_notification", recipient_id=request.recipient_id,
                notification_type=request.notification_type)
    try:
        notification_id = await service.send(SendNotificationOptions(**request.model_dump()))
    except ValidationError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict()["error"]) from e
    except QueueError as e:
        raise HTTPException(status_code=e.http_status, detail=e.message) from e
    return SendNotificationResponse(notification_id=str(notification_id))


@router.get("/queue/stats", response_model=QueueStats)
async def get_queue_stats(
    service: NotificationService = Depends(_get_notification_service),
) -> QueueStats:
    """Queue entry counts by status plus live waiting/delayed job counts."""
    return await service.get_queue_stats()


@router.get("/{notification_id}")
async def get_notification(
    notification_id: UUID,
    service: NotificationService = Depends(_get_notification_service),
) -> dict[str, Any]:
    notification = await service.get_notification(notification_id)
    if notification is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND,
                            detail=f"Notification {notification_id} not found")
    return notification.model_dump(mode="json")


@router.post("/{notification_id}/cancel", response_model=CancelResponse)
async def cancel_notification(
    notification_id: UUID,
    service: NotificationService = Depends(_get_notification_service),
) -> CancelResponse:
    """Cancel a queued or pending notification; other states are left untouched."""
    cancelled = await service.cancel(notification_id)
    return CancelResponse(notification_id=str(notification_id), cancelled=cancelled)


@router.post("/{notification_id}/read", response_model=MarkReadResponse)
async def mark_notification_read(
    notification_id: UUID,
    request: MarkReadRequest,
    service: NotificationService = Depends(_get_notification_service),
) -> MarkReadResponse:
    read = await service.mark_read(notification_id, request.user_id)
    return MarkReadResponse(notification_id=str(notification_id), read=read)
