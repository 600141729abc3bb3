"""
Notification Engine - Template Management.

Per-channel rendering of stored templates with `{{variable}}` interpolation
and `{{#if}}` / `{{#unless}}` conditional blocks, template validation and
creation.

Architecture Layer: Domain
Principles: Template Method Pattern, Graceful Fallback
"""
from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any
from uuid import UUID

from pydantic import BaseModel, Field
import structlog

from ..exceptions import (
    NotificationEngineError,
    TemplateNotFoundError,
    TemplateRenderError,
    ValidationError,
)
from .entities import (
    Notification,
    NotificationCategory,
    NotificationChannel,
    NotificationType,
    Primitive,
    Template,
)

if TYPE_CHECKING:
    from ..infrastructure.repository import NotificationStore

logger = structlog.get_logger(__name__)

_VARIABLE_PATTERN = re.compile(r"\{\{\s*([\w.@-]+)\s*\}\}")
_IF_BLOCK_PATTERN = re.compile(r"\{\{#if\s+([\w.@-]+)\s*\}\}(.*?)\{\{/if\}\}", re.DOTALL)
_UNLESS_BLOCK_PATTERN = re.compile(r"\{\{#unless\s+([\w.@-]+)\s*\}\}(.*?)\{\{/unless\}\}", re.DOTALL)
_STRAY_BLOCK_PATTERN = re.compile(r"\{\{\s*(?:#if|#unless)\b[^}]*\}\}|\{\{\s*/(?:if|unless)\s*\}\}")
_TOKEN_PATTERN = re.compile(r"\{\{.*?\}\}", re.DOTALL)
_VALID_TOKEN_PATTERN = re.compile(r"^\{\{[\w\s#/.@-]+\}\}$")
_KEY_SLUG_PATTERN = re.compile(r"[^a-z0-9]+")


def apply_variables(text: str | None, variables: dict[str, Primitive] | None) -> str:
    """
    Substitute `{{key}}` placeholders, then resolve conditional blocks.

    Missing or None values render as an empty string. `{{#if key}}...{{/if}}`
    is kept only when the value is truthy, `{{#unless key}}...{{/unless}}`
    only when it is falsy. Unmatched block markers are stripped.
    """
    if not text:
        return ""
    variables = variables or {}

    def _substitute(match: re.Match[str]) -> str:
        value = variables.get(match.group(1))
        return "" if value is None else str(value)

    result = _VARIABLE_PATTERN.sub(_substitute, text)
    result = _IF_BLOCK_PATTERN.sub(
        lambda m: m.group(2) if variables.get(m.group(1)) else "", result)
    result = _UNLESS_BLOCK_PATTERN.sub(
        lambda m: "" if variables.get(m.group(1)) else m.group(2), result)
    return _STRAY_BLOCK_PATTERN.sub("", result)


def generate_template_key(name: str, notification_type: NotificationType) -> str:
    """Stable key: lower-cased type, a dash, then a slug of the name."""
    slug = _KEY_SLUG_PATTERN.sub("-", name.lower()).strip("-")
    return f"{notification_type.value.lower()}-{slug}"


def find_invalid_tokens(text: str | None) -> list[str]:
    """Return `{{...}}` tokens whose interior contains disallowed characters."""
    if not text:
        return []
    return [t for t in _TOKEN_PATTERN.findall(text) if not _VALID_TOKEN_PATTERN.match(t)]


def has_unclosed_token(text: str | None) -> bool:
    if not text:
        return False
    return "{{" in _TOKEN_PATTERN.sub("", text)


class RenderedContent(BaseModel):
    """Title/content pair produced for one channel. `channel` is None for the generic render."""
    channel: NotificationChannel | None = None
    title: str
    content: str


class TemplateInput(BaseModel):
    """Caller input for creating a template; enum fields are validated, not coerced."""
    name: str = Field(default="")
    description: str | None = None
    notification_type: str | None = None
    category: str | None = None
    title: str = Field(default="")
    content: str = Field(default="")
    email_subject: str | None = None
    email_body_html: str | None = None
    sms_content: str | None = None
    push_title: str | None = None
    push_content: str | None = None
    variables: list[str] = Field(default_factory=list)
    sample_data: dict[str, Primitive] = Field(default_factory=dict)
    is_public: bool = False
    requires_approval: bool = False
    version: str = "1.0"

    def text_fields(self) -> dict[str, str | None]:
        return {
            "title": self.title,
            "content": self.content,
            "email_subject": self.email_subject,
            "email_body_html": self.email_body_html,
            "sms_content": self.sms_content,
            "push_title": self.push_title,
            "push_content": self.push_content,
        }


class TemplateValidationResult(BaseModel):
    is_valid: bool
    errors: list[str] = Field(default_factory=list)


def _enum_member(enum_cls: Any, value: str | None) -> Any | None:
    if not value:
        return None
    normalized = value.strip().upper()
    return enum_cls(normalized) if normalized in enum_cls.__members__ else None


class TemplateRenderer:
    """
    Renders stored templates for a channel.

    Rendering problems never block delivery: `render_for_notification`
    falls back to the notification's own title and message.
    """

    def __init__(self, store: NotificationStore) -> None:
        self._store = store

    async def get_template(self, template_id: UUID) -> Template:
        template = await self._store.get_template(template_id)
        if template is None:
            raise TemplateNotFoundError(template_id)
        return template

    async def list_templates(self) -> list[Template]:
        return await self._store.list_templates()

    async def render_template(
        self,
        template_id: UUID,
        variables: dict[str, Primitive],
        channel: NotificationChannel | None = None,
    ) -> RenderedContent:
        """
        Render a template for one channel.

        Args:
            template_id: Stored template to render
            variables: Values substituted into `{{key}}` placeholders
            channel: Target channel; None renders the generic pair

        Returns:
            RenderedContent with the channel's title and content

        Raises:
            TemplateNotFoundError: Template does not exist
            TemplateRenderError: Rendering raised unexpectedly
        """
        template = await self.get_template(template_id)
        try:
            return self._render(template, variables, channel)
        except (TypeError, ValueError, re.error) as e:
            raise TemplateRenderError(template_id, str(e), cause=e) from e

    @staticmethod
    def _render(
        template: Template,
        variables: dict[str, Primitive],
        channel: NotificationChannel | None,
    ) -> RenderedContent:
        generic_title = template.in_app_title or template.name
        generic_content = template.in_app_message or template.email_body_text or ""

        if channel == NotificationChannel.EMAIL:
            title = template.email_subject or generic_title
            content = template.email_body_html or template.email_body_text or generic_content
        elif channel == NotificationChannel.SMS:
            title = generic_title
            content = template.sms_content or generic_content
        elif channel == NotificationChannel.PUSH:
            title = template.push_title or generic_title
            content = template.push_body or generic_content
        else:
            title, content = generic_title, generic_content

        return RenderedContent(
            channel=channel,
            title=apply_variables(title, variables),
            content=apply_variables(content, variables),
        )

    async def render_for_notification(
        self,
        notification: Notification,
        channel: NotificationChannel,
    ) -> RenderedContent:
        """Content for one channel of a notification; raw title/message when no template applies."""
        fallback = RenderedContent(channel=channel, title=notification.title,
                                   content=notification.message)
        if notification.template_id is None:
            return fallback
        try:
            return await self.render_template(notification.template_id,
                                              notification.template_variables, channel)
        except NotificationEngineError as e:
            logger.warning(
                "template_render_fallback",
                notification_id=str(notification.notification_id),
                template_id=str(notification.template_id),
                channel=channel.value,
                error=e.message,
            )
            return fallback

    def validate_template(self, data: TemplateInput) -> TemplateValidationResult:
        """Check required fields, enumeration membership and placeholder syntax."""
        errors: list[str] = []
        if not data.name.strip():
            errors.append("Name is required")
        if not data.notification_type:
            errors.append("Notification type is required")
        if not data.category:
            errors.append("Category is required")
        if not data.title.strip():
            errors.append("Title is required")
        if not data.content.strip():
            errors.append("Content is required")

        if data.notification_type and _enum_member(NotificationType, data.notification_type) is None:
            errors.append("Invalid notification type")
        if data.category and _enum_member(NotificationCategory, data.category) is None:
            errors.append("Invalid notification category")

        for field_name, text in data.text_fields().items():
            invalid = find_invalid_tokens(text)
            if invalid:
                errors.append(f"Invalid variable syntax in {field_name}: {', '.join(invalid)}")
            if has_unclosed_token(text):
                errors.append(f"Unclosed placeholder in {field_name}")

        return TemplateValidationResult(is_valid=not errors, errors=errors)

    async def create_template(self, data: TemplateInput) -> Template:
        """Validate, derive the template key and channel defaults, then persist."""
        result = self.validate_template(data)
        if not result.is_valid:
            raise ValidationError(
                f"Template validation failed: {', '.join(result.errors)}",
                errors=result.errors,
            )

        notification_type = _enum_member(NotificationType, data.notification_type)
        template = Template(
            name=data.name.strip(),
            description=data.description,
            template_key=generate_template_key(data.name, notification_type),
            notification_type=notification_type,
            category=_enum_member(NotificationCategory, data.category),
            email_subject=data.email_subject or data.title,
            email_body_text=data.content,
            email_body_html=data.email_body_html or data.content,
            sms_content=data.sms_content,
            push_title=data.push_title or data.title,
            push_body=data.push_content or data.content,
            in_app_title=data.title,
            in_app_message=data.content,
            variables=list(data.variables),
            sample_data=dict(data.sample_data),
            is_public=data.is_public,
            requires_approval=data.requires_approval,
            version=data.version,
        )
        await self._store.save_template(template)
        logger.info("template_created", template_id=str(template.template_id),
                    template_key=template.template_key)
        return template
