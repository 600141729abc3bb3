"""
Notification Engine - Channel Senders.

One sender per delivery medium behind a common `send(destination, content)`
contract, resolved through a registry keyed by channel.

Architecture Layer: Domain/Infrastructure
Principles: Strategy Pattern, Dependency Inversion, Async I/O
"""
from __future__ import annotations

import re
from abc import ABC, abstractmethod
from email.header import Header
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr

import aiosmtplib
import httpx
import structlog

from ..config import EmailChannelConfig, PushChannelConfig, SMSChannelConfig
from ..exceptions import ChannelDeliveryError
from .entities import NotificationChannel
from .templates import RenderedContent

logger = structlog.get_logger(__name__)


# Newlines and control characters enable header injection
_HEADER_INJECTION_PATTERN = re.compile(r"[\r\n\x00\x0b\x0c]")
_EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
_HTML_HINT_PATTERN = re.compile(r"<[a-zA-Z][^>]*>")


def _sanitize_header(value: str, max_length: int = 998) -> str:
    """
    Sanitize a string for safe use in email headers.

    Args:
        value: The header value to sanitize.
        max_length: Maximum length for the header value (RFC 5322 recommends 998).

    Returns:
        Sanitized string safe for use in email headers.
    """
    if not value:
        return ""
    sanitized = _HEADER_INJECTION_PATTERN.sub("", value)
    return sanitized[:max_length].strip()


def _validate_email_address(email: str) -> bool:
    if not email or len(email) > 254:  # RFC 5321 max length
        return False
    return _EMAIL_PATTERN.match(email) is not None


class ChannelSender(ABC):
    """
    Delivers rendered content to one destination on one channel.

    `send` returns True on provider acceptance. Senders may return False or
    raise; the delivery engine records either as a failed channel.
    """

    @property
    @abstractmethod
    def channel(self) -> NotificationChannel:
        """Channel served by this sender."""

    @property
    def requires_destination(self) -> bool:
        return True

    @abstractmethod
    async def send(self, destination: str | None, content: RenderedContent) -> bool:
        """Deliver content to destination."""

    async def close(self) -> None:
        """Release network resources."""


class EmailSender(ChannelSender):
    """Email via SMTP (aiosmtplib)."""

    def __init__(self, config: EmailChannelConfig) -> None:
        self._config = config

    @property
    def channel(self) -> NotificationChannel:
        return NotificationChannel.EMAIL

    def build_message(self, destination: str, content: RenderedContent) -> MIMEMultipart:
        """Build a MIME message with sanitized headers."""
        recipient = _sanitize_header(destination)
        if not _validate_email_address(recipient):
            raise ChannelDeliveryError(self.channel.value,
                                       f"Invalid email address format: {destination[:50]}")

        message = MIMEMultipart("alternative")
        message["Subject"] = Header(_sanitize_header(content.title, max_length=200), "utf-8")
        message["From"] = formataddr((
            _sanitize_header(self._config.from_name, max_length=100),
            _sanitize_header(self._config.from_email),
        ))
        message["To"] = recipient

        # Template HTML bodies fall back to text, so sniff before choosing the part type.
        if _HTML_HINT_PATTERN.search(content.content):
            plain = _HTML_HINT_PATTERN.sub("", content.content)
            message.attach(MIMEText(plain, "plain", "utf-8"))
            message.attach(MIMEText(content.content, "html", "utf-8"))
        else:
            message.attach(MIMEText(content.content, "plain", "utf-8"))
        return message

    async def send(self, destination: str | None, content: RenderedContent) -> bool:
        if not destination:
            raise ChannelDeliveryError(self.channel.value, "missing destination")
        message = self.build_message(destination, content)
        try:
            async with aiosmtplib.SMTP(
                hostname=self._config.smtp_host,
                port=self._config.smtp_port,
                use_tls=self._config.use_tls,
                timeout=self._config.timeout_seconds,
            ) as smtp:
                if self._config.smtp_username:
                    await smtp.login(self._config.smtp_username, self._config.smtp_password)
                await smtp.send_message(message)
        except aiosmtplib.SMTPException as e:
            raise ChannelDeliveryError(self.channel.value, str(e), cause=e) from e
        logger.info("email_sent", recipient=message["To"])
        return True


class _HTTPSender(ChannelSender):
    """Shared lazy httpx client handling for REST-backed providers."""

    def __init__(self, timeout_seconds: float, client: httpx.AsyncClient | None = None) -> None:
        self._timeout_seconds = timeout_seconds
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._timeout_seconds)
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None


class SMSSender(_HTTPSender):
    """SMS via a Twilio-compatible REST API."""

    def __init__(self, config: SMSChannelConfig, client: httpx.AsyncClient | None = None) -> None:
        super().__init__(config.timeout_seconds, client)
        self._config = config

    @property
    def channel(self) -> NotificationChannel:
        return NotificationChannel.SMS

    def format_body(self, content: RenderedContent) -> str:
        body = f"{content.title}\n\n{content.content}" if content.title else content.content
        return body[:self._config.max_message_length]

    async def send(self, destination: str | None, content: RenderedContent) -> bool:
        if not destination:
            raise ChannelDeliveryError(self.channel.value, "missing destination")
        url = f"{self._config.provider_url}/Accounts/{self._config.account_sid}/Messages.json"
        client = await self._get_client()
        try:
            response = await client.post(
                url,
                auth=(self._config.account_sid, self._config.auth_token),
                data={"From": self._config.from_number, "To": destination,
                      "Body": self.format_body(content)},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ChannelDeliveryError(self.channel.value, f"HTTP {e.response.status_code}",
                                       cause=e) from e
        except httpx.HTTPError as e:
            raise ChannelDeliveryError(self.channel.value, str(e) or type(e).__name__,
                                       cause=e) from e
        logger.info("sms_sent", sid=response.json().get("sid"))
        return True


class PushSender(_HTTPSender):
    """Push via an FCM-compatible REST endpoint authenticated with a server key."""

    def __init__(self, config: PushChannelConfig, client: httpx.AsyncClient | None = None) -> None:
        super().__init__(config.timeout_seconds, client)
        self._config = config

    @property
    def channel(self) -> NotificationChannel:
        return NotificationChannel.PUSH

    async def send(self, destination: str | None, content: RenderedContent) -> bool:
        if not destination:
            raise ChannelDeliveryError(self.channel.value, "missing destination")
        if not self._config.server_key:
            raise ChannelDeliveryError(self.channel.value, "server_key is not configured")
        payload = {
            "to": destination,
            "notification": {"title": content.title, "body": content.content[:4096]},
        }
        headers = {"Authorization": f"key={self._config.server_key}",
                   "Content-Type": "application/json"}
        client = await self._get_client()
        try:
            response = await client.post(self._config.endpoint_url, json=payload, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ChannelDeliveryError(self.channel.value, f"HTTP {e.response.status_code}",
                                       cause=e) from e
        except httpx.HTTPError as e:
            raise ChannelDeliveryError(self.channel.value, str(e) or type(e).__name__,
                                       cause=e) from e
        data = response.json()
        success = data.get("success", 0) > 0
        if not success:
            logger.warning("push_rejected", error=(data.get("results") or [{}])[0].get("error"))
        return success


class InAppSender(ChannelSender):
    """In-app delivery: the record itself is the delivery, so it always succeeds."""

    @property
    def channel(self) -> NotificationChannel:
        return NotificationChannel.IN_APP

    @property
    def requires_destination(self) -> bool:
        return False

    async def send(self, destination: str | None, content: RenderedContent) -> bool:
        return True


class ChannelRegistry:
    """Dispatch table of channel senders."""

    def __init__(self, senders: list[ChannelSender] | None = None) -> None:
        self._senders: dict[NotificationChannel, ChannelSender] = {}
        for sender in senders or []:
            self.register(sender)

    def register(self, sender: ChannelSender) -> None:
        self._senders[sender.channel] = sender
        logger.info("channel_sender_registered", channel=sender.channel.value)

    def get(self, channel: NotificationChannel) -> ChannelSender | None:
        return self._senders.get(channel)

    def channels(self) -> list[NotificationChannel]:
        return list(self._senders)

    async def close(self) -> None:
        for sender in self._senders.values():
            await sender.close()
