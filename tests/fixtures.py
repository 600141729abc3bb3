"""
Notification Engine - Test Fixtures.
Scriptable channel senders for testing purposes only.
"""
from __future__ import annotations

import asyncio
from typing import Any

from notification_engine.domain.channels import ChannelSender
from notification_engine.domain.entities import NotificationChannel
from notification_engine.domain.templates import RenderedContent


class FakeSender(ChannelSender):
    """Returns queued results in order, repeating the last one. Exceptions are raised."""

    def __init__(self, channel: NotificationChannel, results: list[Any] | None = None) -> None:
        self._channel = channel
        self._results = list(results) if results else [True]
        self.calls: list[tuple[str | None, RenderedContent]] = []

    @property
    def channel(self) -> NotificationChannel:
        return self._channel

    async def send(self, destination: str | None, content: RenderedContent) -> bool:
        self.calls.append((destination, content))
        result = self._results.pop(0) if len(self._results) > 1 else self._results[0]
        if isinstance(result, Exception):
            raise result
        return result


class SlowSender(FakeSender):
    """Succeeds after sleeping, to keep an attempt in flight."""

    def __init__(self, channel: NotificationChannel, delay: float) -> None:
        super().__init__(channel)
        self.delay = delay

    async def send(self, destination: str | None, content: RenderedContent) -> bool:
        self.calls.append((destination, content))
        await asyncio.sleep(self.delay)
        return True
