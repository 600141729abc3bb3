"""Notification Engine Redis Client - Async hashes, sorted sets and distributed locking."""
from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import redis.asyncio as redis
from redis.exceptions import LockError
import structlog

from ..config import RedisConfig
from ..exceptions import QueueError

logger = structlog.get_logger(__name__)


class RedisClient:
    """Async Redis client shared by the Redis-backed store and job broker."""

    def __init__(self, settings: RedisConfig | None = None) ->    async def zrangebyscore(self, key: str, min_score: float | str, max_score: float | str) -> list[str]:
        client = self._ensure_connected()
        return await client.zrangebyscore(self.make_key(key), min_score, max_score)

    async def zcount(self, key: str, min_score: float | str, max_score: float | str) -> int:
        client = self._ensure_connected()
        return await client.zcount(self.make_key(key), min_score, max_score)

    async def zcard(self, key: str) -> int:
        client = self._ensure_connected()
        return await client.zcard(self.make_key(key))

    def pipeline(self, transaction: bool = True) -> Any:
        """Raw pipeline; callers must apply `make_key` themselves."""
        return self._ensure_connected().pipeline(transaction=transaction)

    def register_script(self, script: str) -> Any:
        """Lua script callable; callers must apply `make_key` to its keys."""
        return self._ensure_connected().register_script(script)

    @asynccontextmanager
    async def lock(self, name: str, timeout: int = 10, blocking: bool = True
                   ) -> AsyncIterator[bool]:
        """Distributed lock context manager."""
        client = self._ensure_connected()
        lock_key = self.make_key(f"lock:{name}")
        lock = client.lock(lock_key, timeout=timeout, blocking=blocking)
        acquired = await lock.acquire()
        try:
            yield acquired
        finally:
            if acquired:
                try:
                    await lock.release()
                except LockError as e:
                    logger.warning("redis_lock_release_failed", lock=lock_key, error=str(e))

    async def check_health(self) -> dict[str, Any]:
        """Check Redis health status."""
        try:
            client = self._ensure_connected()
            info = await client.info("server")
            return {"status": "healthy", "redis_version": info.get("redis_version"),
                    "connected_clients": info.get("connected_clients")}
        except Exception as e:
            return {"status": "unhealthy", "error": str(e)}

    def _serialize(self, value: Any) -> str:
        """Serialize value for storage."""
        if isinstance(value, str):
            return value
        return json.dumps(value, default=str)

    def _deserialize(self, value: str | bytes) -> Any:
        """Deserialize stored value."""
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        try:
            return json.loads(value)
        except (json.JSONDecodeError, TypeError):
            return value

