"""
Notification Engine - Job Broker.

Priority + delay job queue feeding the worker pool, plus a per-notification
lease so at most one delivery attempt for a notification runs at a time.
At most one waiting or delayed job exists per notification: `add` replaces.
"""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any
from uuid import UUID

import structlog

from ..domain.entities import QueueJob, utc_now
from .redis import RedisClient

logger = structlog.get_logger(__name__)

# ZPOPMIN plus the payload fetch-and-delete, executed atomically.
_POP_SCRIPT = """
local popped = redis.call("ZPOPMIN", KEYS[1])
if #popped == 0 then
    return nil
end
local member = popped[1]
local payload = redis.call("HGET", KEYS[2], member)
redis.call("HDEL", KEYS[2], member)
return {member, payload}
"""


class JobBroker(ABC):
    """Abstract job queue used by the queue coordinator."""

    async def connect(self) -> None:
        """Open backend connections."""

    async def close(self) -> None:
        """Release backend connections."""

    @abstractmethod
    async def add(self, job: QueueJob) -> None:
        """Submit a job, replacing any waiting or delayed job of the same notification."""

    @abstractmethod
    async def remove(self, notification_id: UUID) -> int:
        """Drop waiting/delayed jobs of a notification; returns how many were removed."""

    @abstractmethod
    async def pop_ready(self) -> QueueJob | None:
        """Take the most urgent ready job, or None when nothing is due."""

    @abstractmethod
    async def counts(self) -> dict[str, int]:
        """Live counts: `waiting` (due now) and `delayed` (due later)."""

    @abstractmethod
    def lease(self, notification_id: UUID, ttl_seconds: int) -> AsyncIterator[bool]:
        """Async context manager yielding whether the notification lease was acquired."""


class InMemoryJobBroker(JobBroker):
    """Single-process broker for development and testing."""

    def __init__(self) -> None:
        self._jobs: dict[UUID, QueueJob] = {}
        self._leases: set[UUID] = set()
        self._lock = asyncio.Lock()

    async def add(self, job: QueueJob) -> None:
        async with self._lock:
            replaced = job.notification_id in self._jobs
            self._jobs[job.notification_id] = job
        logger.debug("broker_job_added", notification_id=str(job.notification_id),
                     priority=job.priority, replaced=replaced)

    async def remove(self, notification_id: UUID) -> int:
        async with self._lock:
            return 1 if self._jobs.pop(notification_id, None) else 0

    async def pop_ready(self) -> QueueJob | None:
        now = utc_now()
        async with self._lock:
            ready = [job for job in self._jobs.values() if job.is_ready(now)]
            if not ready:
                return None
            job = min(ready, key=QueueJob.sort_key)
            del self._jobs[job.notification_id]
            return job

    async def counts(self) -> dict[str, int]:
        now = utc_now()
        waiting = sum(1 for job in self._jobs.values() if job.is_ready(now))
        return {"waiting": waiting, "delayed": len(self._jobs) - waiting}

    @asynccontextmanager
    async def lease(self, notification_id: UUID, ttl_seconds: int) -> AsyncIterator[bool]:
        async with self._lock:
            acquired = notification_id not in self._leases
            if acquired:
                self._leases.add(notification_id)
        try:
            yield acquired
        finally:
            if acquired:
                self._leases.discard(notification_id)


class RedisJobBroker(JobBroker):
    """
    Redis broker built from two sorted sets and a hash.

    `delayed` is scored by ready timestamp; due jobs are promoted into
    `waiting`, scored so that lower priority numbers pop first and ties
    break on ready time. Job payloads live in the `jobs` hash.
    """

    def __init__(self, client: RedisClient, queue_name: str = "notification-delivery") -> None:
        self._client = client
        self._queue_name = queue_name
        self._delayed = f"q:{queue_name}:delayed"
        self._waiting = f"q:{queue_name}:waiting"
        self._jobs = f"q:{queue_name}:jobs"
        self._pop_script: Any = None

    async def connect(self) -> None:
        await self._client.connect()

    @staticmethod
    def _waiting_score(job: QueueJob) -> float:
        # Epoch milliseconds stay below 1e13 for the foreseeable future.
        return job.priority * 1e13 + job.ready_at.timestamp() * 1000

    async def add(self, job: QueueJob) -> None:
        member = str(job.notification_id)
        pipe = self._client.pipeline(transaction=True)
        pipe.zrem(self._client.make_key(self._delayed), member)
        pipe.zrem(self._client.make_key(self._waiting), member)
        pipe.hset(self._client.make_key(self._jobs), member, job.model_dump_json())
        if job.is_ready():
            pipe.zadd(self._client.make_key(self._waiting), {member: self._waiting_score(job)})
        else:
            pipe.zadd(self._client.make_key(self._delayed), {member: job.ready_at.timestamp()})
        await pipe.execute()
        logger.debug("broker_job_added", notification_id=member, priority=job.priority,
                     queue=self._queue_name)

    async def remove(self, notification_id: UUID) -> int:
        member = str(notification_id)
        pipe = self._client.pipeline(transaction=True)
        pipe.zrem(self._client.make_key(self._delayed), member)
        pipe.zrem(self._client.make_key(self._waiting), member)
        pipe.hdel(self._client.make_key(self._jobs), member)
        removed_delayed, removed_waiting, _ = await pipe.execute()
        return int(removed_delayed) + int(removed_waiting)

    async def _promote_due(self) -> None:
        due = await self._client.zrangebyscore(self._delayed, "-inf", utc_now().timestamp())
        for member in due:
            # Only the worker that wins the zrem promotes the job.
            if await self._client.zrem(self._delayed, member) != 1:
                continue
            data = await self._client.hget(self._jobs, member)
            if data is None:
                continue
            job = QueueJob.model_validate(data)
            await self._client.zadd(self._waiting, {member: self._waiting_score(job)})

    async def pop_ready(self) -> QueueJob | None:
        await self._promote_due()
        if self._pop_script is None:
            self._pop_script = self._client.register_script(_POP_SCRIPT)
        popped = await self._pop_script(keys=[self._client.make_key(self._waiting),
                                              self._client.make_key(self._jobs)])
        if not popped:
            return None
        member = popped[0]
        if len(popped) < 2 or not popped[1]:
            logger.warning("broker_job_payload_missing", notification_id=member)
            return None
        return QueueJob.model_validate_json(popped[1])

    async def counts(self) -> dict[str, int]:
        now = utc_now().timestamp()
        waiting = await self._client.zcard(self._waiting)
        due = await self._client.zcount(self._delayed, "-inf", now)
        delayed = await self._client.zcount(self._delayed, f"({now}", "+inf")
        return {"waiting": waiting + due, "delayed": delayed}

    @asynccontextmanager
    async def lease(self, notification_id: UUID, ttl_seconds: int) -> AsyncIterator[bool]:
        async with self._client.lock(f"lease:{notification_id}", timeout=ttl_seconds,
                                     blocking=False) as acquired:
            yield acquired
