"""
Notification Engine - Queue Coordinator.

Idempotent scheduling of delivery attempts on the job broker, a bounded
pool of asyncio workers that execute ready jobs, and queue statistics.
Every notification has exactly one persisted QueueEntry and at most one
waiting or delayed broker job.

Architecture Layer: Domain
Principles: Idempotency, At-Least-Once Processing, Bounded Concurrency
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import TYPE_CHECKING
from uuid import UUID

from pydantic import BaseModel
import structlog

from ..config import QueueConfig
from ..exceptions import QueueError
from .entities import (
    Notification,
    NotificationStatus,
    QueueEntry,
    QueueJob,
    QueueStatus,
    ensure_utc,
    utc_now,
)
from .retry import RetryScheduler

if TYPE_CHECKING:
    from ..infrastructure.broker import JobBroker
    from ..infrastructure.repository import NotificationStore
    from .delivery import DeliveryEngine

logger = structlog.get_logger(__name__)


class QueueStats(BaseModel):
    """Persisted entry counts by status plus live broker counts."""
    queued: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    waiting: int = 0
    delayed: int = 0


class QueueCoordinator:
    """Schedules delivery jobs and runs the worker pool that executes them."""

    def __init__(
        self,
        store: NotificationStore,
        broker: JobBroker,
        engine: DeliveryEngine,
        config: QueueConfig | None = None,
    ) -> None:
        self._store = store
        self._broker = broker
        self._engine = engine
        self._config = config or QueueConfig()
        self._workers: list[asyncio.Task[None]] = []
        self._running = False
        self._stopping = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._running

    async def enqueue(
        self,
        notification_id: UUID,
        scheduled_for: datetime | None = None,
        *,
        error_message: str | None = None,
    ) -> QueueEntry:
        """
        Schedule a delivery attempt for `scheduled_for` (default: now).

        Re-enqueueing replaces the notification's pending job and resets its
        entry to QUEUED, so repeated calls leave exactly one active job.

        Raises:
            QueueError: The broker rejected the job; the entry is left FAILED
        """
        now = utc_now()
        target = ensure_utc(scheduled_for) if scheduled_for else now
        entry = await self._store.get_queue_entry(notification_id)
        if entry is None:
            entry = QueueEntry(notification_id=notification_id, queue_name=self._config.queue_name)
        entry.mark_queued(target, error_message)
        await self._store.save_queue_entry(entry)

        job = QueueJob(
            notification_id=notification_id,
            priority=RetryScheduler.resolve_priority(target, now),
            ready_at=target,
            enqueued_at=now,
        )
        try:
            await self._broker.add(job)
        except Exception as e:
            entry.mark_failed(f"Failed to enqueue: {e}")
            await self._store.save_queue_entry(entry)
            logger.error("queue_enqueue_failed", notification_id=str(notification_id), error=str(e))
            raise QueueError(f"Failed to enqueue notification {notification_id}", cause=e) from e

        logger.info(
            "queue_job_enqueued",
            notification_id=str(notification_id),
            priority=job.priority,
            delay_seconds=max(0.0, (target - now).total_seconds()),
        )
        return entry

    async def cancel(self, notification_id: UUID) -> QueueEntry | None:
        """Drop pending jobs and cancel the entry; a running attempt is not interrupted."""
        removed = await self._broker.remove(notification_id)
        entry = await self._store.get_queue_entry(notification_id)
        if entry is not None and entry.is_active:
            entry.mark_cancelled()
            await self._store.save_queue_entry(entry)
        logger.info("queue_job_cancelled", notification_id=str(notification_id), removed_jobs=removed)
        return entry

    async def process_job(self, job: QueueJob) -> None:
        """Run one job under the notification's lease."""
        async with self._broker.lease(job.notification_id, self._config.lease_ttl_seconds) as acquired:
            if not acquired:
                delay = timedelta(seconds=self._config.lease_retry_delay_seconds)
                logger.info("queue_job_lease_busy", notification_id=str(job.notification_id))
                await self._broker.add(job.model_copy(update={"ready_at": utc_now() + delay}))
                return
            await self._run(job)

    async def _run(self, job: QueueJob) -> None:
        notification_id = job.notification_id
        entry = await self._store.get_queue_entry(notification_id)
        if entry is None:
            entry = QueueEntry(notification_id=notification_id, queue_name=self._config.queue_name)
        if entry.status == QueueStatus.CANCELLED:
            logger.info("queue_job_skipped_cancelled", notification_id=str(notification_id))
            return

        entry.mark_processing()
        await self._store.save_queue_entry(entry)

        try:
            outcome = await self._engine.deliver(notification_id)
        except Exception as e:
            entry.mark_failed(str(e))
            await self._store.save_queue_entry(entry)
            logger.error("queue_job_failed", notification_id=str(notification_id),
                         attempts=entry.attempts, error=str(e))
            return

        notification = outcome.notification
        status = notification.status
        if status == NotificationStatus.PENDING and notification.next_retry_at is not None:
            try:
                await self.enqueue(notification_id, notification.next_retry_at,
                                   error_message=notification.last_error)
            except QueueError as e:
                await self.fail_notification(notification, e.message)
            return
        if status == NotificationStatus.DELIVERED:
            entry.mark_completed()
        elif status == NotificationStatus.FAILED:
            entry.mark_failed(notification.last_error)
        elif status == NotificationStatus.CANCELLED:
            entry.mark_cancelled()
        else:
            entry.mark_failed(f"Unexpected notification status {status.value}")
        await self._store.save_queue_entry(entry)
        logger.info("queue_job_processed", notification_id=str(notification_id),
                    entry_status=entry.status.value, attempts=entry.attempts)

    async def fail_notification(self, notification: Notification, error: str) -> None:
        """Finalize a notification whose retry could not be scheduled."""
        notification.mark_failed(error)
        await self._store.save_notification(notification)
        logger.error("notification_retry_unschedulable",
                     notification_id=str(notification.notification_id), error=error)

    async def _requeue_interrupted(self, job: QueueJob) -> None:
        entry = await self._store.get_queue_entry(job.notification_id)
        if entry is not None and entry.status == QueueStatus.CANCELLED:
            return
        logger.warning("queue_job_interrupted", notification_id=str(job.notification_id))
        try:
            await self.enqueue(job.notification_id)
        except QueueError as e:
            logger.error("queue_job_requeue_failed", notification_id=str(job.notification_id),
                         error=str(e))

    async def recover(self) -> int:
        """Re-enqueue entries left PROCESSING by a process that stopped mid-attempt."""
        stranded = await self._store.list_queue_entries(QueueStatus.PROCESSING)
        for entry in stranded:
            await self.enqueue(entry.notification_id, error_message="Recovered after restart")
        if stranded:
            logger.warning("queue_entries_recovered", count=len(stranded))
        return len(stranded)

    async def _idle(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _worker(self, index: int) -> None:
        poll_interval = self._config.poll_interval_seconds
        while self._running:
            try:
                job = await self._broker.pop_ready()
            except Exception as e:
                logger.error("queue_poll_failed", worker=index, error=str(e))
                await self._idle(poll_interval)
                continue
            if job is None:
                await self._idle(poll_interval)
                continue
            try:
                await self.process_job(job)
            except asyncio.CancelledError:
                await self._requeue_interrupted(job)
                raise
            except Exception as e:
                logger.error("queue_worker_error", worker=index,
                             notification_id=str(job.notification_id), error=str(e))

    async def start(self) -> None:
        """Start the worker pool."""
        if self._running:
            return
        self._running = True
        self._stopping.clear()
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"notification-worker-{i}")
            for i in range(self._config.concurrency)
        ]
        logger.info("queue_workers_started", queue=self._config.queue_name,
                    concurrency=self._config.concurrency)

    async def stop(self) -> None:
        """
        Stop polling and let in-flight attempts run to completion.

        Workers still busy after `shutdown_timeout_seconds` are cancelled and
        their jobs put back on the queue.
        """
        if not self._running:
            return
        self._running = False
        self._stopping.set()
        _, unfinished = await asyncio.wait(self._workers, timeout=self._config.shutdown_timeout_seconds)
        for task in unfinished:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("queue_workers_stopped", queue=self._config.queue_name,
                    interrupted=len(unfinished))

    async def get_queue_stats(self) -> QueueStats:
        by_status = await self._store.count_queue_entries_by_status()
        live = await self._broker.counts()
        return QueueStats(
            queued=by_status.get(QueueStatus.QUEUED, 0),
            processing=by_status.get(QueueStatus.PROCESSING, 0),
            completed=by_status.get(QueueStatus.COMPLETED, 0),
            failed=by_status.get(QueueStatus.FAILED, 0),
            cancelled=by_status.get(QueueStatus.CANCELLED, 0),
            waiting=live.get("waiting", 0),
            delayed=live.get("delayed", 0),
        )
