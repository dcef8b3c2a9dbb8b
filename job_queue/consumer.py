"""
Background workers for the broadcast and comment queues.

Each JobConsumer drains one queue with `concurrency` loops. Several API
processes may share a consumer_group; with the Redis backend a job is
handed to only one member of the group.

    API handlers / Scheduler / Webhooks
                │ enqueue
                ▼
    broadcast-queue ──▶ BroadcastSender.process
    comment-queue   ──▶ CommentForwarder.process
                │ handler raised
                ▼
    attempts left?  yes ─▶ delayed set ─(DelayedJobPromoter)─▶ origin queue
                    no  ─▶ DLQ
"""
from __future__ import annotations

import asyncio
import contextlib
from typing import Iterable, Optional

import structlog

from job_queue.message_queue import JobHandler, MessageQueue, QueueJob, get_message_queue

logger = structlog.get_logger()


async def _cancel_all(tasks: Iterable[asyncio.Task]) -> None:
    tasks = list(tasks)
    for task in tasks:
        task.cancel()
    for task in tasks:
        with contextlib.suppress(asyncio.CancelledError):
            await task


class JobConsumer:
    """Calls ``handler(job)`` for every job on ``queue_name``.

    A handler exception is logged and re-raised so the queue backend can
    retry or dead-letter the job.
    """

    def __init__(
        self,
        queue: Optional[MessageQueue],
        queue_name: str,
        handler: JobHandler,
        concurrency: int = 1,
        consumer_group: str = "pagecast-workers",
    ):
        self.queue = queue or get_message_queue()
        self.queue_name = queue_name
        self.handler = handler
        self.concurrency = max(1, concurrency)
        self.consumer_group = consumer_group
        self._loops: list[asyncio.Task] = []

    async def _dispatch(self, job: QueueJob) -> None:
        log = logger.bind(queue=self.queue_name, job_id=job.job_id, job=job.name)
        log.info("job_started", attempt=job.attempt, max_attempts=job.max_attempts)
        try:
            await self.handler(job)
        except Exception as e:
            log.error("job_failed", attempt=job.attempt, error=str(e), exc_info=True)
            raise
        log.info("job_done")

    async def start_background(self) -> list[asyncio.Task]:
        self._loops = [
            asyncio.create_task(self.queue.consume(
                queue=self.queue_name,
                handler=self._dispatch,
                consumer_group=self.consumer_group,
                consumer_name=f"{self.queue_name}-{n}",
            ))
            for n in range(self.concurrency)
        ]
        logger.info("worker_started", queue=self.queue_name, loops=self.concurrency,
                    group=self.consumer_group)
        return list(self._loops)

    async def stop(self) -> None:
        await _cancel_all(self._loops)
        self._loops = []
        logger.info("worker_stopped", queue=self.queue_name)


# ──────────────────────────────────────────────────────────────
#  Retry promotion
# ──────────────────────────────────────────────────────────────

class DelayedJobPromoter:
    """Every ``interval_seconds``, moves due retries back to their queue.

    The in-memory backend already promotes on its own loop, so running
    this against it only repeats a no-op.
    """

    def __init__(self, queue: Optional[MessageQueue] = None, interval_seconds: float = 5):
        self.queue = queue or get_message_queue()
        self.interval = interval_seconds
        self._loop: Optional[asyncio.Task] = None

    async def start_background(self) -> asyncio.Task:
        self._loop = asyncio.create_task(self._tick_forever())
        return self._loop

    async def stop(self) -> None:
        if self._loop is not None:
            await _cancel_all([self._loop])
            self._loop = None

    async def _tick_forever(self) -> None:
        logger.info("retry_promoter_started", interval=self.interval)
        while True:
            try:
                moved = await self.queue.promote_delayed()
                if moved:
                    logger.debug("retries_promoted", count=moved)
            except Exception as e:
                logger.error("retry_promote_failed", error=str(e))
            await asyncio.sleep(self.interval)
