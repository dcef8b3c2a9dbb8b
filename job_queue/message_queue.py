"""
Job queues for broadcast delivery and comment forwarding.

Two backends share one interface:

  RedisMessageQueue     each queue is a Stream read through a consumer
                        group; retries wait in a sorted set scored by
                        their due time; exhausted jobs go to a DLQ stream
  InMemoryMessageQueue  in-process FIFOs inside the API process, used when
                        Redis is not configured or cannot be reached

Names:
  broadcast-queue    "send-broadcast", one job per broadcast
  comment-queue      "forward-comment", one job per new comment
  pagecast:delayed   retries waiting for their due time
  pagecast:dlq       jobs that used up max_attempts

A job carries its own ``queue`` so a retry is promoted back to where it
came from. On the wire every field is a string (``data`` is JSON).
"""
from __future__ import annotations

import asyncio
import bisect
import dataclasses
import json
import uuid
from collections import deque
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError, ResponseError

from config.settings import QueueConfig, get_settings

logger = structlog.get_logger()

JobHandler = Callable[["QueueJob"], Awaitable[Any]]

_INT_FIELDS = ("attempt", "max_attempts")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _due(job: "QueueJob") -> float:
    when = datetime.fromisoformat(job.scheduled_at)
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return when.timestamp()


class Queues:
    BROADCAST = "broadcast-queue"
    COMMENT = "comment-queue"
    DELAYED = "pagecast:delayed"
    DLQ = "pagecast:dlq"


# ──────────────────────────────────────────────────────────────
#  Jobs
# ──────────────────────────────────────────────────────────────

@dataclass
class QueueJob:
    name: str
    data: dict[str, Any] = field(default_factory=dict)
    queue: str = ""
    attempt: int = 0
    max_attempts: int = 3
    scheduled_at: str = ""
    created_at: str = ""
    job_id: str = ""

    def __post_init__(self):
        self.job_id = self.job_id or f"job_{uuid.uuid4().hex[:12]}"
        self.created_at = self.created_at or _now().isoformat()
        self.scheduled_at = self.scheduled_at or self.created_at

    def to_dict(self) -> dict[str, str]:
        fields = {f.name: getattr(self, f.name) for f in dataclasses.fields(self)}
        fields["data"] = json.dumps(self.data)
        for key in _INT_FIELDS:
            fields[key] = str(fields[key])
        return fields

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> QueueJob:
        known = {f.name for f in dataclasses.fields(cls)}
        values = {k: v for k, v in raw.items() if k in known}
        if isinstance(values.get("data"), str):
            values["data"] = json.loads(values["data"])
        values["attempt"] = int(values.get("attempt", 0))
        values["max_attempts"] = int(values.get("max_attempts", 3))
        return cls(**values)

    @property
    def exhausted(self) -> bool:
        """True when the attempt just made was the last one allowed."""
        return self.attempt + 1 >= self.max_attempts

    def next_retry_job(self, backoff_seconds: int = 60) -> QueueJob:
        delay = backoff_seconds * 2 ** self.attempt
        return dataclasses.replace(
            self,
            attempt=self.attempt + 1,
            scheduled_at=(_now() + timedelta(seconds=delay)).isoformat(),
        )


# ──────────────────────────────────────────────────────────────
#  Interface
# ──────────────────────────────────────────────────────────────

class MessageQueue(ABC):

    backend: str = ""

    def __init__(self, retry_backoff_base: int = 60):
        self.retry_backoff_base = retry_backoff_base
        self._running = False

    async def enqueue(self, queue: str, name: str, data: dict[str, Any],
                      max_attempts: int = 3) -> QueueJob:
        job = QueueJob(name=name, data=data, queue=queue, max_attempts=max_attempts)
        await self.publish(queue, job)
        return job

    def stop(self):
        """Consume loops exit after their current poll."""
        self._running = False

    async def nack(self, queue: str, job: QueueJob):
        """Retry ``job`` with exponential backoff, or bury it in the DLQ."""
        job.queue = job.queue or queue
        if job.exhausted:
            await self._bury(job)
            logger.warning("job_dead_lettered", job_id=job.job_id, job=job.name,
                           queue=job.queue, attempts=job.attempt + 1)
            return
        retry = job.next_retry_job(self.retry_backoff_base)
        await self.publish_delayed(retry)
        logger.info("job_retry_scheduled", job_id=job.job_id, job=job.name,
                    attempt=retry.attempt, due=retry.scheduled_at)

    async def _run_handler(self, queue: str, job: QueueJob, handler: JobHandler):
        try:
            await handler(job)
        except Exception as e:
            logger.error("job_handler_raised", queue=queue, job_id=job.job_id, error=str(e))
            await self.nack(queue, job)

    @abstractmethod
    async def connect(self): ...

    @abstractmethod
    async def close(self): ...

    @abstractmethod
    async def publish(self, queue: str, job: QueueJob): ...

    @abstractmethod
    async def publish_delayed(self, job: QueueJob):
        """Hold ``job`` until its scheduled_at."""

    @abstractmethod
    async def consume(
        self,
        queue: str,
        handler: JobHandler,
        consumer_group: str = "default",
        consumer_name: str = "",
        batch_size: int = 10,
    ):
        """Run ``handler`` on each job until stop(); failures go through nack()."""

    @abstractmethod
    async def queue_length(self, queue: str) -> int: ...

    @abstractmethod
    async def peek(self, queue: str, count: int = 10) -> list[QueueJob]: ...

    @abstractmethod
    async def promote_delayed(self) -> int:
        """Requeue due retries; returns how many moved."""

    @abstractmethod
    async def _bury(self, job: QueueJob): ...


# ──────────────────────────────────────────────────────────────
#  Redis
# ──────────────────────────────────────────────────────────────

class RedisMessageQueue(MessageQueue):

    backend = "redis"

    def __init__(self, redis_url: str = "redis://localhost:6379", retry_backoff_base: int = 60):
        super().__init__(retry_backoff_base)
        self.redis_url = redis_url
        self._redis: Optional[aioredis.Redis] = None

    async def connect(self):
        client = aioredis.from_url(self.redis_url, decode_responses=True, max_connections=20)
        try:
            await client.ping()
        except (RedisError, OSError):
            await client.aclose()
            raise
        self._redis = client
        logger.info("queue_connected", backend=self.backend, url=self.redis_url)

    async def close(self):
        self.stop()
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, queue: str, job: QueueJob):
        job.queue = job.queue or queue
        await self._redis.xadd(queue, job.to_dict())
        logger.info("job_enqueued", queue=queue, job_id=job.job_id, job=job.name)

    async def publish_delayed(self, job: QueueJob):
        await self._redis.zadd(Queues.DELAYED, {json.dumps(job.to_dict()): _due(job)})

    async def _bury(self, job: QueueJob):
        await self._redis.xadd(Queues.DLQ, job.to_dict())

    async def _join_group(self, stream: str, group: str):
        try:
            await self._redis.xgroup_create(stream, group, id="0", mkstream=True)
        except ResponseError as e:
            # group already exists
            if "BUSYGROUP" not in str(e):
                raise

    async def consume(
        self,
        queue: str,
        handler: JobHandler,
        consumer_group: str = "default",
        consumer_name: str = "",
        batch_size: int = 10,
    ):
        consumer_name = consumer_name or f"{queue}-{uuid.uuid4().hex[:6]}"
        await self._join_group(queue, consumer_group)
        self._running = True
        logger.info("queue_consumer_attached", queue=queue, group=consumer_group,
                    consumer=consumer_name)

        while self._running:
            try:
                batches = await self._redis.xreadgroup(
                    consumer_group, consumer_name, {queue: ">"},
                    count=batch_size, block=2000,
                )
            except RedisError as e:
                logger.error("queue_read_failed", queue=queue, error=str(e))
                await asyncio.sleep(1)
                continue

            for _stream, entries in batches or []:
                for entry_id, fields in entries:
                    await self._run_handler(queue, QueueJob.from_dict(fields), handler)
                    await self._redis.xack(queue, consumer_group, entry_id)

    async def queue_length(self, queue: str) -> int:
        return await self._redis.xlen(queue)

    async def peek(self, queue: str, count: int = 10) -> list[QueueJob]:
        entries = await self._redis.xrange(queue, count=count)
        return [QueueJob.from_dict(fields) for _id, fields in entries]

    async def promote_delayed(self) -> int:
        due = await self._redis.zrangebyscore(Queues.DELAYED, "-inf", _now().timestamp())
        moved = 0
        for payload in due:
            # ZREM is the claim; a concurrent promoter that loses it skips the entry
            if not await self._redis.zrem(Queues.DELAYED, payload):
                continue
            job = QueueJob.from_dict(json.loads(payload))
            await self._redis.xadd(job.queue or Queues.BROADCAST, job.to_dict())
            moved += 1
        if moved:
            logger.info("retries_requeued", count=moved)
        return moved


# ──────────────────────────────────────────────────────────────
#  In-process
# ──────────────────────────────────────────────────────────────

class _Lane:
    """FIFO of jobs for one queue name; consumers wait on ``ready``."""

    def __init__(self):
        self.jobs: deque[QueueJob] = deque()
        self.ready = asyncio.Event()

    def put(self, job: QueueJob) -> None:
        self.jobs.append(job)
        self.ready.set()

    async def take(self, timeout: float) -> Optional[QueueJob]:
        """Next job, or None when nothing arrived within ``timeout`` seconds."""
        if not self.jobs:
            self.ready.clear()
            try:
                await asyncio.wait_for(self.ready.wait(), timeout)
            except asyncio.TimeoutError:
                return None
        # another consumer may have taken it first
        return self.jobs.popleft() if self.jobs else None


class InMemoryMessageQueue(MessageQueue):
    """Single-process fallback.

    Jobs reach consumers ``dispatch_delay`` seconds after publish, so an
    API call that enqueues work returns before the work begins. Jobs still
    waiting out that delay count toward ``queue_length`` but are not
    visible to ``peek``.
    """

    backend = "memory"

    def __init__(self, dispatch_delay: float = 1.0, retry_backoff_base: int = 60,
                 promote_interval: float = 5.0):
        super().__init__(retry_backoff_base)
        self.dispatch_delay = dispatch_delay
        self.promote_interval = promote_interval
        self._lanes: dict[str, _Lane] = {}
        self._in_flight: dict[str, int] = {}
        self._timers: set[asyncio.Task] = set()
        self._delayed: list[tuple[float, QueueJob]] = []
        self.dlq: list[QueueJob] = []
        self._ticker: Optional[asyncio.Task] = None

    def _lane(self, name: str) -> _Lane:
        if name not in self._lanes:
            self._lanes[name] = _Lane()
        return self._lanes[name]

    async def connect(self):
        self._running = True
        self._ticker = asyncio.create_task(self._tick())
        logger.info("queue_connected", backend=self.backend, dispatch_delay=self.dispatch_delay)

    async def close(self):
        self.stop()
        for timer in self._timers:
            timer.cancel()
        self._timers.clear()
        self._in_flight.clear()
        if self._ticker is not None:
            self._ticker.cancel()
            try:
                await self._ticker
            except asyncio.CancelledError:
                pass
            self._ticker = None

    async def _hand_over_later(self, queue: str, job: QueueJob):
        try:
            await asyncio.sleep(self.dispatch_delay)
            self._lane(queue).put(job)
        finally:
            self._in_flight[queue] = max(0, self._in_flight.get(queue, 0) - 1)

    async def publish(self, queue: str, job: QueueJob):
        job.queue = job.queue or queue
        if self.dispatch_delay <= 0:
            self._lane(queue).put(job)
        else:
            self._in_flight[queue] = self._in_flight.get(queue, 0) + 1
            timer = asyncio.create_task(self._hand_over_later(queue, job))
            self._timers.add(timer)
            timer.add_done_callback(self._timers.discard)
        logger.info("job_enqueued", queue=queue, job_id=job.job_id, job=job.name)

    async def publish_delayed(self, job: QueueJob):
        bisect.insort(self._delayed, (_due(job), job), key=lambda entry: entry[0])

    async def _bury(self, job: QueueJob):
        self.dlq.append(job)

    async def consume(
        self,
        queue: str,
        handler: JobHandler,
        consumer_group: str = "default",
        consumer_name: str = "",
        batch_size: int = 10,
    ):
        lane = self._lane(queue)
        self._running = True
        logger.info("queue_consumer_attached", queue=queue, backend=self.backend)

        while self._running:
            job = await lane.take(timeout=2.0)
            if job is None:
                continue
            await self._run_handler(queue, job, handler)

    async def queue_length(self, queue: str) -> int:
        return len(self._lane(queue).jobs) + self._in_flight.get(queue, 0)

    async def peek(self, queue: str, count: int = 10) -> list[QueueJob]:
        return list(self._lane(queue).jobs)[:count]

    async def promote_delayed(self) -> int:
        cutoff = bisect.bisect_right(self._delayed, _now().timestamp(), key=lambda entry: entry[0])
        due, self._delayed = self._delayed[:cutoff], self._delayed[cutoff:]
        for _ts, job in due:
            self._lane(job.queue or Queues.BROADCAST).put(job)
        if due:
            logger.info("retries_requeued", count=len(due))
        return len(due)

    async def _tick(self):
        while self._running:
            await self.promote_delayed()
            await asyncio.sleep(self.promote_interval)


# ──────────────────────────────────────────────────────────────
#  Process-wide instance
# ──────────────────────────────────────────────────────────────

_instance: Optional[MessageQueue] = None


def _memory_queue(config: QueueConfig) -> InMemoryMessageQueue:
    return InMemoryMessageQueue(
        dispatch_delay=config.memory_dispatch_delay,
        retry_backoff_base=config.retry_backoff_base,
        promote_interval=config.delayed_promote_interval,
    )


def create_message_queue(config: Optional[QueueConfig] = None) -> MessageQueue:
    """Build the configured backend without connecting it."""
    config = config or QueueConfig(backend="memory")
    if config.backend == "redis":
        return RedisMessageQueue(config.redis_url, retry_backoff_base=config.retry_backoff_base)
    return _memory_queue(config)


async def connect_message_queue(config: QueueConfig) -> MessageQueue:
    """Connect the configured backend and install it as the process-wide queue.

    If Redis is configured but unreachable, the in-memory queue is used instead.
    """
    global _instance
    queue = create_message_queue(config)
    try:
        await queue.connect()
    except (RedisError, OSError) as e:
        if queue.backend != "redis":
            raise
        logger.warning("queue_redis_unreachable_using_memory", url=config.redis_url, error=str(e))
        await queue.close()
        queue = _memory_queue(config)
        await queue.connect()
    _instance = queue
    return queue


def get_message_queue() -> MessageQueue:
    global _instance
    if _instance is None:
        _instance = _memory_queue(get_settings().queue)
    return _instance


def set_message_queue(queue: Optional[MessageQueue]) -> None:
    global _instance
    _instance = queue
