"""
Tests for the Redis Streams queue backend.

StreamRedis below keeps streams, consumer groups and sorted sets in dicts
and answers the handful of redis.asyncio calls RedisMessageQueue makes,
so the publish/consume/retry/DLQ paths run without a server.
"""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from redis.exceptions import ResponseError

from job_queue.message_queue import QueueJob, Queues, RedisMessageQueue


class StreamRedis:

    def __init__(self):
        self.streams: dict[str, list[tuple[str, dict]]] = {}
        self.groups: dict[tuple[str, str], int] = {}     # (stream, group) -> next index
        self.pending: dict[tuple[str, str], set[str]] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self._seq = 0
        self.closed = False

    async def ping(self):
        return True

    async def aclose(self):
        self.closed = True

    async def xadd(self, name, fields):
        self._seq += 1
        entry_id = f"{self._seq}-0"
        self.streams.setdefault(name, []).append((entry_id, dict(fields)))
        return entry_id

    async def xgroup_create(self, name, groupname, id="0", mkstream=False):
        if (name, groupname) in self.groups:
            raise ResponseError("BUSYGROUP Consumer Group name already exists")
        self.streams.setdefault(name, [])
        self.groups[(name, groupname)] = 0
        self.pending[(name, groupname)] = set()

    async def xreadgroup(self, groupname, consumername, streams, count=None, block=None):
        out = []
        for name in streams:
            start = self.groups[(name, groupname)]
            entries = self.streams[name][start:start + (count or 10)]
            if entries:
                self.groups[(name, groupname)] = start + len(entries)
                self.pending[(name, groupname)].update(entry_id for entry_id, _ in entries)
                out.append([name, entries])
        if not out:
            await asyncio.sleep(0.01)
        return out

    async def xack(self, name, groupname, *ids):
        acked = self.pending[(name, groupname)] & set(ids)
        self.pending[(name, groupname)] -= acked
        return len(acked)

    async def xlen(self, name):
        return len(self.streams.get(name, []))

    async def xrange(self, name, count=None):
        entries = self.streams.get(name, [])
        return entries[:count] if count else list(entries)

    async def zadd(self, name, mapping):
        self.zsets.setdefault(name, {}).update(mapping)
        return len(mapping)

    async def zrangebyscore(self, name, low, high):
        members = sorted(self.zsets.get(name, {}).items(), key=lambda kv: kv[1])
        due = [m for m, score in members if score <= float(high)]
        # yield so two promoters can both see the same snapshot
        await asyncio.sleep(0)
        return due

    async def zrem(self, name, *members):
        zset = self.zsets.get(name, {})
        return sum(1 for m in members if zset.pop(m, None) is not None)


@pytest.fixture
def redis_server(monkeypatch):
    server = StreamRedis()
    monkeypatch.setattr("job_queue.message_queue.aioredis.from_url", lambda *a, **kw: server)
    return server


@pytest_asyncio.fixture
async def queue(redis_server):
    q = RedisMessageQueue("redis://fake:6379", retry_backoff_base=0)
    await q.connect()
    yield q
    await q.close()


async def consume_until(q, name, handler, done: asyncio.Event):
    task = asyncio.create_task(q.consume(name, handler, consumer_group="pagecast-workers"))
    await asyncio.wait_for(done.wait(), timeout=5)
    q.stop()
    await asyncio.wait_for(task, timeout=5)


# ══════════════════════════════════════════════════════════════
#  Publish / consume
# ══════════════════════════════════════════════════════════════

class TestStreams:

    @pytest.mark.asyncio
    async def test_publish_then_peek(self, queue):
        job = await queue.enqueue(Queues.BROADCAST, "send-broadcast", {"broadcastId": "b1"})

        assert await queue.queue_length(Queues.BROADCAST) == 1
        [seen] = await queue.peek(Queues.BROADCAST)
        assert seen.job_id == job.job_id
        assert seen.data == {"broadcastId": "b1"}
        assert seen.queue == Queues.BROADCAST

    @pytest.mark.asyncio
    async def test_consumed_jobs_are_acked(self, queue, redis_server):
        await queue.enqueue(Queues.COMMENT, "forward-comment", {"commentId": "c1"})
        done = asyncio.Event()
        handled = []

        async def handler(job):
            handled.append(job.data["commentId"])
            done.set()

        await consume_until(queue, Queues.COMMENT, handler, done)

        assert handled == ["c1"]
        assert redis_server.pending[(Queues.COMMENT, "pagecast-workers")] == set()

    @pytest.mark.asyncio
    async def test_existing_group_is_reused(self, queue, redis_server):
        await queue._join_group(Queues.BROADCAST, "pagecast-workers")
        await queue._join_group(Queues.BROADCAST, "pagecast-workers")
        assert (Queues.BROADCAST, "pagecast-workers") in redis_server.groups

    @pytest.mark.asyncio
    async def test_close_releases_client(self, queue, redis_server):
        await queue.close()
        assert redis_server.closed


# ══════════════════════════════════════════════════════════════
#  Retries and dead letters
# ══════════════════════════════════════════════════════════════

class TestRetries:

    @pytest.mark.asyncio
    async def test_failed_job_retries_on_origin_queue(self, queue, redis_server):
        await queue.enqueue(Queues.COMMENT, "forward-comment", {"commentId": "c1"}, max_attempts=3)
        done = asyncio.Event()

        async def handler(job):
            done.set()
            raise RuntimeError("graph timeout")

        await consume_until(queue, Queues.COMMENT, handler, done)

        assert len(redis_server.zsets[Queues.DELAYED]) == 1
        assert await queue.promote_delayed() == 1
        assert redis_server.zsets[Queues.DELAYED] == {}

        retried = (await queue.peek(Queues.COMMENT))[-1]
        assert retried.attempt == 1
        assert retried.data == {"commentId": "c1"}
        assert await queue.queue_length(Queues.COMMENT) == 2

    @pytest.mark.asyncio
    async def test_exhausted_job_goes_to_dlq(self, queue, redis_server):
        await queue.enqueue(Queues.BROADCAST, "send-broadcast", {"broadcastId": "b1"}, max_attempts=1)
        done = asyncio.Event()

        async def handler(job):
            done.set()
            raise RuntimeError("page token revoked")

        await consume_until(queue, Queues.BROADCAST, handler, done)

        [dead] = await queue.peek(Queues.DLQ)
        assert dead.name == "send-broadcast"
        assert dead.queue == Queues.BROADCAST
        assert redis_server.zsets.get(Queues.DELAYED, {}) == {}
        assert redis_server.pending[(Queues.BROADCAST, "pagecast-workers")] == set()

    @pytest.mark.asyncio
    async def test_future_retry_stays_delayed(self, queue, redis_server):
        later = (datetime.now(timezone.utc) + timedelta(hours=1)).isoformat()
        await queue.publish_delayed(QueueJob(name="forward-comment", queue=Queues.COMMENT, scheduled_at=later))

        assert await queue.promote_delayed() == 0
        assert len(redis_server.zsets[Queues.DELAYED]) == 1

    @pytest.mark.asyncio
    async def test_concurrent_promoters_requeue_once(self, queue, redis_server):
        other = RedisMessageQueue("redis://fake:6379")
        await other.connect()
        past = (datetime.now(timezone.utc) - timedelta(seconds=1)).isoformat()
        await queue.publish_delayed(QueueJob(name="forward-comment", queue=Queues.COMMENT, scheduled_at=past))

        moved = await asyncio.gather(queue.promote_delayed(), other.promote_delayed())

        assert sorted(moved) == [0, 1]
        assert await queue.queue_length(Queues.COMMENT) == 1
