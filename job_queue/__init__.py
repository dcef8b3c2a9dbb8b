"""
Job queue — decouples HTTP requests from slow Graph API work.

- API handlers, webhooks and the scheduler PUBLISH jobs
- Workers (broadcast sender, comment forwarder) CONSUME them
- Redis Streams in production, an asyncio queue when Redis is absent
"""
from job_queue.message_queue import (
    InMemoryMessageQueue, MessageQueue, QueueJob, Queues, RedisMessageQueue,
    connect_message_queue, create_message_queue, get_message_queue, set_message_queue,
)
from job_queue.consumer import DelayedJobPromoter, JobConsumer

__all__ = [
    "InMemoryMessageQueue", "MessageQueue", "QueueJob", "Queues", "RedisMessageQueue",
    "connect_message_queue", "create_message_queue", "get_message_queue", "set_message_queue",
    "DelayedJobPromoter", "JobConsumer",
]
