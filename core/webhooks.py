"""
Facebook webhook processing.

Page webhooks deliver two kinds of entries:
  changes[]    feed activity (new comments, new posts)
  messaging[]  Messenger events (inbound messages, delivery and read receipts)

Every change and event is handled independently; a failure is logged and
the rest of the batch still runs. Facebook retries non-200 responses, so
the HTTP layer always acknowledges.
"""
from __future__ import annotations

from collections import Counter
from datetime import datetime, timezone
from typing import Any, Optional

import structlog
from sqlalchemy import select

from core.realtime import RealtimeHub, get_hub
from database.models import (
    BroadcastRecipientRow, BroadcastRow, CommentRow, FacebookPageRow, MonitoredPostRow,
)
from database.session import get_session
from job_queue.message_queue import MessageQueue, Queues, get_message_queue
from models.schemas import JobType

logger = structlog.get_logger()


def _from_unix(value: Any) -> datetime:
    try:
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    except (TypeError, ValueError):
        return datetime.now(timezone.utc)


def parse_comment_change(value: dict[str, Any]) -> dict[str, Any]:
    """Normalise a feed/comment change value."""
    sender = value.get("from") or {}
    return {
        "comment_id": value.get("comment_id"),
        "post_id": value.get("post_id"),
        "sender_id": value.get("sender_id") or sender.get("id"),
        "sender_name": value.get("sender_name") or sender.get("name"),
        "message": value.get("message"),
        "created_time": _from_unix(value.get("created_time")),
        "parent_id": value.get("parent_id"),
    }


class WebhookProcessor:

    def __init__(self, queue: Optional[MessageQueue] = None, hub: Optional[RealtimeHub] = None):
        self.queue = queue or get_message_queue()
        self.hub = hub or get_hub()

    async def handle(self, body: dict[str, Any]) -> None:
        if not isinstance(body, dict) or body.get("object") != "page":
            return

        for entry in body.get("entry") or []:
            page_id = str(entry.get("id", ""))
            for change in entry.get("changes") or []:
                try:
                    await self.handle_change(page_id, change)
                except Exception as e:
                    logger.error("webhook_change_failed", page_id=page_id, error=str(e))
            for event in entry.get("messaging") or []:
                try:
                    await self.handle_messaging_event(page_id, event)
                except Exception as e:
                    logger.error("webhook_messaging_failed", page_id=page_id, error=str(e))

    async def handle_change(self, page_id: str, change: dict[str, Any]) -> None:
        field = change.get("field")
        value = change.get("value") or {}
        logger.info("webhook_change", page_id=page_id, field=field, item=value.get("item"))

        if field != "feed":
            return
        if value.get("item") == "comment" and value.get("verb", "add") == "add":
            await self.process_new_comment(page_id, parse_comment_change(value))
        elif value.get("item") == "post":
            logger.info("webhook_new_post", page_id=page_id, post_id=value.get("post_id"))

    async def handle_messaging_event(self, page_id: str, event: dict[str, Any]) -> None:
        message = event.get("message")
        if message and not message.get("is_echo"):
            logger.info("webhook_incoming_message",
                        page_id=page_id,
                        sender_id=(event.get("sender") or {}).get("id"),
                        message_id=message.get("mid"))
        elif event.get("delivery"):
            await self.record_delivery(page_id, event["delivery"].get("mids") or [])
        elif event.get("read"):
            await self.record_read(
                page_id,
                (event.get("sender") or {}).get("id"),
                event["read"].get("watermark"),
            )

    # ── comments ──────────────────────────────────────────────

    async def process_new_comment(self, page_id: str, data: dict[str, Any]) -> Optional[CommentRow]:
        """Store a webhook comment on a monitored post and queue it for forwarding."""
        async with get_session() as db:
            page = (await db.execute(
                select(FacebookPageRow).where(
                    FacebookPageRow.page_id == page_id,
                    FacebookPageRow.is_active.is_(True),
                ).limit(1)
            )).scalar_one_or_none()
            if page is None:
                logger.warning("webhook_page_not_found", page_id=page_id)
                return None

            post = (await db.execute(
                select(MonitoredPostRow).where(
                    MonitoredPostRow.post_id == data["post_id"],
                    MonitoredPostRow.organization_id == page.organization_id,
                    MonitoredPostRow.is_active.is_(True),
                )
            )).scalar_one_or_none()
            if post is None:
                logger.debug("webhook_post_not_monitored", post_id=data["post_id"])
                return None

            existing = (await db.execute(
                select(CommentRow.id).where(CommentRow.comment_id == data["comment_id"])
            )).scalar_one_or_none()
            if existing:
                logger.debug("webhook_comment_exists", comment_id=data["comment_id"])
                return None

            comment = CommentRow(
                organization_id=page.organization_id,
                post_id=post.id,
                comment_id=data["comment_id"],
                parent_comment_id=data.get("parent_id"),
                commenter_id=data.get("sender_id"),
                commenter_name=data.get("sender_name"),
                comment_text=data.get("message"),
                created_at=data.get("created_time") or datetime.now(timezone.utc),
            )
            db.add(comment)
            post.comment_count = (post.comment_count or 0) + 1
            await db.flush()
            comment_data = comment.to_dict()
            post_data = post.to_dict()
            organization_id = page.organization_id

        await self.queue.enqueue(
            Queues.COMMENT, JobType.FORWARD_COMMENT,
            {"commentId": comment.id, "organizationId": organization_id},
        )
        await self.hub.emit(organization_id, "new-comment", {
            "comment": comment_data,
            "post": post_data,
        })
        logger.info("webhook_comment_stored", comment_id=comment.id, post_id=post_data["id"])
        return comment

    # ── receipts ──────────────────────────────────────────────

    async def record_delivery(self, page_id: str, mids: list[str]) -> int:
        """Mark sent broadcast messages delivered. Returns how many rows changed."""
        if not mids:
            return 0
        now = datetime.now(timezone.utc)
        async with get_session() as db:
            rows = (await db.execute(
                select(BroadcastRecipientRow).where(
                    BroadcastRecipientRow.message_id.in_(mids),
                    BroadcastRecipientRow.delivered_at.is_(None),
                )
            )).scalars().all()
            per_broadcast: Counter[str] = Counter()
            for row in rows:
                row.delivered_at = now
                per_broadcast[row.broadcast_id] += 1
            await self._bump_stats(db, per_broadcast, "delivered")

        logger.debug("webhook_delivery_recorded", page_id=page_id, count=len(rows))
        return len(rows)

    async def record_read(self, page_id: str, reader_id: Optional[str], watermark: Any) -> int:
        """Mark everything sent to `reader_id` up to the watermark (ms) as read."""
        if not reader_id or watermark is None:
            return 0
        try:
            until = datetime.fromtimestamp(float(watermark) / 1000.0, tz=timezone.utc)
        except (TypeError, ValueError):
            return 0

        now = datetime.now(timezone.utc)
        async with get_session() as db:
            rows = (await db.execute(
                select(BroadcastRecipientRow).where(
                    BroadcastRecipientRow.page_id == page_id,
                    BroadcastRecipientRow.recipient_id == reader_id,
                    BroadcastRecipientRow.sent_at <= until,
                    BroadcastRecipientRow.read_at.is_(None),
                )
            )).scalars().all()
            read: Counter[str] = Counter()
            delivered: Counter[str] = Counter()
            for row in rows:
                row.read_at = now
                read[row.broadcast_id] += 1
                # a read receipt implies delivery
                if row.delivered_at is None:
                    row.delivered_at = now
                    delivered[row.broadcast_id] += 1
            await self._bump_stats(db, read, "read")
            await self._bump_stats(db, delivered, "delivered")

        logger.debug("webhook_read_recorded", page_id=page_id, count=len(rows))
        return len(rows)

    @staticmethod
    async def _bump_stats(db, counts: Counter, key: str) -> None:
        for broadcast_id, n in counts.items():
            broadcast = await db.get(BroadcastRow, broadcast_id)
            if broadcast is None:
                continue
            stats = dict(broadcast.stats or {})
            stats[key] = int(stats.get(key, 0)) + n
            broadcast.stats = stats
