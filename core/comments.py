"""
Comment Forwarder — the "forward-comment" job worker.

Sends the configured thank-you message to a commenter's Messenger inbox
and marks the comment as forwarded.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional

import structlog

from config.settings import CommentsConfig, get_settings
from core.realtime import RealtimeHub, get_hub
from database.models import CommentRow, FacebookPageRow, MonitoredPostRow
from database.session import get_session
from database.usage import increment_usage
from facebook.graph import GraphClient
from job_queue.message_queue import QueueJob

logger = structlog.get_logger()


class CommentNotFound(LookupError):
    pass


def render_forward_message(template: str, comment_text: Optional[str]) -> str:
    return template.replace("{comment_text}", comment_text or "")


class CommentForwarder:

    def __init__(
        self,
        graph_factory: Callable[[str], GraphClient] = GraphClient,
        hub: Optional[RealtimeHub] = None,
        config: Optional[CommentsConfig] = None,
    ):
        self.graph_factory = graph_factory
        self.hub = hub or get_hub()
        self.config = config or get_settings().comments

    async def process(self, job: QueueJob) -> bool:
        """Returns True when a comment was forwarded, False when it already had been."""
        comment_id = job.data["commentId"]
        organization_id = job.data["organizationId"]

        async with get_session() as db:
            comment = await db.get(CommentRow, comment_id)
            post = await db.get(MonitoredPostRow, comment.post_id) if comment else None
            page = await db.get(FacebookPageRow, post.page_id) if post else None
            if comment is None or post is None or page is None:
                raise CommentNotFound(f"Comment or post not found: {comment_id}")

            if comment.is_forwarded:
                logger.info("comment_already_forwarded", comment_id=comment_id)
                return False

            if comment.commenter_id:
                text = render_forward_message(self.config.forward_template, comment.comment_text)
                async with self.graph_factory(page.page_access_token) as graph:
                    await graph.send_message(comment.commenter_id, {"text": text})

            comment.is_forwarded = True
            comment.forwarded_at = datetime.now(timezone.utc)
            await increment_usage(db, organization_id, comments_processed=1)

        await self.hub.emit(organization_id, "comment-forwarded", {"commentId": comment_id})
        logger.info("comment_forwarded", comment_id=comment_id)
        return True
