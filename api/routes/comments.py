"""
Monitored posts and their comments.

New comments arrive through the Facebook webhook (core.webhooks); these
routes manage which posts are watched and let the team reply or forward.
"""
from __future__ import annotations

from collections import Counter
from datetime import datetime, timezone
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import (
    GraphFactory, get_graph_factory, get_queue, get_realtime_hub, require_permission,
)
from api.errors import bad_request, not_found
from api.routes import as_utc, created_between, ok, paginated
from api.routes.pages import get_active_page
from config.settings import get_settings
from core.realtime import RealtimeHub
from database.models import CommentRow, FacebookPageRow, MonitoredPostRow
from database.session import session_scope
from facebook.graph import build_message, parse_graph_time
from job_queue.message_queue import MessageQueue, Queues
from models.schemas import (
    AddMonitoredPostRequest, AuthContext, JobType, Permission, ReplyCommentRequest,
)

logger = structlog.get_logger()

router = APIRouter()


def _rate(part: int, total: int) -> float:
    return (part / total) * 100 if total else 0


async def _load_comment(db: AsyncSession, organization_id: str, comment_id: str) -> CommentRow:
    comment = (await db.execute(
        select(CommentRow).where(
            CommentRow.id == comment_id,
            CommentRow.organization_id == organization_id,
        )
    )).scalar_one_or_none()
    if comment is None:
        raise not_found("Comment not found")
    return comment


async def import_comments(db: AsyncSession, post: MonitoredPostRow, comments: list[dict]) -> int:
    """Store comments fetched from Graph, skipping ids already stored. Returns how many were added."""
    ids = [str(c["id"]) for c in comments if c.get("id")]
    if not ids:
        return 0
    known = set((await db.execute(
        select(CommentRow.comment_id).where(CommentRow.comment_id.in_(ids))
    )).scalars().all())

    added = 0
    for item in comments:
        comment_id = str(item.get("id") or "")
        if not comment_id or comment_id in known:
            continue
        sender = item.get("from") or {}
        db.add(CommentRow(
            organization_id=post.organization_id,
            post_id=post.id,
            comment_id=comment_id,
            parent_comment_id=(item.get("parent") or {}).get("id"),
            commenter_id=sender.get("id"),
            commenter_name=sender.get("name"),
            comment_text=item.get("message"),
            created_at=parse_graph_time(item.get("created_time")),
        ))
        known.add(comment_id)
        added += 1

    post.comment_count = (post.comment_count or 0) + added
    await db.flush()
    return added


# ══════════════════════════════════════════════════════════════
#  MONITORED POSTS
# ══════════════════════════════════════════════════════════════

@router.get("/posts")
async def list_posts(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    is_active: Optional[bool] = Query(default=None, alias="isActive"),
    auth: AuthContext = Depends(require_permission(Permission.COMMENTS.value)),
    db: AsyncSession = Depends(session_scope),
):
    where = [MonitoredPostRow.organization_id == auth.organization_id]
    if is_active is not None:
        where.append(MonitoredPostRow.is_active.is_(is_active))

    total = await db.scalar(select(func.count()).select_from(MonitoredPostRow).where(*where)) or 0
    posts = (await db.execute(
        select(MonitoredPostRow)
        .where(*where)
        .order_by(MonitoredPostRow.added_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )).scalars().all()

    counts = dict((await db.execute(
        select(CommentRow.post_id, func.count())
        .where(CommentRow.post_id.in_([p.id for p in posts]))
        .group_by(CommentRow.post_id)
    )).all()) if posts else {}

    data = []
    for post in posts:
        item = post.to_dict()
        item["counts"] = {"comments": counts.get(post.id, 0)}
        data.append(item)
    return paginated(data, total, page, limit)


@router.post("/posts")
async def add_post(
    req: AddMonitoredPostRequest,
    auth: AuthContext = Depends(require_permission(Permission.COMMENTS.value)),
    db: AsyncSession = Depends(session_scope),
    graph_factory: GraphFactory = Depends(get_graph_factory),
):
    page = await get_active_page(db, auth.organization_id, req.page_id)

    async with graph_factory(page.page_access_token) as graph:
        details: dict = {}
        post_id = req.post_id
        if req.post_url and not post_id:
            details = await graph.get_post_by_url(req.post_url)
            post_id = str(details["id"])

        existing = (await db.execute(
            select(MonitoredPostRow).where(
                MonitoredPostRow.organization_id == auth.organization_id,
                MonitoredPostRow.post_id == post_id,
            )
        )).scalar_one_or_none()

        if existing is not None:
            if existing.is_active:
                raise bad_request("Post already being monitored")
            existing.is_active = True
            existing.added_by_id = auth.user_id
            existing.added_at = datetime.now(timezone.utc)
            await db.flush()
            logger.info("monitored_post_reactivated", post_id=existing.post_id)
            return ok(existing.to_dict())

        post = MonitoredPostRow(
            organization_id=auth.organization_id,
            page_id=page.id,
            post_id=post_id,
            post_url=req.post_url or details.get("permalink_url"),
            post_content=details.get("message"),
            added_by_id=auth.user_id,
            comment_count=0,
        )
        db.add(post)
        await db.flush()

        imported = await import_comments(db, post, await graph.get_post_comments(post_id))

    logger.info("monitored_post_added", post_id=post.post_id,
                organization_id=auth.organization_id, imported_comments=imported)
    return ok(post.to_dict())


@router.delete("/posts/{post_id}")
async def remove_post(
    post_id: str,
    auth: AuthContext = Depends(require_permission(Permission.COMMENTS.value)),
    db: AsyncSession = Depends(session_scope),
):
    post = (await db.execute(
        select(MonitoredPostRow).where(
            MonitoredPostRow.id == post_id,
            MonitoredPostRow.organization_id == auth.organization_id,
        )
    )).scalar_one_or_none()
    if post is None:
        raise not_found("Post not found")

    post.is_active = False
    logger.info("monitored_post_removed", post_id=post.post_id)
    return ok(message="Stopped monitoring post")


# ══════════════════════════════════════════════════════════════
#  COMMENTS
# ══════════════════════════════════════════════════════════════

@router.get("")
async def list_comments(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    post_id: Optional[str] = Query(default=None, alias="postId"),
    is_replied: Optional[bool] = Query(default=None, alias="isReplied"),
    auth: AuthContext = Depends(require_permission(Permission.COMMENTS.value)),
    db: AsyncSession = Depends(session_scope),
):
    where = [CommentRow.organization_id == auth.organization_id]
    if post_id:
        where.append(CommentRow.post_id == post_id)
    if is_replied is not None:
        where.append(CommentRow.is_replied.is_(is_replied))

    total = await db.scalar(select(func.count()).select_from(CommentRow).where(*where)) or 0
    comments = (await db.execute(
        select(CommentRow)
        .where(*where)
        .order_by(CommentRow.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )).scalars().all()
    return paginated([c.to_dict() for c in comments], total, page, limit)


@router.get("/stats")
async def comment_stats(
    start_date: Optional[datetime] = Query(default=None, alias="startDate"),
    end_date: Optional[datetime] = Query(default=None, alias="endDate"),
    auth: AuthContext = Depends(require_permission(Permission.ANALYTICS.value)),
    db: AsyncSession = Depends(session_scope),
):
    rows = (await db.execute(
        select(CommentRow.post_id, CommentRow.is_replied, CommentRow.is_forwarded).where(
            CommentRow.organization_id == auth.organization_id,
            *created_between(CommentRow.created_at, as_utc(start_date), as_utc(end_date)),
        )
    )).all()

    total = len(rows)
    replied = sum(1 for _, is_replied, _ in rows if is_replied)
    forwarded = sum(1 for _, _, is_forwarded in rows if is_forwarded)
    by_post = Counter(post_id for post_id, _, _ in rows)

    return ok({
        "total": total,
        "replied": replied,
        "forwarded": forwarded,
        "replyRate": _rate(replied, total),
        "forwardRate": _rate(forwarded, total),
        "byPost": [{"postId": pid, "count": n} for pid, n in by_post.items()],
    })


@router.get("/quick-replies")
async def quick_replies(auth: AuthContext = Depends(require_permission(Permission.COMMENTS.value))):
    return ok(get_settings().comments.quick_replies)


@router.post("/{comment_id}/reply")
async def reply_to_comment(
    comment_id: str,
    req: ReplyCommentRequest,
    auth: AuthContext = Depends(require_permission(Permission.COMMENTS.value)),
    db: AsyncSession = Depends(session_scope),
    graph_factory: GraphFactory = Depends(get_graph_factory),
    hub: RealtimeHub = Depends(get_realtime_hub),
):
    comment = await _load_comment(db, auth.organization_id, comment_id)
    post = await db.get(MonitoredPostRow, comment.post_id)
    page = await db.get(FacebookPageRow, post.page_id)

    async with graph_factory(page.page_access_token) as graph:
        await graph.reply_to_comment(comment.comment_id, req.reply_text)
        if req.send_to_messenger and comment.commenter_id:
            await graph.send_message(comment.commenter_id, build_message(req.reply_text))

    comment.is_replied = True
    comment.reply_text = req.reply_text
    comment.replied_at = datetime.now(timezone.utc)
    comment.replied_by_id = auth.user_id
    await db.flush()
    data = comment.to_dict()
    await db.commit()

    await hub.emit(auth.organization_id, "comment-replied", {
        "commentId": comment_id,
        "replyText": req.reply_text,
    })
    logger.info("comment_replied", comment_id=comment_id, messenger=req.send_to_messenger)
    return ok(data)


@router.post("/{comment_id}/forward")
async def forward_comment(
    comment_id: str,
    auth: AuthContext = Depends(require_permission(Permission.COMMENTS.value)),
    db: AsyncSession = Depends(session_scope),
    queue: MessageQueue = Depends(get_queue),
):
    comment = await _load_comment(db, auth.organization_id, comment_id)
    await queue.enqueue(
        Queues.COMMENT, JobType.FORWARD_COMMENT,
        {"commentId": comment.id, "organizationId": auth.organization_id},
    )
    logger.info("comment_forward_queued", comment_id=comment.id)
    return ok(message="Comment queued for forwarding")
