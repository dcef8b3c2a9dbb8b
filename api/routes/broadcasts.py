"""
Broadcast routes.

Lifecycle:
    create (no scheduledAt)   → sending   → enqueued now  → sent | failed
    create (scheduledAt)      → scheduled → claimed by the scheduler when due
    scheduled                 → cancelled (DELETE)

Only scheduled broadcasts can be edited or cancelled.
"""
from __future__ import annotations

from collections import Counter, defaultdict
from datetime import datetime
from typing import Any, Optional

import structlog
from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import GraphFactory, get_graph_factory, get_queue, require_permission
from api.errors import AppError, not_found
from api.routes import as_utc, created_between, ok, paginated
from api.routes.pages import get_active_page
from database.models import BroadcastRow, OrganizationRow
from database.session import session_scope
from database.usage import get_usage
from facebook.graph import build_message, extract_recipients
from job_queue.message_queue import MessageQueue, Queues
from models.schemas import (
    AuthContext, BroadcastStatus, CreateBroadcastRequest, ErrorCode, JobType, Permission,
    RecipientType, SendTestBroadcastRequest, UpdateBroadcastRequest, limit_reached, plan_limits,
)

logger = structlog.get_logger()

router = APIRouter()

STAT_KEYS = ("sent", "failed", "delivered", "read")


def _attachments(items) -> list[dict[str, Any]]:
    return [a.model_dump(mode="json", exclude_none=True) for a in items or []]


async def _editable(db: AsyncSession, organization_id: str, broadcast_id: str, action: str) -> BroadcastRow:
    broadcast = (await db.execute(
        select(BroadcastRow).where(
            BroadcastRow.id == broadcast_id,
            BroadcastRow.organization_id == organization_id,
            BroadcastRow.status == BroadcastStatus.SCHEDULED.value,
        )
    )).scalar_one_or_none()
    if broadcast is None:
        raise not_found(f"Broadcast not found or cannot be {action}")
    return broadcast


# ══════════════════════════════════════════════════════════════
#  QUERIES
# ══════════════════════════════════════════════════════════════

@router.get("")
async def list_broadcasts(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[BroadcastStatus] = None,
    page_id: Optional[str] = Query(default=None, alias="pageId"),
    auth: AuthContext = Depends(require_permission(Permission.BROADCAST.value)),
    db: AsyncSession = Depends(session_scope),
):
    where = [BroadcastRow.organization_id == auth.organization_id]
    if status is not None:
        where.append(BroadcastRow.status == status.value)
    if page_id:
        where.append(BroadcastRow.page_id == page_id)

    total = await db.scalar(select(func.count()).select_from(BroadcastRow).where(*where)) or 0
    rows = (await db.execute(
        select(BroadcastRow)
        .where(*where)
        .order_by(BroadcastRow.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )).scalars().all()
    return paginated([b.to_dict() for b in rows], total, page, limit)


@router.get("/stats")
async def broadcast_stats(
    start_date: Optional[datetime] = Query(default=None, alias="startDate"),
    end_date: Optional[datetime] = Query(default=None, alias="endDate"),
    auth: AuthContext = Depends(require_permission(Permission.ANALYTICS.value)),
    db: AsyncSession = Depends(session_scope),
):
    rows = (await db.execute(
        select(BroadcastRow.status, BroadcastRow.page_id, BroadcastRow.stats).where(
            BroadcastRow.organization_id == auth.organization_id,
            *created_between(BroadcastRow.created_at, as_utc(start_date), as_utc(end_date)),
        )
    )).all()

    by_status: Counter[str] = Counter()
    by_page: dict[str, dict[str, Any]] = defaultdict(
        lambda: {"count": 0, "stats": {k: 0 for k in STAT_KEYS}}
    )
    for status, page_id, stats in rows:
        by_status[status] += 1
        entry = by_page[page_id]
        entry["count"] += 1
        for key in STAT_KEYS:
            entry["stats"][key] += int((stats or {}).get(key, 0))

    return ok({
        "total": len(rows),
        "byStatus": dict(by_status),
        "byPage": [{"pageId": pid, **entry} for pid, entry in by_page.items()],
    })


# ══════════════════════════════════════════════════════════════
#  TEST SEND
# ══════════════════════════════════════════════════════════════

@router.post("/test")
async def send_test_broadcast(
    req: SendTestBroadcastRequest,
    auth: AuthContext = Depends(require_permission(Permission.BROADCAST.value)),
    db: AsyncSession = Depends(session_scope),
    graph_factory: GraphFactory = Depends(get_graph_factory),
):
    page = await get_active_page(db, auth.organization_id, req.page_id)
    recipient = req.test_recipient_id or auth.user_id

    async with graph_factory(page.page_access_token) as graph:
        await graph.send_message(
            recipient, build_message(req.message_text, _attachments(req.message_attachments)),
        )

    logger.info("test_broadcast_sent", page_id=page.page_id, recipient_id=recipient)
    return ok(message="Test message sent successfully")


# ══════════════════════════════════════════════════════════════
#  CRUD
# ══════════════════════════════════════════════════════════════

@router.get("/{broadcast_id}")
async def get_broadcast(
    broadcast_id: str,
    auth: AuthContext = Depends(require_permission(Permission.BROADCAST.value)),
    db: AsyncSession = Depends(session_scope),
):
    broadcast = (await db.execute(
        select(BroadcastRow).where(
            BroadcastRow.id == broadcast_id,
            BroadcastRow.organization_id == auth.organization_id,
        )
    )).scalar_one_or_none()
    if broadcast is None:
        raise not_found("Broadcast not found")
    return ok(broadcast.to_dict())


@router.post("")
async def create_broadcast(
    req: CreateBroadcastRequest,
    auth: AuthContext = Depends(require_permission(Permission.BROADCAST.value)),
    db: AsyncSession = Depends(session_scope),
    graph_factory: GraphFactory = Depends(get_graph_factory),
    queue: MessageQueue = Depends(get_queue),
):
    org = await db.get(OrganizationRow, auth.organization_id)
    if org is None:
        raise not_found("Organization not found", ErrorCode.ORG_NOT_FOUND)

    usage = await get_usage(db, org.id)
    if limit_reached(plan_limits(org.plan)["broadcasts"], usage.broadcasts_sent if usage else 0):
        raise AppError(400, "Monthly broadcast limit reached", ErrorCode.PLAN_LIMIT_EXCEEDED)

    page = await get_active_page(db, org.id, req.page_id)

    if req.recipient_type == RecipientType.ALL:
        async with graph_factory(page.page_access_token) as graph:
            conversations = await graph.get_page_conversations()
        recipients = extract_recipients(conversations, page.page_id)
    else:
        # segments are explicit id lists for now
        recipients = list(dict.fromkeys(req.recipient_ids or []))

    scheduled_at = as_utc(req.scheduled_at)
    broadcast = BroadcastRow(
        organization_id=org.id,
        page_id=page.id,
        created_by_id=auth.user_id,
        message_text=req.message_text,
        message_attachments=_attachments(req.message_attachments),
        recipient_type=req.recipient_type.value,
        recipient_ids=recipients,
        scheduled_at=scheduled_at,
        status=(BroadcastStatus.SCHEDULED if scheduled_at else BroadcastStatus.SENDING).value,
    )
    db.add(broadcast)
    await db.flush()
    data = broadcast.to_dict()
    await db.commit()

    if scheduled_at is None:
        try:
            await queue.enqueue(
                Queues.BROADCAST, JobType.SEND_BROADCAST,
                {"broadcastId": broadcast.id, "organizationId": org.id},
                max_attempts=1,
            )
        except Exception as e:
            # nothing will pick up a "sending" row that never reached the queue
            broadcast.status = BroadcastStatus.FAILED.value
            await db.commit()
            logger.error("broadcast_enqueue_failed", broadcast_id=broadcast.id, error=str(e))
            raise AppError(500, "Failed to queue broadcast", ErrorCode.INTERNAL_ERROR) from e

    logger.info("broadcast_created", broadcast_id=data["id"], organization_id=org.id,
                recipients=len(recipients), status=data["status"])
    return ok(data)


@router.put("/{broadcast_id}")
async def update_broadcast(
    broadcast_id: str,
    req: UpdateBroadcastRequest,
    auth: AuthContext = Depends(require_permission(Permission.BROADCAST.value)),
    db: AsyncSession = Depends(session_scope),
):
    broadcast = await _editable(db, auth.organization_id, broadcast_id, "edited")
    if req.message_text is not None:
        broadcast.message_text = req.message_text
    if req.message_attachments is not None:
        broadcast.message_attachments = _attachments(req.message_attachments)
    if req.scheduled_at is not None:
        broadcast.scheduled_at = as_utc(req.scheduled_at)
    await db.flush()

    logger.info("broadcast_updated", broadcast_id=broadcast.id)
    return ok(broadcast.to_dict())


@router.delete("/{broadcast_id}")
async def cancel_broadcast(
    broadcast_id: str,
    auth: AuthContext = Depends(require_permission(Permission.BROADCAST.value)),
    db: AsyncSession = Depends(session_scope),
):
    broadcast = await _editable(db, auth.organization_id, broadcast_id, "cancelled")
    broadcast.status = BroadcastStatus.CANCELLED.value
    await db.flush()

    logger.info("broadcast_cancelled", broadcast_id=broadcast.id)
    return ok(message="Broadcast cancelled successfully")
