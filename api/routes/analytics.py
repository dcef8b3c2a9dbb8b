"""
Dashboard analytics.

Daily series are grouped by the UTC calendar date of created_at and
returned oldest first.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import require_organization, require_permission
from api.routes import as_utc, created_between, ok
from database.models import (
    BroadcastRow, CommentRow, FacebookPageRow, MonitoredPostRow, OrganizationMemberRow,
)
from database.session import session_scope
from models.schemas import AuthContext, BroadcastStatus, Permission

router = APIRouter()


def _day(value: datetime) -> str:
    return as_utc(value).date().isoformat()


async def _count(db: AsyncSession, model, *where) -> int:
    return await db.scalar(select(func.count()).select_from(model).where(*where)) or 0


@router.get("/dashboard")
async def dashboard(
    auth: AuthContext = Depends(require_organization),
    db: AsyncSession = Depends(session_scope),
):
    org_id = auth.organization_id
    return ok({
        "totalBroadcasts": await _count(db, BroadcastRow, BroadcastRow.organization_id == org_id),
        "scheduledBroadcasts": await _count(
            db, BroadcastRow,
            BroadcastRow.organization_id == org_id,
            BroadcastRow.status == BroadcastStatus.SCHEDULED.value,
        ),
        "totalComments": await _count(db, CommentRow, CommentRow.organization_id == org_id),
        "repliedComments": await _count(
            db, CommentRow,
            CommentRow.organization_id == org_id,
            CommentRow.is_replied.is_(True),
        ),
        "connectedPages": await _count(
            db, FacebookPageRow,
            FacebookPageRow.organization_id == org_id,
            FacebookPageRow.is_active.is_(True),
        ),
        "teamMembers": await _count(
            db, OrganizationMemberRow, OrganizationMemberRow.organization_id == org_id,
        ),
    })


@router.get("/broadcasts")
async def broadcast_analytics(
    start_date: Optional[datetime] = Query(default=None, alias="startDate"),
    end_date: Optional[datetime] = Query(default=None, alias="endDate"),
    auth: AuthContext = Depends(require_permission(Permission.ANALYTICS.value)),
    db: AsyncSession = Depends(session_scope),
):
    rows = (await db.execute(
        select(BroadcastRow.created_at, BroadcastRow.stats, BroadcastRow.recipient_ids)
        .where(
            BroadcastRow.organization_id == auth.organization_id,
            *created_between(BroadcastRow.created_at, as_utc(start_date), as_utc(end_date)),
        )
        .order_by(BroadcastRow.created_at)
    )).all()

    days: dict[str, dict[str, Any]] = {}
    for created_at, stats, recipient_ids in rows:
        date = _day(created_at)
        day = days.setdefault(date, {
            "date": date, "count": 0, "sent": 0, "delivered": 0, "read": 0, "recipients": 0,
        })
        stats = stats or {}
        day["count"] += 1
        day["sent"] += int(stats.get("sent", 0))
        day["delivered"] += int(stats.get("delivered", 0))
        day["read"] += int(stats.get("read", 0))
        day["recipients"] += len(recipient_ids or [])
    return ok(list(days.values()))


@router.get("/comments")
async def comment_analytics(
    start_date: Optional[datetime] = Query(default=None, alias="startDate"),
    end_date: Optional[datetime] = Query(default=None, alias="endDate"),
    auth: AuthContext = Depends(require_permission(Permission.ANALYTICS.value)),
    db: AsyncSession = Depends(session_scope),
):
    rows = (await db.execute(
        select(CommentRow.created_at, CommentRow.is_replied,
               CommentRow.is_forwarded, CommentRow.replied_at)
        .where(
            CommentRow.organization_id == auth.organization_id,
            *created_between(CommentRow.created_at, as_utc(start_date), as_utc(end_date)),
        )
        .order_by(CommentRow.created_at)
    )).all()

    days: dict[str, dict[str, Any]] = {}
    response_seconds: dict[str, list[float]] = {}
    for created_at, is_replied, is_forwarded, replied_at in rows:
        date = _day(created_at)
        day = days.setdefault(date, {
            "date": date, "total": 0, "replied": 0, "forwarded": 0, "avgResponseTime": 0,
        })
        day["total"] += 1
        if is_forwarded:
            day["forwarded"] += 1
        if is_replied:
            day["replied"] += 1
            if replied_at is not None:
                delta = as_utc(replied_at) - as_utc(created_at)
                response_seconds.setdefault(date, []).append(delta.total_seconds())

    # average response time in whole minutes
    for date, samples in response_seconds.items():
        days[date]["avgResponseTime"] = round(sum(samples) / len(samples) / 60)
    return ok(list(days.values()))


@router.get("/pages")
async def page_performance(
    auth: AuthContext = Depends(require_permission(Permission.ANALYTICS.value)),
    db: AsyncSession = Depends(session_scope),
):
    pages = (await db.execute(
        select(FacebookPageRow).where(
            FacebookPageRow.organization_id == auth.organization_id,
            FacebookPageRow.is_active.is_(True),
        )
    )).scalars().all()

    data = []
    for page in pages:
        broadcast_stats = (await db.execute(
            select(BroadcastRow.stats).where(BroadcastRow.page_id == page.id)
        )).scalars().all()
        totals = {"sent": 0, "delivered": 0, "read": 0}
        for stats in broadcast_stats:
            for key in totals:
                totals[key] += int((stats or {}).get(key, 0))

        item = page.to_dict()
        item["counts"] = {
            "broadcasts": len(broadcast_stats),
            "posts": await _count(db, MonitoredPostRow, MonitoredPostRow.page_id == page.id),
        }
        item["broadcastStats"] = totals
        item["totalComments"] = await db.scalar(
            select(func.count())
            .select_from(CommentRow)
            .join(MonitoredPostRow, CommentRow.post_id == MonitoredPostRow.id)
            .where(MonitoredPostRow.page_id == page.id)
        ) or 0
        data.append(item)
    return ok(data)
