"""
Facebook Page connections.

Page access tokens are stored server-side and never returned; every
Graph call for a page goes through that page's own token.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Header
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import GraphFactory, get_graph_factory, require_organization, require_permission
from api.errors import AppError, bad_request, not_found
from api.routes import ok
from database.models import BroadcastRow, FacebookPageRow, MonitoredPostRow, OrganizationRow
from database.session import session_scope
from database.usage import increment_usage
from facebook.graph import FacebookAPIError, extract_participants
from models.schemas import (
    AuthContext, ConnectPageRequest, ErrorCode, Permission, limit_reached, plan_limits,
)

logger = structlog.get_logger()

router = APIRouter()


async def get_active_page(db: AsyncSession, organization_id: str, page_id: str) -> FacebookPageRow:
    """An active page of the organization by internal id, else 404 PAGE_NOT_CONNECTED."""
    page = (await db.execute(
        select(FacebookPageRow).where(
            FacebookPageRow.id == page_id,
            FacebookPageRow.organization_id == organization_id,
            FacebookPageRow.is_active.is_(True),
        )
    )).scalar_one_or_none()
    if page is None:
        raise not_found("Page not found", ErrorCode.PAGE_NOT_CONNECTED)
    return page


async def _counts_by_page(db: AsyncSession, column, organization_id: str, owner) -> dict[str, int]:
    rows = await db.execute(
        select(column, func.count()).where(owner == organization_id).group_by(column)
    )
    return {page_id: count for page_id, count in rows.all()}


# ══════════════════════════════════════════════════════════════
#  CONNECTED PAGES
# ══════════════════════════════════════════════════════════════

@router.get("")
async def list_pages(
    auth: AuthContext = Depends(require_organization),
    db: AsyncSession = Depends(session_scope),
):
    org_id = auth.organization_id
    pages = (await db.execute(
        select(FacebookPageRow)
        .where(FacebookPageRow.organization_id == org_id, FacebookPageRow.is_active.is_(True))
        .order_by(FacebookPageRow.connected_at.desc())
    )).scalars().all()

    broadcasts = await _counts_by_page(db, BroadcastRow.page_id, org_id, BroadcastRow.organization_id)
    posts = await _counts_by_page(db, MonitoredPostRow.page_id, org_id, MonitoredPostRow.organization_id)

    data = []
    for page in pages:
        item = page.to_dict()
        item["counts"] = {"broadcasts": broadcasts.get(page.id, 0), "posts": posts.get(page.id, 0)}
        data.append(item)
    return ok(data)


@router.get("/available")
async def available_pages(
    x_facebook_token: Optional[str] = Header(default=None),
    auth: AuthContext = Depends(require_organization),
    db: AsyncSession = Depends(session_scope),
    graph_factory: GraphFactory = Depends(get_graph_factory),
):
    """Pages the Facebook user manages that this organization has not connected yet."""
    if not x_facebook_token:
        raise AppError(400, "Facebook access token required", ErrorCode.FACEBOOK_API_ERROR)

    async with graph_factory(x_facebook_token) as graph:
        facebook_pages = await graph.get_user_pages()

    connected = set((await db.execute(
        select(FacebookPageRow.page_id).where(FacebookPageRow.organization_id == auth.organization_id)
    )).scalars().all())
    return ok([p for p in facebook_pages if str(p.get("id")) not in connected])


@router.post("/connect")
async def connect_page(
    req: ConnectPageRequest,
    auth: AuthContext = Depends(require_permission(Permission.SETTINGS.value)),
    db: AsyncSession = Depends(session_scope),
    graph_factory: GraphFactory = Depends(get_graph_factory),
):
    org = await db.get(OrganizationRow, auth.organization_id)
    if org is None:
        raise not_found("Organization not found", ErrorCode.ORG_NOT_FOUND)

    active_pages = await db.scalar(
        select(func.count()).select_from(FacebookPageRow).where(
            FacebookPageRow.organization_id == org.id,
            FacebookPageRow.is_active.is_(True),
        )
    ) or 0
    if limit_reached(plan_limits(org.plan)["pages"], active_pages):
        raise AppError(400, "Page limit reached for your plan", ErrorCode.PLAN_LIMIT_EXCEEDED)

    existing = (await db.execute(
        select(FacebookPageRow).where(
            FacebookPageRow.organization_id == org.id,
            FacebookPageRow.page_id == req.page_id,
        )
    )).scalar_one_or_none()

    if existing is not None:
        if existing.is_active:
            raise bad_request("Page already connected")
        existing.is_active = True
        existing.page_access_token = req.page_access_token
        existing.connected_by_id = auth.user_id
        existing.connected_at = datetime.now(timezone.utc)
        await increment_usage(db, org.id, pages_connected=1)
        await db.flush()
        logger.info("page_reactivated", organization_id=org.id, page_id=existing.page_id)
        return ok(existing.to_dict())

    async with graph_factory(req.page_access_token) as graph:
        details = await graph.get_page_details(req.page_id)
        page = FacebookPageRow(
            organization_id=org.id,
            page_id=req.page_id,
            page_name=details.get("name") or req.page_name,
            page_access_token=req.page_access_token,
            followers_count=details.get("fan_count") or 0,
            connected_by_id=auth.user_id,
        )
        db.add(page)
        await db.flush()

        try:
            await graph.subscribe_page_to_webhooks(req.page_id)
        except FacebookAPIError as e:
            logger.error("webhook_subscription_failed", page_id=req.page_id, error=e.message)

    await increment_usage(db, org.id, pages_connected=1)
    logger.info("page_connected", organization_id=org.id, page_id=page.page_id)
    return ok(page.to_dict())


@router.delete("/{page_id}/disconnect")
async def disconnect_page(
    page_id: str,
    auth: AuthContext = Depends(require_permission(Permission.SETTINGS.value)),
    db: AsyncSession = Depends(session_scope),
):
    page = await get_active_page(db, auth.organization_id, page_id)
    page.is_active = False
    await increment_usage(db, auth.organization_id, pages_connected=-1)

    logger.info("page_disconnected", organization_id=auth.organization_id, page_id=page.page_id)
    return ok(message="Page disconnected successfully")


# ══════════════════════════════════════════════════════════════
#  PAGE DATA
# ══════════════════════════════════════════════════════════════

@router.get("/{page_id}/posts")
async def page_posts(
    page_id: str,
    auth: AuthContext = Depends(require_organization),
    db: AsyncSession = Depends(session_scope),
    graph_factory: GraphFactory = Depends(get_graph_factory),
):
    page = await get_active_page(db, auth.organization_id, page_id)
    async with graph_factory(page.page_access_token) as graph:
        posts = await graph.get_page_posts(page.page_id)
    return ok(posts)


@router.get("/{page_id}/followers")
async def page_followers(
    page_id: str,
    auth: AuthContext = Depends(require_organization),
    db: AsyncSession = Depends(session_scope),
    graph_factory: GraphFactory = Depends(get_graph_factory),
):
    page = await get_active_page(db, auth.organization_id, page_id)
    async with graph_factory(page.page_access_token) as graph:
        conversations = await graph.get_page_conversations()
    return ok(extract_participants(conversations, page.page_id))


@router.post("/{page_id}/refresh")
async def refresh_page(
    page_id: str,
    auth: AuthContext = Depends(require_organization),
    db: AsyncSession = Depends(session_scope),
    graph_factory: GraphFactory = Depends(get_graph_factory),
):
    page = await get_active_page(db, auth.organization_id, page_id)
    async with graph_factory(page.page_access_token) as graph:
        details = await graph.get_page_details(page.page_id)

    page.page_name = details.get("name") or page.page_name
    page.followers_count = details.get("fan_count") or 0
    await db.flush()

    logger.info("page_refreshed", page_id=page.page_id, followers=page.followers_count)
    return ok(page.to_dict())
