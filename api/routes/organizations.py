"""Organization settings, team membership and usage."""
from __future__ import annotations

from datetime import datetime, timezone

import structlog
from fastapi import APIRouter, Depends
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import require_organization, require_permission
from api.errors import bad_request, not_found
from api.routes import ok
from database.models import (
    BroadcastRow, FacebookPageRow, OrganizationMemberRow, OrganizationRow, SubscriptionRow, UserRow,
)
from database.session import session_scope
from database.usage import get_usage, increment_usage
from models.schemas import (
    AuthContext, ErrorCode, InviteMemberRequest, MemberRole, Permission, SubscriptionStatus,
    UpdateMemberRequest, UpdateOrganizationRequest, plan_limits,
)

logger = structlog.get_logger()

router = APIRouter()


async def _count(db: AsyncSession, model, *where) -> int:
    return await db.scalar(select(func.count()).select_from(model).where(*where)) or 0


async def _load_org(db: AsyncSession, organization_id: str) -> OrganizationRow:
    org = await db.get(OrganizationRow, organization_id)
    if org is None:
        raise not_found("Organization not found", ErrorCode.ORG_NOT_FOUND)
    return org


async def _load_member(db: AsyncSession, organization_id: str, member_id: str) -> OrganizationMemberRow:
    member = (await db.execute(
        select(OrganizationMemberRow).where(
            OrganizationMemberRow.id == member_id,
            OrganizationMemberRow.organization_id == organization_id,
        )
    )).scalar_one_or_none()
    if member is None:
        raise not_found("Member not found")
    return member


# ══════════════════════════════════════════════════════════════
#  ORGANIZATION
# ══════════════════════════════════════════════════════════════

@router.get("/current")
async def get_current(
    auth: AuthContext = Depends(require_organization),
    db: AsyncSession = Depends(session_scope),
):
    org = await _load_org(db, auth.organization_id)
    org_id = org.id

    subscription = (await db.execute(
        select(SubscriptionRow)
        .where(
            SubscriptionRow.organization_id == org_id,
            SubscriptionRow.status == SubscriptionStatus.ACTIVE.value,
        )
        .order_by(SubscriptionRow.created_at.desc())
        .limit(1)
    )).scalar_one_or_none()

    data = org.to_dict()
    data["counts"] = {
        "members": await _count(db, OrganizationMemberRow, OrganizationMemberRow.organization_id == org_id),
        "pages": await _count(db, FacebookPageRow,
                              FacebookPageRow.organization_id == org_id,
                              FacebookPageRow.is_active.is_(True)),
        "broadcasts": await _count(db, BroadcastRow, BroadcastRow.organization_id == org_id),
    }
    data["subscription"] = subscription.to_dict() if subscription else None
    return ok(data)


@router.put("/current")
async def update_current(
    req: UpdateOrganizationRequest,
    auth: AuthContext = Depends(require_permission(Permission.SETTINGS.value)),
    db: AsyncSession = Depends(session_scope),
):
    org = await _load_org(db, auth.organization_id)
    if req.name is not None:
        org.name = req.name
    if req.logo_url is not None:
        org.logo_url = req.logo_url
    if req.settings is not None:
        merged = dict(org.settings or {})
        merged.update(req.settings.model_dump(by_alias=True, exclude_none=True))
        org.settings = merged
    org.updated_at = datetime.now(timezone.utc)
    await db.flush()

    logger.info("organization_updated", organization_id=org.id)
    return ok(org.to_dict())


# ══════════════════════════════════════════════════════════════
#  MEMBERS
# ══════════════════════════════════════════════════════════════

@router.get("/members")
async def list_members(
    auth: AuthContext = Depends(require_permission(Permission.TEAM.value)),
    db: AsyncSession = Depends(session_scope),
):
    members = (await db.execute(
        select(OrganizationMemberRow)
        .where(OrganizationMemberRow.organization_id == auth.organization_id)
        .order_by(OrganizationMemberRow.joined_at.desc())
    )).scalars().all()
    return ok([m.to_dict() for m in members])


@router.post("/members/invite")
async def invite_member(
    req: InviteMemberRequest,
    auth: AuthContext = Depends(require_permission(Permission.TEAM.value)),
    db: AsyncSession = Depends(session_scope),
):
    email = str(req.email)
    user = (await db.execute(select(UserRow).where(UserRow.email == email))).scalar_one_or_none()
    if user is None:
        # Placeholder account until the invitee logs in.
        user = UserRow(email=email, name=email.split("@")[0])
        db.add(user)
        await db.flush()

    existing = await db.scalar(
        select(OrganizationMemberRow.id).where(
            OrganizationMemberRow.organization_id == auth.organization_id,
            OrganizationMemberRow.user_id == user.id,
        )
    )
    if existing:
        raise bad_request("User is already a member")

    member = OrganizationMemberRow(
        organization_id=auth.organization_id,
        user_id=user.id,
        role=req.role.value,
        permissions=[p.value for p in req.permissions or []],
    )
    db.add(member)
    await increment_usage(db, auth.organization_id, team_members=1)
    await db.flush()
    await db.refresh(member, ["user"])

    logger.info("member_invited", organization_id=auth.organization_id,
                member_id=member.id, role=member.role)
    return ok(member.to_dict())


@router.put("/members/{member_id}")
async def update_member(
    member_id: str,
    req: UpdateMemberRequest,
    auth: AuthContext = Depends(require_permission(Permission.TEAM.value)),
    db: AsyncSession = Depends(session_scope),
):
    member = await _load_member(db, auth.organization_id, member_id)
    if member.role == MemberRole.OWNER.value and req.role is not None:
        raise bad_request("Cannot change the organization owner's role")

    if req.role is not None:
        member.role = req.role.value
    if req.permissions is not None:
        member.permissions = [p.value for p in req.permissions]
    await db.flush()

    logger.info("member_updated", organization_id=auth.organization_id, member_id=member.id)
    return ok(member.to_dict())


@router.delete("/members/{member_id}")
async def remove_member(
    member_id: str,
    auth: AuthContext = Depends(require_permission(Permission.TEAM.value)),
    db: AsyncSession = Depends(session_scope),
):
    member = await _load_member(db, auth.organization_id, member_id)
    if member.role == MemberRole.OWNER.value:
        raise bad_request("Cannot remove organization owner")

    await db.delete(member)
    await increment_usage(db, auth.organization_id, team_members=-1)

    logger.info("member_removed", organization_id=auth.organization_id, member_id=member_id)
    return ok(message="Member removed successfully")


# ══════════════════════════════════════════════════════════════
#  USAGE
# ══════════════════════════════════════════════════════════════

@router.get("/usage")
async def get_org_usage(
    auth: AuthContext = Depends(require_organization),
    db: AsyncSession = Depends(session_scope),
):
    org = await _load_org(db, auth.organization_id)
    usage = await get_usage(db, org.id)
    return ok({
        "usage": usage.to_dict() if usage else {
            "broadcastsSent": 0,
            "commentsProcessed": 0,
            "pagesConnected": 0,
            "teamMembers": 0,
        },
        "limits": plan_limits(org.plan),
        "plan": org.plan,
    })
