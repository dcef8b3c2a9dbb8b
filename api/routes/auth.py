"""
Auth routes — e-mail signup/login and Facebook OAuth login.

Every successful login returns a JWT scoped to one organization; the
caller's first membership is used when a user belongs to several.
"""
from __future__ import annotations

import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import urlencode

import structlog
from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import GraphFactory, authenticate, get_graph_factory
from api.errors import AppError, bad_request
from api.routes import ok
from config.settings import get_settings
from core.security import create_token, hash_password, verify_password
from database.models import OrganizationMemberRow, OrganizationRow, UserRow
from database.session import session_scope
from database.usage import increment_usage
from facebook.graph import FacebookAPIError, oauth_dialog_url
from models.schemas import (
    ALL_PERMISSIONS, AuthContext, ErrorCode, JwtPayload, LoginRequest, MemberRole,
    OrgStatus, PlanType, SignupRequest,
)

logger = structlog.get_logger()

router = APIRouter()


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug or "org"


async def _unique_slug(db: AsyncSession, base: str) -> str:
    slug = base
    while await db.scalar(select(OrganizationRow.id).where(OrganizationRow.slug == slug)):
        slug = f"{base}-{secrets.token_hex(3)}"
    return slug


async def create_workspace(db: AsyncSession, user: UserRow, name: str, slug: str) -> tuple[OrganizationRow, OrganizationMemberRow]:
    """New trial organization owned by `user`, with its first usage row."""
    trial_days = get_settings().auth.trial_days
    org = OrganizationRow(
        name=name,
        slug=await _unique_slug(db, slug),
        plan=PlanType.STARTER.value,
        status=OrgStatus.TRIAL.value,
        trial_ends_at=datetime.now(timezone.utc) + timedelta(days=trial_days),
        settings={},
    )
    db.add(org)
    await db.flush()

    member = OrganizationMemberRow(
        organization_id=org.id,
        user_id=user.id,
        role=MemberRole.OWNER.value,
        permissions=list(ALL_PERMISSIONS),
    )
    db.add(member)
    await increment_usage(db, org.id, team_members=1)
    await db.flush()
    return org, member


def _token_for(user: UserRow, member: OrganizationMemberRow) -> str:
    return create_token(JwtPayload(
        user_id=user.id,
        organization_id=member.organization_id,
        role=member.role,
        permissions=list(member.permissions or []),
    ))


async def _first_membership(db: AsyncSession, user_id: str) -> Optional[OrganizationMemberRow]:
    return (await db.execute(
        select(OrganizationMemberRow)
        .where(OrganizationMemberRow.user_id == user_id)
        .order_by(OrganizationMemberRow.joined_at)
        .limit(1)
    )).scalar_one_or_none()


# ══════════════════════════════════════════════════════════════
#  E-MAIL LOGIN
# ══════════════════════════════════════════════════════════════

@router.post("/signup")
async def signup(req: SignupRequest, db: AsyncSession = Depends(session_scope)):
    exists = await db.scalar(select(UserRow.id).where(UserRow.email == req.email))
    if exists:
        raise bad_request("Email already registered")

    user = UserRow(email=req.email, name=req.name, password_hash=hash_password(req.password))
    db.add(user)
    await db.flush()

    org, member = await create_workspace(db, user, req.organization_name, slugify(req.organization_name))
    logger.info("user_signed_up", user_id=user.id, organization_id=org.id)

    return ok({
        "user": user.to_dict(),
        "organization": org.to_dict(),
        "token": _token_for(user, member),
    })


@router.post("/login")
async def login(req: LoginRequest, db: AsyncSession = Depends(session_scope)):
    user = (await db.execute(select(UserRow).where(UserRow.email == req.email))).scalar_one_or_none()
    if user is None or not verify_password(req.password, user.password_hash):
        raise AppError(401, "Invalid credentials", ErrorCode.UNAUTHORIZED)

    member = await _first_membership(db, user.id)
    if member is None:
        raise AppError(403, "No organization found", ErrorCode.ORG_NOT_FOUND)

    user.last_login_at = datetime.now(timezone.utc)
    await db.flush()
    logger.info("user_logged_in", user_id=user.id, organization_id=member.organization_id)

    return ok({
        "user": user.to_dict(),
        "organization": member.organization.to_dict(),
        "token": _token_for(user, member),
    })


@router.post("/logout")
async def logout():
    # Tokens are stateless; the client discards its copy.
    return ok(message="Logged out successfully")


@router.get("/me")
async def me(auth: AuthContext = Depends(authenticate), db: AsyncSession = Depends(session_scope)):
    user = await db.get(UserRow, auth.user_id)
    org = await db.get(OrganizationRow, auth.organization_id) if auth.organization_id else None
    return ok({
        "user": user.to_dict(),
        "organization": org.to_dict() if org else None,
        "role": auth.membership.role.value if auth.membership else None,
        "permissions": auth.membership.permissions if auth.membership else None,
    })


# ══════════════════════════════════════════════════════════════
#  FACEBOOK OAUTH
# ══════════════════════════════════════════════════════════════

@router.get("/facebook")
async def facebook_login():
    return RedirectResponse(oauth_dialog_url(), status_code=302)


async def _facebook_user(db: AsyncSession, profile: dict) -> UserRow:
    """Find the user by Facebook id, then by e-mail; create one otherwise."""
    facebook_id = str(profile["id"])
    user = (await db.execute(select(UserRow).where(UserRow.facebook_id == facebook_id))).scalar_one_or_none()
    email = profile.get("email")
    if user is None and email:
        user = (await db.execute(select(UserRow).where(UserRow.email == email))).scalar_one_or_none()
        if user is not None:
            user.facebook_id = facebook_id
    if user is None:
        user = UserRow(
            email=email or f"{facebook_id}@facebook.local",
            name=profile.get("name") or "",
            facebook_id=facebook_id,
        )
        db.add(user)

    picture = ((profile.get("picture") or {}).get("data") or {}).get("url")
    if picture:
        user.avatar_url = picture
    await db.flush()
    return user


@router.get("/facebook/callback")
async def facebook_callback(
    code: Optional[str] = Query(default=None),
    db: AsyncSession = Depends(session_scope),
    graph_factory: GraphFactory = Depends(get_graph_factory),
):
    settings = get_settings()
    client_url = settings.auth.client_url.rstrip("/")
    try:
        if not code:
            raise AppError(401, "Authentication failed", ErrorCode.UNAUTHORIZED)

        async with graph_factory("") as graph:
            await graph.exchange_code(code, settings.facebook.callback_url)
            profile = await graph.get_me()

        user = await _facebook_user(db, profile)
        member = await _first_membership(db, user.id)
        if member is None:
            _, member = await create_workspace(
                db, user, f"{user.name}'s Workspace", f"workspace-{user.id[:8]}",
            )
        user.last_login_at = datetime.now(timezone.utc)
        await db.flush()
        token = _token_for(user, member)
    except (AppError, FacebookAPIError, KeyError) as e:
        await db.rollback()
        logger.error("facebook_login_failed", error=str(e))
        return RedirectResponse(f"{client_url}/login?error=auth_failed", status_code=302)

    logger.info("facebook_login", user_id=user.id, organization_id=member.organization_id)
    return RedirectResponse(f"{client_url}/auth/callback?{urlencode({'token': token})}", status_code=302)
