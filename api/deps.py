"""
Request dependencies: auth context, permission gates and shared collaborators.

    @router.post("/")
    async def create(auth: AuthContext = Depends(require_permission("broadcast")),
                     db: AsyncSession = Depends(session_scope)): ...
"""
from __future__ import annotations

from typing import Callable, Optional

import structlog
from fastapi import Depends, Header
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.errors import AppError
from core.realtime import RealtimeHub, get_hub
from core.security import TokenExpired, TokenError, decode_token
from database.models import OrganizationMemberRow, UserRow
from database.session import session_scope
from facebook.graph import GraphClient
from job_queue.message_queue import MessageQueue, get_message_queue
from models.schemas import AuthContext, ErrorCode, MemberRole, Membership

logger = structlog.get_logger()

GraphFactory = Callable[[str], GraphClient]


# ──────────────────────────────────────────────────────────────
#  Collaborators (overridable in tests)
# ──────────────────────────────────────────────────────────────

def get_graph_factory() -> GraphFactory:
    return GraphClient


def get_queue() -> MessageQueue:
    return get_message_queue()


def get_realtime_hub() -> RealtimeHub:
    return get_hub()


# ──────────────────────────────────────────────────────────────
#  Auth
# ──────────────────────────────────────────────────────────────

def _bearer(authorization: Optional[str]) -> str:
    if not authorization:
        raise AppError(401, "Unauthorized", ErrorCode.UNAUTHORIZED)
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AppError(401, "Unauthorized", ErrorCode.UNAUTHORIZED)
    return token.strip()


async def authenticate(
    authorization: Optional[str] = Header(default=None),
    db: AsyncSession = Depends(session_scope),
) -> AuthContext:
    """Resolve the bearer token to the user and their membership in the token's organization."""
    token = _bearer(authorization)
    try:
        payload = decode_token(token)
    except TokenExpired:
        raise AppError(401, "Token expired", ErrorCode.TOKEN_EXPIRED)
    except TokenError:
        raise AppError(401, "Invalid token", ErrorCode.INVALID_TOKEN)

    user = await db.get(UserRow, payload.user_id)
    if user is None:
        raise AppError(401, "Unauthorized", ErrorCode.UNAUTHORIZED)

    membership = None
    if payload.organization_id:
        row = (await db.execute(
            select(OrganizationMemberRow).where(
                OrganizationMemberRow.user_id == user.id,
                OrganizationMemberRow.organization_id == payload.organization_id,
            )
        )).scalar_one_or_none()
        if row is not None:
            membership = Membership(id=row.id, role=row.role, permissions=list(row.permissions or []))

    return AuthContext(
        user_id=user.id,
        email=user.email,
        name=user.name or "",
        organization_id=payload.organization_id,
        membership=membership,
    )


async def require_organization(auth: AuthContext = Depends(authenticate)) -> AuthContext:
    if not auth.organization_id or auth.membership is None:
        raise AppError(403, "No organization access", ErrorCode.ORG_NOT_FOUND)
    return auth


def require_permission(permission: str):
    """Owners pass every check; everyone else needs the permission listed on their membership."""

    async def dependency(auth: AuthContext = Depends(require_organization)) -> AuthContext:
        if not auth.has_permission(permission):
            raise AppError(403, f"Missing permission: {permission}", ErrorCode.UNAUTHORIZED)
        return auth

    return dependency


def require_role(*roles: str):
    allowed = {MemberRole(r).value for r in roles}

    async def dependency(auth: AuthContext = Depends(require_organization)) -> AuthContext:
        if auth.membership.role.value not in allowed:
            raise AppError(403, "Insufficient role", ErrorCode.UNAUTHORIZED)
        return auth

    return dependency
