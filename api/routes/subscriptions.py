"""Billing records of the organization (read only)."""
from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import require_permission
from api.routes import ok
from database.models import InvoiceRow, SubscriptionRow
from database.session import session_scope
from models.schemas import AuthContext, Permission

router = APIRouter()


@router.get("")
async def list_subscriptions(
    auth: AuthContext = Depends(require_permission(Permission.BILLING.value)),
    db: AsyncSession = Depends(session_scope),
):
    rows = (await db.execute(
        select(SubscriptionRow)
        .where(SubscriptionRow.organization_id == auth.organization_id)
        .order_by(SubscriptionRow.created_at.desc())
    )).scalars().all()
    return ok([s.to_dict() for s in rows])


@router.get("/invoices")
async def list_invoices(
    auth: AuthContext = Depends(require_permission(Permission.BILLING.value)),
    db: AsyncSession = Depends(session_scope),
):
    rows = (await db.execute(
        select(InvoiceRow)
        .where(InvoiceRow.organization_id == auth.organization_id)
        .order_by(InvoiceRow.created_at.desc())
    )).scalars().all()
    return ok([i.to_dict() for i in rows])
