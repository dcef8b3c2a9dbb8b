"""
Month-keyed usage counters.

One UsageTrackingRow per organization per calendar month ("YYYY-MM", UTC).
Plan limits are checked against these counters; the nightly consolidation
job rewrites them from the source tables.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import UsageTrackingRow

logger = structlog.get_logger()

COUNTERS = ("broadcasts_sent", "comments_processed", "pages_connected", "team_members")


def current_month(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return now.strftime("%Y-%m")


async def get_usage(
    db: AsyncSession, organization_id: str, month: Optional[str] = None,
) -> Optional[UsageTrackingRow]:
    result = await db.execute(
        select(UsageTrackingRow).where(
            UsageTrackingRow.organization_id == organization_id,
            UsageTrackingRow.month == (month or current_month()),
        )
    )
    return result.scalar_one_or_none()


async def _get_or_create(db: AsyncSession, organization_id: str, month: str) -> UsageTrackingRow:
    row = await get_usage(db, organization_id, month)
    if row is None:
        row = UsageTrackingRow(
            organization_id=organization_id, month=month,
            broadcasts_sent=0, comments_processed=0,
            pages_connected=0, team_members=0,
        )
        db.add(row)
        await db.flush()
    return row


async def increment_usage(
    db: AsyncSession, organization_id: str, month: Optional[str] = None, **deltas: int,
) -> UsageTrackingRow:
    """
    Add deltas to this month's counters, creating the row if needed.

        await increment_usage(db, org_id, broadcasts_sent=1)
        await increment_usage(db, org_id, pages_connected=-1)

    Counters are clamped at zero.
    """
    unknown = set(deltas) - set(COUNTERS)
    if unknown:
        raise ValueError(f"Unknown usage counters: {sorted(unknown)}")

    month = month or current_month()
    row = await _get_or_create(db, organization_id, month)
    for name, delta in deltas.items():
        setattr(row, name, max(0, (getattr(row, name) or 0) + delta))
    await db.flush()

    logger.debug("usage_incremented", organization_id=organization_id,
                 month=month, **deltas)
    return row


async def set_usage(
    db: AsyncSession, organization_id: str, month: Optional[str] = None, **values: int,
) -> UsageTrackingRow:
    """Overwrite counters with absolute values (used by consolidation)."""
    month = month or current_month()
    row = await _get_or_create(db, organization_id, month)
    for name, value in values.items():
        if name not in COUNTERS:
            raise ValueError(f"Unknown usage counter: {name}")
        setattr(row, name, max(0, value))
    await db.flush()
    return row
