#!/usr/bin/env python3
"""
Seed a demo organization for local development.

Creates the "Demo Company" organization on the professional plan, an owner
account, an active monthly subscription and this month's usage row.

Usage:
    python scripts/seed.py
    python scripts/seed.py --email demo@example.com --password demo1234
"""
import argparse
import asyncio
import os
import sys
from datetime import datetime, timezone

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import structlog
from sqlalchemy import select

from config.settings import load_settings
from core.scheduler import add_months
from core.security import hash_password
from database.models import (
    OrganizationMemberRow, OrganizationRow, SubscriptionRow, UserRow,
)
from database.session import close_db, get_session, init_db
from database.usage import set_usage
from models.schemas import (
    ALL_PERMISSIONS, BillingCycle, MemberRole, OrgStatus, PLANS, PlanType, SubscriptionStatus,
)

logger = structlog.get_logger()

DEMO_SLUG = "demo"


async def seed(email: str, password: str) -> bool:
    """Returns False when the demo organization already exists."""
    await init_db()
    now = datetime.now(timezone.utc)

    async with get_session() as db:
        if await db.scalar(select(OrganizationRow.id).where(OrganizationRow.slug == DEMO_SLUG)):
            logger.info("seed_skipped", reason="demo organization exists")
            return False

        org = OrganizationRow(
            name="Demo Company",
            slug=DEMO_SLUG,
            plan=PlanType.PROFESSIONAL.value,
            status=OrgStatus.ACTIVE.value,
            settings={"features": {"broadcast": True, "comments": True, "analytics": True}},
        )
        user = UserRow(
            email=email,
            name="Demo User",
            facebook_id="123456789",
            avatar_url="https://ui-avatars.com/api/?name=Demo+User",
            password_hash=hash_password(password),
        )
        db.add_all([org, user])
        await db.flush()

        db.add(OrganizationMemberRow(
            organization_id=org.id,
            user_id=user.id,
            role=MemberRole.OWNER.value,
            permissions=list(ALL_PERMISSIONS),
        ))
        db.add(SubscriptionRow(
            organization_id=org.id,
            plan=PlanType.PROFESSIONAL.value,
            status=SubscriptionStatus.ACTIVE.value,
            amount=float(PLANS[PlanType.PROFESSIONAL.value]["price"]),
            currency="THB",
            billing_cycle=BillingCycle.MONTHLY.value,
            current_period_start=now,
            current_period_end=add_months(now, 1),
        ))
        await set_usage(db, org.id, broadcasts_sent=0, comments_processed=0,
                        pages_connected=0, team_members=1)

    logger.info("seed_completed", organization=DEMO_SLUG, email=email)
    return True


async def main_async(email: str, password: str):
    load_settings()
    try:
        await seed(email, password)
    finally:
        await close_db()


def main():
    parser = argparse.ArgumentParser(description="Seed demo data")
    parser.add_argument("--email", default="demo@example.com")
    parser.add_argument("--password", default="demo1234")
    args = parser.parse_args()

    asyncio.run(main_async(args.email, args.password))


if __name__ == "__main__":
    main()
