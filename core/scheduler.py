"""
Cron Scheduler — periodic maintenance jobs on an APScheduler AsyncIOScheduler.

Jobs:
  dispatch_due_broadcasts  every minute      claim due scheduled broadcasts and enqueue them
  consolidate_usage        daily 00:00       recount this month's usage from source tables
  run_billing              1st of month      invoice ended periods, roll them, expire trials
  cleanup_old_data         1st of month      delete finished broadcasts and comments past retention

Each job function can be called directly (scripts, tests); the scheduler
wraps them so a failing run is logged and the next run still happens.
"""
from __future__ import annotations

import calendar
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy import delete, func, select, update

from config.settings import Settings, get_settings
from database.models import (
    BroadcastRecipientRow, BroadcastRow, CommentRow, FacebookPageRow, InvoiceRow,
    OrganizationMemberRow, OrganizationRow, SubscriptionRow,
)
from database.session import get_session
from database.usage import current_month, set_usage
from job_queue.message_queue import MessageQueue, Queues, get_message_queue
from models.schemas import (
    BillingCycle, BroadcastStatus, InvoiceStatus, JobType, OrgStatus, SubscriptionStatus,
)

logger = structlog.get_logger()

FINISHED_STATUSES = [
    BroadcastStatus.SENT.value, BroadcastStatus.FAILED.value, BroadcastStatus.CANCELLED.value,
]


def _utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def add_months(value: datetime, months: int) -> datetime:
    """Shift by whole months, clamping the day to the target month's length."""
    index = value.month - 1 + months
    year, month = value.year + index // 12, index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def month_start(now: datetime) -> datetime:
    return datetime(now.year, now.month, 1, tzinfo=timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Jobs
# ──────────────────────────────────────────────────────────────

async def dispatch_due_broadcasts(
    queue: Optional[MessageQueue] = None, now: Optional[datetime] = None,
) -> int:
    """
    Enqueue every scheduled broadcast whose time has come.

    Each row is claimed with a conditional UPDATE (scheduled → sending), so a
    broadcast already claimed by another worker, or cancelled meanwhile, is
    skipped. Returns the number enqueued.
    """
    queue = queue or get_message_queue()
    now = now or datetime.now(timezone.utc)

    async with get_session() as db:
        due = (await db.execute(
            select(BroadcastRow.id, BroadcastRow.organization_id).where(
                BroadcastRow.status == BroadcastStatus.SCHEDULED.value,
                BroadcastRow.scheduled_at <= now,
            )
        )).all()

    logger.debug("scheduled_broadcasts_due", count=len(due))

    enqueued = 0
    for broadcast_id, organization_id in due:
        async with get_session() as db:
            claimed = await db.execute(
                update(BroadcastRow)
                .where(
                    BroadcastRow.id == broadcast_id,
                    BroadcastRow.status == BroadcastStatus.SCHEDULED.value,
                )
                .values(status=BroadcastStatus.SENDING.value)
            )
            if claimed.rowcount != 1:
                logger.info("scheduled_broadcast_already_claimed", broadcast_id=broadcast_id)
                continue
            await queue.enqueue(
                Queues.BROADCAST, JobType.SEND_BROADCAST,
                {"broadcastId": broadcast_id, "organizationId": organization_id},
                max_attempts=1,
            )
        enqueued += 1

    if enqueued:
        logger.info("scheduled_broadcasts_enqueued", count=enqueued)
    return enqueued


async def consolidate_usage(now: Optional[datetime] = None) -> int:
    """Rewrite this month's usage row for every active organization. Returns orgs updated."""
    now = now or datetime.now(timezone.utc)
    since = month_start(now)
    month = current_month(now)

    async with get_session() as db:
        org_ids = (await db.execute(
            select(OrganizationRow.id).where(OrganizationRow.status == OrgStatus.ACTIVE.value)
        )).scalars().all()

        for org_id in org_ids:
            broadcasts = await db.scalar(
                select(func.count()).select_from(BroadcastRow).where(
                    BroadcastRow.organization_id == org_id,
                    BroadcastRow.created_at >= since,
                )
            )
            comments = await db.scalar(
                select(func.count()).select_from(CommentRow).where(
                    CommentRow.organization_id == org_id,
                    CommentRow.created_at >= since,
                )
            )
            pages = await db.scalar(
                select(func.count()).select_from(FacebookPageRow).where(
                    FacebookPageRow.organization_id == org_id,
                    FacebookPageRow.is_active.is_(True),
                )
            )
            members = await db.scalar(
                select(func.count()).select_from(OrganizationMemberRow).where(
                    OrganizationMemberRow.organization_id == org_id,
                )
            )
            await set_usage(
                db, org_id, month,
                broadcasts_sent=broadcasts or 0,
                comments_processed=comments or 0,
                pages_connected=pages or 0,
                team_members=members or 0,
            )

    logger.info("usage_consolidated", organizations=len(org_ids), month=month)
    return len(org_ids)


async def _bill_subscription(subscription_id: str, now: datetime) -> Optional[str]:
    month = current_month(now)
    async with get_session() as db:
        subscription = await db.get(SubscriptionRow, subscription_id)
        org = await db.get(OrganizationRow, subscription.organization_id)

        invoice = InvoiceRow(
            invoice_number=f"INV-{month}-{org.slug}",
            organization_id=subscription.organization_id,
            amount=subscription.amount,
            currency=subscription.currency,
            status=InvoiceStatus.PENDING.value,
            due_date=now + timedelta(days=7),
            items=[{
                "description": f"{subscription.plan} Plan - {month}",
                "amount": float(subscription.amount),
            }],
        )
        db.add(invoice)

        period_end = _utc(subscription.current_period_end)
        step = 12 if subscription.billing_cycle == BillingCycle.YEARLY.value else 1
        subscription.current_period_start = period_end
        subscription.current_period_end = add_months(period_end, step)
        return invoice.invoice_number


async def run_billing(now: Optional[datetime] = None) -> dict[str, Any]:
    """Invoice subscriptions whose period has ended, then suspend expired trials."""
    now = now or datetime.now(timezone.utc)
    logger.info("billing_run_started")

    async with get_session() as db:
        due_ids = (await db.execute(
            select(SubscriptionRow.id).where(
                SubscriptionRow.status == SubscriptionStatus.ACTIVE.value,
                SubscriptionRow.current_period_end <= now,
            )
        )).scalars().all()

    invoices: list[str] = []
    failed: list[str] = []
    for subscription_id in due_ids:
        try:
            number = await _bill_subscription(subscription_id, now)
            invoices.append(number)
            logger.info("invoice_created", subscription_id=subscription_id, invoice_number=number)
        except Exception as e:
            failed.append(subscription_id)
            logger.error("billing_failed", subscription_id=subscription_id, error=str(e))

    async with get_session() as db:
        expired = (await db.execute(
            select(OrganizationRow.id).where(
                OrganizationRow.status == OrgStatus.TRIAL.value,
                OrganizationRow.trial_ends_at <= now,
            )
        )).scalars().all()
        if expired:
            await db.execute(
                update(OrganizationRow)
                .where(OrganizationRow.id.in_(expired))
                .values(status=OrgStatus.SUSPENDED.value)
            )
    for org_id in expired:
        logger.info("trial_expired", organization_id=org_id)

    logger.info("billing_run_completed", invoices=len(invoices),
                failed=len(failed), trials_expired=len(expired))
    return {"invoices": invoices, "failed": failed, "trialsExpired": list(expired)}


async def cleanup_old_data(now: Optional[datetime] = None, months: Optional[int] = None) -> dict[str, int]:
    """Delete finished broadcasts and comments older than the retention window."""
    now = now or datetime.now(timezone.utc)
    months = months if months is not None else get_settings().retention.months
    cutoff = add_months(now, -months)

    async with get_session() as db:
        old_broadcasts = select(BroadcastRow.id).where(
            BroadcastRow.created_at < cutoff,
            BroadcastRow.status.in_(FINISHED_STATUSES),
        )
        await db.execute(
            delete(BroadcastRecipientRow)
            .where(BroadcastRecipientRow.broadcast_id.in_(old_broadcasts))
            .execution_options(synchronize_session=False)
        )
        broadcasts = await db.execute(
            delete(BroadcastRow)
            .where(
                BroadcastRow.created_at < cutoff,
                BroadcastRow.status.in_(FINISHED_STATUSES),
            )
            .execution_options(synchronize_session=False)
        )
        comments = await db.execute(
            delete(CommentRow)
            .where(CommentRow.created_at < cutoff)
            .execution_options(synchronize_session=False)
        )

    result = {"broadcasts": broadcasts.rowcount or 0, "comments": comments.rowcount or 0}
    logger.info("old_data_cleaned", cutoff=cutoff.isoformat(), **result)
    return result


# ──────────────────────────────────────────────────────────────
#  Scheduler
# ──────────────────────────────────────────────────────────────

class CronScheduler:
    """
    Usage:
        scheduler = CronScheduler(queue)
        scheduler.start()
        ...
        scheduler.shutdown()
    """

    def __init__(self, queue: Optional[MessageQueue] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.queue = queue
        self.scheduler = AsyncIOScheduler(
            timezone=self.settings.scheduler.timezone,
            job_defaults={"coalesce": True, "max_instances": 1},
        )
        self._register()

    def _register(self):
        jobs: list[tuple[str, Callable[[], Awaitable[Any]], CronTrigger]] = [
            ("dispatch_due_broadcasts", lambda: dispatch_due_broadcasts(self.queue),
             CronTrigger(minute="*")),
            ("consolidate_usage", consolidate_usage,
             CronTrigger(hour=0, minute=0)),
            ("run_billing", run_billing,
             CronTrigger(day=1, hour=0, minute=0)),
            ("cleanup_old_data", cleanup_old_data,
             CronTrigger(day=1, hour=0, minute=0)),
        ]
        for name, fn, trigger in jobs:
            self.scheduler.add_job(
                self._guarded(name, fn), trigger, id=name, name=name, replace_existing=True,
            )

    @staticmethod
    def _guarded(name: str, fn: Callable[[], Awaitable[Any]]) -> Callable[[], Awaitable[None]]:
        async def run() -> None:
            try:
                await fn()
            except Exception as e:
                logger.error("cron_job_failed", job=name, error=str(e), exc_info=True)
        return run

    @property
    def job_ids(self) -> list[str]:
        return [job.id for job in self.scheduler.get_jobs()]

    def start(self):
        self.scheduler.start()
        logger.info("scheduler_started", jobs=self.job_ids)

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("scheduler_stopped")
