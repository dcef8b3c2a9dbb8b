"""
Database layer — async SQLAlchemy over PostgreSQL, MySQL or SQLite.

Quick start:
  from database import init_db, get_session, OrganizationRow
  await init_db()
  async with get_session() as db:
      org = await db.get(OrganizationRow, org_id)
"""
from database.models import (
    Base, UserRow, OrganizationRow, OrganizationMemberRow, FacebookPageRow,
    BroadcastRow, BroadcastRecipientRow, MonitoredPostRow, CommentRow,
    SubscriptionRow, InvoiceRow, UsageTrackingRow,
)
from database.session import get_engine, get_session, session_scope, init_db, close_db
from database.usage import current_month, increment_usage, get_usage

__all__ = [
    # ORM models
    "Base", "UserRow", "OrganizationRow", "OrganizationMemberRow",
    "FacebookPageRow", "BroadcastRow", "BroadcastRecipientRow",
    "MonitoredPostRow", "CommentRow", "SubscriptionRow", "InvoiceRow",
    "UsageTrackingRow",
    # Session management
    "get_engine", "get_session", "session_scope", "init_db", "close_db",
    # Usage counters
    "current_month", "increment_usage", "get_usage",
]
