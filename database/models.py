"""
ORM tables for organizations, pages, broadcasts, comments and billing.

The same schema runs on PostgreSQL, MySQL 8+ and SQLite, so lists and
mappings (permissions, recipient ids, attachments, stats) are JSON
columns and primary keys are uuid hex strings. Tenant-owned tables carry
organization_id; route handlers filter on it for every read and write.
to_dict() renders the camelCase shape the API returns.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    String, Integer, Float, Boolean, DateTime, Text, ForeignKey,
    Index, JSON, UniqueConstraint, inspect,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def _empty_stats() -> dict[str, int]:
    return {"sent": 0, "failed": 0, "delivered": 0, "read": 0}


def _loaded(row: Base, relation: str) -> Any:
    """The related row if it is already loaded, else None (never lazy-loads)."""
    if relation in inspect(row).unloaded:
        return None
    return getattr(row, relation)


# ──────────────────────────────────────────────────────────────
#  Users & Organizations
# ──────────────────────────────────────────────────────────────

class UserRow(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    email: Mapped[str] = mapped_column(String(320), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(256), default="")
    facebook_id: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True)
    avatar_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    password_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    last_login_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id, "email": self.email, "name": self.name,
            "facebookId": self.facebook_id, "avatarUrl": self.avatar_url,
            "lastLoginAt": _iso(self.last_login_at),
            "createdAt": _iso(self.created_at),
        }


class OrganizationRow(Base):
    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    slug: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    plan: Mapped[str] = mapped_column(String(32), default="starter")
    status: Mapped[str] = mapped_column(String(32), default="trial")
    trial_ends_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    logo_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    settings: Mapped[Any] = mapped_column(JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id, "name": self.name, "slug": self.slug,
            "plan": self.plan, "status": self.status,
            "trialEndsAt": _iso(self.trial_ends_at),
            "logoUrl": self.logo_url, "settings": self.settings or {},
            "createdAt": _iso(self.created_at), "updatedAt": _iso(self.updated_at),
        }


class OrganizationMemberRow(Base):
    __tablename__ = "organization_members"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(64), ForeignKey("organizations.id"), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id"), nullable=False)
    role: Mapped[str] = mapped_column(String(16), default="member")
    permissions: Mapped[Any] = mapped_column(JSON, default=list)
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    user: Mapped["UserRow"] = relationship(lazy="selectin")
    organization: Mapped["OrganizationRow"] = relationship(lazy="selectin")

    __table_args__ = (
        UniqueConstraint("organization_id", "user_id", name="uq_member_org_user"),
        Index("ix_members_user", "user_id"),
    )

    def to_dict(self) -> dict[str, Any]:
        data = {
            "id": self.id, "organizationId": self.organization_id,
            "userId": self.user_id, "role": self.role,
            "permissions": list(self.permissions or []),
            "joinedAt": _iso(self.joined_at),
        }
        user = _loaded(self, "user")
        if user is not None:
            data["user"] = {
                "id": user.id, "email": user.email, "name": user.name,
                "avatarUrl": user.avatar_url,
                "lastLoginAt": _iso(user.last_login_at),
            }
        return data


# ──────────────────────────────────────────────────────────────
#  Facebook Pages
# ──────────────────────────────────────────────────────────────

class FacebookPageRow(Base):
    __tablename__ = "facebook_pages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(64), ForeignKey("organizations.id"), nullable=False)
    page_id: Mapped[str] = mapped_column(String(64), nullable=False)
    page_name: Mapped[str] = mapped_column(String(256), default="")
    page_access_token: Mapped[str] = mapped_column(Text, nullable=False)
    followers_count: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    connected_by_id: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey("users.id"), nullable=True)
    connected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("organization_id", "page_id", name="uq_page_org_fb"),
        Index("ix_pages_fb_page", "page_id"),
    )

    def to_dict(self) -> dict[str, Any]:
        # The page access token never leaves the server.
        return {
            "id": self.id, "organizationId": self.organization_id,
            "pageId": self.page_id, "pageName": self.page_name,
            "followersCount": self.followers_count, "isActive": self.is_active,
            "connectedById": self.connected_by_id,
            "connectedAt": _iso(self.connected_at),
        }


# ──────────────────────────────────────────────────────────────
#  Broadcasts
# ──────────────────────────────────────────────────────────────

class BroadcastRow(Base):
    __tablename__ = "broadcasts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(64), ForeignKey("organizations.id"), nullable=False)
    page_id: Mapped[str] = mapped_column(String(64), ForeignKey("facebook_pages.id"), nullable=False)
    created_by_id: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey("users.id"), nullable=True)

    message_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    message_attachments: Mapped[Any] = mapped_column(JSON, default=list)
    recipient_type: Mapped[str] = mapped_column(String(16), default="individual")
    recipient_ids: Mapped[Any] = mapped_column(JSON, default=list)

    scheduled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="draft")
    stats: Mapped[Any] = mapped_column(JSON, default=_empty_stats)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    page: Mapped["FacebookPageRow"] = relationship(lazy="selectin")
    created_by: Mapped[Optional["UserRow"]] = relationship(lazy="selectin")

    __table_args__ = (
        Index("ix_broadcasts_org_created", "organization_id", "created_at"),
        Index("ix_broadcasts_status_scheduled", "status", "scheduled_at"),
    )

    def to_dict(self) -> dict[str, Any]:
        data = {
            "id": self.id, "organizationId": self.organization_id,
            "pageId": self.page_id, "createdById": self.created_by_id,
            "messageText": self.message_text,
            "messageAttachments": list(self.message_attachments or []),
            "recipientType": self.recipient_type,
            "recipientIds": list(self.recipient_ids or []),
            "scheduledAt": _iso(self.scheduled_at), "sentAt": _iso(self.sent_at),
            "status": self.status, "stats": dict(self.stats or _empty_stats()),
            "createdAt": _iso(self.created_at),
        }
        page = _loaded(self, "page")
        if page is not None:
            data["page"] = {"id": page.id, "pageName": page.page_name}
        created_by = _loaded(self, "created_by")
        if created_by is not None:
            data["createdBy"] = {
                "id": created_by.id, "name": created_by.name,
                "email": created_by.email,
            }
        return data


class BroadcastRecipientRow(Base):
    """One successful Messenger send; delivery/read webhooks update it by message id."""
    __tablename__ = "broadcast_recipients"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    broadcast_id: Mapped[str] = mapped_column(String(64), ForeignKey("broadcasts.id", ondelete="CASCADE"), nullable=False)
    page_id: Mapped[str] = mapped_column(String(64), nullable=False)   # Facebook page id
    recipient_id: Mapped[str] = mapped_column(String(64), nullable=False)
    message_id: Mapped[str] = mapped_column(String(256), default="")
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_recipients_message", "message_id"),
        Index("ix_recipients_page_user", "page_id", "recipient_id"),
        Index("ix_recipients_broadcast", "broadcast_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Monitored posts & Comments
# ──────────────────────────────────────────────────────────────

class MonitoredPostRow(Base):
    __tablename__ = "monitored_posts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(64), ForeignKey("organizations.id"), nullable=False)
    page_id: Mapped[str] = mapped_column(String(64), ForeignKey("facebook_pages.id"), nullable=False)
    post_id: Mapped[str] = mapped_column(String(128), nullable=False)
    post_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    post_content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    comment_count: Mapped[int] = mapped_column(Integer, default=0)
    added_by_id: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey("users.id"), nullable=True)
    added_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    page: Mapped["FacebookPageRow"] = relationship(lazy="selectin")

    __table_args__ = (
        UniqueConstraint("organization_id", "post_id", name="uq_post_org_fb"),
        Index("ix_posts_fb_post", "post_id"),
    )

    def to_dict(self) -> dict[str, Any]:
        data = {
            "id": self.id, "organizationId": self.organization_id,
            "pageId": self.page_id, "postId": self.post_id,
            "postUrl": self.post_url, "postContent": self.post_content,
            "isActive": self.is_active, "commentCount": self.comment_count,
            "addedById": self.added_by_id, "addedAt": _iso(self.added_at),
        }
        page = _loaded(self, "page")
        if page is not None:
            data["page"] = {"id": page.id, "pageName": page.page_name}
        return data


class CommentRow(Base):
    __tablename__ = "comments"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(64), ForeignKey("organizations.id"), nullable=False)
    post_id: Mapped[str] = mapped_column(String(64), ForeignKey("monitored_posts.id", ondelete="CASCADE"), nullable=False)
    comment_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    parent_comment_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    commenter_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    commenter_name: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    comment_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    is_forwarded: Mapped[bool] = mapped_column(Boolean, default=False)
    forwarded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    is_replied: Mapped[bool] = mapped_column(Boolean, default=False)
    reply_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    replied_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    replied_by_id: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey("users.id"), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    post: Mapped["MonitoredPostRow"] = relationship(lazy="selectin")
    replied_by: Mapped[Optional["UserRow"]] = relationship(lazy="selectin")

    __table_args__ = (
        Index("ix_comments_org_created", "organization_id", "created_at"),
        Index("ix_comments_post", "post_id"),
    )

    def to_dict(self) -> dict[str, Any]:
        data = {
            "id": self.id, "organizationId": self.organization_id,
            "postId": self.post_id, "commentId": self.comment_id,
            "parentCommentId": self.parent_comment_id,
            "commenterId": self.commenter_id, "commenterName": self.commenter_name,
            "commentText": self.comment_text,
            "isForwarded": self.is_forwarded, "forwardedAt": _iso(self.forwarded_at),
            "isReplied": self.is_replied, "replyText": self.reply_text,
            "repliedAt": _iso(self.replied_at), "repliedById": self.replied_by_id,
            "createdAt": _iso(self.created_at),
        }
        post = _loaded(self, "post")
        if post is not None:
            data["post"] = {
                "id": post.id, "postUrl": post.post_url,
                "postContent": post.post_content,
            }
        replied_by = _loaded(self, "replied_by")
        if replied_by is not None:
            data["repliedBy"] = {
                "id": replied_by.id, "name": replied_by.name,
                "email": replied_by.email,
            }
        return data


# ──────────────────────────────────────────────────────────────
#  Billing
# ──────────────────────────────────────────────────────────────

class SubscriptionRow(Base):
    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(64), ForeignKey("organizations.id"), nullable=False)
    plan: Mapped[str] = mapped_column(String(32), default="starter")
    status: Mapped[str] = mapped_column(String(16), default="active")
    amount: Mapped[float] = mapped_column(Float, default=0.0)
    currency: Mapped[str] = mapped_column(String(8), default="THB")
    billing_cycle: Mapped[str] = mapped_column(String(16), default="monthly")
    current_period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    current_period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    organization: Mapped["OrganizationRow"] = relationship(lazy="selectin")

    __table_args__ = (
        Index("ix_subscriptions_status_end", "status", "current_period_end"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id, "organizationId": self.organization_id,
            "plan": self.plan, "status": self.status,
            "amount": self.amount, "currency": self.currency,
            "billingCycle": self.billing_cycle,
            "currentPeriodStart": _iso(self.current_period_start),
            "currentPeriodEnd": _iso(self.current_period_end),
            "cancelledAt": _iso(self.cancelled_at),
            "createdAt": _iso(self.created_at),
        }


class InvoiceRow(Base):
    __tablename__ = "invoices"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    invoice_number: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    organization_id: Mapped[str] = mapped_column(String(64), ForeignKey("organizations.id"), nullable=False)
    amount: Mapped[float] = mapped_column(Float, default=0.0)
    currency: Mapped[str] = mapped_column(String(8), default="THB")
    status: Mapped[str] = mapped_column(String(16), default="pending")
    due_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    items: Mapped[Any] = mapped_column(JSON, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id, "invoiceNumber": self.invoice_number,
            "organizationId": self.organization_id,
            "amount": self.amount, "currency": self.currency, "status": self.status,
            "dueDate": _iso(self.due_date), "paidAt": _iso(self.paid_at),
            "items": list(self.items or []), "createdAt": _iso(self.created_at),
        }


# ──────────────────────────────────────────────────────────────
#  Usage counters (one row per organization per "YYYY-MM")
# ──────────────────────────────────────────────────────────────

class UsageTrackingRow(Base):
    __tablename__ = "usage_tracking"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(64), ForeignKey("organizations.id"), nullable=False)
    month: Mapped[str] = mapped_column(String(7), nullable=False)
    broadcasts_sent: Mapped[int] = mapped_column(Integer, default=0)
    comments_processed: Mapped[int] = mapped_column(Integer, default=0)
    pages_connected: Mapped[int] = mapped_column(Integer, default=0)
    team_members: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("organization_id", "month", name="uq_usage_org_month"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "organizationId": self.organization_id, "month": self.month,
            "broadcastsSent": self.broadcasts_sent,
            "commentsProcessed": self.comments_processed,
            "pagesConnected": self.pages_connected,
            "teamMembers": self.team_members,
            "updatedAt": _iso(self.updated_at),
        }
