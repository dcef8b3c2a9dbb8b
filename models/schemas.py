"""
Core data models for the PageCast service.
Enums, plan catalogue, error codes and the request payloads accepted by the API.
"""
from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class PlanType(str, Enum):
    STARTER = "starter"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"


class OrgStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    TRIAL = "trial"


class MemberRole(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


class Permission(str, Enum):
    BROADCAST = "broadcast"
    COMMENTS = "comments"
    ANALYTICS = "analytics"
    BILLING = "billing"
    TEAM = "team"
    SETTINGS = "settings"


ALL_PERMISSIONS = [p.value for p in Permission]


class RecipientType(str, Enum):
    ALL = "all"
    SEGMENT = "segment"
    INDIVIDUAL = "individual"


class BroadcastStatus(str, Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    PAST_DUE = "past_due"
    TRIALING = "trialing"


class InvoiceStatus(str, Enum):
    PAID = "paid"
    PENDING = "pending"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class AttachmentType(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    FILE = "file"


# ──────────────────────────────────────────────────────────────
#  Plans (-1 means unlimited)
# ──────────────────────────────────────────────────────────────

PLANS: dict[str, dict[str, Any]] = {
    "starter": {
        "name": "Starter",
        "price": 299,
        "limits": {"pages": 1, "broadcasts": 1000, "teamMembers": 3, "commentsPerMonth": 5000},
        "features": ["broadcast", "comments", "basicAnalytics"],
    },
    "professional": {
        "name": "Professional",
        "price": 899,
        "limits": {"pages": 5, "broadcasts": 10000, "teamMembers": 10, "commentsPerMonth": 50000},
        "features": ["broadcast", "comments", "advancedAnalytics", "api", "customBranding"],
    },
    "enterprise": {
        "name": "Enterprise",
        "price": 2499,
        "limits": {"pages": -1, "broadcasts": -1, "teamMembers": -1, "commentsPerMonth": -1},
        "features": [
            "broadcast", "comments", "advancedAnalytics", "api", "customBranding",
            "whiteLabel", "prioritySupport", "customDomain",
        ],
    },
}


def plan_limits(plan: Optional[str]) -> dict[str, int]:
    """Limits for a plan name, falling back to starter for unknown plans."""
    return dict(PLANS.get(plan or "", PLANS["starter"])["limits"])


def limit_reached(limit: int, used: int) -> bool:
    return limit != -1 and used >= limit


# ──────────────────────────────────────────────────────────────
#  Error codes
# ──────────────────────────────────────────────────────────────

class ErrorCode:
    UNAUTHORIZED = "UNAUTHORIZED"
    INVALID_TOKEN = "INVALID_TOKEN"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"

    ORG_NOT_FOUND = "ORG_NOT_FOUND"
    ORG_SUSPENDED = "ORG_SUSPENDED"
    ORG_LIMIT_EXCEEDED = "ORG_LIMIT_EXCEEDED"

    SUBSCRIPTION_EXPIRED = "SUBSCRIPTION_EXPIRED"
    PAYMENT_REQUIRED = "PAYMENT_REQUIRED"
    PLAN_LIMIT_EXCEEDED = "PLAN_LIMIT_EXCEEDED"

    FACEBOOK_API_ERROR = "FACEBOOK_API_ERROR"
    PAGE_NOT_CONNECTED = "PAGE_NOT_CONNECTED"
    INVALID_PAGE_TOKEN = "INVALID_PAGE_TOKEN"

    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# ──────────────────────────────────────────────────────────────
#  Job names
# ──────────────────────────────────────────────────────────────

class JobType:
    SEND_BROADCAST = "send-broadcast"
    FORWARD_COMMENT = "forward-comment"


# ──────────────────────────────────────────────────────────────
#  Request payloads (JSON uses camelCase keys)
# ──────────────────────────────────────────────────────────────

class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SignupRequest(ApiModel):
    email: EmailStr
    password: str = Field(min_length=6)
    name: str = Field(min_length=2)
    organization_name: str = Field(min_length=2)


class LoginRequest(ApiModel):
    email: EmailStr
    password: str = Field(min_length=6)


class CustomColors(ApiModel):
    primary: Optional[str] = Field(default=None, pattern=r"(?i)^#[0-9A-F]{6}$")
    secondary: Optional[str] = Field(default=None, pattern=r"(?i)^#[0-9A-F]{6}$")


class OrgSettingsPayload(ApiModel):
    white_label: Optional[bool] = None
    custom_colors: Optional[CustomColors] = None


class UpdateOrganizationRequest(ApiModel):
    name: Optional[str] = Field(default=None, min_length=2)
    logo_url: Optional[str] = None
    settings: Optional[OrgSettingsPayload] = None

    @field_validator("logo_url")
    @classmethod
    def _url(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not re.match(r"^https?://", v):
            raise ValueError("logoUrl must be an http(s) URL")
        return v


class MessageAttachment(ApiModel):
    type: AttachmentType
    url: str
    name: Optional[str] = None

    @field_validator("url")
    @classmethod
    def _url(cls, v: str) -> str:
        if not re.match(r"^https?://", v):
            raise ValueError("attachment url must be an http(s) URL")
        return v


class _MessageBody(ApiModel):
    """Base for payloads that end up as a Messenger message."""

    @model_validator(mode="after")
    def _has_content(self):
        if not self.message_text and not self.message_attachments:
            raise ValueError("Either messageText or messageAttachments must be provided")
        return self


class CreateBroadcastRequest(_MessageBody):
    page_id: str
    message_text: Optional[str] = Field(default=None, min_length=1)
    message_attachments: Optional[list[MessageAttachment]] = None
    recipient_type: RecipientType
    recipient_ids: Optional[list[str]] = None
    scheduled_at: Optional[datetime] = None


class UpdateBroadcastRequest(ApiModel):
    message_text: Optional[str] = Field(default=None, min_length=1)
    message_attachments: Optional[list[MessageAttachment]] = None
    scheduled_at: Optional[datetime] = None


class SendTestBroadcastRequest(_MessageBody):
    page_id: str
    message_text: Optional[str] = Field(default=None, min_length=1)
    message_attachments: Optional[list[MessageAttachment]] = None
    test_recipient_id: Optional[str] = None


class ReplyCommentRequest(ApiModel):
    reply_text: str = Field(min_length=1)
    send_to_messenger: bool = True


class AddMonitoredPostRequest(ApiModel):
    page_id: str
    post_url: Optional[str] = None
    post_id: Optional[str] = None

    @model_validator(mode="after")
    def _post_reference(self) -> AddMonitoredPostRequest:
        if not self.post_url and not self.post_id:
            raise ValueError("Either postUrl or postId must be provided")
        return self


class InviteMemberRequest(ApiModel):
    email: EmailStr
    role: MemberRole
    permissions: Optional[list[Permission]] = None

    @field_validator("role")
    @classmethod
    def _not_owner(cls, v: MemberRole) -> MemberRole:
        if v == MemberRole.OWNER:
            raise ValueError("role must be admin or member")
        return v


class UpdateMemberRequest(ApiModel):
    role: Optional[MemberRole] = None
    permissions: Optional[list[Permission]] = None

    @field_validator("role")
    @classmethod
    def _not_owner(cls, v: Optional[MemberRole]) -> Optional[MemberRole]:
        if v == MemberRole.OWNER:
            raise ValueError("role must be admin or member")
        return v


class ConnectPageRequest(ApiModel):
    page_id: str
    page_name: str
    page_access_token: str


# ──────────────────────────────────────────────────────────────
#  Auth context
# ──────────────────────────────────────────────────────────────

class JwtPayload(ApiModel):
    user_id: str
    organization_id: Optional[str] = None
    role: Optional[MemberRole] = None
    permissions: list[Permission] = []


class Membership(BaseModel):
    id: str
    role: MemberRole
    permissions: list[str] = []


class AuthContext(BaseModel):
    """The authenticated caller, resolved from a bearer token."""
    user_id: str
    email: str
    name: str = ""
    organization_id: Optional[str] = None
    membership: Optional[Membership] = None

    def has_permission(self, permission: str) -> bool:
        if self.membership is None:
            return False
        if self.membership.role == MemberRole.OWNER:
            return True
        return permission in self.membership.permissions
