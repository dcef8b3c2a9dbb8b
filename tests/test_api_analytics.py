"""
Tests for analytics, billing records and the health check.
"""
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from database.models import (
    BroadcastRow, CommentRow, InvoiceRow, MonitoredPostRow, SubscriptionRow,
)
from database.session import get_session

DAY_ONE = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
DAY_TWO = datetime(2024, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def activity(owner, page):
    """Two broadcasts and three comments spread over two days."""
    org_id = owner.organization["id"]
    async with get_session() as db:
        db.add_all([
            BroadcastRow(organization_id=org_id, page_id=page["id"], recipient_type="individual",
                         recipient_ids=["u1", "u2"], status="sent", created_at=DAY_ONE,
                         stats={"sent": 2, "failed": 0, "delivered": 2, "read": 1}),
            BroadcastRow(organization_id=org_id, page_id=page["id"], recipient_type="individual",
                         recipient_ids=["u3"], status="scheduled", created_at=DAY_TWO,
                         scheduled_at=DAY_TWO + timedelta(days=30)),
        ])
        post = MonitoredPostRow(organization_id=org_id, page_id=page["id"], post_id="page_1_555")
        db.add(post)
        await db.flush()
        db.add_all([
            CommentRow(organization_id=org_id, post_id=post.id, comment_id="c_1", created_at=DAY_ONE,
                       is_replied=True, replied_at=DAY_ONE + timedelta(minutes=10)),
            CommentRow(organization_id=org_id, post_id=post.id, comment_id="c_2", created_at=DAY_ONE,
                       is_replied=True, replied_at=DAY_ONE + timedelta(minutes=30), is_forwarded=True),
            CommentRow(organization_id=org_id, post_id=post.id, comment_id="c_3", created_at=DAY_TWO),
        ])


# ══════════════════════════════════════════════════════════════
#  Analytics
# ══════════════════════════════════════════════════════════════

class TestAnalytics:

    @pytest.mark.asyncio
    async def test_dashboard(self, client, owner, activity):
        resp = await client.get("/api/analytics/dashboard", headers=owner.headers)
        assert resp.json()["data"] == {
            "totalBroadcasts": 2,
            "scheduledBroadcasts": 1,
            "totalComments": 3,
            "repliedComments": 2,
            "connectedPages": 1,
            "teamMembers": 1,
        }

    @pytest.mark.asyncio
    async def test_dashboard_open_to_any_member(self, client, owner, make_member):
        headers = await make_member([])
        resp = await client.get("/api/analytics/dashboard", headers=headers)
        assert resp.status_code == 200

    @pytest.mark.asyncio
    async def test_broadcasts_by_day(self, client, owner, activity):
        resp = await client.get("/api/analytics/broadcasts", headers=owner.headers)
        assert resp.json()["data"] == [
            {"date": "2024-03-01", "count": 1, "sent": 2, "delivered": 2, "read": 1, "recipients": 2},
            {"date": "2024-03-02", "count": 1, "sent": 0, "delivered": 0, "read": 0, "recipients": 1},
        ]

    @pytest.mark.asyncio
    async def test_broadcasts_date_window(self, client, owner, activity):
        resp = await client.get("/api/analytics/broadcasts", params={
            "startDate": "2024-03-02T00:00:00Z", "endDate": "2024-03-03T00:00:00Z",
        }, headers=owner.headers)
        assert [d["date"] for d in resp.json()["data"]] == ["2024-03-02"]

    @pytest.mark.asyncio
    async def test_comments_by_day(self, client, owner, activity):
        resp = await client.get("/api/analytics/comments", headers=owner.headers)
        assert resp.json()["data"] == [
            {"date": "2024-03-01", "total": 2, "replied": 2, "forwarded": 1, "avgResponseTime": 20},
            {"date": "2024-03-02", "total": 1, "replied": 0, "forwarded": 0, "avgResponseTime": 0},
        ]

    @pytest.mark.asyncio
    async def test_page_performance(self, client, owner, activity, page):
        resp = await client.get("/api/analytics/pages", headers=owner.headers)
        data = resp.json()["data"]
        assert len(data) == 1
        assert data[0]["id"] == page["id"]
        assert data[0]["counts"] == {"broadcasts": 2, "posts": 1}
        assert data[0]["broadcastStats"] == {"sent": 2, "delivered": 2, "read": 1}
        assert data[0]["totalComments"] == 3

    @pytest.mark.asyncio
    async def test_analytics_permission(self, client, owner, make_member):
        headers = await make_member(["broadcast"])
        resp = await client.get("/api/analytics/broadcasts", headers=headers)
        assert resp.status_code == 403


# ══════════════════════════════════════════════════════════════
#  Billing records
# ══════════════════════════════════════════════════════════════

class TestSubscriptions:

    @pytest.mark.asyncio
    async def test_subscriptions_and_invoices(self, client, owner):
        org_id = owner.organization["id"]
        async with get_session() as db:
            db.add(SubscriptionRow(organization_id=org_id, plan="professional", amount=899))
            db.add(InvoiceRow(invoice_number="INV-2024-03-acme-shop", organization_id=org_id,
                              amount=899, due_date=DAY_ONE + timedelta(days=7),
                              items=[{"description": "professional Plan - 2024-03", "amount": 899.0}]))

        subs = (await client.get("/api/subscriptions", headers=owner.headers)).json()["data"]
        invoices = (await client.get("/api/subscriptions/invoices", headers=owner.headers)).json()["data"]

        assert [s["plan"] for s in subs] == ["professional"]
        assert invoices[0]["invoiceNumber"] == "INV-2024-03-acme-shop"
        assert invoices[0]["items"][0]["amount"] == 899.0

    @pytest.mark.asyncio
    async def test_billing_permission(self, client, owner, make_member):
        headers = await make_member(["analytics"])
        resp = await client.get("/api/subscriptions/invoices", headers=headers)
        assert resp.status_code == 403


class TestHealth:

    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/api/health")
        body = resp.json()
        assert body["status"] == "ok"
        assert body["queue"] == "InMemoryMessageQueue"
        assert body["timestamp"]
