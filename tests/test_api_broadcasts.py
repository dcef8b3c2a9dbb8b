"""
Tests for the broadcast routes.
"""
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import RedisError
from sqlalchemy import select

from database.models import BroadcastRow
from database.session import get_session
from database.usage import increment_usage
from job_queue.message_queue import Queues

SCHEDULED_AT = "2030-01-01T10:00:00Z"


def payload(page, **overrides):
    body = {
        "pageId": page["id"],
        "messageText": "Flash sale starts now",
        "recipientType": "individual",
        "recipientIds": ["u1", "u2"],
    }
    body.update(overrides)
    return body


async def create(client, owner, page, **overrides):
    resp = await client.post("/api/broadcasts", json=payload(page, **overrides), headers=owner.headers)
    assert resp.status_code == 200, resp.text
    return resp.json()["data"]


# ══════════════════════════════════════════════════════════════
#  Create
# ══════════════════════════════════════════════════════════════

class TestCreateBroadcast:

    @pytest.mark.asyncio
    async def test_immediate_is_enqueued(self, client, owner, page, queue):
        data = await create(client, owner, page)

        assert data["status"] == "sending"
        assert data["recipientIds"] == ["u1", "u2"]
        assert data["createdById"] == owner.user["id"]
        assert data["stats"] == {"sent": 0, "failed": 0, "delivered": 0, "read": 0}

        jobs = await queue.peek(Queues.BROADCAST)
        assert len(jobs) == 1
        assert jobs[0].name == "send-broadcast"
        assert jobs[0].data == {"broadcastId": data["id"], "organizationId": owner.organization["id"]}
        assert jobs[0].max_attempts == 1

    @pytest.mark.asyncio
    async def test_scheduled_waits_for_scheduler(self, client, owner, page, queue):
        data = await create(client, owner, page, scheduledAt=SCHEDULED_AT)
        assert data["status"] == "scheduled"
        assert data["scheduledAt"] is not None
        assert await queue.queue_length(Queues.BROADCAST) == 0

    @pytest.mark.asyncio
    async def test_duplicate_recipients_collapsed(self, client, owner, page):
        data = await create(client, owner, page, recipientIds=["u1", "u2", "u1"])
        assert data["recipientIds"] == ["u1", "u2"]

    @pytest.mark.asyncio
    async def test_all_recipients_come_from_conversations(self, client, owner, page, graph):
        graph.get_page_conversations.return_value = [
            {"participants": {"data": [{"id": "page_1"}, {"id": "fan_1"}]}},
            {"participants": {"data": [{"id": "fan_2"}, {"id": "page_1"}]}},
        ]
        data = await create(client, owner, page, recipientType="all", recipientIds=None)
        assert data["recipientIds"] == ["fan_1", "fan_2"]
        assert graph.tokens == ["page-token"]

    @pytest.mark.asyncio
    async def test_attachment_only(self, client, owner, page):
        data = await create(client, owner, page, messageText=None, messageAttachments=[
            {"type": "image", "url": "https://cdn.example.com/promo.png"},
        ])
        assert data["messageAttachments"] == [{"type": "image", "url": "https://cdn.example.com/promo.png"}]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("overrides", [
        {"messageText": None},
        {"recipientType": "everyone"},
        {"messageAttachments": [{"type": "image", "url": "ftp://nope"}]},
    ])
    async def test_validation(self, client, owner, page, overrides):
        resp = await client.post("/api/broadcasts", json=payload(page, **overrides), headers=owner.headers)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_monthly_limit(self, client, owner, page):
        async with get_session() as db:
            await increment_usage(db, owner.organization["id"], broadcasts_sent=1000)
        resp = await client.post("/api/broadcasts", json=payload(page), headers=owner.headers)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "PLAN_LIMIT_EXCEEDED"

    @pytest.mark.asyncio
    async def test_unknown_page(self, client, owner, page):
        resp = await client.post("/api/broadcasts", json=payload(page, pageId="nope"), headers=owner.headers)
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "PAGE_NOT_CONNECTED"

    @pytest.mark.asyncio
    async def test_member_without_permission(self, client, owner, page, make_member):
        headers = await make_member(["comments"])
        resp = await client.post("/api/broadcasts", json=payload(page), headers=headers)
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_member_with_permission(self, client, owner, page, make_member):
        headers = await make_member(["broadcast"])
        resp = await client.post("/api/broadcasts", json=payload(page), headers=headers)
        assert resp.status_code == 200

    @pytest.mark.asyncio
    async def test_segment_uses_given_ids(self, client, owner, page, graph):
        data = await create(client, owner, page, recipientType="segment", recipientIds=["s1", "s2", "s1"])
        assert data["recipientType"] == "segment"
        assert data["recipientIds"] == ["s1", "s2"]
        graph.get_page_conversations.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_enqueue_failure_marks_failed(self, client, owner, page, queue, monkeypatch):
        monkeypatch.setattr(queue, "publish", AsyncMock(side_effect=RedisError("connection lost")))

        resp = await client.post("/api/broadcasts", json=payload(page), headers=owner.headers)

        assert resp.status_code == 500
        assert resp.json()["error"]["code"] == "INTERNAL_ERROR"
        async with get_session() as db:
            statuses = (await db.execute(select(BroadcastRow.status))).scalars().all()
        assert statuses == ["failed"]


# ══════════════════════════════════════════════════════════════
#  Read
# ══════════════════════════════════════════════════════════════

class TestListBroadcasts:

    @pytest.mark.asyncio
    async def test_pagination(self, client, owner, page):
        for _ in range(3):
            await create(client, owner, page)
        resp = await client.get("/api/broadcasts", params={"page": 1, "limit": 2}, headers=owner.headers)
        body = resp.json()
        assert len(body["data"]) == 2
        assert body["total"] == 3
        assert body["page"] == 1
        assert body["limit"] == 2
        assert body["totalPages"] == 2

    @pytest.mark.asyncio
    async def test_filter_by_status(self, client, owner, page):
        await create(client, owner, page)
        scheduled = await create(client, owner, page, scheduledAt=SCHEDULED_AT)
        resp = await client.get("/api/broadcasts", params={"status": "scheduled"}, headers=owner.headers)
        assert [b["id"] for b in resp.json()["data"]] == [scheduled["id"]]

    @pytest.mark.asyncio
    async def test_bad_status_filter(self, client, owner):
        resp = await client.get("/api/broadcasts", params={"status": "weird"}, headers=owner.headers)
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_get_one(self, client, owner, page):
        created = await create(client, owner, page)
        resp = await client.get(f"/api/broadcasts/{created['id']}", headers=owner.headers)
        data = resp.json()["data"]
        assert data["id"] == created["id"]
        assert data["page"] == {"id": page["id"], "pageName": "Acme Page"}
        assert data["createdBy"]["email"] == "owner@example.com"

    @pytest.mark.asyncio
    async def test_get_missing(self, client, owner):
        resp = await client.get("/api/broadcasts/missing", headers=owner.headers)
        assert resp.status_code == 404
        assert resp.json()["error"] == {"code": "NOT_FOUND", "message": "Broadcast not found"}


# ══════════════════════════════════════════════════════════════
#  Update / cancel
# ══════════════════════════════════════════════════════════════

class TestEditScheduled:

    @pytest.mark.asyncio
    async def test_update_scheduled(self, client, owner, page):
        created = await create(client, owner, page, scheduledAt=SCHEDULED_AT)
        resp = await client.put(f"/api/broadcasts/{created['id']}",
                                json={"messageText": "Updated text"}, headers=owner.headers)
        assert resp.status_code == 200
        assert resp.json()["data"]["messageText"] == "Updated text"

    @pytest.mark.asyncio
    async def test_cannot_update_sending(self, client, owner, page):
        created = await create(client, owner, page)
        resp = await client.put(f"/api/broadcasts/{created['id']}",
                                json={"messageText": "Too late"}, headers=owner.headers)
        assert resp.status_code == 404
        assert resp.json()["error"]["message"] == "Broadcast not found or cannot be edited"

    @pytest.mark.asyncio
    async def test_cancel_scheduled(self, client, owner, page):
        created = await create(client, owner, page, scheduledAt=SCHEDULED_AT)
        resp = await client.delete(f"/api/broadcasts/{created['id']}", headers=owner.headers)
        assert resp.json() == {"success": True, "message": "Broadcast cancelled successfully"}
        async with get_session() as db:
            assert (await db.get(BroadcastRow, created["id"])).status == "cancelled"

    @pytest.mark.asyncio
    async def test_cancel_twice(self, client, owner, page):
        created = await create(client, owner, page, scheduledAt=SCHEDULED_AT)
        await client.delete(f"/api/broadcasts/{created['id']}", headers=owner.headers)
        resp = await client.delete(f"/api/broadcasts/{created['id']}", headers=owner.headers)
        assert resp.status_code == 404


# ══════════════════════════════════════════════════════════════
#  Stats & test send
# ══════════════════════════════════════════════════════════════

class TestStatsAndTestSend:

    @pytest.mark.asyncio
    async def test_stats_aggregate(self, client, owner, page):
        first = await create(client, owner, page)
        await create(client, owner, page, scheduledAt=SCHEDULED_AT)
        async with get_session() as db:
            row = await db.get(BroadcastRow, first["id"])
            row.status = "sent"
            row.stats = {"sent": 2, "failed": 1, "delivered": 1, "read": 0}

        resp = await client.get("/api/broadcasts/stats", headers=owner.headers)
        data = resp.json()["data"]
        assert data["total"] == 2
        assert data["byStatus"] == {"sent": 1, "scheduled": 1}
        assert data["byPage"] == [{
            "pageId": page["id"], "count": 2,
            "stats": {"sent": 2, "failed": 1, "delivered": 1, "read": 0},
        }]

    @pytest.mark.asyncio
    async def test_stats_need_analytics(self, client, owner, make_member):
        headers = await make_member(["broadcast"])
        resp = await client.get("/api/broadcasts/stats", headers=headers)
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_test_send_defaults_to_caller(self, client, owner, page, graph):
        resp = await client.post("/api/broadcasts/test", json={
            "pageId": page["id"], "messageText": "Preview",
        }, headers=owner.headers)
        assert resp.json() == {"success": True, "message": "Test message sent successfully"}
        graph.send_message.assert_awaited_once_with(owner.user["id"], {"text": "Preview"})

    @pytest.mark.asyncio
    async def test_test_send_to_explicit_recipient(self, client, owner, page, graph):
        await client.post("/api/broadcasts/test", json={
            "pageId": page["id"], "messageText": "Preview", "testRecipientId": "psid_1",
        }, headers=owner.headers)
        assert graph.send_message.await_args.args[0] == "psid_1"

    @pytest.mark.asyncio
    async def test_test_send_needs_content(self, client, owner, page, graph):
        resp = await client.post("/api/broadcasts/test", json={"pageId": page["id"]}, headers=owner.headers)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "VALIDATION_ERROR"
        graph.send_message.assert_not_awaited()
