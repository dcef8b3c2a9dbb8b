"""
Tests for monitored posts and the comment inbox routes.
"""
import json

import pytest
import pytest_asyncio
from sqlalchemy import select

from database.models import CommentRow, MonitoredPostRow
from database.session import get_session
from job_queue.message_queue import Queues

GRAPH_COMMENTS = [
    {"id": "c_1", "message": "How much?", "created_time": "2024-01-31T12:00:00+0000",
     "from": {"id": "u_1", "name": "Ann"}},
    {"id": "c_2", "message": "Shipping to Chiang Mai?", "created_time": "2024-01-31T12:05:00+0000",
     "from": {"id": "u_2", "name": "Bo"}, "parent": {"id": "c_1"}},
]


async def add_post(client, owner, page, **body):
    resp = await client.post("/api/comments/posts", json={"pageId": page["id"], **body},
                             headers=owner.headers)
    return resp


@pytest_asyncio.fixture
async def monitored(client, owner, page, graph):
    """A monitored post with the two GRAPH_COMMENTS imported."""
    graph.get_post_comments.return_value = GRAPH_COMMENTS
    resp = await add_post(client, owner, page, postId="page_1_555")
    assert resp.status_code == 200, resp.text
    return resp.json()["data"]


async def comment_by_fb_id(comment_id):
    async with get_session() as db:
        return (await db.execute(select(CommentRow).where(CommentRow.comment_id == comment_id))).scalar_one()


# ══════════════════════════════════════════════════════════════
#  Monitored posts
# ══════════════════════════════════════════════════════════════

class TestMonitoredPosts:

    @pytest.mark.asyncio
    async def test_add_by_url_resolves_post(self, client, owner, page, graph):
        resp = await add_post(client, owner, page, postUrl="https://www.facebook.com/acme/posts/555")

        data = resp.json()["data"]
        assert data["postId"] == "page_1_555"
        assert data["postContent"] == "Big sale today"
        assert data["postUrl"] == "https://www.facebook.com/acme/posts/555"
        graph.get_post_by_url.assert_awaited_once()
        graph.get_post_comments.assert_awaited_once_with("page_1_555")

    @pytest.mark.asyncio
    async def test_add_imports_existing_comments(self, client, owner, monitored):
        assert monitored["commentCount"] == 2
        reply = await comment_by_fb_id("c_2")
        assert reply.parent_comment_id == "c_1"
        assert reply.commenter_name == "Bo"

    @pytest.mark.asyncio
    async def test_needs_url_or_id(self, client, owner, page):
        resp = await add_post(client, owner, page)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_duplicate(self, client, owner, page, monitored):
        resp = await add_post(client, owner, page, postId="page_1_555")
        assert resp.status_code == 400
        assert resp.json()["error"]["message"] == "Post already being monitored"

    @pytest.mark.asyncio
    async def test_remove_then_add_reactivates(self, client, owner, page, monitored, graph):
        resp = await client.delete(f"/api/comments/posts/{monitored['id']}", headers=owner.headers)
        assert resp.json() == {"success": True, "message": "Stopped monitoring post"}

        resp = await add_post(client, owner, page, postId="page_1_555")

        assert resp.json()["data"]["id"] == monitored["id"]
        assert resp.json()["data"]["isActive"] is True
        async with get_session() as db:
            assert len((await db.execute(select(MonitoredPostRow))).scalars().all()) == 1

    @pytest.mark.asyncio
    async def test_remove_unknown(self, client, owner):
        resp = await client.delete("/api/comments/posts/missing", headers=owner.headers)
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_list_with_comment_counts(self, client, owner, monitored):
        resp = await client.get("/api/comments/posts", headers=owner.headers)
        body = resp.json()
        assert body["total"] == 1
        assert body["data"][0]["counts"] == {"comments": 2}
        assert body["data"][0]["page"]["pageName"] == "Acme Page"

    @pytest.mark.asyncio
    async def test_list_filters_inactive(self, client, owner, monitored):
        await client.delete(f"/api/comments/posts/{monitored['id']}", headers=owner.headers)
        resp = await client.get("/api/comments/posts", params={"isActive": "true"}, headers=owner.headers)
        assert resp.json()["data"] == []

    @pytest.mark.asyncio
    async def test_requires_comments_permission(self, client, owner, page, make_member):
        headers = await make_member(["broadcast"])
        resp = await client.get("/api/comments/posts", headers=headers)
        assert resp.status_code == 403


# ══════════════════════════════════════════════════════════════
#  Inbox
# ══════════════════════════════════════════════════════════════

class TestCommentInbox:

    @pytest.mark.asyncio
    async def test_list_newest_first(self, client, owner, monitored):
        resp = await client.get("/api/comments", headers=owner.headers)
        body = resp.json()
        assert [c["commentId"] for c in body["data"]] == ["c_2", "c_1"]
        assert body["limit"] == 50
        assert body["data"][0]["post"]["id"] == monitored["id"]

    @pytest.mark.asyncio
    async def test_filter_by_replied(self, client, owner, monitored):
        c1 = await comment_by_fb_id("c_1")
        await client.post(f"/api/comments/{c1.id}/reply", json={"replyText": "199 baht"},
                          headers=owner.headers)

        resp = await client.get("/api/comments", params={"isReplied": "false"}, headers=owner.headers)
        assert [c["commentId"] for c in resp.json()["data"]] == ["c_2"]

    @pytest.mark.asyncio
    async def test_filter_by_post(self, client, owner, monitored):
        resp = await client.get("/api/comments", params={"postId": "other"}, headers=owner.headers)
        assert resp.json()["total"] == 0

    @pytest.mark.asyncio
    async def test_quick_replies(self, client, owner):
        resp = await client.get("/api/comments/quick-replies", headers=owner.headers)
        replies = resp.json()["data"]
        assert len(replies) == 3
        assert all("text" in r for r in replies)

    @pytest.mark.asyncio
    async def test_stats(self, client, owner, monitored):
        c1 = await comment_by_fb_id("c_1")
        await client.post(f"/api/comments/{c1.id}/reply", json={"replyText": "199 baht"},
                          headers=owner.headers)

        resp = await client.get("/api/comments/stats", headers=owner.headers)
        data = resp.json()["data"]
        assert data["total"] == 2
        assert data["replied"] == 1
        assert data["forwarded"] == 0
        assert data["replyRate"] == 50
        assert data["forwardRate"] == 0
        assert data["byPost"] == [{"postId": monitored["id"], "count": 2}]

    @pytest.mark.asyncio
    async def test_stats_date_window(self, client, owner, monitored):
        resp = await client.get("/api/comments/stats", params={"startDate": "2025-01-01T00:00:00Z"},
                                headers=owner.headers)
        assert resp.json()["data"]["total"] == 0


# ══════════════════════════════════════════════════════════════
#  Reply / forward
# ══════════════════════════════════════════════════════════════

class TestReplyAndForward:

    @pytest.mark.asyncio
    async def test_reply_publicly_and_in_messenger(self, client, owner, monitored, graph, hub):
        events = []

        class Socket:
            async def send_text(self, text):
                events.append(json.loads(text))

        hub.join(owner.organization["id"], Socket())
        c1 = await comment_by_fb_id("c_1")

        resp = await client.post(f"/api/comments/{c1.id}/reply",
                                 json={"replyText": "199 baht"}, headers=owner.headers)

        data = resp.json()["data"]
        assert data["isReplied"] is True
        assert data["replyText"] == "199 baht"
        assert data["repliedById"] == owner.user["id"]
        graph.reply_to_comment.assert_awaited_once_with("c_1", "199 baht")
        graph.send_message.assert_awaited_once_with("u_1", {"text": "199 baht"})
        assert events == [{"event": "comment-replied",
                           "data": {"commentId": c1.id, "replyText": "199 baht"}}]

    @pytest.mark.asyncio
    async def test_reply_without_messenger(self, client, owner, monitored, graph):
        c1 = await comment_by_fb_id("c_1")
        await client.post(f"/api/comments/{c1.id}/reply",
                          json={"replyText": "ok", "sendToMessenger": False}, headers=owner.headers)
        graph.send_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_reply_empty_text(self, client, owner, monitored):
        c1 = await comment_by_fb_id("c_1")
        resp = await client.post(f"/api/comments/{c1.id}/reply", json={"replyText": ""},
                                 headers=owner.headers)
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_reply_unknown_comment(self, client, owner):
        resp = await client.post("/api/comments/missing/reply", json={"replyText": "hi"},
                                 headers=owner.headers)
        assert resp.status_code == 404
        assert resp.json()["error"]["message"] == "Comment not found"

    @pytest.mark.asyncio
    async def test_forward_is_queued(self, client, owner, monitored, queue):
        c2 = await comment_by_fb_id("c_2")
        resp = await client.post(f"/api/comments/{c2.id}/forward", headers=owner.headers)

        assert resp.json() == {"success": True, "message": "Comment queued for forwarding"}
        jobs = await queue.peek(Queues.COMMENT)
        assert jobs[0].name == "forward-comment"
        assert jobs[0].data == {"commentId": c2.id, "organizationId": owner.organization["id"]}
