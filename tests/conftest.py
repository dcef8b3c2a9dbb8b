"""Shared test fixtures for PageCast."""
from types import SimpleNamespace
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio

from config.settings import (
    AuthConfig, DatabaseConfig, FacebookConfig, QueueConfig, SchedulerConfig, Settings,
    set_settings,
)
from core.realtime import RealtimeHub
from core.security import create_token
from database.models import FacebookPageRow, OrganizationMemberRow, OrganizationRow, UserRow
from database.session import close_db, get_session, init_db
from job_queue.message_queue import InMemoryMessageQueue, set_message_queue
from models.schemas import JwtPayload

SIGNUP = {
    "email": "owner@example.com",
    "password": "secret123",
    "name": "Shop Owner",
    "organizationName": "Acme Shop",
}

VERIFY_TOKEN = "verify-me"


class FakeGraph:
    """
    Stands in for GraphClient. Acts as its own factory and async context
    manager; every Graph call is an AsyncMock tests can reconfigure.
    """

    def __init__(self):
        self.tokens: list[str] = []
        self._sent = 0
        self.get_me = AsyncMock(return_value={
            "id": "fb_user_1", "name": "Facebook User", "email": "fbuser@example.com",
            "picture": {"data": {"url": "https://cdn.example.com/avatar.png"}},
        })
        self.exchange_code = AsyncMock(return_value="user-token")
        self.get_user_pages = AsyncMock(return_value=[])
        self.get_page_details = AsyncMock(return_value={"id": "page_1", "name": "Acme Page", "fan_count": 42})
        self.subscribe_page_to_webhooks = AsyncMock(return_value={"success": True})
        self.send_message = AsyncMock(side_effect=self._send)
        self.get_page_conversations = AsyncMock(return_value=[])
        self.get_post_comments = AsyncMock(return_value=[])
        self.reply_to_comment = AsyncMock(return_value={"id": "reply_1"})
        self.get_page_posts = AsyncMock(return_value=[])
        self.get_post_by_url = AsyncMock(return_value={
            "id": "page_1_555", "message": "Big sale today",
            "permalink_url": "https://www.facebook.com/acme/posts/555",
        })

    async def _send(self, recipient_id, message):
        self._sent += 1
        return {"recipient_id": recipient_id, "message_id": f"mid.{self._sent}"}

    def __call__(self, access_token: str) -> "FakeGraph":
        self.tokens.append(access_token)
        return self

    async def __aenter__(self) -> "FakeGraph":
        return self

    async def __aexit__(self, *exc_info) -> None:
        return None


# ══════════════════════════════════════════════════════════════
#  Infrastructure
# ══════════════════════════════════════════════════════════════

@pytest_asyncio.fixture
async def settings(tmp_path):
    """Fresh SQLite database per test, no scheduler, in-memory queue."""
    s = Settings(
        auth=AuthConfig(jwt_secret="test-secret", client_url="http://dashboard.test"),
        facebook=FacebookConfig(
            app_id="app-id", app_secret="app-secret",
            callback_url="http://test/api/auth/facebook/callback",
            webhook_verify_token=VERIFY_TOKEN,
            send_delay_ms=0,
        ),
        database=DatabaseConfig(url=f"sqlite:///{tmp_path}/test.db"),
        queue=QueueConfig(backend="memory", memory_dispatch_delay=0),
        scheduler=SchedulerConfig(enabled=False),
    )
    set_settings(s)
    await close_db()
    await init_db()
    yield s
    await close_db()


@pytest_asyncio.fixture
async def queue(settings):
    q = InMemoryMessageQueue(dispatch_delay=0)
    set_message_queue(q)
    yield q
    set_message_queue(None)


@pytest.fixture
def hub():
    return RealtimeHub()


@pytest.fixture
def graph():
    return FakeGraph()


@pytest_asyncio.fixture
async def client(settings, queue, hub, graph):
    from api.deps import get_graph_factory, get_queue, get_realtime_hub
    from api.main import app

    app.dependency_overrides[get_graph_factory] = lambda: graph
    app.dependency_overrides[get_queue] = lambda: queue
    app.dependency_overrides[get_realtime_hub] = lambda: hub
    transport = httpx.ASGITransport(app=app, raise_app_exceptions=False)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


# ══════════════════════════════════════════════════════════════
#  Accounts
# ══════════════════════════════════════════════════════════════

@pytest_asyncio.fixture
async def owner(client):
    """Signed-up owner: user, organization, token and ready-made auth headers."""
    resp = await client.post("/api/auth/signup", json=SIGNUP)
    assert resp.status_code == 200, resp.text
    data = resp.json()["data"]
    return SimpleNamespace(
        user=data["user"],
        organization=data["organization"],
        token=data["token"],
        headers={"Authorization": f"Bearer {data['token']}"},
    )


@pytest_asyncio.fixture
async def make_member(owner):
    """Factory: add a member with the given permissions to the owner's org, return auth headers."""
    counter = {"n": 0}

    async def _make(permissions: list[str], role: str = "member") -> dict[str, str]:
        counter["n"] += 1
        async with get_session() as db:
            user = UserRow(email=f"member{counter['n']}@example.com", name=f"Member {counter['n']}")
            db.add(user)
            await db.flush()
            member = OrganizationMemberRow(
                organization_id=owner.organization["id"],
                user_id=user.id, role=role, permissions=permissions,
            )
            db.add(member)
            user_id = user.id
        token = create_token(JwtPayload(
            user_id=user_id, organization_id=owner.organization["id"],
            role=role, permissions=permissions,
        ))
        return {"Authorization": f"Bearer {token}"}

    return _make


@pytest_asyncio.fixture
async def page(owner):
    """A connected page of the owner's organization (dict as returned by the API)."""
    async with get_session() as db:
        row = FacebookPageRow(
            organization_id=owner.organization["id"],
            page_id="page_1",
            page_name="Acme Page",
            page_access_token="page-token",
            followers_count=10,
        )
        db.add(row)
        await db.flush()
        data = row.to_dict()
    return data


@pytest_asyncio.fixture
async def workspace(settings):
    """Organization, owner and connected page created straight in the database."""
    async with get_session() as db:
        user = UserRow(email="core@example.com", name="Core User")
        org = OrganizationRow(name="Core Org", slug="core-org", plan="starter",
                              status="active", settings={})
        db.add_all([user, org])
        await db.flush()
        fb_page = FacebookPageRow(
            organization_id=org.id, page_id="page_1", page_name="Core Page",
            page_access_token="page-token",
        )
        db.add(fb_page)
        await db.flush()
        ws = SimpleNamespace(
            user_id=user.id, organization_id=org.id,
            page_id=fb_page.id, fb_page_id=fb_page.page_id,
        )
    return ws
