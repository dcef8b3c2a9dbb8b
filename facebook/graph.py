"""
Facebook Graph API client.

Thin async wrapper over the handful of Graph endpoints the service calls.
Each instance is bound to one access token (a user token for OAuth and page
listing, a page token for messaging, comments and posts).

Reads are retried on transport errors; sends and other writes are not, so a
flaky network never double-delivers a Messenger message.
"""
from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
import structlog
from tenacity import (
    retry, retry_if_exception_type, stop_after_attempt, wait_exponential,
)

from config.settings import FacebookConfig, get_settings

logger = structlog.get_logger()

GRAPH_HOST = "https://graph.facebook.com"
POST_URL_PATTERN = re.compile(r"/posts/(\d+)")

WEBHOOK_FIELDS = ["messages", "messaging_postbacks", "feed", "mention"]


class FacebookAPIError(Exception):
    """A Graph API call failed. The message comes from the Graph error payload when present."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 payload: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload or {}


# ──────────────────────────────────────────────────────────────
#  Payload helpers
# ──────────────────────────────────────────────────────────────

def build_message(text: Optional[str], attachments: Optional[list[dict[str, Any]]] = None) -> dict[str, Any]:
    """
    Build a Messenger Send API message.

    Messenger accepts one attachment per message, so only the first is used.
    """
    message: dict[str, Any] = {}
    if text:
        message["text"] = text
    if attachments:
        first = attachments[0]
        message["attachment"] = {
            "type": first.get("type"),
            "payload": {"url": first.get("url")},
        }
    return message


def extract_participants(conversations: list[dict[str, Any]], page_id: str) -> list[dict[str, Any]]:
    """Unique conversation participants other than the page itself, first-seen order."""
    seen: dict[str, dict[str, Any]] = {}
    for conversation in conversations or []:
        participants = (conversation.get("participants") or {}).get("data") or []
        for participant in participants:
            pid = participant.get("id")
            if pid and pid != page_id and pid not in seen:
                seen[pid] = participant
    return list(seen.values())


def extract_recipients(conversations: list[dict[str, Any]], page_id: str) -> list[str]:
    return [p["id"] for p in extract_participants(conversations, page_id)]


def extract_post_id(post_url: str) -> str:
    match = POST_URL_PATTERN.search(post_url or "")
    if not match:
        raise FacebookAPIError("Invalid post URL")
    return match.group(1)


def parse_graph_time(value: Optional[str]) -> datetime:
    """Graph timestamps look like 2024-01-31T12:00:00+0000."""
    if not value:
        return datetime.now(timezone.utc)
    try:
        return datetime.strptime(value, "%Y-%m-%dT%H:%M:%S%z")
    except ValueError:
        logger.debug("graph_time_unparsed", value=value)
        return datetime.now(timezone.utc)


def _error_message(response: httpx.Response, default: str) -> str:
    try:
        body = response.json()
    except ValueError:
        return default
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return default


# ──────────────────────────────────────────────────────────────
#  Client
# ──────────────────────────────────────────────────────────────

class GraphClient:
    """
    Usage:
        async with GraphClient(page.page_access_token) as graph:
            await graph.send_message(psid, build_message("hi"))
    """

    def __init__(
        self,
        access_token: str,
        config: Optional[FacebookConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ):
        self.access_token = access_token
        self.config = config or get_settings().facebook
        self.base_url = f"{GRAPH_HOST}/{self.config.api_version}"
        self._client = httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout, transport=transport,
        )

    async def __aenter__(self) -> GraphClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if not self._client.is_closed:
            await self._client.aclose()

    # ── transport ─────────────────────────────────────────────

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        reraise=True,
    )
    async def _send_get(self, path: str, params: dict[str, Any]) -> httpx.Response:
        return await self._client.get(path, params=params)

    async def _get(self, path: str, params: Optional[dict[str, Any]] = None,
                   error: str = "Graph API request failed") -> dict[str, Any]:
        query = {"access_token": self.access_token, **(params or {})}
        try:
            response = await self._send_get(path, query)
        except httpx.HTTPError as e:
            logger.error("graph_request_failed", method="GET", path=path, error=str(e))
            raise FacebookAPIError(error) from e
        return self._parse(response, "GET", path, error)

    async def _post(self, path: str, body: dict[str, Any],
                    error: str = "Graph API request failed") -> dict[str, Any]:
        try:
            response = await self._client.post(
                path, params={"access_token": self.access_token}, json=body,
            )
        except httpx.HTTPError as e:
            logger.error("graph_request_failed", method="POST", path=path, error=str(e))
            raise FacebookAPIError(error) from e
        return self._parse(response, "POST", path, error)

    def _parse(self, response: httpx.Response, method: str, path: str, error: str) -> dict[str, Any]:
        if response.is_error:
            message = _error_message(response, error)
            logger.error("graph_api_error", method=method, path=path,
                         status=response.status_code, error=message)
            raise FacebookAPIError(message, status_code=response.status_code,
                                   payload=_safe_json(response))
        return _safe_json(response)

    # ── user token ────────────────────────────────────────────

    async def get_me(self) -> dict[str, Any]:
        return await self._get(
            "/me", {"fields": "id,name,email,picture"},
            error="Failed to fetch profile",
        )

    async def get_user_pages(self) -> list[dict[str, Any]]:
        result = await self._get(
            "/me/accounts", {"fields": "id,name,access_token,fan_count,picture"},
            error="Failed to fetch pages",
        )
        return result.get("data", [])

    async def exchange_code(self, code: str, redirect_uri: str) -> str:
        """Swap an OAuth dialog code for a user access token."""
        result = await self._get(
            "/oauth/access_token",
            {
                "client_id": self.config.app_id,
                "client_secret": self.config.app_secret,
                "redirect_uri": redirect_uri,
                "code": code,
            },
            error="Failed to exchange authorization code",
        )
        token = result.get("access_token")
        if not token:
            raise FacebookAPIError("Failed to exchange authorization code")
        self.access_token = token
        return token

    # ── page token ────────────────────────────────────────────

    async def get_page_details(self, page_id: str) -> dict[str, Any]:
        return await self._get(
            f"/{page_id}", {"fields": "id,name,fan_count,picture,cover,about,category"},
            error="Failed to fetch page details",
        )

    async def send_message(self, recipient_id: str, message: dict[str, Any]) -> dict[str, Any]:
        return await self._post(
            "/me/messages",
            {"recipient": {"id": recipient_id}, "message": message},
            error="Failed to send message",
        )

    async def get_page_conversations(self, limit: int = 100) -> list[dict[str, Any]]:
        result = await self._get(
            "/me/conversations", {"fields": "participants,updated_time", "limit": limit},
            error="Failed to fetch conversations",
        )
        return result.get("data", [])

    async def get_post_comments(self, post_id: str, since: Optional[str] = None) -> list[dict[str, Any]]:
        params: dict[str, Any] = {
            "fields": "id,from,message,created_time,parent,attachment",
            "order": "reverse_chronological",
            "limit": 100,
        }
        if since:
            params["since"] = since
        result = await self._get(f"/{post_id}/comments", params, error="Failed to fetch comments")
        return result.get("data", [])

    async def reply_to_comment(self, comment_id: str, message: str) -> dict[str, Any]:
        return await self._post(
            f"/{comment_id}/comments", {"message": message},
            error="Failed to reply to comment",
        )

    async def get_page_posts(self, page_id: str, limit: int = 25) -> list[dict[str, Any]]:
        result = await self._get(
            f"/{page_id}/posts",
            {"fields": "id,message,created_time,permalink_url,attachments{media}", "limit": limit},
            error="Failed to fetch posts",
        )
        return result.get("data", [])

    async def subscribe_page_to_webhooks(self, page_id: str) -> dict[str, Any]:
        return await self._post(
            f"/{page_id}/subscribed_apps", {"subscribed_fields": WEBHOOK_FIELDS},
            error="Failed to subscribe to webhooks",
        )

    async def get_post_by_url(self, post_url: str) -> dict[str, Any]:
        post_id = extract_post_id(post_url)
        return await self._get(
            f"/{post_id}", {"fields": "id,message,created_time,permalink_url"},
            error="Failed to fetch post",
        )


def _safe_json(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {"data": body}


def oauth_dialog_url(config: Optional[FacebookConfig] = None, state: Optional[str] = None) -> str:
    """URL of the Facebook login dialog for the configured app."""
    config = config or get_settings().facebook
    params = {
        "client_id": config.app_id,
        "redirect_uri": config.callback_url,
        "scope": ",".join(config.oauth_scopes),
        "response_type": "code",
    }
    if state:
        params["state"] = state
    return str(httpx.URL(f"https://www.facebook.com/{config.api_version}/dialog/oauth", params=params))
