"""
Realtime Hub — pushes organization events to connected dashboards.

Clients open the `/ws` WebSocket and join an organization room:
    {"action": "join-organization", "organizationId": "..."}
    {"action": "leave-organization", "organizationId": "..."}

Server events arrive as {"event": "<name>", "data": {...}}:
    broadcast-progress, broadcast-complete, new-comment,
    comment-forwarded, comment-replied
"""
from __future__ import annotations

import json
from collections import defaultdict
from typing import Any, Optional

import structlog

logger = structlog.get_logger()


def room_name(organization_id: str) -> str:
    return f"org:{organization_id}"


class RealtimeHub:
    """Room membership for WebSocket connections, keyed by organization."""

    def __init__(self):
        self._rooms: dict[str, set[Any]] = defaultdict(set)

    def join(self, organization_id: str, ws: Any) -> None:
        self._rooms[room_name(organization_id)].add(ws)
        logger.info("socket_joined_room", room=room_name(organization_id))

    def leave(self, organization_id: str, ws: Any) -> None:
        room = self._rooms.get(room_name(organization_id))
        if room is None:
            return
        room.discard(ws)
        if not room:
            self._rooms.pop(room_name(organization_id), None)

    def disconnect(self, ws: Any) -> None:
        """Drop a socket from every room it joined."""
        for name in list(self._rooms):
            self._rooms[name].discard(ws)
            if not self._rooms[name]:
                del self._rooms[name]

    def room_size(self, organization_id: str) -> int:
        return len(self._rooms.get(room_name(organization_id), ()))

    async def handle_client_message(self, ws: Any, raw: str) -> None:
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            logger.debug("socket_message_not_json")
            return
        if not isinstance(message, dict):
            return

        action = message.get("action")
        org_id = message.get("organizationId")
        if not org_id:
            return
        if action == "join-organization":
            self.join(org_id, ws)
        elif action == "leave-organization":
            self.leave(org_id, ws)

    async def emit(self, organization_id: str, event: str, data: dict[str, Any]) -> int:
        """Send an event to every socket in the organization room. Returns the delivery count."""
        sockets = list(self._rooms.get(room_name(organization_id), ()))
        if not sockets:
            return 0

        text = json.dumps({"event": event, "data": data}, default=str)
        delivered = 0
        for ws in sockets:
            try:
                await ws.send_text(text)
                delivered += 1
            except Exception as e:
                logger.debug("socket_send_failed", event_name=event, error=str(e))
                self.disconnect(ws)
        return delivered


_hub: Optional[RealtimeHub] = None


def get_hub() -> RealtimeHub:
    global _hub
    if _hub is None:
        _hub = RealtimeHub()
    return _hub
